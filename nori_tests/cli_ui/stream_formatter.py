"""Human-readable rendering of the agent's stream-json output.

The agent emits one JSON object per line. Chunks from the container arrive at
arbitrary boundaries, so partial lines are buffered until their newline
arrives. Lines that are not valid JSON are skipped.

Returned strings use Rich markup; agent-provided text is escaped.
"""

from __future__ import annotations

import json
from typing import Any

from rich.markup import escape

TOOL_INPUT_MAX = 80
TOOL_RESULT_MAX = 100

# Tools whose most useful input field is known
_TOOL_FIELDS = {
    "Read": "file_path",
    "Write": "file_path",
    "Edit": "file_path",
    "Grep": "pattern",
    "Glob": "pattern",
}


def truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


class StreamFormatter:
    """Line-buffering formatter for agent stream messages."""

    def __init__(self) -> None:
        self._buffer = ""

    def process_chunk(self, data: str) -> list[str]:
        """Feed raw output, returning formatted lines for every complete message."""
        if not data:
            return []

        self._buffer += data
        *lines, self._buffer = self._buffer.split("\n")

        results = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(message, dict):
                continue
            formatted = self.format_message(message)
            if formatted:
                results.append(formatted)
        return results

    def flush(self) -> list[str]:
        """Format whatever remains buffered (a final line without newline)."""
        remaining, self._buffer = self._buffer, ""
        return self.process_chunk(remaining + "\n") if remaining.strip() else []

    def format_message(self, message: dict[str, Any]) -> str | None:
        handler = {
            "system": self._format_system,
            "assistant": self._format_assistant,
            "user": self._format_user,
            "result": self._format_result,
        }.get(message.get("type", ""))
        return handler(message) if handler else None

    def _format_system(self, message: dict[str, Any]) -> str | None:
        if message.get("subtype") == "init" and message.get("session_id"):
            tool_count = len(message.get("tools") or [])
            return (
                f"[dim]▶ Session started: {escape(str(message['session_id']))} "
                f"({tool_count} tools available)[/dim]"
            )
        return None

    def _format_assistant(self, message: dict[str, Any]) -> str | None:
        content = (message.get("message") or {}).get("content")
        if not content:
            return None
        if isinstance(content, str):
            return f"[cyan]Claude:[/cyan] {escape(content)}"
        if not isinstance(content, list):
            return None

        parts = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                parts.append(f"[cyan]Claude:[/cyan] {escape(block['text'])}")
            elif block.get("type") == "tool_use" and block.get("name"):
                description = escape(self._format_tool_use(block))
                parts.append(f"[yellow]🔧 {escape(block['name'])}:[/yellow] {description}")
        return "\n".join(parts) if parts else None

    def _format_tool_use(self, block: dict[str, Any]) -> str:
        tool_input = block.get("input") or {}
        name = block.get("name")

        if name in _TOOL_FIELDS and tool_input.get(_TOOL_FIELDS[name]):
            value = str(tool_input[_TOOL_FIELDS[name]])
            if _TOOL_FIELDS[name] == "pattern":
                value = f"pattern: {value}"
            return truncate(value, TOOL_INPUT_MAX)

        if name == "Bash" and tool_input.get("command"):
            return truncate(str(tool_input.get("description") or tool_input["command"]), TOOL_INPUT_MAX)

        # Fall back to the first input field
        for value in tool_input.values():
            text = value if isinstance(value, str) else json.dumps(value)
            return truncate(text, TOOL_INPUT_MAX)
        return "(no input)"

    def _format_user(self, message: dict[str, Any]) -> str | None:
        content = (message.get("message") or {}).get("content")
        if not isinstance(content, list):
            return None

        parts = [
            f"[dim]   ↳ Result: {escape(self._format_tool_result(block.get('content')))}[/dim]"
            for block in content
            if isinstance(block, dict) and block.get("type") == "tool_result"
        ]
        return "\n".join(parts) if parts else None

    def _format_tool_result(self, content: Any) -> str:
        if isinstance(content, str):
            return truncate(" ".join(content.split()), TOOL_RESULT_MAX)
        if content:
            return truncate(json.dumps(content), TOOL_RESULT_MAX)
        return "(empty)"

    def _format_result(self, message: dict[str, Any]) -> str | None:
        if message.get("is_error") or message.get("subtype") == "error":
            detail = f": {escape(truncate(str(message['result']), TOOL_INPUT_MAX))}" if message.get("result") else ""
            return f"[red]✗ Error{detail}[/red]"

        stats = []
        if message.get("total_cost_usd"):
            stats.append(f"${message['total_cost_usd']:.4f}")
        if message.get("duration_ms"):
            stats.append(f"{message['duration_ms'] / 1000:.1f}s")
        if message.get("num_turns"):
            stats.append(f"{message['num_turns']} turns")
        suffix = f" ({', '.join(stats)})" if stats else ""
        return f"[green]✓ Complete[/green]{suffix}"
