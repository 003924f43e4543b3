"""Credential selection for agent containers.

Two mutually exclusive sources per run:
- api-key: ANTHROPIC_API_KEY, passed as an environment variable
- session: a host .claude.json session file, injected into the container's
  home directory before the agent starts

The API key wins when both exist, unless the caller prefers the session.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

API_KEY_ENV = "ANTHROPIC_API_KEY"
SESSION_FILE_NAME = ".claude.json"


class AuthError(Exception):
    """No usable credentials."""

    pass


@dataclass
class AuthMethod:
    """Selected credential source."""

    type: Literal["api-key", "session", "none"]
    api_key: str | None = None
    session_file: Path | None = None
    has_both: bool = False


@dataclass
class AuthConfig:
    """What the container needs for the selected credentials."""

    env: dict[str, str] = field(default_factory=dict)
    session_file_to_copy: Path | None = None


def find_session_file(home: Path | None = None, cwd: Path | None = None) -> Path | None:
    """Find a session file: ~/.claude/.claude.json first, then ./.claude.json."""
    home = home if home is not None else Path.home()
    cwd = cwd if cwd is not None else Path.cwd()

    for candidate in (home / ".claude" / SESSION_FILE_NAME, cwd / SESSION_FILE_NAME):
        if candidate.is_file():
            return candidate
    return None


def get_auth_method(
    prefer_session: bool = False,
    api_key: str | None = None,
    session_file: Path | None = None,
) -> AuthMethod:
    """Pick the credential source.

    Args:
        prefer_session: Use the session file even when an API key exists
        api_key: Override for ANTHROPIC_API_KEY (read from env when None)
        session_file: Override for session discovery (searched when None)
    """
    if api_key is None:
        api_key = os.environ.get(API_KEY_ENV) or None
    if session_file is None:
        session_file = find_session_file()

    has_both = bool(api_key) and session_file is not None

    if prefer_session:
        order = ("session", "api-key")
    else:
        order = ("api-key", "session")

    for source in order:
        if source == "api-key" and api_key:
            return AuthMethod(type="api-key", api_key=api_key, has_both=has_both)
        if source == "session" and session_file is not None:
            return AuthMethod(type="session", session_file=session_file, has_both=has_both)

    return AuthMethod(type="none")


def get_auth_config(method: AuthMethod) -> AuthConfig:
    """Translate an AuthMethod into container environment and injected file.

    Raises:
        AuthError: If method is "none"
    """
    if method.type == "api-key" and method.api_key:
        return AuthConfig(env={API_KEY_ENV: method.api_key})
    if method.type == "session" and method.session_file is not None:
        return AuthConfig(session_file_to_copy=method.session_file)
    raise AuthError("No authentication method available")
