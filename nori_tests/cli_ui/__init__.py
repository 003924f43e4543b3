"""Terminal rendering of live agent output."""

from nori_tests.cli_ui.stream_formatter import StreamFormatter

__all__ = ["StreamFormatter"]
