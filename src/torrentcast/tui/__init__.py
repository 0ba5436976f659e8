"""
TUI module for the live swarm statistics display.
"""

from .constants import ColorPairs
from .formatters import format_estimate, format_runtime, format_seconds, format_size, format_speed, humanize_duration
from .log_handler import TUILogHandler
from .tui import TorrentTUI
from .view import DisplayContext, build_peer_rows, render_lines

__all__ = [
    "TorrentTUI",
    "TUILogHandler",
    "ColorPairs",
    "DisplayContext",
    "render_lines",
    "build_peer_rows",
    "format_seconds",
    "format_size",
    "format_speed",
    "format_runtime",
    "format_estimate",
    "humanize_duration",
]
