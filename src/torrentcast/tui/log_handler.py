"""
Log handler feeding the TUI log panel.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .tui import TorrentTUI

PACKAGE_PREFIX = "torrentcast."


class TUILogHandler(logging.Handler):
    """
    Routes log records into the TUI log panel while curses owns the screen.

    Records are shown on one line with the logger name shortened to the
    module (``server``, ``players``...); tracebacks are dropped since the
    panel has no room for them.
    """

    def __init__(self, tui: "TorrentTUI") -> None:
        super().__init__()
        self.tui = tui
        self.setFormatter(logging.Formatter("%(asctime)s │ %(levelname)-7s │ %(source)s: %(message)s", datefmt="%H:%M:%S"))

    def format(self, record: logging.LogRecord) -> str:
        summary = logging.makeLogRecord(record.__dict__)
        summary.msg = (record.getMessage().splitlines() or [""])[0]
        summary.args = None
        summary.exc_info = None
        summary.exc_text = None
        summary.source = record.name.removeprefix(PACKAGE_PREFIX)
        return super().format(summary)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.tui.add_log(self.format(record), record.levelno)
        except Exception:
            self.handleError(record)
