"""
Main TorrentTUI class with the stats panel and a scrolling log.
"""

from __future__ import annotations

import curses
import logging
import sys
from collections import deque
from typing import Deque, List, Optional

from ..models import StatsSnapshot
from .constants import LOG_PANEL_HEIGHT, MIN_HEIGHT, MIN_WIDTH, ColorPairs
from .log_handler import TUILogHandler
from .view import DisplayContext, Line, render_lines


class TorrentTUI:
    """Curses view of the live swarm statistics, with captured warnings below."""

    def __init__(self, context: DisplayContext) -> None:
        self.context = context
        self.stdscr: Optional["curses._CursesWindow"] = None
        self.enabled = sys.stdout.isatty()

        self.log_buffer: Deque[tuple[str, int]] = deque(maxlen=500)
        self.log_scroll_offset = 0
        self._log_handler: Optional[TUILogHandler] = None

    @property
    def active(self) -> bool:
        return self.stdscr is not None

    def start(self) -> None:
        """Initialize curses UI and capture logging."""
        if not self.enabled or self.stdscr is not None:
            return

        self.stdscr = curses.initscr()
        curses.noecho()
        curses.cbreak()
        try:
            curses.curs_set(0)
        except curses.error:
            pass
        self.stdscr.nodelay(True)
        self.stdscr.keypad(True)

        if curses.has_colors():
            curses.start_color()
            curses.use_default_colors()
            curses.init_pair(ColorPairs.TITLE, curses.COLOR_WHITE, -1)
            curses.init_pair(ColorPairs.LABEL, curses.COLOR_GREEN, -1)
            curses.init_pair(ColorPairs.VALUE, curses.COLOR_WHITE, -1)
            curses.init_pair(ColorPairs.PEER_ADDRESS, curses.COLOR_MAGENTA, -1)
            curses.init_pair(ColorPairs.DOWNLOAD, curses.COLOR_CYAN, -1)
            curses.init_pair(ColorPairs.UPLOAD, curses.COLOR_RED, -1)
            curses.init_pair(ColorPairs.MUTED, curses.COLOR_BLUE, -1)
            curses.init_pair(ColorPairs.LOG_INFO, curses.COLOR_WHITE, -1)
            curses.init_pair(ColorPairs.LOG_WARNING, curses.COLOR_YELLOW, -1)
            curses.init_pair(ColorPairs.LOG_ERROR, curses.COLOR_RED, -1)
            curses.init_pair(ColorPairs.BORDER, curses.COLOR_BLUE, -1)

        # Only warnings and above reach the TUI
        self._log_handler = TUILogHandler(self)
        self._log_handler.setLevel(logging.WARNING)
        logging.getLogger().addHandler(self._log_handler)

        self._draw_frame()

    def stop(self) -> None:
        """Restore terminal state."""
        if not self.stdscr:
            return

        if self._log_handler:
            logging.getLogger().removeHandler(self._log_handler)
            self._log_handler = None

        curses.nocbreak()
        curses.echo()
        curses.endwin()
        self.stdscr = None

    def add_log(self, message: str, level: int = logging.INFO) -> None:
        """Add a log message to the buffer."""
        self.log_buffer.append((message, level))
        self.log_scroll_offset = 0

    def show_message(self, message: str) -> None:
        """Replace the stats panel with a single status line."""
        self._paint([[(message, ColorPairs.LABEL)]])

    def update(self, snapshot: StatsSnapshot) -> None:
        """Render one stats snapshot."""
        if not self.stdscr:
            return
        height, _ = self.stdscr.getmaxyx()
        self._paint(render_lines(snapshot, self.context, self._stats_end(height) - 1))

    def _stats_end(self, height: int) -> int:
        return max(2, height - LOG_PANEL_HEIGHT)

    def _attr(self, pair: int, bold: bool = False) -> int:
        attr = curses.color_pair(pair) if pair and curses.has_colors() else 0
        if bold:
            attr |= curses.A_BOLD
        return attr

    def _paint(self, lines: List[Line]) -> None:
        if not self.stdscr:
            return

        try:
            self._handle_input()

            height, width = self.stdscr.getmaxyx()
            if width < MIN_WIDTH or height < MIN_HEIGHT:
                self.stdscr.erase()
                self._safe_addstr(0, 0, "Terminal too small!")
                self.stdscr.refresh()
                return

            self._draw_frame()
            stats_end = self._stats_end(height)
            for offset, line in enumerate(lines[: stats_end - 1]):
                col = 2
                for text, pair in line:
                    self._safe_addstr(1 + offset, col, text, self._attr(pair, bold=pair in (ColorPairs.TITLE, ColorPairs.VALUE)))
                    col += len(text)
                    if col >= width - 2:
                        break

            self._render_logs(height, width)
            self.stdscr.refresh()
        except curses.error:
            try:
                self.stdscr.refresh()
            except curses.error:
                pass

    def _draw_frame(self) -> None:
        """Draw the static frame elements."""
        if not self.stdscr:
            return

        height, width = self.stdscr.getmaxyx()
        self.stdscr.erase()
        border_attr = self._attr(ColorPairs.BORDER)

        self._safe_addstr(0, 0, "╭" + "─" * (width - 2) + "╮", border_attr)

        stats_end = self._stats_end(height)
        for row in range(1, stats_end):
            self._safe_addstr(row, 0, "│", border_attr)
            self._safe_addstr(row, width - 1, "│", border_attr)

        if height > stats_end:
            self._safe_addstr(stats_end, 0, "├" + "─" * (width - 2) + "┤", border_attr)

        if height > stats_end + 1:
            log_header = " LOGS "
            self._safe_addstr(stats_end + 1, 0, "│", border_attr)
            self._safe_addstr(stats_end + 1, (width - len(log_header)) // 2, log_header, self._attr(ColorPairs.TITLE, bold=True))
            self._safe_addstr(stats_end + 1, width - 1, "│", border_attr)

        for row in range(stats_end + 2, height - 1):
            self._safe_addstr(row, 0, "│", border_attr)
            self._safe_addstr(row, width - 1, "│", border_attr)

        if height > 1:
            self._safe_addstr(height - 1, 0, "╰" + "─" * (width - 2) + "╯", border_attr)

    def _handle_input(self) -> None:
        """Handle keyboard input for scrolling the log panel."""
        if not self.stdscr:
            return

        key = self.stdscr.getch()
        newest = max(0, len(self.log_buffer) - 1)
        if key == curses.KEY_UP or key == ord("k"):
            self.log_scroll_offset = min(self.log_scroll_offset + 1, newest)
        elif key == curses.KEY_DOWN or key == ord("j"):
            self.log_scroll_offset = max(0, self.log_scroll_offset - 1)
        elif key == curses.KEY_PPAGE:
            self.log_scroll_offset = min(self.log_scroll_offset + 10, newest)
        elif key == curses.KEY_NPAGE:
            self.log_scroll_offset = max(0, self.log_scroll_offset - 10)
        elif key == ord("g"):
            self.log_scroll_offset = newest
        elif key == ord("G"):
            self.log_scroll_offset = 0

    def _render_logs(self, height: int, width: int) -> None:
        """Render the scrolling log section."""
        log_start_row = self._stats_end(height) + 2
        log_end_row = height - 1
        content_width = width - 4
        if log_end_row <= log_start_row:
            return

        logs = list(reversed(self.log_buffer))[self.log_scroll_offset :]
        for row, (message, level) in zip(range(log_start_row, log_end_row), logs):
            if level >= logging.ERROR:
                pair = ColorPairs.LOG_ERROR
            elif level >= logging.WARNING:
                pair = ColorPairs.LOG_WARNING
            else:
                pair = ColorPairs.LOG_INFO
            self._safe_addstr(row, 2, message[:content_width], self._attr(pair))

        if self.log_scroll_offset > 0:
            indicator = f" ↑ {self.log_scroll_offset} more "
            self._safe_addstr(log_start_row, width - len(indicator) - 2, indicator, self._attr(ColorPairs.TITLE))

    def _safe_addstr(self, row: int, col: int, text: str, attr: int = 0) -> None:
        """Safely add a string to the screen."""
        if not self.stdscr:
            return
        height, width = self.stdscr.getmaxyx()
        if row >= height or col >= width or row < 0 or col < 0:
            return
        # Truncate text to avoid wrapping
        max_len = width - col - 1
        if max_len <= 0:
            return
        try:
            self.stdscr.addstr(row, col, text[:max_len], attr)
        except curses.error:
            pass
