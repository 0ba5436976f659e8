"""
Color pair constants for the TUI.
"""


class ColorPairs:
    """Color pair IDs for curses."""

    TITLE = 1
    LABEL = 2
    VALUE = 3
    PEER_ADDRESS = 4
    DOWNLOAD = 5
    UPLOAD = 6
    MUTED = 7
    LOG_INFO = 8
    LOG_WARNING = 9
    LOG_ERROR = 10
    BORDER = 11


# Rows kept for the log panel below the stats, borders included
LOG_PANEL_HEIGHT = 8
MIN_WIDTH = 40
MIN_HEIGHT = 15
