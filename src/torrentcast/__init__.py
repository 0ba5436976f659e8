"""
torrentcast: stream torrents to media players and cast devices.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
