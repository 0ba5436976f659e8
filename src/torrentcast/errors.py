"""
Exceptions shared across the orchestrator.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from .metainfo import FileDescriptor


class TorrentcastError(Exception):
    """Base exception for all application-specific errors."""


class InputError(TorrentcastError):
    """
    Raised for problems the user caused: unparseable identifiers, missing files,
    invalid flag combinations, hook scripts that cannot be executed.

    These are reported without the crash diagnostics banner.
    """


class SessionError(TorrentcastError):
    """Raised when a running session fails (swarm error, bind failure, sink failure)."""


class LaunchError(SessionError):
    """Raised when a playback sink cannot be started."""


class SelectionListed(Exception):
    """
    Raised by the file selector when the user asked for the file list instead of
    a download. Not an error: the session ends gracefully after the list is shown.
    """

    def __init__(self, files: Sequence["FileDescriptor"]) -> None:
        super().__init__("file list requested")
        self.files = list(files)
