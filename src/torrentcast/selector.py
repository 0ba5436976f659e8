"""
Picks the file a session acts on.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from .errors import InputError, SelectionListed, SessionError
from .metainfo import FileDescriptor
from .tui.formatters import format_size

logger = logging.getLogger(__name__)


def select_file(
    files: Sequence[FileDescriptor],
    requested_index: Optional[int] = None,
    *,
    list_only: bool = False,
) -> int:
    """
    Choose the file to stream.

    Args:
        files: Files of the torrent, in stored order
        requested_index: Index given by the user, used verbatim
        list_only: The user asked for the file list instead of a download

    Returns:
        The selected file index; the largest file unless one was requested,
        the first of several equally large files winning

    Raises:
        SelectionListed: When ``list_only`` is set
        InputError: If the requested index does not exist
        SessionError: If the torrent has no files
    """
    if list_only:
        raise SelectionListed(files)
    if not files:
        raise SessionError("Torrent contains no files")

    if requested_index is not None:
        if not 0 <= requested_index < len(files):
            raise InputError(f"No file at index {requested_index} (torrent has {len(files)} files)")
        return requested_index

    largest = files[0]
    for descriptor in files[1:]:
        if descriptor.length > largest.length:
            largest = descriptor
    logger.debug(f"Selected largest file {largest.index}: {largest.name}")
    return largest.index


def format_file_list(files: Sequence[FileDescriptor]) -> str:
    """Numbered file listing with a hint on how to pick one."""
    lines = ["Select a file to download:", ""]
    lines.extend(f"  {f.index} {f.path} ({format_size(f.length)})" for f in files)
    lines.extend(["", "To select a specific file, re-run `torrentcast` with \"--select [index]\"", ""])
    return "\n".join(lines)
