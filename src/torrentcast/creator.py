"""
Builds v1 .torrent documents from a file or folder on disk.
"""

import hashlib
import logging
import time
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from . import __version__
from .bencode import bencode
from .errors import InputError

logger = logging.getLogger(__name__)

MIN_PIECE_LENGTH = 16 * 1024
MAX_PIECE_LENGTH = 16 * 1024 * 1024
TARGET_PIECE_COUNT = 1024
DEFAULT_CREATED_BY = f"torrentcast/{__version__}"


def piece_length_for(total_size: int) -> int:
    """
    Pick a power-of-two piece length giving roughly TARGET_PIECE_COUNT pieces.

    Args:
        total_size: Total content size in bytes

    Returns:
        Piece length in bytes, between 16 KiB and 16 MiB
    """
    length = MIN_PIECE_LENGTH
    while length < MAX_PIECE_LENGTH and total_size / length > TARGET_PIECE_COUNT:
        length *= 2
    return length


def collect_files(root: Path) -> List[Tuple[Path, List[str]]]:
    """
    List the files to include, sorted by relative path.

    Hidden files and folders (names starting with a dot) are skipped.

    Returns:
        List of (absolute_path, path_components) tuples
    """
    if root.is_file():
        return [(root, [root.name])]

    files = []
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root)
        if any(part.startswith(".") for part in relative.parts):
            continue
        if path.is_file():
            files.append((path, list(relative.parts)))
    return files


def create_torrent(
    source: str | Path,
    announce: Optional[List[str]] = None,
    created_by: Optional[str] = None,
    comment: Optional[str] = None,
    private: bool = False,
    piece_length: Optional[int] = None,
    url_list: Optional[List[str]] = None,
) -> bytes:
    """
    Create a bencoded .torrent for a file or folder.

    Args:
        source: File or folder to describe
        announce: Tracker URLs, the first becomes the primary tracker
        created_by: Value of the 'created by' field
        comment: Optional comment
        private: Set the private flag (disables DHT/PEX in clients)
        piece_length: Force a piece length instead of choosing one
        url_list: Web seed URLs

    Returns:
        The .torrent file contents

    Raises:
        InputError: If the source does not exist or contains no files
    """
    root = Path(source)
    if not root.exists():
        raise InputError(f"Cannot create torrent: {source} does not exist")

    files = collect_files(root)
    if not files:
        raise InputError(f"Cannot create torrent: {source} contains no files")

    total_size = sum(path.stat().st_size for path, _ in files)
    piece_length = piece_length or piece_length_for(total_size)
    logger.info(f"Hashing {len(files)} file(s), {total_size} bytes, piece length {piece_length}")

    pieces = b"".join(hashlib.sha1(piece).digest() for piece in _pieces(files, piece_length))

    info: dict = {"name": root.name, "piece length": piece_length, "pieces": pieces}
    if root.is_file():
        info["length"] = total_size
    else:
        info["files"] = [{"length": path.stat().st_size, "path": parts} for path, parts in files]
    if private:
        info["private"] = 1

    torrent: dict = {
        "info": info,
        "created by": created_by or DEFAULT_CREATED_BY,
        "creation date": int(time.time()),
        "encoding": "UTF-8",
    }
    if announce:
        torrent["announce"] = announce[0]
        torrent["announce-list"] = [[url] for url in announce]
    if comment:
        torrent["comment"] = comment
    if url_list:
        torrent["url-list"] = url_list

    return bencode(torrent)


def _pieces(files: List[Tuple[Path, List[str]]], piece_length: int) -> Iterator[bytes]:
    """Yield consecutive pieces over the concatenated file contents."""
    buffer = b""
    for path, _ in files:
        with open(path, "rb") as f:
            while True:
                chunk = f.read(piece_length - len(buffer))
                if not chunk:
                    break
                buffer += chunk
                if len(buffer) == piece_length:
                    yield buffer
                    buffer = b""
    if buffer:
        yield buffer
