"""
Identifier resolution: magnet links, info hashes, .torrent URLs and paths.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import aiohttp

from .errors import InputError
from .metainfo import (
    MetainfoError,
    TorrentMetadata,
    is_info_hash,
    is_magnet_link,
    parse_info_hash,
    parse_magnet,
    parse_torrent,
)

logger = logging.getLogger(__name__)

FETCH_TIMEOUT = 30


async def resolve(identifier: str) -> TorrentMetadata:
    """
    Turn a user supplied torrent identifier into metadata.

    Magnet links, info hashes and http(s) URLs are parsed directly. Anything
    else, including identifiers that failed to parse, is read as a filesystem
    path to a .torrent file before giving up.

    Args:
        identifier: Magnet URI, info hash, URL or path

    Returns:
        Parsed metadata (``has_info`` is False for magnets and info hashes)

    Raises:
        InputError: If the identifier cannot be resolved
    """
    try:
        if is_magnet_link(identifier):
            return parse_magnet(identifier)
        if is_info_hash(identifier):
            return parse_info_hash(identifier)
        if identifier.startswith(("http://", "https://")):
            return parse_torrent(await fetch_torrent(identifier))
    except MetainfoError as e:
        # Could still be a file whose name looks like one of the above
        logger.debug(f"Could not parse {identifier!r} directly ({e}), trying as a path")

    return read_torrent_file(identifier)


def read_torrent_file(path: str | Path) -> TorrentMetadata:
    """
    Read and parse a .torrent file.

    Raises:
        InputError: If the file is missing or not a valid torrent
    """
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise InputError(f"Invalid torrent identifier: {path} ({e.strerror or e})") from e

    try:
        return parse_torrent(data)
    except MetainfoError as e:
        raise InputError(f"Invalid torrent file {path}: {e}") from e


async def fetch_torrent(url: str) -> bytes:
    """
    Download a .torrent file over HTTP.

    Raises:
        InputError: If the request fails or the server does not answer 200
    """
    logger.info(f"Fetching torrent file from {url}")
    try:
        async with aiohttp.ClientSession() as session:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=FETCH_TIMEOUT)) as response:
                if response.status != 200:
                    raise InputError(f"Failed to fetch {url}: HTTP {response.status}")
                return await response.read()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise InputError(f"Failed to fetch {url}: {e}") from e
