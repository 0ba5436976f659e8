"""
Torrent metadata models and parsers for .torrent documents, magnet links and
bare info hashes.
"""

from __future__ import annotations

import base64
import hashlib
import re
import urllib.parse
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .bencode import BencodeError, bdecode, bencode

_HEX_HASH = re.compile(r"^[0-9a-fA-F]{40}$")
_BASE32_HASH = re.compile(r"^[A-Za-z2-7]{32}$")


class MetainfoError(ValueError):
    """Exception raised when an identifier cannot be parsed as torrent metadata."""

    pass


class FileDescriptor(BaseModel):
    """A single file inside a torrent."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0, description="Position in the torrent's file list")
    name: str = Field(description="File name without directories")
    path: str = Field(description="Path relative to the download directory")
    length: int = Field(ge=0, description="File size in bytes")
    offset: int = Field(default=0, ge=0, description="Byte offset inside the torrent's content")


class TorrentMetadata(BaseModel):
    """
    Resolved torrent descriptor.

    Magnet links and info hashes only carry the info hash, an optional display
    name and trackers; ``has_info`` is False until the full metadata is known.
    """

    model_config = ConfigDict(frozen=True)

    info_hash: str = Field(description="Hex encoded v1 info hash")
    name: str | None = None
    announce: list[str] = Field(default_factory=list)
    url_list: list[str] = Field(default_factory=list)
    files: tuple[FileDescriptor, ...] = ()
    length: int | None = None
    piece_length: int | None = None
    last_piece_length: int | None = None
    pieces: list[str] = Field(default_factory=list, description="Hex encoded SHA-1 piece hashes")
    created: datetime | None = None
    created_by: str | None = None
    comment: str | None = None
    private: bool = False
    torrent_file: bytes | None = Field(default=None, exclude=True, repr=False)

    @computed_field
    @property
    def has_info(self) -> bool:
        """True when the info dictionary (files, pieces) is known."""
        return self.length is not None

    @computed_field
    @property
    def piece_count(self) -> int:
        """Number of pieces in the torrent, 0 when unknown."""
        return len(self.pieces)

    @property
    def magnet_uri(self) -> str:
        """Magnet URI with info hash, display name, trackers and web seeds."""
        params = [f"xt=urn:btih:{self.info_hash}"]
        if self.name:
            params.append(f"dn={urllib.parse.quote(self.name)}")
        for tracker in self.announce:
            params.append(f"tr={urllib.parse.quote(tracker, safe='')}")
        for seed in self.url_list:
            params.append(f"ws={urllib.parse.quote(seed, safe='')}")
        return "magnet:?" + "&".join(params)


def is_magnet_link(uri: str) -> bool:
    """Check if a string is a magnet link."""
    return uri.startswith("magnet:?")


def is_info_hash(value: str) -> bool:
    """Check if a string is a hex or base32 encoded info hash."""
    return bool(_HEX_HASH.match(value) or _BASE32_HASH.match(value))


def normalize_info_hash(value: str) -> str:
    """
    Convert a hex or base32 info hash to lowercase hex.

    Raises:
        MetainfoError: If the value is not a valid info hash
    """
    if _HEX_HASH.match(value):
        return value.lower()
    if _BASE32_HASH.match(value):
        try:
            return base64.b32decode(value.upper()).hex()
        except ValueError as e:
            raise MetainfoError(f"Invalid base32 info hash: {value}") from e
    raise MetainfoError(f"Invalid info hash: {value}")


def parse_magnet(magnet_uri: str) -> TorrentMetadata:
    """
    Parse a magnet URI.

    Raises:
        MetainfoError: If the URI is invalid or has no BitTorrent info hash
    """
    if not is_magnet_link(magnet_uri):
        raise MetainfoError("Invalid magnet URI: must start with 'magnet:?'")

    params = urllib.parse.parse_qs(magnet_uri[len("magnet:?") :])

    info_hash: str | None = None
    for xt in params.get("xt", []):
        if xt.startswith("urn:btih:"):
            info_hash = normalize_info_hash(xt[len("urn:btih:") :])
            break
    if info_hash is None:
        raise MetainfoError("Magnet URI missing info hash (xt=urn:btih:...)")

    names = params.get("dn", [])
    return TorrentMetadata(
        info_hash=info_hash,
        name=names[0] if names else None,
        announce=_unique(params.get("tr", [])),
        url_list=_unique(params.get("ws", [])),
    )


def parse_info_hash(value: str) -> TorrentMetadata:
    """Build metadata for a bare info hash."""
    return TorrentMetadata(info_hash=normalize_info_hash(value))


def parse_torrent(data: bytes) -> TorrentMetadata:
    """
    Parse the contents of a .torrent file.

    Raises:
        MetainfoError: If the data is not a valid torrent document
    """
    try:
        root = bdecode(data)
    except BencodeError as e:
        raise MetainfoError(f"Invalid torrent data: {e}") from e
    if not isinstance(root, dict):
        raise MetainfoError("Torrent file must start with a dictionary")

    info = root.get("info")
    if not isinstance(info, dict):
        raise MetainfoError("Torrent file missing 'info' dictionary")

    name = _text(info.get("name.utf-8") or info.get("name"))
    if not name:
        raise MetainfoError("Torrent info missing 'name'")

    piece_length = info.get("piece length")
    pieces_blob = info.get("pieces")
    if not isinstance(piece_length, int) or piece_length <= 0:
        raise MetainfoError("Torrent info has an invalid 'piece length'")
    if not isinstance(pieces_blob, bytes) or len(pieces_blob) % 20:
        raise MetainfoError("Torrent info has an invalid 'pieces' field")

    files = _files(name, info)
    length = sum(f.length for f in files)
    pieces = [pieces_blob[i : i + 20].hex() for i in range(0, len(pieces_blob), 20)]
    last_piece_length = length % piece_length or piece_length

    created = root.get("creation date")
    return TorrentMetadata(
        info_hash=hashlib.sha1(bencode(info)).hexdigest(),
        name=name,
        announce=_announce(root),
        url_list=_url_list(root.get("url-list")),
        files=tuple(files),
        length=length,
        piece_length=piece_length,
        last_piece_length=last_piece_length,
        pieces=pieces,
        created=datetime.fromtimestamp(created, tz=timezone.utc) if isinstance(created, int) else None,
        created_by=_text(root.get("created by")),
        comment=_text(root.get("comment")),
        private=info.get("private") == 1,
        torrent_file=data,
    )


def _files(name: str, info: dict[str, Any]) -> list[FileDescriptor]:
    """Flatten single and multi-file layouts into descriptors with offsets."""
    if "files" not in info:
        length = info.get("length")
        if not isinstance(length, int) or length < 0:
            raise MetainfoError("Torrent info has an invalid 'length'")
        return [FileDescriptor(index=0, name=name, path=name, length=length)]

    files: list[FileDescriptor] = []
    offset = 0
    for index, entry in enumerate(info["files"]):
        parts = entry.get("path.utf-8") or entry.get("path") or []
        parts = [_text(part) or "" for part in parts]
        length = entry.get("length")
        if not parts or not isinstance(length, int) or length < 0:
            raise MetainfoError(f"Torrent file entry {index} is invalid")
        files.append(
            FileDescriptor(
                index=index,
                name=parts[-1],
                path="/".join([name, *parts]),
                length=length,
                offset=offset,
            )
        )
        offset += length
    return files


def _announce(root: dict[str, Any]) -> list[str]:
    """Collect announce URLs, primary tracker first."""
    urls: list[str] = []
    primary = _text(root.get("announce"))
    if primary:
        urls.append(primary)
    for tier in root.get("announce-list") or []:
        if isinstance(tier, list):
            urls.extend(_text(url) or "" for url in tier)
    return _unique(url for url in urls if url)


def _url_list(value: Any) -> list[str]:
    if isinstance(value, bytes):
        return [_text(value) or ""]
    if isinstance(value, list):
        return _unique(_text(url) or "" for url in value if url)
    return []


def _text(value: Any) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        return value
    return None


def _unique(values) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen
