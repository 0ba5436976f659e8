"""
Swarm session interface.

The orchestrator talks to the BitTorrent engine only through these classes.
Events are delivered as plain callbacks on the event loop thread; counters are
read synchronously and never wait on the network.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

from .errors import SessionError
from .metainfo import TorrentMetadata

logger = logging.getLogger(__name__)


class SwarmEvent(str, Enum):
    """Events emitted by swarm clients and torrents."""

    INFO_HASH = "info_hash"
    METADATA = "metadata"
    READY = "ready"
    DONE = "done"
    ERROR = "error"
    WIRE = "wire"
    HOTSWAP = "hotswap"
    BLOCKED_PEER = "blocked_peer"


Listener = Callable[..., Any]


class EventEmitter:
    """Minimal synchronous listener registry."""

    def __init__(self) -> None:
        self._listeners: Dict[SwarmEvent, List[Listener]] = {}

    def on(self, event: SwarmEvent, listener: Listener) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def once(self, event: SwarmEvent, listener: Listener) -> None:
        def wrapper(*args: Any) -> None:
            self.off(event, wrapper)
            listener(*args)

        self.on(event, wrapper)

    def off(self, event: SwarmEvent, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: SwarmEvent) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: SwarmEvent, *args: Any) -> None:
        """Call every listener registered for ``event``, in registration order."""
        for listener in list(self._listeners.get(event, [])):
            listener(*args)


@dataclass(frozen=True)
class SwarmCounters:
    """Live totals sampled from a torrent."""

    num_peers: int = 0
    num_queued: int = 0
    download_speed: float = 0.0
    upload_speed: float = 0.0
    downloaded: int = 0
    uploaded: int = 0
    length: Optional[int] = None
    piece_length: Optional[int] = None
    time_remaining: Optional[float] = None
    done: bool = False


@dataclass(frozen=True)
class WireStats:
    """Counters for one peer connection."""

    address: Optional[str]
    downloaded: int = 0
    download_speed: float = 0.0
    upload_speed: float = 0.0
    peer_choking: bool = True
    request_count: int = 0
    requested_pieces: Sequence[int] = field(default_factory=tuple)
    peer_pieces: Sequence[bool] = field(default_factory=tuple)


class SwarmTorrent(EventEmitter, ABC):
    """One torrent inside a swarm client."""

    def __init__(self) -> None:
        super().__init__()
        self.metadata: Optional[TorrentMetadata] = None
        self.info_hash: Optional[str] = None
        self.ready = False
        self.done = False

    @property
    def magnet_uri(self) -> Optional[str]:
        return self.metadata.magnet_uri if self.metadata else None

    @abstractmethod
    def counters(self) -> SwarmCounters:
        """Return the current totals."""

    @abstractmethod
    def wires(self) -> List[WireStats]:
        """Return the connected peers."""

    @abstractmethod
    def select_file(self, index: int) -> None:
        """Prioritize a file so piece scheduling favours it."""

    @abstractmethod
    def open_stream(self, index: int, start: int = 0, end: Optional[int] = None) -> AsyncIterator[bytes]:
        """
        Read bytes ``start..end`` (inclusive) of a file, waiting for pieces as
        needed.
        """


class SwarmClient(EventEmitter, ABC):
    """A BitTorrent engine instance holding one or more torrents."""

    @abstractmethod
    def add(self, metadata: TorrentMetadata, path: Path, announce: Sequence[str] = ()) -> SwarmTorrent:
        """Start downloading a resolved torrent into ``path``."""

    @abstractmethod
    def seed(self, path: Path, announce: Sequence[str] = ()) -> SwarmTorrent:
        """Create a torrent for a local file or folder and seed it."""

    @abstractmethod
    def destroy(self, callback: Optional[Callable[[Optional[BaseException]], None]] = None) -> None:
        """
        Tear the engine down. ``callback`` receives None or the teardown error
        once released; it may arrive late or never.
        """


def engine_version() -> Optional[str]:
    """Version of the installed swarm engine, None when missing."""
    try:
        import libtorrent
    except ImportError:
        return None
    return getattr(libtorrent, "__version__", None) or getattr(libtorrent, "version", None)


async def create_swarm(blocklist: Optional[str] = None) -> SwarmClient:
    """
    Create the default libtorrent backed swarm client.

    Args:
        blocklist: Path or http(s) URL of an IP range blocklist

    Raises:
        SessionError: If libtorrent is not installed
    """
    try:
        from .lt_swarm import LibtorrentClient
    except ImportError as e:
        raise SessionError(
            "libtorrent is required to download or seed (pip install 'torrentcast[swarm]')"
        ) from e

    client = LibtorrentClient()
    if blocklist:
        await client.load_blocklist(blocklist)
    client.start()
    return client
