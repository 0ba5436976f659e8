"""Shared fixtures: in-memory swarm fakes and torrent builders."""

import asyncio
import hashlib
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from torrentcast.bencode import bencode
from torrentcast.metainfo import TorrentMetadata, parse_torrent
from torrentcast.swarm import SwarmClient, SwarmCounters, SwarmEvent, SwarmTorrent, WireStats

PIECE_LENGTH = 16384


def build_torrent(files: Sequence[Tuple[str, int]], name: str = "content", piece_length: int = PIECE_LENGTH) -> bytes:
    """Bencoded .torrent for files of the given sizes (piece hashes are fake)."""
    total = sum(length for _, length in files)
    piece_count = max(1, -(-total // piece_length))
    pieces = b"".join(hashlib.sha1(str(i).encode()).digest() for i in range(piece_count))
    info: dict = {"name": name, "piece length": piece_length, "pieces": pieces}
    if len(files) == 1 and files[0][0] == name:
        info["length"] = files[0][1]
    else:
        info["files"] = [{"length": length, "path": [file_name]} for file_name, length in files]
    return bencode({"announce": "http://tracker.example/announce", "info": info})


class FakeTorrent(SwarmTorrent):
    """Swarm torrent whose file contents live in memory."""

    def __init__(self, metadata: Optional[TorrentMetadata] = None, content: Optional[Dict[int, bytes]] = None) -> None:
        super().__init__()
        self.metadata = metadata if metadata is not None and metadata.has_info else None
        self.info_hash = metadata.info_hash if metadata is not None else None
        self.content = content or {}
        self.counter_values = SwarmCounters()
        self.wire_list: List[WireStats] = []
        self.selected: List[int] = []

    def counters(self) -> SwarmCounters:
        return self.counter_values

    def wires(self) -> List[WireStats]:
        return list(self.wire_list)

    def select_file(self, index: int) -> None:
        self.selected.append(index)

    async def open_stream(self, index: int, start: int = 0, end: Optional[int] = None):
        data = self.content.get(index)
        if data is None:
            data = bytes(i % 256 for i in range(self.metadata.files[index].length))
        end = len(data) - 1 if end is None else end
        position = start
        while position <= end:
            stop = min(end + 1, position + 256)
            yield data[position:stop]
            position = stop
            await asyncio.sleep(0)


class FakeSwarmClient(SwarmClient):
    """Records calls; destroy reports back on the next loop iteration unless told not to."""

    def __init__(
        self,
        respond_to_destroy: bool = True,
        destroy_error: Optional[BaseException] = None,
        on_add: Optional[Callable[[FakeTorrent], None]] = None,
    ) -> None:
        super().__init__()
        self.on_add = on_add
        self.respond_to_destroy = respond_to_destroy
        self.destroy_error = destroy_error
        self.torrents: List[FakeTorrent] = []
        self.added: List[Tuple[TorrentMetadata, Path, Sequence[str]]] = []
        self.seeded: List[Path] = []
        self.destroy_calls = 0

    def add(self, metadata: TorrentMetadata, path: Path, announce: Sequence[str] = ()) -> FakeTorrent:
        torrent = FakeTorrent(metadata)
        self.added.append((metadata, path, announce))
        self.torrents.append(torrent)
        if self.on_add is not None:
            self.on_add(torrent)
        return torrent

    def seed(self, path: Path, announce: Sequence[str] = ()) -> FakeTorrent:
        from torrentcast.creator import create_torrent

        torrent = FakeTorrent(parse_torrent(create_torrent(path, announce=list(announce) or None)))
        self.seeded.append(path)
        self.torrents.append(torrent)
        return torrent

    def destroy(self, callback=None) -> None:
        self.destroy_calls += 1
        if callback is not None and self.respond_to_destroy:
            asyncio.get_running_loop().call_soon(callback, self.destroy_error)


def complete_soon(torrent: FakeTorrent) -> None:
    """Schedule ready then done, as for a torrent already complete on disk."""
    loop = asyncio.get_running_loop()
    loop.call_soon(torrent.emit, SwarmEvent.READY)
    loop.call_soon(torrent.emit, SwarmEvent.DONE)


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def single_file_torrent(tmp_path: Path) -> Path:
    """A .torrent on disk describing one 1000-byte file."""
    path = tmp_path / "single.torrent"
    path.write_bytes(build_torrent([("movie.mp4", 1000)], name="movie.mp4"))
    return path


@pytest.fixture
def multi_file_torrent(tmp_path: Path) -> Path:
    path = tmp_path / "multi.torrent"
    path.write_bytes(build_torrent([("a.txt", 10), ("b.mkv", 5000), ("c.mkv", 5000), ("d.nfo", 20)], name="show"))
    return path


@pytest.fixture
def swarm_client() -> FakeSwarmClient:
    return FakeSwarmClient()


@pytest.fixture
def swarm_factory(swarm_client: FakeSwarmClient):
    async def factory(blocklist: Optional[str] = None) -> FakeSwarmClient:
        swarm_client.blocklist = blocklist
        return swarm_client

    return factory
