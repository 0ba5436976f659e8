"""
libtorrent implementation of the swarm session interface.

libtorrent reports progress through alerts; an asyncio task pops them and
re-emits the matching SwarmEvent on the owning torrent so that every callback
runs on the event loop thread.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

import aiohttp
import libtorrent as lt

from . import __version__
from .creator import create_torrent
from .errors import InputError, SessionError
from .metainfo import TorrentMetadata, parse_torrent
from .swarm import SwarmClient, SwarmCounters, SwarmEvent, SwarmTorrent, WireStats

logger = logging.getLogger(__name__)

ALERT_POLL_INTERVAL = 0.1
STREAM_READAHEAD_PIECES = 4
TOP_PRIORITY = 7


class LibtorrentTorrent(SwarmTorrent):
    """A torrent handle inside a LibtorrentClient."""

    def __init__(self, client: "LibtorrentClient", metadata: Optional[TorrentMetadata] = None) -> None:
        super().__init__()
        self.client = client
        self.handle: Optional[lt.torrent_handle] = None
        self.metadata = metadata if metadata and metadata.has_info else None
        self.info_hash = metadata.info_hash if metadata else None
        self._piece_events: Dict[int, asyncio.Event] = {}

    def attach(self, handle: lt.torrent_handle) -> None:
        self.handle = handle
        self.info_hash = str(handle.info_hash())
        if self.metadata is None and handle.status().has_metadata:
            self._load_metadata()

    # --- alerts ---

    def handle_alert(self, alert: lt.alert) -> None:
        """
        Translate one libtorrent alert into a SwarmEvent.

        libtorrent has no notion of swapping a slow peer out of a request;
        the nearest thing is a block request timing out and being re-issued
        to another peer, which is what counts as a hotswap here.
        """
        if isinstance(alert, lt.metadata_received_alert):
            self._load_metadata()
            self.emit(SwarmEvent.METADATA)
        elif isinstance(alert, lt.torrent_checked_alert):
            self.ready = True
            self.emit(SwarmEvent.READY)
        elif isinstance(alert, lt.torrent_finished_alert):
            if not self.done:
                self.done = True
                self.emit(SwarmEvent.DONE)
        elif isinstance(alert, lt.torrent_error_alert):
            self.emit(SwarmEvent.ERROR, SessionError(alert.message()))
        elif isinstance(alert, lt.peer_connect_alert):
            self.emit(SwarmEvent.WIRE)
        elif isinstance(alert, lt.peer_blocked_alert):
            self.emit(SwarmEvent.BLOCKED_PEER)
        elif isinstance(alert, lt.block_timeout_alert):
            self.emit(SwarmEvent.HOTSWAP)
        elif isinstance(alert, lt.piece_finished_alert):
            event = self._piece_events.pop(alert.piece_index, None)
            if event:
                event.set()

    def _load_metadata(self) -> None:
        info = self.handle.torrent_file()
        if info is None:
            return
        self.metadata = parse_torrent(lt.bencode(lt.create_torrent(info).generate()))

    # --- counters ---

    def counters(self) -> SwarmCounters:
        if self.handle is None:
            return SwarmCounters()
        status = self.handle.status()
        length = self.metadata.length if self.metadata else None
        remaining = None
        if status.download_payload_rate > 0 and not status.is_finished:
            remaining = (status.total_wanted - status.total_wanted_done) / status.download_payload_rate
        return SwarmCounters(
            num_peers=status.num_peers,
            num_queued=status.connect_candidates,
            download_speed=float(status.download_payload_rate),
            upload_speed=float(status.upload_payload_rate),
            downloaded=status.all_time_download,
            uploaded=status.all_time_upload,
            length=length,
            piece_length=self.metadata.piece_length if self.metadata else None,
            time_remaining=remaining,
            done=status.is_seeding,
        )

    def wires(self) -> List[WireStats]:
        if self.handle is None:
            return []
        wires = []
        for peer in self.handle.get_peer_info():
            ip, port = peer.ip
            requested = (peer.downloading_piece_index,) if peer.downloading_piece_index >= 0 else ()
            wires.append(
                WireStats(
                    address=f"{ip}:{port}" if ip else None,
                    downloaded=peer.total_download,
                    download_speed=float(peer.payload_down_speed),
                    upload_speed=float(peer.payload_up_speed),
                    peer_choking=bool(peer.flags & lt.peer_info.remote_choked),
                    request_count=peer.download_queue_length,
                    requested_pieces=requested,
                    peer_pieces=tuple(peer.pieces),
                )
            )
        return wires

    # --- streaming ---

    def select_file(self, index: int) -> None:
        if self.handle is not None:
            self.handle.file_priority(index, TOP_PRIORITY)

    async def open_stream(self, index: int, start: int = 0, end: Optional[int] = None) -> AsyncIterator[bytes]:
        if self.metadata is None or self.handle is None:
            raise SessionError("Torrent metadata is not available yet")

        descriptor = self.metadata.files[index]
        piece_length = self.metadata.piece_length
        end = descriptor.length - 1 if end is None else end
        path = Path(self.handle.status().save_path) / descriptor.path

        position = start
        while position <= end:
            piece = (descriptor.offset + position) // piece_length
            await self._wait_for_piece(piece)
            piece_end = (piece + 1) * piece_length - descriptor.offset
            stop = min(end + 1, piece_end)
            with open(path, "rb") as f:
                f.seek(position)
                data = f.read(stop - position)
            if not data:
                raise SessionError(f"Short read from {path} at offset {position}")
            yield data
            position += len(data)

    async def _wait_for_piece(self, piece: int) -> None:
        last = self.metadata.piece_count - 1
        for ahead in range(1, STREAM_READAHEAD_PIECES + 1):
            if piece + ahead <= last and not self.handle.have_piece(piece + ahead):
                self.handle.set_piece_deadline(piece + ahead, 1000 * ahead)
        if self.handle.have_piece(piece):
            return
        event = self._piece_events.setdefault(piece, asyncio.Event())
        self.handle.set_piece_deadline(piece, 0)
        # have_piece may have flipped between the check and the wait
        while not self.handle.have_piece(piece):
            try:
                await asyncio.wait_for(event.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                continue


class LibtorrentClient(SwarmClient):
    """Owns one lt.session and pumps its alerts on the running event loop."""

    def __init__(self) -> None:
        super().__init__()
        self._session: Optional[lt.session] = lt.session(
            {
                "user_agent": f"torrentcast/{__version__}",
                "alert_mask": lt.alert.category_t.all_categories,
            }
        )
        self._torrents: List[LibtorrentTorrent] = []
        self._pump_task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._pump_task = asyncio.get_running_loop().create_task(self._pump_alerts())

    async def load_blocklist(self, source: str) -> None:
        """
        Load an IP blocklist in P2P ("name:start-end") or plain ("start-end")
        format from a path or URL.

        Raises:
            InputError: If the blocklist cannot be read
        """
        try:
            if source.startswith(("http://", "https://")):
                async with aiohttp.ClientSession() as session:
                    async with session.get(source, timeout=aiohttp.ClientTimeout(total=30)) as response:
                        response.raise_for_status()
                        text = await response.text(errors="ignore")
            else:
                text = Path(source).read_text(errors="ignore")
        except (OSError, aiohttp.ClientError) as e:
            raise InputError(f"Failed to load blocklist {source}: {e}") from e

        ip_filter = lt.ip_filter()
        count = 0
        for line in text.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or "-" not in line:
                continue
            ip_range = line.rsplit(":", 1)[1] if ":" in line else line
            start, end = (part.strip() for part in ip_range.split("-", 1))
            try:
                ip_filter.add_rule(start, end, 1)
            except (RuntimeError, ValueError):
                logger.debug(f"Skipping blocklist line: {line}")
                continue
            count += 1
        self._session.set_ip_filter(ip_filter)
        logger.info(f"Loaded {count} blocklist entries")

    def add(self, metadata: TorrentMetadata, path: Path, announce: Sequence[str] = ()) -> LibtorrentTorrent:
        if metadata.torrent_file:
            params = lt.add_torrent_params()
            params.ti = lt.torrent_info(lt.bdecode(metadata.torrent_file))
        else:
            params = lt.parse_magnet_uri(metadata.magnet_uri)
        params.save_path = str(path)
        if announce:
            params.trackers = list(params.trackers) + list(announce)

        torrent = LibtorrentTorrent(self, metadata)
        self._add(torrent, params)
        return torrent

    def seed(self, path: Path, announce: Sequence[str] = ()) -> LibtorrentTorrent:
        torrent = LibtorrentTorrent(self)
        loop = asyncio.get_running_loop()

        async def build() -> None:
            try:
                data = await loop.run_in_executor(None, lambda: create_torrent(path, announce=list(announce)))
            except Exception as e:
                torrent.emit(SwarmEvent.ERROR, e)
                return
            torrent.metadata = parse_torrent(data)
            params = lt.add_torrent_params()
            params.ti = lt.torrent_info(lt.bdecode(data))
            params.save_path = str(Path(path).resolve().parent)
            params.flags |= lt.torrent_flags.seed_mode
            self._add(torrent, params)

        loop.create_task(build())
        return torrent

    def _add(self, torrent: LibtorrentTorrent, params: lt.add_torrent_params) -> None:
        if self._session is None:
            raise SessionError("Swarm client has been destroyed")
        torrent.attach(self._session.add_torrent(params))
        self._torrents.append(torrent)
        asyncio.get_running_loop().call_soon(torrent.emit, SwarmEvent.INFO_HASH)
        if torrent.metadata is not None:
            asyncio.get_running_loop().call_soon(torrent.emit, SwarmEvent.METADATA)

    async def _pump_alerts(self) -> None:
        while self._session is not None:
            for alert in self._session.pop_alerts():
                self._dispatch(alert)
            await asyncio.sleep(ALERT_POLL_INTERVAL)

    def _dispatch(self, alert: lt.alert) -> None:
        if isinstance(alert, lt.listen_failed_alert):
            logger.warning(f"Swarm listen failed: {alert.message()}")
            return
        handle = getattr(alert, "handle", None)
        if handle is None:
            return
        for torrent in self._torrents:
            if torrent.handle == handle:
                torrent.handle_alert(alert)
                break

    def destroy(self, callback: Optional[Callable[[Optional[BaseException]], None]] = None) -> None:
        if self._pump_task:
            self._pump_task.cancel()
        session, self._session = self._session, None
        if session is None:
            if callback:
                callback(None)
            return

        loop = asyncio.get_running_loop()
        handles = [t.handle for t in self._torrents if t.handle is not None]

        def teardown(session: lt.session) -> None:
            error: Optional[BaseException] = None
            try:
                session.pause()
                for handle in handles:
                    session.remove_torrent(handle)
                # Dropping the last reference stops the session and waits for tracker goodbyes
                del session
            except Exception as e:
                error = e
            if callback and not loop.is_closed():
                try:
                    loop.call_soon_threadsafe(callback, error)
                except RuntimeError:
                    pass  # loop closed while we were tearing down

        # Daemon thread so that a slow teardown never holds the process open
        threading.Thread(target=teardown, args=(session,), name="swarm-teardown", daemon=True).start()
        del session
