"""
Builds per-tick statistics snapshots from swarm counters.
"""

from __future__ import annotations

import math
import time
from typing import Callable, Optional

from .models import PeerCounts, PeerSnapshot, StatsSnapshot
from .swarm import SwarmEvent, SwarmTorrent, WireStats


def peer_progress(wire: WireStats, length: Optional[int], piece_length: Optional[int]) -> str:
    """
    "S" when the peer has every piece, otherwise the floored percentage of
    pieces it has. "?" while the torrent length is unknown.
    """
    if not length or not piece_length:
        return "?"
    piece_count = math.ceil(length / piece_length)
    have = sum(1 for bit in wire.peer_pieces[:piece_count] if bit)
    if have == piece_count:
        return "S"
    return f"{100 * have // piece_count}%"


class StatsAggregator:
    """
    Samples a torrent once per tick.

    Hotswap and blocked-peer totals are accumulated from swarm events, so they
    only grow.
    """

    def __init__(self, torrent: SwarmTorrent, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.started_at = clock()
        self.hotswaps = 0
        self.blocked_peers = 0
        torrent.on(SwarmEvent.HOTSWAP, self._on_hotswap)
        torrent.on(SwarmEvent.BLOCKED_PEER, self._on_blocked_peer)

    def _on_hotswap(self, *args) -> None:
        self.hotswaps += 1

    def _on_blocked_peer(self, *args) -> None:
        self.blocked_peers += 1

    def tick(self, torrent: SwarmTorrent) -> StatsSnapshot:
        counters = torrent.counters()
        wires = torrent.wires()
        metadata = torrent.metadata

        per_peer = tuple(
            PeerSnapshot(
                address=wire.address or "Unknown",
                progress=peer_progress(wire, counters.length, counters.piece_length),
                downloaded=wire.downloaded,
                download_speed=wire.download_speed,
                upload_speed=wire.upload_speed,
                active_requests=wire.request_count,
                requested_pieces=tuple(wire.requested_pieces),
                choked=wire.peer_choking,
            )
            for wire in wires
        )

        return StatsSnapshot(
            torrent_name=(metadata.name if metadata and metadata.name else None) or torrent.info_hash or "?",
            info_hash=torrent.info_hash,
            seeding=torrent.done or counters.done,
            download_speed=counters.download_speed,
            upload_speed=counters.upload_speed,
            downloaded=counters.downloaded,
            uploaded=counters.uploaded,
            total_length=counters.length,
            elapsed_seconds=int(self._clock() - self.started_at),
            estimated_remaining=counters.time_remaining,
            peers=PeerCounts(
                connected=counters.num_peers,
                unchoked=sum(1 for wire in wires if not wire.peer_choking),
                queued=counters.num_queued,
                blocked=self.blocked_peers,
            ),
            hotswaps=self.hotswaps,
            per_peer=per_peer,
        )
