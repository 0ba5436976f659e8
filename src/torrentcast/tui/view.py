"""
Turns a StatsSnapshot into styled text lines.

Kept free of curses so the layout can be checked without a terminal; the
TorrentTUI only paints what this module returns.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

from pydantic import BaseModel

from ..models import PeerSnapshot, StatsSnapshot
from .constants import ColorPairs
from .formatters import format_estimate, format_runtime, format_size, format_speed

Segment = Tuple[str, int]
Line = List[Segment]

# Lines kept free below the peer table
PEER_TABLE_MARGIN = 4


class DisplayContext(BaseModel):
    """Session facts shown above the counters."""

    player_name: Optional[str] = None
    server_url: Optional[str] = None
    out: Optional[str] = None
    verbose: bool = False


def _label(text: str) -> Segment:
    return (text, ColorPairs.LABEL)


def _value(text: str) -> Segment:
    return (text, ColorPairs.VALUE)


def line_text(line: Line) -> str:
    """Plain text of a styled line."""
    return "".join(text for text, _ in line)


def header_lines(snapshot: StatsSnapshot, context: DisplayContext) -> List[Line]:
    lines: List[Line] = [
        [_label("Seeding: " if snapshot.seeding else "Downloading: "), (snapshot.torrent_name, ColorPairs.TITLE)]
    ]
    if snapshot.seeding and snapshot.info_hash:
        lines.append([_label("Info hash: "), _value(snapshot.info_hash)])
    if context.player_name:
        lines.append(
            [
                _label("Streaming to: "),
                _value(context.player_name),
                _label("  Server running at: "),
                _value(context.server_url or "?"),
            ]
        )
    elif context.server_url:
        lines.append([_label("Server running at: "), _value(context.server_url)])
    if context.out:
        lines.append([_label("Downloading to: "), _value(context.out)])

    lines.append(
        [
            _label("Speed: "),
            _value(format_speed(snapshot.download_speed)),
            _label("  Downloaded: "),
            _value(f"{format_size(snapshot.downloaded)}/{format_size(snapshot.total_length)}"),
            _label("  Uploaded: "),
            _value(format_size(snapshot.uploaded)),
        ]
    )
    lines.append(
        [
            _label("Running time: "),
            _value(format_runtime(snapshot.elapsed_seconds)),
            _label("  Time remaining: "),
            _value(format_estimate(snapshot.estimated_remaining)),
            _label("  Peers: "),
            _value(f"{snapshot.peers.unchoked}/{snapshot.peers.connected}"),
        ]
    )
    if context.verbose:
        lines.append(
            [
                _label("Queued peers: "),
                _value(str(snapshot.peers.queued)),
                _label("  Blocked peers: "),
                _value(str(snapshot.peers.blocked)),
                _label("  Hotswaps: "),
                _value(str(snapshot.hotswaps)),
            ]
        )
    lines.append([])
    return lines


def peer_line(peer: PeerSnapshot, verbose: bool = False) -> Line:
    line: Line = [
        (f"{peer.progress:<3} ", 0),
        (f"{peer.address:<25} ", ColorPairs.PEER_ADDRESS),
        (f"{format_size(peer.downloaded):<10} ", 0),
        (f"{format_speed(peer.download_speed):<12} ", ColorPairs.DOWNLOAD),
        (f"{format_speed(peer.upload_speed):<12}", ColorPairs.UPLOAD),
    ]
    if verbose:
        tags = []
        if peer.active_requests > 0:
            tags.append(f"{peer.active_requests} reqs")
        if peer.choked:
            tags.append("choked")
        requested = " ".join(str(piece) for piece in peer.requested_pieces)
        line.append((f" {', '.join(tags):<15} {requested:<10}", ColorPairs.MUTED))
    return line


def build_peer_rows(
    peers: Sequence[PeerSnapshot], available: int, connected: int, verbose: bool = False
) -> Tuple[List[Line], int]:
    """
    Lay out as many peers as fit in ``available`` lines.

    At least one peer is listed whenever there is one.

    Returns:
        The peer lines and how many connected peers were left out
    """
    shown = list(peers[: max(1, available)])
    rows = [peer_line(peer, verbose) for peer in shown]
    return rows, max(0, connected - len(shown))


def render_lines(snapshot: StatsSnapshot, context: DisplayContext, height: int) -> List[Line]:
    """
    Full stats view for a screen region ``height`` lines tall.

    The peer table is cut short to leave room at the bottom, and a
    "... and N more" line accounts for the peers that were not listed.
    """
    lines = header_lines(snapshot, context)
    available = height - len(lines) - PEER_TABLE_MARGIN
    rows, remainder = build_peer_rows(snapshot.per_peer, available, snapshot.peers.connected, context.verbose)
    lines.extend(rows)
    lines.append([("─" * 60, ColorPairs.MUTED)])
    if remainder:
        lines.append([(f"... and {remainder} more", 0)])
    return lines
