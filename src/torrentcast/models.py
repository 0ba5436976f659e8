"""Pydantic models shared by the controller, server and renderer."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .metainfo import FileDescriptor, TorrentMetadata


class TorrentState(str, Enum):
    """Lifecycle of one torrent engagement."""

    RESOLVING = "resolving"
    FETCHING_METADATA = "fetching_metadata"
    VERIFYING = "verifying"
    ACTIVE = "active"
    DONE = "done"
    DESTROYED = "destroyed"


class TorrentSession(BaseModel):
    """One active torrent, owned by the session controller."""

    identifier: str
    state: TorrentState = TorrentState.RESOLVING
    metadata: TorrentMetadata | None = None
    selected_index: int | None = None

    @property
    def files(self) -> tuple[FileDescriptor, ...]:
        return self.metadata.files if self.metadata else ()

    @property
    def name(self) -> str:
        if self.metadata and self.metadata.name:
            return self.metadata.name
        return self.identifier


class StreamEndpoint(BaseModel):
    """Where a selected file can be fetched over HTTP."""

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = Field(gt=0, le=65535)
    selected_index: int = Field(ge=0)

    @computed_field
    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}/{self.selected_index}"


class PeerCounts(BaseModel):
    """Swarm-wide peer tallies."""

    model_config = ConfigDict(frozen=True)

    connected: int = 0
    unchoked: int = 0
    queued: int = 0
    blocked: int = 0


class PeerSnapshot(BaseModel):
    """One connected peer as shown in the stats view."""

    model_config = ConfigDict(frozen=True)

    address: str
    progress: str  # "S" for a seed, "42%" otherwise, "?" when the torrent length is unknown
    downloaded: int = 0
    download_speed: float = 0.0
    upload_speed: float = 0.0
    active_requests: int = 0
    requested_pieces: tuple[int, ...] = ()
    choked: bool = False


class StatsSnapshot(BaseModel):
    """Immutable view of a torrent's swarm statistics at one tick."""

    model_config = ConfigDict(frozen=True)

    torrent_name: str
    info_hash: str | None = None
    seeding: bool = False
    download_speed: float = 0.0
    upload_speed: float = 0.0
    downloaded: int = 0
    uploaded: int = 0
    total_length: int | None = None
    elapsed_seconds: int = 0
    estimated_remaining: float | None = None
    peers: PeerCounts = Field(default_factory=PeerCounts)
    hotswaps: int = 0
    per_peer: tuple[PeerSnapshot, ...] = ()
