"""
Run options: built from the parsed command line, then validated and completed
before any session starts.
"""

from __future__ import annotations

import argparse
import os
import tempfile
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from .errors import InputError
from .hooks import validate_hook

DEFAULT_PORT = 8000
STATS_INTERVAL = 1.0
SHUTDOWN_GRACE = 1.0
DEFAULT_OMX_JACK = "hdmi"

COMMANDS = ("download", "add", "seed", "create", "info", "help", "version")

# Value argparse stores for a bare --select
SELECT_LIST = -1

# Flags that only make sense for a single torrent, by option name
_SINGLE_TORRENT_FLAGS = ("select", "subtitles")


class PlayerTarget(str, Enum):
    """Where the selected file is played."""

    CHROMECAST = "chromecast"
    DLNA = "dlna"
    MPLAYER = "mplayer"
    MPV = "mpv"
    OMX = "omx"
    VLC = "vlc"
    IINA = "iina"
    STDOUT = "stdout"
    AIRPLAY = "airplay"
    XBMC = "xbmc"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def remote(self) -> bool:
        """Remote targets fetch the stream over the LAN."""
        return self in (PlayerTarget.AIRPLAY, PlayerTarget.CHROMECAST, PlayerTarget.DLNA, PlayerTarget.XBMC)


_DISPLAY_NAMES = {
    PlayerTarget.CHROMECAST: "Chromecast",
    PlayerTarget.DLNA: "DLNA",
    PlayerTarget.MPLAYER: "MPlayer",
    PlayerTarget.MPV: "mpv",
    PlayerTarget.OMX: "OMXPlayer",
    PlayerTarget.VLC: "VLC",
    PlayerTarget.IINA: "IINA",
    PlayerTarget.STDOUT: "stdout",
    PlayerTarget.AIRPLAY: "Airplay",
    PlayerTarget.XBMC: "XBMC",
}


class Options(BaseModel):
    """Everything one torrentcast invocation was asked to do."""

    command: str = "download"
    inputs: list[str] = Field(default_factory=list)

    player: Optional[PlayerTarget] = None
    omx_jack: str = DEFAULT_OMX_JACK
    out: Optional[Path] = None
    select: Optional[int] = Field(default=None, ge=0)
    list_files: bool = False
    subtitles: Optional[Path] = None
    port: int = Field(default=DEFAULT_PORT, ge=0, le=65535)
    blocklist: Optional[str] = None
    announce: list[str] = Field(default_factory=list)

    quiet: bool = False
    verbose: bool = False
    debug: bool = False
    not_on_top: bool = False
    keep_seeding: bool = False
    quit: bool = True
    on_done: Optional[str] = None
    on_exit: Optional[str] = None

    created_by: Optional[str] = None
    comment: Optional[str] = None
    private: bool = False
    piece_length: Optional[int] = Field(default=None, gt=0)

    @property
    def batch(self) -> bool:
        return len(self.inputs) > 1

    @classmethod
    def from_args(cls, args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> "Options":
        """
        Build options from the argparse namespace produced by ``cli.build_parser``.

        The first positional argument is the command when it names one;
        otherwise every positional is a torrent identifier to download.
        """
        environ = os.environ if environ is None else environ
        positionals = list(args.args)

        if args.version:
            command = "version"
        elif positionals and positionals[0] in COMMANDS:
            command = positionals.pop(0)
        elif positionals:
            command = "download"
        else:
            command = "help"
        if command == "add":
            command = "download"

        player = None
        for target in PlayerTarget:
            if getattr(args, target.value, None):
                player = target
                break

        return cls(
            command=command,
            inputs=positionals,
            player=player,
            omx_jack=args.omx if isinstance(args.omx, str) else DEFAULT_OMX_JACK,
            out=Path(args.out) if args.out else None,
            select=args.select if args.select is not None and args.select >= 0 else None,
            list_files=args.select == SELECT_LIST,
            subtitles=Path(args.subtitles) if args.subtitles else None,
            port=args.port,
            blocklist=args.blocklist,
            announce=args.announce or [],
            quiet=args.quiet,
            verbose=args.verbose,
            debug=bool(environ.get("DEBUG")),
            not_on_top=args.not_on_top,
            keep_seeding=args.keep_seeding,
            quit=args.quit,
            on_done=args.on_done,
            on_exit=args.on_exit,
            created_by=args.created_by,
            comment=args.comment,
            private=args.private,
            piece_length=args.piece_length,
        )


def prepare_options(options: Options) -> Options:
    """
    Validate option combinations and fill in derived defaults.

    Returns:
        A completed copy of ``options``

    Raises:
        InputError: For flags that cannot be combined, or hooks that cannot run
    """
    update: dict = {}

    if options.command in ("download", "seed") and options.batch:
        if options.player is not None:
            raise InputError(f"The --{options.player.value} argument cannot be used with multiple files/folders.")
        for flag in _SINGLE_TORRENT_FLAGS:
            if getattr(options, flag) is not None or (flag == "select" and options.list_files):
                raise InputError(f"The --{flag} argument cannot be used with multiple files/folders.")
        update["quiet"] = True

    if options.subtitles is not None and not options.subtitles.is_file():
        raise InputError(f'Subtitles file "{options.subtitles}" does not exist')

    if options.on_done:
        update["on_done"] = validate_hook(options.on_done)
    if options.on_exit:
        update["on_exit"] = validate_hook(options.on_exit)

    if options.debug or options.player is PlayerTarget.STDOUT:
        update["quiet"] = True

    if options.command == "download" and options.out is None:
        if options.player is None:
            update["out"] = Path.cwd()
        else:
            update["out"] = Path(tempfile.gettempdir()) / "torrentcast"

    return options.model_copy(update=update)
