"""
Command-line interface for torrentcast.
"""

import argparse
import asyncio
import logging
import os
import platform
import sys
from typing import Awaitable, List, Optional, TextIO

from pydantic import ValidationError

from . import __version__
from .config import DEFAULT_PORT, SELECT_LIST, Options, prepare_options
from .controller import SessionController, SwarmFactory
from .creator import create_torrent
from .errors import InputError
from .resolver import resolve
from .swarm import create_swarm, engine_version

logger = logging.getLogger(__name__)

EXAMPLES = """\
examples:
  torrentcast download "magnet:..." --vlc
  torrentcast "magnet:..." --select        list the files of a torrent
  torrentcast seed ./movie.mkv            share a file
  torrentcast info ./movie.torrent
  torrentcast create ./folder -o folder.torrent

commands:
  download <torrent-id...>   download a torrent (the default)
  seed <file/folder...>      seed a file or folder
  create <file/folder>       create a .torrent file
  info <torrent-id>          show torrent information as JSON
  version                    show the installed version
  help                       show this help
"""


def _file_index(value: str) -> int:
    index = int(value)
    if index < 0:
        raise argparse.ArgumentTypeError(f"file index must be 0 or more, got {value}")
    return index


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="torrentcast",
        description="Download, stream and cast torrents",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("args", nargs="*", metavar="command/torrent-id", help="Optional command, then torrent ids")

    players = parser.add_argument_group("stream to a player").add_mutually_exclusive_group()
    players.add_argument("--airplay", action="store_true", help="Apple TV")
    players.add_argument("--chromecast", action="store_true", help="Chromecast")
    players.add_argument("--dlna", action="store_true", help="DLNA")
    players.add_argument("--mplayer", action="store_true", help="MPlayer")
    players.add_argument("--mpv", action="store_true", help="mpv")
    players.add_argument("--omx", nargs="?", const="hdmi", metavar="JACK", help="OMXPlayer (default jack: hdmi)")
    players.add_argument("--vlc", action="store_true", help="VLC")
    players.add_argument("--iina", action="store_true", help="IINA")
    players.add_argument("--xbmc", action="store_true", help="XBMC")
    players.add_argument("--stdout", action="store_true", help="standard out (implies --quiet)")

    parser.add_argument("-o", "--out", help="set download destination")
    parser.add_argument(
        "-s",
        "--select",
        nargs="?",
        const=SELECT_LIST,
        type=_file_index,
        metavar="INDEX",
        help="select a specific file to download; without an index, list the files",
    )
    parser.add_argument("-t", "--subtitles", metavar="PATH", help="load subtitles file")
    parser.add_argument("-v", "--version", action="store_true", help="print the current version")
    parser.add_argument("-p", "--port", type=int, default=DEFAULT_PORT, help=f"change the http server port (default: {DEFAULT_PORT})")
    parser.add_argument("-b", "--blocklist", metavar="PATH", help="load blocklist file/http url")
    parser.add_argument("-a", "--announce", action="append", metavar="URL", help="tracker URL to announce to (repeatable)")
    parser.add_argument("-q", "--quiet", action="store_true", help="don't show UI on stdout")
    parser.add_argument("--not-on-top", action="store_true", help="don't set \"always on top\" option in player")
    parser.add_argument("--keep-seeding", action="store_true", help="don't quit when done downloading")
    parser.add_argument("--no-quit", dest="quit", action="store_false", help="don't quit when the player exits")
    parser.add_argument("--on-done", metavar="SCRIPT", help="run script after torrent download is done")
    parser.add_argument("--on-exit", metavar="SCRIPT", help="run script before program exit")
    parser.add_argument("--verbose", action="store_true", help="show torrent protocol details")

    create = parser.add_argument_group("create options")
    create.add_argument("--created-by", help="'created by' field (default: torrentcast/<version>)")
    create.add_argument("--comment", help="torrent comment")
    create.add_argument("--private", action="store_true", help="mark the torrent private")
    create.add_argument("--piece-length", type=int, metavar="BYTES", help="force a piece length")
    return parser


def configure_logging(options: Options) -> None:
    """
    Set up the root logger. Nothing is printed while the TUI owns the
    terminal; it installs its own handler.
    """
    logging.basicConfig(
        level=logging.DEBUG if options.verbose else logging.INFO,
        format="%(message)s",
        handlers=[],
    )
    if options.quiet or not sys.stdout.isatty():
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(logging.DEBUG if options.verbose else logging.WARNING)
        console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        logging.getLogger().addHandler(console_handler)
    # aiohttp logs every client disconnect at debug level
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def version_string() -> str:
    return f"{__version__} (libtorrent {engine_version() or 'not installed'})"


def debug_info(exit_code: int) -> str:
    return (
        f"DEBUG INFO: torrentcast {__version__}, "
        f"libtorrent {engine_version() or 'not installed'}, "
        f"python {platform.python_version()}, "
        f"{sys.platform} {platform.machine()}, "
        f"exit {exit_code}"
    )


def report_error(error: BaseException, exit_code: int = 1, stream: Optional[TextIO] = None) -> None:
    """Print an error; anything but an InputError also gets the diagnostics banner."""
    stream = stream or sys.stderr
    print(f"Error: {error}", file=stream)
    if not isinstance(error, InputError):
        print("\nUNEXPECTED ERROR: If this is a bug in torrentcast, report it!", file=stream)
        print(debug_info(exit_code), file=stream)


def run_loop(main: Awaitable[int]) -> int:
    """
    Run ``main`` on a fresh event loop and close it without joining executor work.

    ``asyncio.run`` waits for the default executor on the way out, and a
    worker may be stuck hashing content or talking to a cast device long
    after the session terminated.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(main)
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
        finally:
            asyncio.set_event_loop(None)
            # Shuts the default executor down with wait=False
            loop.close()


async def run_sessions(options: Options, swarm_factory: SwarmFactory = create_swarm, stdout: Optional[TextIO] = None) -> int:
    """
    Download or seed each input in turn.

    Stops at the first session that fails or is interrupted.
    """
    for identifier in options.inputs:
        controller = SessionController(identifier, options, swarm_factory=swarm_factory, stdout=stdout)
        exit_code = await controller.run()
        if controller.error is not None:
            report_error(controller.error, exit_code)
        interrupted = controller.shutdown_state is not None and controller.shutdown_state.signal_received is not None
        if exit_code != 0 or interrupted:
            return exit_code
    return 0


async def run_info(options: Options, stdout: Optional[TextIO] = None) -> int:
    metadata = await resolve(options.inputs[0])
    output = metadata.model_dump_json(indent=2)
    if options.out:
        options.out.write_text(output)
    else:
        print(output, file=stdout or sys.stdout)
    return 0


def run_create(options: Options) -> int:
    data = create_torrent(
        options.inputs[0],
        announce=options.announce or None,
        created_by=options.created_by,
        comment=options.comment,
        private=options.private,
        piece_length=options.piece_length,
    )
    if options.out:
        options.out.write_bytes(data)
    else:
        sys.stdout.buffer.write(data)
        sys.stdout.buffer.flush()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        options = prepare_options(Options.from_args(args))
    except InputError as e:
        report_error(e)
        return 1
    except ValidationError as e:
        parser.error(str(e))

    configure_logging(options)
    command = options.command

    if command == "version":
        print(version_string())
        return 0
    if command == "help" or not options.inputs or (command in ("info", "create") and len(options.inputs) != 1):
        parser.print_help()
        return 0

    try:
        if command == "info":
            return run_loop(run_info(options))
        if command == "create":
            return run_create(options)
        return run_loop(run_sessions(options))
    except KeyboardInterrupt:
        return 0
    except InputError as e:
        report_error(e)
        return 1
    except Exception as e:
        logger.debug("Unexpected failure", exc_info=True)
        report_error(e)
        return 1


def run() -> None:
    code = main()
    # Executor threads left blocked in the engine or a cast device call would
    # otherwise be joined at interpreter exit
    logging.shutdown()
    sys.stdout.flush()
    sys.stderr.flush()
    os._exit(code)


if __name__ == "__main__":
    run()
