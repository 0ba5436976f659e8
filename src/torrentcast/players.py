"""
Playback sinks: local media players started as child processes, standard
output, and cast devices found on the LAN.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import mimetypes
import shutil
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Set

import aiohttp

from . import dlna
from .config import DEFAULT_OMX_JACK, Options, PlayerTarget
from .errors import LaunchError, SessionError
from .server import SubtitlesServer, local_network_address
from .swarm import SwarmTorrent

logger = logging.getLogger(__name__)

CAST_CONNECT_TIMEOUT = 10.0
DLNA_SEARCH_INTERVAL = 10.0
AIRPLAY_SCAN_INTERVAL = 10.0
AIRPLAY_SCAN_TIMEOUT = 3.0
XBMC_REQUEST_TIMEOUT = 10.0
XBMC_SERVICE = "_xbmc-jsonrpc-h._tcp.local."

VLC_PATHS = (
    "/Applications/VLC.app/Contents/MacOS/VLC",
    "C:\\Program Files\\VideoLAN\\VLC\\vlc.exe",
    "C:\\Program Files (x86)\\VideoLAN\\VLC\\vlc.exe",
)
VLC_DEBUG_ARGS = ["--extraintf=http:logger", "--verbose=2", "--file-logging", "--logfile=vlc-log.txt"]

ExitCallback = Callable[[Optional[int]], None]


@dataclass
class PlaybackContext:
    """What is being played, for one launch."""

    torrent: SwarmTorrent
    index: int
    file_name: str
    subtitles_server: Optional[SubtitlesServer] = None

    @property
    def title(self) -> str:
        return f"torrentcast - {self.file_name}"

    @property
    def content_type(self) -> str:
        return mimetypes.guess_type(self.file_name)[0] or "application/octet-stream"

    async def subtitles_url(self) -> Optional[str]:
        """URL of the subtitles on the LAN, starting their server on first use."""
        if self.subtitles_server is None:
            return None
        await self.subtitles_server.start()
        return self.subtitles_server.url(local_network_address())


class LaunchHandle:
    """
    A running playback.

    Owns the background tasks of the sink (process watcher, stream pipe,
    discovery loop). Sinks that report exit call the ``on_exit`` callbacks
    exactly once.
    """

    def __init__(self, name: str, reports_exit: bool = True) -> None:
        self.name = name
        self.reports_exit = reports_exit
        self.exited = False
        self.returncode: Optional[int] = None
        self._callbacks: List[ExitCallback] = []
        self._tasks: Set[asyncio.Task] = set()
        self._cleanups: List[Callable[[], Awaitable[None]]] = []

    def on_exit(self, callback: ExitCallback) -> None:
        if self.exited:
            callback(self.returncode)
        else:
            self._callbacks.append(callback)

    def spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def add_cleanup(self, cleanup: Callable[[], Awaitable[None]]) -> None:
        self._cleanups.append(cleanup)

    def watch(self, process: asyncio.subprocess.Process) -> None:
        self.spawn(self._wait(process))

    async def _wait(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if returncode:
            logger.warning(f"{self.name} exited with code {returncode}")
        self.finish(returncode)

    def finish(self, returncode: Optional[int] = 0) -> None:
        if self.exited:
            return
        self.exited = True
        self.returncode = returncode
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(returncode)

    async def close(self) -> None:
        """Stop background work. Started player processes are left running."""
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for cleanup in self._cleanups:
            await cleanup()
        self._cleanups = []


class Sink(ABC):
    """A playback target."""

    name: str = ""
    remote: bool = False

    @abstractmethod
    async def launch(self, url: str, context: PlaybackContext) -> LaunchHandle:
        """
        Start playback of ``url``.

        Raises:
            LaunchError: If the target cannot be started
        """


class ProcessSink(Sink):
    """A media player run as a child process."""

    def __init__(self, options: Options) -> None:
        self.subtitles = options.subtitles
        self.on_top = not options.not_on_top
        self.debug = options.debug

    @abstractmethod
    def command(self, url: str) -> List[str]:
        """Argument vector starting the player on ``url``."""

    async def launch(self, url: str, context: PlaybackContext) -> LaunchHandle:
        handle = LaunchHandle(self.name)
        handle.watch(await self._spawn(self.command(url)))
        return handle

    async def _spawn(self, argv: List[str]) -> asyncio.subprocess.Process:
        logger.info(f"Starting {self.name}: {' '.join(argv)}")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise LaunchError(f"Cannot start {self.name}: {e}") from e
        return process


def find_vlc() -> Optional[str]:
    """Locate the VLC executable on PATH or at its usual install locations."""
    found = shutil.which("vlc")
    if found:
        return found
    for candidate in VLC_PATHS:
        if Path(candidate).is_file():
            return candidate
    return None


class VlcSink(ProcessSink):
    name = "VLC"

    def command(self, url: str) -> List[str]:
        vlc = find_vlc()
        if vlc is None:
            raise LaunchError("VLC not found; is it installed?")
        argv = [vlc, url, "--play-and-exit", "--quiet"]
        if self.debug:
            argv += VLC_DEBUG_ARGS
        if self.subtitles:
            argv.append(f"--sub-file={self.subtitles}")
        if self.on_top:
            argv.append("--video-on-top")
        return argv


class MpvSink(ProcessSink):
    name = "mpv"

    def command(self, url: str) -> List[str]:
        argv = ["mpv", "--really-quiet", "--loop=no"]
        if self.subtitles:
            argv.append(f"--sub-file={self.subtitles}")
        if self.on_top:
            argv.append("--ontop")
        return argv + [url]


class MplayerSink(ProcessSink):
    name = "MPlayer"

    def command(self, url: str) -> List[str]:
        argv = ["mplayer", "-really-quiet", "-noidx", "-loop", "0"]
        if self.subtitles:
            argv += ["-sub", str(self.subtitles)]
        if self.on_top:
            argv.append("-ontop")
        return argv + [url]


class OmxSink(ProcessSink):
    """OMXPlayer in a terminal window; audio goes to ``jack``."""

    name = "OMXPlayer"

    def __init__(self, options: Options) -> None:
        super().__init__(options)
        self.jack = options.omx_jack or DEFAULT_OMX_JACK

    def command(self, url: str) -> List[str]:
        argv = ["lxterminal", "-e", "omxplayer", "-r", "--timeout", "60", "--no-ghost-box", "--align", "center"]
        argv += ["-o", self.jack]
        if self.subtitles:
            argv += ["--subtitles", str(self.subtitles)]
        return argv + [url]


class IinaSink(ProcessSink):
    """IINA opened through its URL scheme; the player's exit is not observable."""

    name = "IINA"

    def command(self, url: str) -> List[str]:
        return ["open", f"iina://weblink?url={url}"]

    async def launch(self, url: str, context: PlaybackContext) -> LaunchHandle:
        await self._spawn(self.command(url))
        return LaunchHandle(self.name, reports_exit=False)


class StdoutSink(Sink):
    """Writes the selected file to standard output, finishing when it is fully written."""

    name = "stdout"

    def __init__(self, output=None) -> None:
        self.output = output

    async def launch(self, url: str, context: PlaybackContext) -> LaunchHandle:
        handle = LaunchHandle(self.name)
        handle.spawn(self._pipe(handle, context))
        return handle

    async def _pipe(self, handle: LaunchHandle, context: PlaybackContext) -> None:
        output = self.output or sys.stdout.buffer
        returncode = 0
        try:
            async with contextlib.aclosing(context.torrent.open_stream(context.index)) as stream:
                async for chunk in stream:
                    output.write(chunk)
            output.flush()
        except BrokenPipeError:
            logger.debug("Standard output closed by the reader")
        except SessionError as e:
            logger.error(f"Streaming to standard output failed: {e}")
            returncode = 1
        handle.finish(returncode)


class ChromecastSink(Sink):
    """Plays on every Chromecast that shows up while discovery runs."""

    name = "Chromecast"
    remote = True

    async def launch(self, url: str, context: PlaybackContext) -> LaunchHandle:
        try:
            import pychromecast
            import zeroconf
        except ImportError as e:
            raise LaunchError("pychromecast is required for --chromecast (pip install 'torrentcast[cast]')") from e

        loop = asyncio.get_running_loop()
        handle = LaunchHandle(self.name, reports_exit=False)
        subtitles_url = await context.subtitles_url()
        playing: Set[str] = set()

        def on_device(uuid) -> None:
            if str(uuid) not in playing:
                handle.spawn(self._play(browser, zconf, uuid, url, context, subtitles_url, playing))

        def from_zeroconf_thread(uuid, service) -> None:
            loop.call_soon_threadsafe(on_device, uuid)

        try:
            zconf = zeroconf.Zeroconf()
            listener = pychromecast.SimpleCastListener(
                add_callback=from_zeroconf_thread, update_callback=from_zeroconf_thread
            )
            browser = pychromecast.CastBrowser(listener, zconf)
            browser.start_discovery()
        except (OSError, pychromecast.error.PyChromecastError) as e:
            raise LaunchError(f"Chromecast discovery failed: {e}") from e

        async def stop_discovery() -> None:
            await loop.run_in_executor(None, browser.stop_discovery)
            await loop.run_in_executor(None, zconf.close)

        handle.add_cleanup(stop_discovery)
        return handle

    async def _play(self, browser, zconf, uuid, url: str, context: PlaybackContext, subtitles_url, playing: Set[str]) -> None:
        import pychromecast

        cast_info = browser.devices.get(uuid)
        if cast_info is None:
            return
        name = cast_info.friendly_name or str(uuid)
        playing.add(str(uuid))

        def play() -> None:
            cast = pychromecast.get_chromecast_from_cast_info(cast_info, zconf)
            cast.wait(timeout=CAST_CONNECT_TIMEOUT)
            kwargs = {"title": context.title}
            if subtitles_url:
                kwargs.update(subtitles=subtitles_url, subtitles_lang="en-US", subtitles_mime="text/vtt")
            cast.media_controller.play_media(url, context.content_type, **kwargs)

        try:
            await asyncio.get_running_loop().run_in_executor(None, play)
        except (OSError, pychromecast.error.PyChromecastError) as e:
            playing.discard(str(uuid))
            logger.warning(f"Chromecast {name}: {e}")
            return
        logger.info(f"Playing on Chromecast {name}")


class DlnaSink(Sink):
    """Plays on every DLNA media renderer answering discovery."""

    name = "DLNA"
    remote = True

    async def launch(self, url: str, context: PlaybackContext) -> LaunchHandle:
        handle = LaunchHandle(self.name, reports_exit=False)
        subtitles_url = await context.subtitles_url()
        session = aiohttp.ClientSession()

        async def play_on(location: str) -> None:
            try:
                renderer = await dlna.fetch_renderer(session, location)
                await dlna.play(session, renderer, url, context.title, context.content_type, subtitles_url)
            except dlna.DlnaError as e:
                logger.warning(f"DLNA device {location}: {e}")

        browser = dlna.SsdpBrowser(lambda location: handle.spawn(play_on(location)))
        try:
            await browser.start()
        except dlna.DlnaError as e:
            await session.close()
            raise LaunchError(f"DLNA discovery failed: {e}") from e

        async def close() -> None:
            browser.close()
            await session.close()

        handle.add_cleanup(close)
        handle.spawn(self._search(browser))
        return handle

    async def _search(self, browser: dlna.SsdpBrowser) -> None:
        while True:
            browser.search()
            await asyncio.sleep(DLNA_SEARCH_INTERVAL)


class AirplaySink(Sink):
    """Plays on every AirPlay receiver (Apple TV) found by periodic scans."""

    name = "Airplay"
    remote = True

    async def launch(self, url: str, context: PlaybackContext) -> LaunchHandle:
        try:
            import pyatv
            from pyatv.const import Protocol
        except ImportError as e:
            raise LaunchError("pyatv is required for --airplay (pip install 'torrentcast[airplay]')") from e

        loop = asyncio.get_running_loop()
        handle = LaunchHandle(self.name, reports_exit=False)
        playing: Set[str] = set()

        async def scan() -> None:
            for config in await pyatv.scan(loop, timeout=AIRPLAY_SCAN_TIMEOUT, protocol=Protocol.AirPlay):
                if config.identifier not in playing:
                    playing.add(config.identifier)
                    handle.spawn(self._play(config, url, playing))

        try:
            await scan()
        except OSError as e:
            raise LaunchError(f"Airplay discovery failed: {e}") from e
        handle.spawn(self._rescan(scan))
        return handle

    async def _rescan(self, scan: Callable[[], Awaitable[None]]) -> None:
        while True:
            await asyncio.sleep(AIRPLAY_SCAN_INTERVAL)
            try:
                await scan()
            except OSError as e:
                logger.warning(f"Airplay discovery: {e}")

    async def _play(self, config, url: str, playing: Set[str]) -> None:
        import pyatv
        from pyatv import exceptions

        device_errors = (OSError, asyncio.TimeoutError, exceptions.ConnectionFailedError, exceptions.NotSupportedError)
        try:
            atv = await pyatv.connect(config, asyncio.get_running_loop())
        except device_errors as e:
            playing.discard(config.identifier)
            logger.warning(f"Airplay device {config.name}: {e}")
            return

        logger.info(f"Playing on Airplay device {config.name}")
        try:
            await atv.stream.play_url(url)
        except device_errors as e:
            logger.warning(f"Airplay device {config.name}: {e}")
        finally:
            pending = atv.close()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)


async def xbmc_play(session: aiohttp.ClientSession, base_url: str, url: str) -> None:
    """
    Ask an XBMC/Kodi instance to open ``url`` through its JSON-RPC endpoint.

    Raises:
        LaunchError: If the request fails or Kodi answers with an error
    """
    payload = {"jsonrpc": "2.0", "id": 1, "method": "Player.Open", "params": {"item": {"file": url}}}
    try:
        async with session.post(
            f"{base_url}/jsonrpc", json=payload, timeout=aiohttp.ClientTimeout(total=XBMC_REQUEST_TIMEOUT)
        ) as response:
            response.raise_for_status()
            reply = await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        raise LaunchError(f"JSON-RPC request failed: {e}") from e
    if not isinstance(reply, dict):
        raise LaunchError("JSON-RPC reply is not an object")
    if "error" in reply:
        error = reply["error"]
        message = error.get("message") if isinstance(error, dict) else error
        raise LaunchError(f"Player.Open refused: {message}")


class XbmcSink(Sink):
    """Plays on every XBMC/Kodi instance advertising JSON-RPC over HTTP."""

    name = "XBMC"
    remote = True

    async def launch(self, url: str, context: PlaybackContext) -> LaunchHandle:
        try:
            from zeroconf import ServiceBrowser, ServiceStateChange, Zeroconf
        except ImportError as e:
            raise LaunchError("zeroconf is required for --xbmc (pip install 'torrentcast[cast]')") from e

        loop = asyncio.get_running_loop()
        handle = LaunchHandle(self.name, reports_exit=False)
        session = aiohttp.ClientSession()
        playing: Set[str] = set()

        async def play_on(base_url: str) -> None:
            try:
                await xbmc_play(session, base_url, url)
            except LaunchError as e:
                playing.discard(base_url)
                logger.warning(f"XBMC {base_url}: {e}")
                return
            logger.info(f"Playing on XBMC {base_url}")

        def on_found(base_url: str) -> None:
            if base_url not in playing:
                playing.add(base_url)
                handle.spawn(play_on(base_url))

        # Called on the zeroconf thread, with these keyword names
        def on_service_state_change(zeroconf, service_type, name, state_change) -> None:
            if state_change is not ServiceStateChange.Added:
                return
            info = zeroconf.get_service_info(service_type, name)
            if info is None or not info.parsed_addresses():
                return
            loop.call_soon_threadsafe(on_found, f"http://{info.parsed_addresses()[0]}:{info.port}")

        try:
            zconf = Zeroconf()
            browser = ServiceBrowser(zconf, XBMC_SERVICE, handlers=[on_service_state_change])
        except OSError as e:
            await session.close()
            raise LaunchError(f"XBMC discovery failed: {e}") from e

        async def stop_discovery() -> None:
            await loop.run_in_executor(None, browser.cancel)
            await loop.run_in_executor(None, zconf.close)
            await session.close()

        handle.add_cleanup(stop_discovery)
        return handle


_SINKS = {
    PlayerTarget.VLC: VlcSink,
    PlayerTarget.MPV: MpvSink,
    PlayerTarget.MPLAYER: MplayerSink,
    PlayerTarget.OMX: OmxSink,
    PlayerTarget.IINA: IinaSink,
}


def create_sink(target: PlayerTarget, options: Options) -> Sink:
    """Build the sink for a player target."""
    if target is PlayerTarget.STDOUT:
        return StdoutSink()
    if target is PlayerTarget.CHROMECAST:
        return ChromecastSink()
    if target is PlayerTarget.DLNA:
        return DlnaSink()
    if target is PlayerTarget.AIRPLAY:
        return AirplaySink()
    if target is PlayerTarget.XBMC:
        return XbmcSink()
    return _SINKS[target](options)
