"""
Session lifecycle controller.

One SessionController drives one torrent from identifier resolution to
teardown: it owns the swarm client, the streaming and subtitles servers, the
playback sink and the stats display, and it runs every state transition on
the event loop thread.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Optional, TextIO

from .config import SHUTDOWN_GRACE, STATS_INTERVAL, Options, PlayerTarget
from .errors import InputError, SelectionListed, TorrentcastError
from .hooks import run_detached
from .metainfo import is_info_hash, is_magnet_link
from .models import StatsSnapshot, StreamEndpoint, TorrentSession, TorrentState
from .players import LaunchHandle, PlaybackContext, Sink, create_sink
from .resolver import resolve
from .selector import format_file_list, select_file
from .server import StreamingServer, SubtitlesServer, local_network_address
from .stats import StatsAggregator
from .swarm import SwarmClient, SwarmEvent, SwarmTorrent, create_swarm
from .tui import DisplayContext, TorrentTUI

logger = logging.getLogger(__name__)

SwarmFactory = Callable[[Optional[str]], Awaitable[SwarmClient]]

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ControllerState(str, Enum):
    """Where the controller is in a session's lifecycle."""

    STARTING = "starting"
    AWAITING_METADATA = "awaiting_metadata"
    STREAMING = "streaming"
    SEEDING = "seeding"
    COMPLETING = "completing"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


@dataclass
class ShutdownState:
    """Created by the first shutdown trigger; later triggers find it and return."""

    signal_received: Optional[int] = None
    hooks_run: bool = False
    deadline: Optional[float] = None
    exit_code: int = 0


def is_torrent_identifier(value: str) -> bool:
    """True for inputs naming an existing torrent rather than content to seed."""
    return is_magnet_link(value) or is_info_hash(value) or Path(value).suffix.lower() == ".torrent"


class SessionController:
    """Runs one download or seed session and reports its exit code."""

    def __init__(
        self,
        identifier: str,
        options: Options,
        swarm_factory: SwarmFactory = create_swarm,
        stdout: Optional[TextIO] = None,
        handle_signals: bool = True,
    ) -> None:
        """
        Args:
            identifier: Torrent identifier to download, or a path to seed
            options: Prepared run options
            swarm_factory: Coroutine function creating the swarm client
            stdout: Stream for user-facing output
            handle_signals: Install SIGINT/SIGTERM handlers while running
        """
        self.options = options
        self.seed_mode = options.command == "seed" and not is_torrent_identifier(identifier)
        self.session = TorrentSession(identifier=identifier)
        self.state = ControllerState.STARTING
        self.error: Optional[BaseException] = None
        self.shutdown_state: Optional[ShutdownState] = None

        self.client: Optional[SwarmClient] = None
        self.torrent: Optional[SwarmTorrent] = None
        self.server: Optional[StreamingServer] = None
        self.subtitles_server = SubtitlesServer(options.subtitles) if options.subtitles else None
        self.sink: Optional[Sink] = None
        if options.player is not None and not self.seed_mode:
            self.sink = create_sink(options.player, options)
        self.launch: Optional[LaunchHandle] = None
        self.endpoint: Optional[StreamEndpoint] = None
        self.stats: Optional[StatsAggregator] = None
        self.last_snapshot: Optional[StatsSnapshot] = None
        self.tui: Optional[TorrentTUI] = None

        self._swarm_factory = swarm_factory
        self._stdout = stdout
        self._handle_signals = handle_signals
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._terminated: Optional[asyncio.Future] = None
        self._exit_code = 0
        self._started_at = 0.0
        self._ready = False
        self._server_bound = False
        self._selected = False
        self._connection_observed = False
        self._tasks: set[asyncio.Task] = set()
        self._stats_task: Optional[asyncio.Task] = None
        self._deadline_handle: Optional[asyncio.TimerHandle] = None
        self.teardown_runs = 0

    # --- running ---

    async def run(self) -> int:
        """
        Run the session until it terminates.

        Returns:
            0 for a normal or interrupted session, 1 after a fatal error

        Raises:
            InputError: If the identifier cannot be resolved
        """
        self._loop = asyncio.get_running_loop()
        self._terminated = self._loop.create_future()
        self._started_at = self._loop.time()
        self._install_signal_handlers()

        try:
            await self._start()
        except InputError as e:
            if self.client is None:
                self._remove_signal_handlers()
                self.state = ControllerState.TERMINATED
                raise
            self.fail(e)
        except TorrentcastError as e:
            self.fail(e)
        except Exception:
            if self.tui is not None:
                self.tui.stop()
            raise

        return await self._terminated

    async def _start(self) -> None:
        options = self.options
        metadata = None
        if not self.seed_mode:
            metadata = await resolve(self.session.identifier)
            if metadata.has_info:
                self.session.metadata = metadata

        client = await self._swarm_factory(options.blocklist)
        if self.shutdown_state is not None:
            # Interrupted while the client was starting
            client.destroy()
            return
        self.client = client
        client.on(SwarmEvent.ERROR, self.fail)
        if self.seed_mode:
            torrent = client.seed(Path(self.session.identifier), announce=options.announce)
        else:
            torrent = client.add(metadata, options.out, announce=options.announce)

        self.torrent = torrent
        torrent.on(SwarmEvent.ERROR, self.fail)
        torrent.on(SwarmEvent.INFO_HASH, self._on_info_hash)
        torrent.on(SwarmEvent.METADATA, self._on_metadata)
        torrent.on(SwarmEvent.READY, self._on_ready)
        torrent.on(SwarmEvent.DONE, self._on_done)
        self.stats = StatsAggregator(torrent)
        self.session.state = TorrentState.FETCHING_METADATA
        self.state = ControllerState.AWAITING_METADATA

        if not options.quiet:
            self.tui = TorrentTUI(self._display_context())
            self.tui.start()

        if not self.seed_mode:
            self.server = StreamingServer(torrent, on_connection=self._on_connection)
            await self.server.bind(options.port)
            if self.shutdown_state is not None:
                # Shutdown started while binding; the teardown may already be past the server
                await self.server.close()
                return
            self._server_bound = True
            self._maybe_select()

    # --- swarm events ---

    def _on_info_hash(self, *args) -> None:
        self.session.state = TorrentState.FETCHING_METADATA
        if self.options.quiet or self.seed_mode or self.torrent.metadata is not None:
            return
        self._show_peer_count()
        self.torrent.on(SwarmEvent.WIRE, self._show_peer_count)

    def _show_peer_count(self, *args) -> None:
        self._status(f"fetching torrent metadata from {self.torrent.counters().num_peers} peers")

    def _on_metadata(self, *args) -> None:
        self.torrent.off(SwarmEvent.WIRE, self._show_peer_count)
        self.session.metadata = self.torrent.metadata
        if not self._ready:
            self.session.state = TorrentState.VERIFYING
            if not self.seed_mode:
                self._status("verifying existing torrent data...")

    def _on_ready(self, *args) -> None:
        if self._ready:
            return
        self._ready = True
        self.session.metadata = self.torrent.metadata
        self.session.state = TorrentState.ACTIVE
        if self.seed_mode:
            self._start_seeding()
        else:
            self._maybe_select()

    def _on_connection(self) -> None:
        self._connection_observed = True

    def _on_done(self, *args) -> None:
        if self.state in (ControllerState.SHUTTING_DOWN, ControllerState.TERMINATED):
            return
        self.session.state = TorrentState.DONE
        if self.seed_mode:
            return

        previous = self.state
        self.state = ControllerState.COMPLETING
        if self.options.on_done:
            run_detached(self.options.on_done)
        if not self.options.quiet:
            wires = self.torrent.wires()
            active = sum(1 for wire in wires if wire.downloaded > 0)
            runtime = int(self._loop.time() - self._started_at)
            self._announce(
                f"torrent downloaded successfully from {active}/{self.torrent.counters().num_peers} peers in {runtime}s!"
            )

        if self.should_stay_alive():
            self.state = previous
        else:
            self.shutdown()

    def should_stay_alive(self) -> bool:
        """
        Completion keeps the session open while anything may still read from it.

        A configured player counts even before it is launched: a torrent that
        is already complete on disk can finish before its file is selected.
        """
        return self.sink is not None or self._connection_observed or self.options.keep_seeding or self.seed_mode

    # --- selection and playback ---

    def _maybe_select(self) -> None:
        if self._selected or not (self._ready and self._server_bound):
            return
        if self.state in (ControllerState.SHUTTING_DOWN, ControllerState.TERMINATED):
            return
        self._selected = True

        try:
            index = select_file(self.session.files, self.options.select, list_only=self.options.list_files)
        except SelectionListed as listed:
            self._print(format_file_list(listed.files))
            self.shutdown()
            return
        except TorrentcastError as e:
            self.fail(e)
            return

        self._spawn(self._on_selection(index))

    async def _on_selection(self, index: int) -> None:
        self.session.selected_index = index
        host = local_network_address() if self.sink is not None and self.sink.remote else "localhost"
        self.endpoint = self.server.endpoint(index, host)
        self.state = ControllerState.STREAMING
        if self.tui is not None:
            self.tui.context = self._display_context()

        if self.sink is not None:
            self.torrent.select_file(index)
            context = PlaybackContext(
                torrent=self.torrent,
                index=index,
                file_name=self.session.files[index].name,
                subtitles_server=self.subtitles_server,
            )
            try:
                self.launch = await self.sink.launch(self.endpoint.url, context)
            except TorrentcastError as e:
                self.fail(e)
                return
            if self.launch.reports_exit:
                self.launch.on_exit(self._on_player_exit)

        self._start_stats()

    def _on_player_exit(self, returncode: Optional[int]) -> None:
        logger.debug(f"{self.launch.name} finished with code {returncode}")
        if self.options.quit:
            self.shutdown()

    def _start_seeding(self) -> None:
        self.state = ControllerState.SEEDING
        if self.options.quiet and self.torrent.magnet_uri:
            self._print(self.torrent.magnet_uri)
        self._start_stats()

    # --- stats ---

    def _start_stats(self) -> None:
        if self.options.quiet or self._stats_task is not None:
            return
        self._stats_task = self._spawn(self._stats_loop())

    async def _stats_loop(self) -> None:
        while True:
            self.last_snapshot = self.stats.tick(self.torrent)
            if self.tui is not None:
                self.tui.update(self.last_snapshot)
            await asyncio.sleep(STATS_INTERVAL)

    def _display_context(self) -> DisplayContext:
        player = self.options.player
        return DisplayContext(
            player_name=player.display_name if player and player is not PlayerTarget.STDOUT else None,
            server_url=self.endpoint.url if self.endpoint else None,
            out=str(self.options.out) if self.options.out and not self.seed_mode else None,
            verbose=self.options.verbose,
        )

    # --- failure and shutdown ---

    def fail(self, error: BaseException) -> None:
        """Record a fatal error and shut down with exit code 1."""
        if self._terminated is not None and self._terminated.done():
            return
        if self.error is None:
            self.error = error
        logger.debug(f"Session failed: {error}")
        self._exit_code = 1
        if self.shutdown_state is not None:
            self.shutdown_state.exit_code = 1
        self.shutdown()

    def shutdown(self, signal_received: Optional[int] = None) -> None:
        """
        Begin the shutdown sequence. Only the first call has any effect.

        Signal handlers are removed right away. The remaining steps run in
        order in a teardown task, and the session terminates once the swarm
        client reports it is released or when the grace period runs out,
        whichever comes first.
        """
        if self.shutdown_state is not None:
            return
        loop = self._loop
        self.shutdown_state = ShutdownState(
            signal_received=signal_received,
            deadline=loop.time() + SHUTDOWN_GRACE,
            exit_code=self._exit_code,
        )
        self.state = ControllerState.SHUTTING_DOWN
        self._remove_signal_handlers()
        self._spawn(self._teardown())
        self._deadline_handle = loop.call_at(self.shutdown_state.deadline, self._terminate)

    async def _teardown(self) -> None:
        self.teardown_runs += 1
        try:
            if self.subtitles_server is not None:
                await self._release("subtitles server", self.subtitles_server.close())

            if self._stats_task is not None:
                self._stats_task.cancel()
            if self.tui is not None:
                self.tui.stop()
            if not self.options.quiet:
                self._print("\ntorrentcast is exiting...")

            if self.options.on_exit:
                run_detached(self.options.on_exit)
                self.shutdown_state.hooks_run = True

            if self.launch is not None:
                await self._release(self.launch.name, self.launch.close())
            if self.server is not None:
                await self._release("streaming server", self.server.close())
        finally:
            # The swarm is released even when an earlier step failed
            if self.client is not None:
                self.client.destroy(self._on_destroyed)
            else:
                self._terminate()

    async def _release(self, name: str, closing: Awaitable[None]) -> None:
        try:
            await closing
        except Exception as e:
            logger.error(f"Closing {name} failed: {e}")
            if self.error is None:
                self.error = e
            self.shutdown_state.exit_code = 1

    def _on_destroyed(self, error: Optional[BaseException] = None) -> None:
        if self._terminated.done():
            return
        if error is not None:
            logger.error(f"Swarm teardown failed: {error}")
            if self.error is None:
                self.error = error
            self.shutdown_state.exit_code = 1
        self._terminate()

    def _terminate(self) -> None:
        if self._terminated.done():
            return
        if self._deadline_handle is not None:
            self._deadline_handle.cancel()
        self.state = ControllerState.TERMINATED
        self.session.state = TorrentState.DESTROYED
        self._terminated.set_result(self.shutdown_state.exit_code)

    # --- helpers ---

    def _install_signal_handlers(self) -> None:
        if not self._handle_signals:
            return
        for sig in HANDLED_SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self._on_signal, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot handle {sig.name} on this platform")

    def _remove_signal_handlers(self) -> None:
        if not self._handle_signals:
            return
        for sig in HANDLED_SIGNALS:
            try:
                self._loop.remove_signal_handler(sig)
                signal.signal(sig, signal.SIG_IGN)
            except (NotImplementedError, RuntimeError, ValueError):
                pass

    def _on_signal(self, sig: int) -> None:
        logger.debug(f"Received signal {sig}")
        self.shutdown(signal_received=sig)

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.fail(error)

    def _print(self, text: str) -> None:
        print(text, file=self._stdout or sys.stdout, flush=True)

    def _status(self, message: str) -> None:
        logger.debug(message)
        if self.tui is not None and self.tui.active:
            self.tui.show_message(message)

    def _announce(self, text: str) -> None:
        if self.tui is not None and self.tui.active:
            self.tui.add_log(text, logging.INFO)
        else:
            self._print(text)
