"""Tests for the session lifecycle controller."""

import asyncio
import io
from pathlib import Path
from typing import List

import aiohttp
import pytest

from torrentcast.config import Options, PlayerTarget, prepare_options
from torrentcast.controller import ControllerState, SessionController, is_torrent_identifier
from torrentcast.errors import InputError, LaunchError, SessionError
from torrentcast.players import LaunchHandle, PlaybackContext, Sink
from torrentcast.models import TorrentState
from torrentcast.swarm import SwarmEvent

from .conftest import FakeSwarmClient, complete_soon, wait_for


class FakeSink(Sink):
    """Records launches; the test decides when the player exits."""

    name = "fake"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.launches: List[tuple] = []
        self.handle = LaunchHandle(self.name)

    async def launch(self, url: str, context: PlaybackContext) -> LaunchHandle:
        if self.fail:
            raise LaunchError("player is broken")
        self.launches.append((url, context))
        return self.handle


class RecordingDisplay:
    """Stands in for the stats display and records when it is stopped."""

    active = False

    def __init__(self, calls: List[str]) -> None:
        self.calls = calls
        self.context = None

    def update(self, snapshot) -> None:
        pass

    def stop(self) -> None:
        self.calls.append("display")


def make_options(tmp_path: Path, **overrides) -> Options:
    values = {"command": "download", "quiet": True, "port": 0, "out": tmp_path / "out"}
    values.update(overrides)
    return Options(**values)


def make_controller(identifier, options: Options, swarm_factory, stdout=None) -> SessionController:
    return SessionController(
        str(identifier), options, swarm_factory=swarm_factory, stdout=stdout or io.StringIO(), handle_signals=False
    )


async def started(controller: SessionController, client: FakeSwarmClient) -> asyncio.Task:
    """Run the controller in the background until its server is listening."""
    task = asyncio.create_task(controller.run())
    await wait_for(lambda: controller.server is not None and controller.server.port is not None)
    return task


class TestIdentifiers:
    def test_is_torrent_identifier(self) -> None:
        assert is_torrent_identifier("magnet:?xt=urn:btih:abc")
        assert is_torrent_identifier("dd8255ecdc7ca55fb0bbf81323d87062db1f6d1c")
        assert is_torrent_identifier("Movie.TORRENT")
        assert not is_torrent_identifier("./movie.mkv")


class TestDownloadSession:
    """Tests for download session flows."""

    @pytest.mark.asyncio
    async def test_done_without_consumers_terminates(
        self, tmp_path: Path, single_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        """Test that completion with no player, connection or keep-seeding ends the session."""
        controller = make_controller(single_file_torrent, make_options(tmp_path), swarm_factory)
        task = await started(controller, swarm_client)
        torrent = swarm_client.torrents[0]

        torrent.emit(SwarmEvent.READY)
        await wait_for(lambda: controller.endpoint is not None)
        torrent.emit(SwarmEvent.DONE)

        assert await asyncio.wait_for(task, 3) == 0
        assert controller.state is ControllerState.TERMINATED
        assert swarm_client.destroy_calls == 1
        assert swarm_client.added[0][1] == tmp_path / "out"

    @pytest.mark.asyncio
    async def test_done_with_player_stays_alive(
        self, tmp_path: Path, single_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        """Test that a launched player keeps the session open until it exits."""
        options = make_options(tmp_path, player=PlayerTarget.MPV)
        controller = make_controller(single_file_torrent, options, swarm_factory)
        sink = FakeSink()
        controller.sink = sink
        task = await started(controller, swarm_client)
        torrent = swarm_client.torrents[0]

        torrent.emit(SwarmEvent.READY)
        await wait_for(lambda: controller.launch is not None)
        torrent.emit(SwarmEvent.DONE)
        await asyncio.sleep(0.05)

        assert not task.done()
        assert controller.shutdown_state is None
        assert controller.should_stay_alive() is True
        url, context = sink.launches[0]
        assert url == controller.endpoint.url
        assert context.file_name == "movie.mp4"
        assert torrent.selected == [0]

        sink.handle.finish(0)
        assert await asyncio.wait_for(task, 3) == 0

    @pytest.mark.asyncio
    async def test_done_before_selection_waits_for_player(self, tmp_path: Path, single_file_torrent: Path) -> None:
        """Test that a torrent already complete on disk still launches the configured player."""
        swarm_client = FakeSwarmClient(on_add=complete_soon)

        async def factory(blocklist=None) -> FakeSwarmClient:
            return swarm_client

        controller = make_controller(single_file_torrent, make_options(tmp_path, player=PlayerTarget.VLC), factory)
        sink = FakeSink()
        controller.sink = sink
        task = asyncio.create_task(controller.run())

        await wait_for(lambda: sink.launches != [])
        assert controller.session.state is TorrentState.DONE
        assert controller.shutdown_state is None
        assert not task.done()

        sink.handle.finish(0)
        assert await asyncio.wait_for(task, 3) == 0

    @pytest.mark.asyncio
    async def test_no_quit_keeps_session_after_player_exit(
        self, tmp_path: Path, single_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        options = make_options(tmp_path, player=PlayerTarget.MPV, quit=False)
        controller = make_controller(single_file_torrent, options, swarm_factory)
        controller.sink = FakeSink()
        task = await started(controller, swarm_client)

        swarm_client.torrents[0].emit(SwarmEvent.READY)
        await wait_for(lambda: controller.launch is not None)
        controller.sink.handle.finish(0)
        await asyncio.sleep(0.05)
        assert not task.done()

        controller.shutdown()
        assert await asyncio.wait_for(task, 3) == 0

    @pytest.mark.asyncio
    async def test_connection_keeps_session_alive(
        self, tmp_path: Path, single_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        controller = make_controller(single_file_torrent, make_options(tmp_path), swarm_factory)
        task = await started(controller, swarm_client)
        torrent = swarm_client.torrents[0]
        torrent.emit(SwarmEvent.READY)

        async with aiohttp.ClientSession() as session:
            async with session.get(f"http://127.0.0.1:{controller.server.port}/0") as response:
                assert len(await response.read()) == 1000

        torrent.emit(SwarmEvent.DONE)
        await asyncio.sleep(0.05)
        assert not task.done()

        controller.shutdown()
        assert await asyncio.wait_for(task, 3) == 0

    @pytest.mark.asyncio
    async def test_keep_seeding(
        self, tmp_path: Path, single_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        controller = make_controller(single_file_torrent, make_options(tmp_path, keep_seeding=True), swarm_factory)
        task = await started(controller, swarm_client)
        torrent = swarm_client.torrents[0]
        torrent.emit(SwarmEvent.READY)
        torrent.emit(SwarmEvent.DONE)
        await asyncio.sleep(0.05)
        assert not task.done()

        controller.shutdown()
        assert await asyncio.wait_for(task, 3) == 0

    @pytest.mark.asyncio
    async def test_list_files(
        self, tmp_path: Path, multi_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        """Test that listing prints the files and ends the session with code 0."""
        stdout = io.StringIO()
        controller = make_controller(multi_file_torrent, make_options(tmp_path, list_files=True), swarm_factory, stdout)
        task = await started(controller, swarm_client)
        swarm_client.torrents[0].emit(SwarmEvent.READY)

        assert await asyncio.wait_for(task, 3) == 0
        output = stdout.getvalue()
        assert "Select a file to download:" in output
        assert "  1 show/b.mkv" in output
        assert controller.launch is None

    @pytest.mark.asyncio
    async def test_largest_file_selected(
        self, tmp_path: Path, multi_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        controller = make_controller(multi_file_torrent, make_options(tmp_path), swarm_factory)
        task = await started(controller, swarm_client)
        swarm_client.torrents[0].emit(SwarmEvent.READY)
        await wait_for(lambda: controller.endpoint is not None)

        assert controller.session.selected_index == 1
        assert controller.endpoint.url.endswith(f":{controller.server.port}/1")
        controller.shutdown()
        await asyncio.wait_for(task, 3)

    @pytest.mark.asyncio
    async def test_on_done_hook_runs(
        self, tmp_path: Path, single_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        marker = tmp_path / "done-marker"
        script = tmp_path / "done.sh"
        script.write_text(f"#!/bin/sh\ntouch '{marker}'\n")
        script.chmod(0o755)
        options = prepare_options(make_options(tmp_path, on_done=str(script)))
        controller = make_controller(single_file_torrent, options, swarm_factory)
        task = await started(controller, swarm_client)

        torrent = swarm_client.torrents[0]
        torrent.emit(SwarmEvent.READY)
        torrent.emit(SwarmEvent.DONE)
        assert await asyncio.wait_for(task, 3) == 0
        await wait_for(marker.exists)


class TestShutdown:
    """Tests for the shutdown sequence."""

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(
        self, tmp_path: Path, single_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        """Test that repeated triggers run teardown and destroy exactly once."""
        controller = make_controller(single_file_torrent, make_options(tmp_path), swarm_factory)
        task = await started(controller, swarm_client)

        controller.shutdown()
        controller.shutdown()
        controller.fail(SessionError("late failure"))
        controller.shutdown()

        await asyncio.wait_for(task, 3)
        assert controller.teardown_runs == 1
        assert swarm_client.destroy_calls == 1

    @pytest.mark.asyncio
    async def test_interrupt_exits_zero(
        self, tmp_path: Path, single_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        controller = make_controller(single_file_torrent, make_options(tmp_path), swarm_factory)
        task = await started(controller, swarm_client)

        controller._on_signal(2)
        assert await asyncio.wait_for(task, 3) == 0
        assert controller.shutdown_state.signal_received == 2

    @pytest.mark.asyncio
    async def test_unresponsive_destroy_hits_deadline(
        self, tmp_path: Path, single_file_torrent: Path, swarm_factory, swarm_client: FakeSwarmClient
    ) -> None:
        """Test that a swarm that never reports back cannot hold the process open."""
        swarm_client.respond_to_destroy = False
        controller = make_controller(single_file_torrent, make_options(tmp_path), swarm_factory)
        task = await started(controller, swarm_client)

        controller.shutdown()
        assert await asyncio.wait_for(task, 3) == 0
        assert swarm_client.destroy_calls == 1

    @pytest.mark.asyncio
    async def test_destroy_error_sets_exit_code(
        self, tmp_path: Path, single_file_torrent: Path, swarm_factory, swarm_client: FakeSwarmClient
    ) -> None:
        swarm_client.destroy_error = SessionError("engine stuck")
        controller = make_controller(single_file_torrent, make_options(tmp_path), swarm_factory)
        task = await started(controller, swarm_client)

        controller.shutdown()
        assert await asyncio.wait_for(task, 3) == 1
        assert str(controller.error) == "engine stuck"


    @pytest.mark.asyncio
    async def test_failed_close_step_still_releases_swarm(
        self, tmp_path: Path, single_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        """Test that a playback cleanup error is reported and the swarm is still destroyed."""
        controller = make_controller(single_file_torrent, make_options(tmp_path, player=PlayerTarget.MPV), swarm_factory)
        sink = FakeSink()
        controller.sink = sink

        async def broken_cleanup() -> None:
            raise OSError("discovery socket already closed")

        sink.handle.add_cleanup(broken_cleanup)
        task = await started(controller, swarm_client)
        swarm_client.torrents[0].emit(SwarmEvent.READY)
        await wait_for(lambda: controller.launch is not None)

        controller.shutdown()

        assert await asyncio.wait_for(task, 3) == 1
        assert swarm_client.destroy_calls == 1
        assert isinstance(controller.error, OSError)
        assert controller.state is ControllerState.TERMINATED

    @pytest.mark.asyncio
    async def test_teardown_order(
        self,
        tmp_path: Path,
        single_file_torrent: Path,
        swarm_client: FakeSwarmClient,
        swarm_factory,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test that shutdown steps run in a fixed order ending with the swarm release."""
        calls: List[str] = []
        subtitles = tmp_path / "movie.srt"
        subtitles.write_text("1\n00:00:01,000 --> 00:00:02,000\nhello\n")
        options = make_options(tmp_path, player=PlayerTarget.MPV, subtitles=subtitles, on_exit="/bin/true")
        controller = make_controller(single_file_torrent, options, swarm_factory)
        sink = FakeSink()
        controller.sink = sink

        async def close_subtitles() -> None:
            calls.append("subtitles server")

        async def close_player() -> None:
            calls.append("player")

        destroy = swarm_client.destroy

        def record_destroy(callback=None) -> None:
            calls.append("swarm")
            destroy(callback)

        monkeypatch.setattr("torrentcast.controller.run_detached", lambda script: calls.append("on-exit hook"))
        monkeypatch.setattr(controller, "_remove_signal_handlers", lambda: calls.append("signal handlers"))
        monkeypatch.setattr(controller.subtitles_server, "close", close_subtitles)
        monkeypatch.setattr(swarm_client, "destroy", record_destroy)
        sink.handle.add_cleanup(close_player)

        task = await started(controller, swarm_client)
        controller.tui = RecordingDisplay(calls)
        server_close = controller.server.close

        async def close_server() -> None:
            calls.append("streaming server")
            await server_close()

        monkeypatch.setattr(controller.server, "close", close_server)
        swarm_client.torrents[0].emit(SwarmEvent.READY)
        await wait_for(lambda: controller.launch is not None)

        controller.shutdown()

        assert await asyncio.wait_for(task, 3) == 0
        assert calls == [
            "signal handlers",
            "subtitles server",
            "display",
            "on-exit hook",
            "player",
            "streaming server",
            "swarm",
        ]
        assert controller.shutdown_state.hooks_run is True


class TestFailures:
    """Tests for error handling."""

    @pytest.mark.asyncio
    async def test_swarm_error_exits_one(
        self, tmp_path: Path, single_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        controller = make_controller(single_file_torrent, make_options(tmp_path), swarm_factory)
        task = await started(controller, swarm_client)

        swarm_client.torrents[0].emit(SwarmEvent.ERROR, SessionError("tracker exploded"))
        assert await asyncio.wait_for(task, 3) == 1
        assert isinstance(controller.error, SessionError)

    @pytest.mark.asyncio
    async def test_launch_failure_exits_one(
        self, tmp_path: Path, single_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        controller = make_controller(single_file_torrent, make_options(tmp_path, player=PlayerTarget.MPV), swarm_factory)
        controller.sink = FakeSink(fail=True)
        task = await started(controller, swarm_client)

        swarm_client.torrents[0].emit(SwarmEvent.READY)
        assert await asyncio.wait_for(task, 3) == 1
        assert isinstance(controller.error, LaunchError)

    @pytest.mark.asyncio
    async def test_bad_select_index(
        self, tmp_path: Path, single_file_torrent: Path, swarm_client: FakeSwarmClient, swarm_factory
    ) -> None:
        controller = make_controller(single_file_torrent, make_options(tmp_path, select=4), swarm_factory)
        task = await started(controller, swarm_client)

        swarm_client.torrents[0].emit(SwarmEvent.READY)
        assert await asyncio.wait_for(task, 3) == 1
        assert isinstance(controller.error, InputError)

    @pytest.mark.asyncio
    async def test_unresolvable_identifier_raises(self, tmp_path: Path, swarm_factory, swarm_client: FakeSwarmClient) -> None:
        """Test that bad input surfaces before any swarm client exists."""
        controller = make_controller(tmp_path / "missing.torrent", make_options(tmp_path), swarm_factory)
        with pytest.raises(InputError):
            await controller.run()
        assert swarm_client.destroy_calls == 0
        assert controller.client is None


class TestSeedSession:
    @pytest.mark.asyncio
    async def test_seed_prints_magnet_when_quiet(self, tmp_path: Path, swarm_client: FakeSwarmClient, swarm_factory) -> None:
        """Test that a quiet seed prints the magnet link and ignores completion."""
        source = tmp_path / "share.bin"
        source.write_bytes(b"z" * 5000)
        stdout = io.StringIO()
        options = make_options(tmp_path, command="seed", out=None)
        controller = make_controller(source, options, swarm_factory, stdout)
        task = asyncio.create_task(controller.run())
        await wait_for(lambda: swarm_client.torrents != [])

        torrent = swarm_client.torrents[0]
        torrent.emit(SwarmEvent.READY)
        torrent.emit(SwarmEvent.DONE)
        await asyncio.sleep(0.05)

        assert controller.seed_mode is True
        assert controller.server is None
        assert swarm_client.seeded == [source]
        assert stdout.getvalue().startswith("magnet:?xt=urn:btih:")
        assert controller.state is ControllerState.SEEDING
        assert not task.done()

        controller.shutdown()
        assert await asyncio.wait_for(task, 3) == 0
