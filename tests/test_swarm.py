"""Tests for the swarm interface helpers."""

import importlib.util

import pytest

from torrentcast.errors import SessionError
from torrentcast.swarm import EventEmitter, SwarmEvent, create_swarm, engine_version


class TestEventEmitter:
    """Tests for EventEmitter."""

    def test_listeners_called_in_order(self) -> None:
        emitter = EventEmitter()
        calls = []
        emitter.on(SwarmEvent.WIRE, lambda peer: calls.append(("first", peer)))
        emitter.on(SwarmEvent.WIRE, lambda peer: calls.append(("second", peer)))
        emitter.emit(SwarmEvent.WIRE, "1.2.3.4")
        assert calls == [("first", "1.2.3.4"), ("second", "1.2.3.4")]

    def test_once(self) -> None:
        emitter = EventEmitter()
        calls = []
        emitter.once(SwarmEvent.READY, lambda: calls.append(1))
        emitter.emit(SwarmEvent.READY)
        emitter.emit(SwarmEvent.READY)
        assert calls == [1]
        assert emitter.listener_count(SwarmEvent.READY) == 0

    def test_off_during_emit(self) -> None:
        """Test that removing a listener while emitting does not skip the others."""
        emitter = EventEmitter()
        calls = []

        def first() -> None:
            calls.append("first")
            emitter.off(SwarmEvent.DONE, first)

        emitter.on(SwarmEvent.DONE, first)
        emitter.on(SwarmEvent.DONE, lambda: calls.append("second"))
        emitter.emit(SwarmEvent.DONE)
        emitter.emit(SwarmEvent.DONE)
        assert calls == ["first", "second", "second"]


@pytest.mark.skipif(importlib.util.find_spec("libtorrent") is not None, reason="libtorrent is installed")
class TestWithoutEngine:
    @pytest.mark.asyncio
    async def test_create_swarm_explains_missing_engine(self) -> None:
        with pytest.raises(SessionError, match="libtorrent is required"):
            await create_swarm()

    def test_engine_version(self) -> None:
        assert engine_version() is None
