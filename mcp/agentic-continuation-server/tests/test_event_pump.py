"""
Tests for event_pump.py - per-session ordering, isolation and reconnects.

Run with: pytest tests/test_event_pump.py -v
"""

import asyncio
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import FakeHost
from agentic_continuation.event_pump import EventPump
from agentic_continuation.events import SessionIdle, ToolExecuted, UnknownEvent
from agentic_continuation.host import HostError


class RecordingOrchestrator:
    def __init__(self):
        self.handled = []
        self.gates: dict[str, asyncio.Event] = {}

    async def handle_event(self, event):
        gate = self.gates.get(event.session_id)
        if gate is not None:
            await gate.wait()
        if isinstance(event, ToolExecuted) and event.tool == "explode":
            raise RuntimeError("handler failed")
        self.handled.append((event.session_id, type(event).__name__))


class FlakyHost(FakeHost):
    """Fails the first stream, then serves one event and asks the pump to stop."""

    def __init__(self, stop: asyncio.Event):
        super().__init__()
        self.stop = stop
        self.connects = 0

    async def events(self):
        self.connects += 1
        if self.connects == 1:
            raise HostError("stream dropped")
        yield {"type": "session.idle", "properties": {"sessionID": "s1"}}
        self.stop.set()


class TestDispatch:
    @pytest.mark.asyncio
    async def test_in_order_per_session(self):
        orchestrator = RecordingOrchestrator()
        pump = EventPump(FakeHost(), orchestrator)
        pump.dispatch(ToolExecuted("s1", "bash"))
        pump.dispatch(SessionIdle("s1"))
        await pump.idle()
        assert orchestrator.handled == [("s1", "ToolExecuted"), ("s1", "SessionIdle")]

    @pytest.mark.asyncio
    async def test_sessions_do_not_block_each_other(self):
        orchestrator = RecordingOrchestrator()
        orchestrator.gates["slow"] = asyncio.Event()
        pump = EventPump(FakeHost(), orchestrator)
        pump.dispatch(SessionIdle("slow"))
        pump.dispatch(SessionIdle("fast"))

        for _ in range(5):
            await asyncio.sleep(0)
        assert orchestrator.handled == [("fast", "SessionIdle")]

        orchestrator.gates["slow"].set()
        await pump.idle()
        assert ("slow", "SessionIdle") in orchestrator.handled

    @pytest.mark.asyncio
    async def test_unknown_events_ignored(self):
        orchestrator = RecordingOrchestrator()
        pump = EventPump(FakeHost(), orchestrator)
        pump.dispatch(UnknownEvent(type="file.edited"))
        await pump.idle()
        assert orchestrator.handled == []

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_worker(self):
        orchestrator = RecordingOrchestrator()
        pump = EventPump(FakeHost(), orchestrator)
        pump.dispatch(ToolExecuted("s1", "explode"))
        pump.dispatch(SessionIdle("s1"))
        await pump.idle()
        assert orchestrator.handled == [("s1", "SessionIdle")]

    @pytest.mark.asyncio
    async def test_close_cancels_workers(self):
        orchestrator = RecordingOrchestrator()
        orchestrator.gates["s1"] = asyncio.Event()
        pump = EventPump(FakeHost(), orchestrator)
        pump.dispatch(SessionIdle("s1"))
        await asyncio.sleep(0)
        await pump.close()
        assert orchestrator.handled == []


class TestStream:
    @pytest.mark.asyncio
    async def test_run_once_parses_payloads(self):
        host = FakeHost()
        host.events_payloads = [
            {"type": "session.idle", "properties": {"sessionID": "s1"}},
            {"type": "installation.updated", "properties": {}},
            {"type": "tool.execute.after", "properties": {"sessionID": "s2", "tool": "edit"}},
        ]
        orchestrator = RecordingOrchestrator()
        pump = EventPump(host, orchestrator)
        await pump.run_once()
        await pump.idle()
        assert sorted(orchestrator.handled) == [("s1", "SessionIdle"), ("s2", "ToolExecuted")]

    @pytest.mark.asyncio
    async def test_run_reconnects_after_failure(self):
        stop = asyncio.Event()
        host = FlakyHost(stop)
        orchestrator = RecordingOrchestrator()
        pump = EventPump(host, orchestrator, reconnect_delay=0)
        await asyncio.wait_for(pump.run(stop), timeout=2)
        await pump.idle()
        assert host.connects == 2
        assert orchestrator.handled == [("s1", "SessionIdle")]
