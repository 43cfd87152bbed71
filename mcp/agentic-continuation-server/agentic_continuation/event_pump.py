"""
Host Event Pump

Reads the host's lifecycle event stream and feeds it to the orchestrator.

Handling an idle tick can block for a whole model turn (injection waits on the
host's prompt call), so each session gets its own worker: events for one
session are handled strictly in arrival order, while sessions never wait on
each other. A dropped stream is reconnected after a short delay.
"""

import asyncio
import logging
from collections import deque
from typing import Optional

from .events import HostEvent, UnknownEvent, parse_event
from .host import HostClient, HostError
from .orchestrator import ContinuationOrchestrator

logger = logging.getLogger(__name__)


RECONNECT_DELAY_SECONDS = 2.0


class EventPump:
    def __init__(
        self,
        host: HostClient,
        orchestrator: ContinuationOrchestrator,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS
    ):
        self.host = host
        self.orchestrator = orchestrator
        self.reconnect_delay = reconnect_delay
        self._queues: dict[str, deque] = {}
        self._workers: dict[str, asyncio.Task] = {}

    def dispatch(self, event: HostEvent) -> None:
        if isinstance(event, UnknownEvent):
            logger.debug(f"Ignoring event type {event.type}")
            return

        session_id = event.session_id
        queue = self._queues.setdefault(session_id, deque())
        queue.append(event)
        if session_id not in self._workers:
            self._workers[session_id] = asyncio.create_task(self._drain(session_id))

    async def _drain(self, session_id: str) -> None:
        queue = self._queues[session_id]
        try:
            while queue:
                event = queue.popleft()
                try:
                    await self.orchestrator.handle_event(event)
                except Exception:
                    logger.exception(f"Error handling {type(event).__name__} for {session_id}")
        finally:
            # No await between the empty check and removal, so dispatch never
            # appends to a queue whose worker has already left.
            self._workers.pop(session_id, None)
            if not queue:
                self._queues.pop(session_id, None)

    async def run_once(self) -> None:
        """Consume the stream until it ends."""
        async for raw in self.host.events():
            self.dispatch(parse_event(raw))

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        while stop is None or not stop.is_set():
            try:
                await self.run_once()
                logger.info("Host event stream ended, reconnecting")
            except HostError as e:
                logger.warning(f"Host event stream failed: {e}")
            await asyncio.sleep(self.reconnect_delay)

    async def idle(self) -> None:
        """Wait until every queued event has been handled."""
        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)

    async def close(self) -> None:
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
