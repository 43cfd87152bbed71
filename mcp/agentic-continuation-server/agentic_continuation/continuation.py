"""
Shared plumbing for continuation drivers.

A driver is a per-session state machine that the orchestrator offers each idle
tick to, in priority order. `claim_idle` returns True when the driver owns the
tick, whether it injected a prompt or decided to stop; lower-priority drivers
then stay quiet for that tick.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .config_tools import config_is_feature_enabled
from .host import HostClient, HostError, last_assistant_text
from .keyword_detector import mark_synthetic
from .modes import ModeRegistry
from .pause_state import PauseRegistry
from .scheduler import ContinuationScheduler
from .task_pool import TaskPool

logger = logging.getLogger(__name__)


INCOMPLETE_EXCLUDED = {"completed", "cancelled"}


@dataclass
class ContinuationContext:
    host: HostClient
    project_dir: str
    config: dict
    pauses: PauseRegistry
    modes: ModeRegistry
    pool: Optional[TaskPool] = None
    scheduler: ContinuationScheduler = field(default_factory=ContinuationScheduler)


def count_incomplete(todos: list[dict]) -> int:
    return sum(1 for t in todos if t.get("status") not in INCOMPLETE_EXCLUDED)


class ContinuationDriver:
    name = "driver"
    feature = ""

    def __init__(self, ctx: ContinuationContext):
        self.ctx = ctx

    @property
    def enabled(self) -> bool:
        return config_is_feature_enabled(self.ctx.config, self.feature)

    def is_active(self, session_id: str) -> bool:
        return False

    async def claim_idle(self, session_id: str) -> bool:
        return False

    async def on_assistant_message(self, session_id: str, text: str) -> None:
        return None

    def on_session_deleted(self, session_id: str) -> None:
        return None

    async def inject(self, session_id: str, text: str) -> bool:
        try:
            await self.ctx.host.submit_prompt(session_id, mark_synthetic(self.name, text))
        except HostError as e:
            logger.warning(f"[{self.name}] injection into {session_id} failed: {e}")
            return False
        logger.info(f"[{self.name}] continuation injected into {session_id}")
        return True

    async def fetch_todos(self, session_id: str) -> Optional[list[dict]]:
        try:
            return await self.ctx.host.list_todos(session_id)
        except HostError as e:
            logger.debug(f"[{self.name}] todo fetch for {session_id} failed: {e}")
            return None

    async def latest_assistant_text(self, session_id: str) -> str:
        try:
            return last_assistant_text(await self.ctx.host.list_messages(session_id))
        except HostError as e:
            logger.debug(f"[{self.name}] message fetch for {session_id} failed: {e}")
            return ""

    def has_background_work(self, session_id: str) -> bool:
        return bool(self.ctx.pool and self.ctx.pool.has_running_tasks(session_id))
