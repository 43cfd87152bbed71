"""
Todo Continuation Driver

The lowest-priority nudge: when a session goes idle with open todos, start a
short visible countdown and then remind the agent to keep going. Any new
message, tool execution or error cancels the countdown, and the todo list is
fetched again right before injecting.
"""

import logging

from .config_tools import config_get_todo_continuation
from .continuation import ContinuationDriver, count_incomplete
from .host import notify

logger = logging.getLogger(__name__)


TOAST_DURATION_MS = 900

CONTINUATION_PROMPT = """[SYSTEM REMINDER - TODO CONTINUATION]

Incomplete tasks remain in your todo list. Continue working on the next pending task.

- Proceed without asking for permission
- Mark each task complete when finished
- Do not stop until all tasks are done"""


def build_todo_prompt(total: int, incomplete: int) -> str:
    return f"{CONTINUATION_PROMPT}\n\n[Status: {total - incomplete}/{total} completed, {incomplete} remaining]"


class TodoContinuationDriver(ContinuationDriver):
    name = "todo"
    feature = "todo-continuation"

    def __init__(self, ctx):
        super().__init__(ctx)
        self.countdown_seconds = config_get_todo_continuation(ctx.config)["countdown_seconds"]

    def is_active(self, session_id: str) -> bool:
        return self.ctx.scheduler.is_pending(session_id)

    async def claim_idle(self, session_id: str) -> bool:
        if self.has_background_work(session_id):
            logger.info(f"[todo] skipped {session_id}: background tasks running")
            return False

        todos = await self.fetch_todos(session_id)
        if not todos:
            logger.debug(f"[todo] no todos for {session_id}")
            return False

        incomplete = count_incomplete(todos)
        if incomplete == 0:
            logger.debug(f"[todo] all {len(todos)} todos complete for {session_id}")
            return False

        async def tick(seconds: int) -> None:
            await notify(
                self.ctx.host, "Todo Continuation",
                f"Resuming in {seconds}s... ({incomplete} tasks remaining)",
                "warning", TOAST_DURATION_MS
            )

        async def fire() -> None:
            await self._inject_if_still_needed(session_id)

        self.ctx.scheduler.schedule(session_id, self.countdown_seconds, fire, tick)
        logger.info(f"[todo] countdown started for {session_id} ({incomplete} remaining)")
        return True

    async def _inject_if_still_needed(self, session_id: str) -> None:
        pauses = self.ctx.pauses
        if pauses.is_recovering(session_id) or pauses.is_paused(session_id):
            logger.info(f"[todo] skipped injection into {session_id}: paused or recovering")
            return
        if self.has_background_work(session_id):
            logger.info(f"[todo] skipped injection into {session_id}: background tasks running")
            return

        todos = await self.fetch_todos(session_id)
        if todos is None:
            return
        incomplete = count_incomplete(todos)
        if incomplete == 0:
            logger.info(f"[todo] skipped injection into {session_id}: no incomplete todos")
            return

        await self.inject(session_id, build_todo_prompt(len(todos), incomplete))

    def cancel(self, session_id: str) -> bool:
        return self.ctx.scheduler.cancel(session_id)

    def on_session_deleted(self, session_id: str) -> None:
        self.cancel(session_id)
