"""
Work Intensity Driver

"Work harder" mode: while the session still has open todos, each idle tick
re-injects the original request with a reinforcement prompt. The number of
reinforcements is capped by `work_intensity.max_reinforcements`; state lives in
`.omc/work-intensity-state.json`.
"""

import logging
from typing import Optional

from .config_tools import config_get_work_intensity
from .continuation import ContinuationDriver, count_incomplete
from .host import notify
from .modes import Mode, get_mode_prompt
from .state_tools import (
    clear_work_intensity_state,
    create_work_intensity_state,
    read_work_intensity_state,
    record_work_intensity_reinforcement,
    write_work_intensity_state,
)

logger = logging.getLogger(__name__)


def build_reinforcement_prompt(state: dict, incomplete: int, max_reinforcements: int) -> str:
    return "\n".join([
        f"[Work Intensity - Reinforcement {state['reinforcement_count']}/{max_reinforcements}]",
        "",
        get_mode_prompt(Mode.WORK_INTENSITY),
        "",
        f"{incomplete} todo item(s) are still open. Keep going until every one is done.",
        "",
        f"Original request: {state['original_prompt']}"
    ])


class WorkIntensityDriver(ContinuationDriver):
    name = "work-intensity"
    feature = "work-intensity"

    def __init__(self, ctx):
        super().__init__(ctx)
        self.max_reinforcements = int(config_get_work_intensity(ctx.config)["max_reinforcements"])

    def get_state(self) -> Optional[dict]:
        state = read_work_intensity_state(self.ctx.project_dir)
        return state if state and state.get("active") else None

    def is_active(self, session_id: str) -> bool:
        state = self.get_state()
        return bool(state and state.get("session_id") == session_id)

    def restore(self) -> bool:
        state = self.get_state()
        if not state:
            return False
        self.ctx.modes.set_mode(state["session_id"], Mode.WORK_INTENSITY, state.get("original_prompt"))
        return True

    async def start(self, session_id: str, prompt: str) -> Optional[dict]:
        if not self.enabled:
            logger.info(f"Work intensity disabled, not starting for {session_id}")
            return None

        state = create_work_intensity_state(session_id, prompt)
        write_work_intensity_state(self.ctx.project_dir, state)
        if self.ctx.modes.get_mode(session_id) == Mode.NONE:
            self.ctx.modes.set_mode(session_id, Mode.WORK_INTENSITY, prompt)
        logger.info(f"Work intensity mode started for {session_id}")
        await notify(
            self.ctx.host, "Work Intensity Activated",
            "Maximum effort engaged until all todos are done.", "success", 3000
        )
        return state

    async def cancel(self, session_id: str) -> bool:
        if not self.is_active(session_id):
            return False
        self._stop(session_id)
        await notify(self.ctx.host, "Work Intensity Off", "Back to normal mode", "info", 3000)
        return True

    def _stop(self, session_id: str) -> None:
        clear_work_intensity_state(self.ctx.project_dir)
        if self.ctx.modes.get_mode(session_id) == Mode.WORK_INTENSITY:
            self.ctx.modes.clear(session_id)
        logger.info(f"Work intensity mode stopped for {session_id}")

    async def claim_idle(self, session_id: str) -> bool:
        state = self.get_state()
        if not state or state.get("session_id") != session_id:
            return False

        if self.has_background_work(session_id):
            logger.info(f"[work-intensity] skipped {session_id}: background tasks running")
            return False

        todos = await self.fetch_todos(session_id)
        incomplete = count_incomplete(todos or [])
        if incomplete == 0:
            return False

        if state.get("reinforcement_count", 0) >= self.max_reinforcements:
            self._stop(session_id)
            await notify(
                self.ctx.host, "Work Intensity Stopped",
                f"Reinforcement limit ({self.max_reinforcements}) reached", "warning", 5000
            )
            return True

        record_work_intensity_reinforcement(self.ctx.project_dir, state)
        await self.inject(session_id, build_reinforcement_prompt(state, incomplete, self.max_reinforcements))
        return True

    def on_session_deleted(self, session_id: str) -> None:
        state = self.get_state()
        if state and state.get("session_id") == session_id:
            self._stop(session_id)
