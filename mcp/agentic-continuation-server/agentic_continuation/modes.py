"""
Mode Registry

One behavioural mode per session, held in memory only. Drivers own the
authoritative persisted state and re-register their mode when restored.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    NONE = "none"
    WORK_INTENSITY = "work_intensity"
    GOAL_LOOP = "goal_loop"
    GOAL_LOOP_INTENSE = "goal_loop_intense"


MODE_PROMPTS: dict[Mode, str] = {
    Mode.NONE: "",
    Mode.WORK_INTENSITY: (
        "[work-intensity-mode]\n\n"
        "Maximum effort is engaged for this session.\n"
        "- Run independent work in parallel and delegate to background agents\n"
        "- Track every step in the todo list\n"
        "- Do not stop while any todo remains open"
    ),
    Mode.GOAL_LOOP: (
        "[goal-loop-mode]\n\n"
        "You are working in a goal loop. Each time you stop, you will be asked to continue "
        "until you emit the completion marker. Only emit it once the work is verifiably done."
    ),
    Mode.GOAL_LOOP_INTENSE: (
        "[goal-loop-intense-mode]\n\n"
        "You are working in a goal loop with maximum effort. Parallelise independent work, "
        "delegate aggressively and keep the todo list current. Emit the completion marker only "
        "once every backlog story passes."
    ),
}


@dataclass
class ModeState:
    mode: Mode
    session_id: str
    started_at: datetime = field(default_factory=datetime.now)
    task: Optional[str] = None


class ModeRegistry:
    def __init__(self):
        self._modes: dict[str, ModeState] = {}

    def set_mode(self, session_id: str, mode: Mode, task: Optional[str] = None) -> None:
        if mode == Mode.NONE:
            self.clear(session_id)
            return
        self._modes[session_id] = ModeState(mode=mode, session_id=session_id, task=task)
        logger.info(f"Session {session_id} mode set to {mode.value}")

    def get_mode(self, session_id: str) -> Mode:
        state = self._modes.get(session_id)
        return state.mode if state else Mode.NONE

    def get_state(self, session_id: str) -> Optional[ModeState]:
        return self._modes.get(session_id)

    def clear(self, session_id: str) -> None:
        if self._modes.pop(session_id, None) is not None:
            logger.info(f"Session {session_id} mode cleared")

    def get_prompt(self, session_id: str) -> str:
        return get_mode_prompt(self.get_mode(session_id))


def get_mode_prompt(mode: Mode) -> str:
    return MODE_PROMPTS[mode]
