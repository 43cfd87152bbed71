"""
Goal Loop Driver

Keeps a session iterating on one goal until the assistant emits the completion
marker or the iteration limit is hit. Each idle tick increments the iteration
by exactly one. State is kept in memory and mirrored to
`.omc/goal-loop-state.json`; the backlog and progress log give each injected
prompt its progress context.

With `require_verification`, a completion claim first goes through a review
round. The reviewer answers with `<verdict>APPROVED</verdict>` or
`<verdict>REJECTED</verdict>`; rejections feed back into the next iteration,
and once `max_verification_attempts` rejections accumulate, further claims
are accepted without review.
"""

import logging
import re
from datetime import datetime
from typing import Any, Optional

from .backlog import (
    append_progress_entry,
    create_backlog_from_task,
    format_backlog_status,
    get_next_story,
    get_progress_summary,
    initialize_progress,
    read_backlog,
    read_progress,
    write_backlog,
)
from .config_tools import config_get_goal_loop
from .continuation import ContinuationDriver
from .host import notify
from .modes import Mode
from .state_tools import (
    clear_verification_state,
    create_verification_state,
    read_goal_loop_states,
    read_verification_state,
    remove_goal_loop_state,
    update_verification_attempt,
    write_goal_loop_state,
    write_verification_state,
)

logger = logging.getLogger(__name__)


DEFAULT_COMPLETION_MARKER = "<promise>TASK_COMPLETE</promise>"
LEGACY_COMPLETION_MARKER = "<promise>DONE</promise>"

VERDICT_PATTERN = re.compile(r"<verdict>\s*(APPROVED|REJECTED)\s*</verdict>", re.IGNORECASE)


def detect_completion_marker(text: Optional[str], marker: str = DEFAULT_COMPLETION_MARKER) -> bool:
    if not text:
        return False
    return marker in text or LEGACY_COMPLETION_MARKER in text


def parse_verdict(text: Optional[str]) -> Optional[tuple[bool, str]]:
    """(approved, feedback) from a review reply, or None if it carries no verdict."""
    match = VERDICT_PATTERN.search(text or "")
    if not match:
        return None
    approved = match.group(1).upper() == "APPROVED"
    feedback = (text[:match.start()] + text[match.end():]).strip()
    return approved, feedback


def build_continuation_prompt(state: dict, backlog: Optional[dict], progress: str, mode_prompt: str) -> str:
    lines = [f"[Goal Loop - Iteration {state['iteration']}/{state['max_iterations']}]", ""]
    if mode_prompt:
        lines += [mode_prompt, ""]
    if backlog:
        lines += [format_backlog_status(backlog), ""]
    if progress:
        lines += ["Recent progress:", progress, ""]
    if state.get("last_feedback"):
        lines += ["Reviewer feedback on your last completion claim:", state["last_feedback"], ""]
    lines += [
        f"Continue working on the task. When it is genuinely complete, output: {state['completion_marker']}",
        "",
        f"Original task: {state['prompt']}"
    ]
    return "\n".join(lines)


def build_review_prompt(verification: dict) -> str:
    return "\n".join([
        "[Goal Loop - Completion Review]",
        "",
        "You claimed the task below is complete. Review the work critically against the task.",
        "Check that every requirement is implemented and that builds and tests pass.",
        "",
        f"Original task: {verification['original_task']}",
        "",
        "Your completion claim:",
        verification.get("completion_claim") or "(empty)",
        "",
        "Reply with <verdict>APPROVED</verdict> if the work is complete, or "
        "<verdict>REJECTED</verdict> followed by what is still missing."
    ])


class GoalLoopDriver(ContinuationDriver):
    name = "goal-loop"
    feature = "goal-loop"

    def __init__(self, ctx):
        super().__init__(ctx)
        self.settings = config_get_goal_loop(ctx.config)
        self._states: dict[str, dict[str, Any]] = {}

    def restore(self) -> int:
        """Reload active loops persisted by an earlier process."""
        restored = 0
        for session_id, state in read_goal_loop_states(self.ctx.project_dir).items():
            if not state.get("is_active"):
                continue
            self._states[session_id] = state
            mode = Mode.GOAL_LOOP_INTENSE if state.get("mode") == Mode.GOAL_LOOP_INTENSE.value else Mode.GOAL_LOOP
            self.ctx.modes.set_mode(session_id, mode, state.get("prompt"))
            restored += 1
        if restored:
            logger.info(f"Restored {restored} goal loop(s) from {self.ctx.project_dir}")
        return restored

    def is_active(self, session_id: str) -> bool:
        state = self._states.get(session_id)
        return bool(state and state.get("is_active"))

    def get_state(self, session_id: str) -> Optional[dict]:
        return self._states.get(session_id)

    def active_sessions(self) -> list[str]:
        return [sid for sid, state in self._states.items() if state.get("is_active")]

    async def start(
        self,
        session_id: str,
        prompt: str,
        intense: bool = False,
        max_iterations: Optional[int] = None,
        completion_marker: Optional[str] = None
    ) -> bool:
        if not self.enabled:
            logger.info(f"Goal loop disabled, not starting for {session_id}")
            return False
        if self.is_active(session_id):
            logger.info(f"Goal loop already active for {session_id}")
            return False

        mode = Mode.GOAL_LOOP_INTENSE if intense else Mode.GOAL_LOOP
        state = {
            "session_id": session_id,
            "prompt": prompt,
            "iteration": 0,
            "max_iterations": int(max_iterations or self.settings["max_iterations"]),
            "completion_marker": completion_marker or self.settings["completion_marker"],
            "is_active": True,
            "started_at": datetime.now().isoformat(),
            "mode": mode.value,
            "backlog_path": ".omc/backlog.json",
            "last_feedback": None,
            "verification_disabled": False
        }
        self._states[session_id] = state

        project_dir = self.ctx.project_dir
        backlog = read_backlog(project_dir)
        resuming = (
            backlog is not None
            and backlog.get("description") == prompt
            and get_next_story(backlog) is not None
            and read_progress(project_dir) is not None
        )
        if not resuming:
            write_backlog(project_dir, create_backlog_from_task(prompt))
            initialize_progress(project_dir, prompt)
        write_goal_loop_state(project_dir, state)

        self.ctx.modes.set_mode(session_id, mode, prompt)
        logger.info(f"Goal loop started for {session_id} (max {state['max_iterations']} iterations)")
        await notify(self.ctx.host, "Goal Loop Started", f"Task: {prompt[:50]}...", "success", 3000)
        return True

    def _drop(self, session_id: str) -> Optional[dict]:
        state = self._states.pop(session_id, None)
        remove_goal_loop_state(self.ctx.project_dir, session_id)
        verification = read_verification_state(self.ctx.project_dir)
        if verification and verification.get("session_id") == session_id:
            clear_verification_state(self.ctx.project_dir)
        self.ctx.modes.clear(session_id)
        return state

    async def cancel(self, session_id: str) -> bool:
        if not self.is_active(session_id):
            logger.info(f"No active goal loop to cancel for {session_id}")
            return False
        state = self._drop(session_id)
        logger.info(f"Goal loop cancelled for {session_id} at iteration {state['iteration']}")
        await notify(
            self.ctx.host, "Goal Loop Cancelled",
            f"Stopped after {state['iteration']} iterations", "warning", 3000
        )
        return True

    def _pending_verification(self, session_id: str) -> Optional[dict]:
        verification = read_verification_state(self.ctx.project_dir)
        if verification and verification.get("pending") and verification.get("session_id") == session_id:
            return verification
        return None

    async def claim_idle(self, session_id: str) -> bool:
        state = self._states.get(session_id)
        if not state or not state.get("is_active"):
            return False

        state["iteration"] += 1
        project_dir = self.ctx.project_dir

        if state["iteration"] >= state["max_iterations"]:
            logger.info(f"Goal loop for {session_id} hit max iterations ({state['max_iterations']})")
            self._drop(session_id)
            await notify(
                self.ctx.host, "Goal Loop Stopped",
                f"Max iterations ({state['max_iterations']}) reached", "info", 5000
            )
            return True

        write_goal_loop_state(project_dir, state)

        verification = self._pending_verification(session_id)
        if verification:
            await self.inject(session_id, build_review_prompt(verification))
            return True

        backlog = read_backlog(project_dir)
        next_story = get_next_story(backlog) if backlog else None
        append_progress_entry(
            project_dir,
            state["iteration"],
            "Continuation requested",
            story_id=next_story["id"] if next_story else None
        )
        prompt = build_continuation_prompt(
            state, backlog, get_progress_summary(project_dir), self.ctx.modes.get_prompt(session_id)
        )
        await self.inject(session_id, prompt)
        return True

    async def on_assistant_message(self, session_id: str, text: str) -> None:
        state = self._states.get(session_id)
        if not state or not state.get("is_active"):
            return

        verification = self._pending_verification(session_id)
        if verification:
            verdict = parse_verdict(text)
            if verdict is not None:
                await self._apply_verdict(session_id, state, verification, *verdict)
            return

        if not detect_completion_marker(text, state["completion_marker"]):
            return

        if self.settings.get("require_verification") and not state.get("verification_disabled"):
            verification = create_verification_state(
                session_id,
                state["prompt"],
                text[:2000],
                int(self.settings.get("max_verification_attempts", 3))
            )
            verification["verification_attempts"] = state.get("verification_attempts", 0)
            write_verification_state(self.ctx.project_dir, verification)
            logger.info(f"Goal loop completion claimed in {session_id}, awaiting review")
            await notify(self.ctx.host, "Goal Loop", "Completion claimed, verifying...", "info", 3000)
            return

        await self._complete(session_id, state)

    async def _apply_verdict(
        self,
        session_id: str,
        state: dict,
        verification: dict,
        approved: bool,
        feedback: str
    ) -> None:
        update_verification_attempt(self.ctx.project_dir, verification, feedback or None, approved)
        if approved:
            logger.info(f"Goal loop completion approved for {session_id}")
            await self._complete(session_id, state)
            return

        state["verification_attempts"] = verification["verification_attempts"]
        state["last_feedback"] = feedback or "The reviewer rejected the completion claim."
        if verification["verification_attempts"] >= verification["max_verification_attempts"]:
            state["verification_disabled"] = True
            logger.info(f"Goal loop for {session_id} exhausted verification attempts, review disabled")
        write_goal_loop_state(self.ctx.project_dir, state)
        logger.info(f"Goal loop completion rejected for {session_id}")

    async def _complete(self, session_id: str, state: dict) -> None:
        project_dir = self.ctx.project_dir
        backlog = read_backlog(project_dir)
        if backlog:
            now = datetime.now().isoformat()
            for story in backlog["user_stories"]:
                if not story.get("passes"):
                    story["passes"] = True
                    story["completed_at"] = now
            write_backlog(project_dir, backlog)
        append_progress_entry(project_dir, state["iteration"], "Completion marker detected, loop finished")

        self._drop(session_id)
        logger.info(f"Goal loop completed for {session_id} after {state['iteration']} iterations")
        await notify(
            self.ctx.host, "Goal Loop Completed",
            f"Task finished in {state['iteration']} iterations", "success", 5000
        )

    def on_session_deleted(self, session_id: str) -> None:
        if session_id in self._states:
            self._drop(session_id)
