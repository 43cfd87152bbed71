"""
Continuation Orchestrator

Owns every per-session registry (modes, pauses, countdowns, drivers) for one
plugin lifetime and routes host lifecycle events to them.

On each idle tick the orchestrator acts as the single arbiter: it checks
pause, recovery and the post-interruption grace window once, then offers the
tick to drivers in priority order:

    goal loop > pipeline > QA cycle > work intensity > todo nudge

The first driver to claim the tick owns it, and no other driver acts.
"""

import logging
from typing import Optional

from .config_tools import config_is_feature_enabled
from .continuation import ContinuationContext, ContinuationDriver
from .events import (
    HostEvent,
    MessageUpdated,
    SessionCreated,
    SessionDeleted,
    SessionError,
    SessionIdle,
    ToolExecuted,
)
from .goal_loop import GoalLoopDriver
from .host import HostClient, HostError, last_assistant_text, last_user_text, notify
from .keyword_detector import (
    TriggerKind,
    classify_prompt,
    detect_keyword_hints,
    is_synthetic_prompt,
)
from .modes import ModeRegistry
from .pause_state import PauseRegistry, SessionRecovery
from .pipeline import PipelineDriver, build_phase_prompt
from .qa_cycle import QACycleDriver, build_qa_prompt
from .scheduler import ContinuationScheduler
from .task_pool import TaskPool
from .todo_continuation import TodoContinuationDriver
from .work_intensity import WorkIntensityDriver

logger = logging.getLogger(__name__)


class ContinuationOrchestrator:
    def __init__(
        self,
        host: HostClient,
        project_dir: str,
        config: dict,
        pool: Optional[TaskPool] = None
    ):
        recovery_settings = config.get("recovery") or {}
        self.host = host
        self.config = config
        self.pauses = PauseRegistry(grace_seconds=float(recovery_settings.get("abort_grace_seconds", 3.0)))
        self.modes = ModeRegistry()
        self.scheduler = ContinuationScheduler()
        self.ctx = ContinuationContext(
            host=host,
            project_dir=project_dir,
            config=config,
            pauses=self.pauses,
            modes=self.modes,
            pool=pool,
            scheduler=self.scheduler
        )
        self.recovery = SessionRecovery(host, self.pauses)

        self.goal_loop = GoalLoopDriver(self.ctx)
        self.pipeline = PipelineDriver(self.ctx)
        self.qa_cycle = QACycleDriver(self.ctx)
        self.work_intensity = WorkIntensityDriver(self.ctx)
        self.todo = TodoContinuationDriver(self.ctx)
        self.drivers: list[ContinuationDriver] = [
            self.goal_loop,
            self.pipeline,
            self.qa_cycle,
            self.work_intensity,
            self.todo,
        ]

        self._child_sessions: set[str] = set()
        self._seen_user_messages: dict[str, set[str]] = {}

    def restore(self) -> None:
        self.goal_loop.restore()
        self.work_intensity.restore()

    def _feature_enabled(self, feature: str) -> bool:
        return config_is_feature_enabled(self.config, feature)

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    async def handle_event(self, event: HostEvent) -> Optional[str]:
        """Route one lifecycle event. Returns the driver that claimed an idle tick, if any."""
        if isinstance(event, SessionCreated):
            if event.parent_id:
                self._child_sessions.add(event.session_id)
        elif isinstance(event, SessionIdle):
            return await self.on_idle(event.session_id)
        elif isinstance(event, SessionError):
            await self.on_session_error(event.session_id, event.error_name)
        elif isinstance(event, SessionDeleted):
            self.on_session_deleted(event.session_id)
        elif isinstance(event, MessageUpdated):
            await self.on_message_updated(event)
        elif isinstance(event, ToolExecuted):
            self.scheduler.cancel(event.session_id)
            self.pauses.clear_interruption(event.session_id)
        return None

    async def on_idle(self, session_id: str) -> Optional[str]:
        if session_id in self._child_sessions:
            logger.debug(f"Idle skipped for child session {session_id}")
            return None
        if self.pauses.is_paused(session_id):
            logger.info(f"Idle skipped for {session_id}: paused")
            return None
        if self.pauses.is_recovering(session_id):
            logger.info(f"Idle skipped for {session_id}: recovering")
            return None
        if self.pauses.consume_grace_window(session_id):
            logger.info(f"Idle skipped for {session_id}: interrupted moments ago")
            return None

        for driver in self.drivers:
            if not driver.enabled:
                continue
            if await driver.claim_idle(session_id):
                logger.info(f"Idle tick for {session_id} claimed by {driver.name}")
                return driver.name
        return None

    async def on_session_error(self, session_id: str, error_name: Optional[str]) -> None:
        self.scheduler.cancel(session_id)
        if self._feature_enabled("session-recovery"):
            await self.recovery.handle_error(session_id, error_name)
        else:
            self.pauses.record_interruption(session_id)

    def on_session_deleted(self, session_id: str) -> None:
        self.scheduler.cancel(session_id)
        for driver in self.drivers:
            driver.on_session_deleted(session_id)
        self.pauses.clear(session_id)
        self.modes.clear(session_id)
        self._child_sessions.discard(session_id)
        self._seen_user_messages.pop(session_id, None)
        logger.info(f"Session {session_id} deleted, state purged")

    async def on_message_updated(self, event: MessageUpdated) -> None:
        session_id = event.session_id
        if event.role not in ("user", "assistant"):
            return
        self.scheduler.cancel(session_id)
        self.pauses.clear_interruption(session_id)

        if event.role == "assistant":
            if not self.goal_loop.is_active(session_id):
                return
            try:
                text = last_assistant_text(await self.host.list_messages(session_id))
            except HostError as e:
                logger.debug(f"Could not read assistant output for {session_id}: {e}")
                return
            await self.goal_loop.on_assistant_message(session_id, text)
            return

        seen = self._seen_user_messages.setdefault(session_id, set())
        if event.message_id and event.message_id in seen:
            return
        try:
            text = last_user_text(await self.host.list_messages(session_id))
        except HostError as e:
            logger.debug(f"Could not read user prompt for {session_id}: {e}")
            return
        # Parts can arrive after the first update for a message
        if not text:
            return
        if event.message_id:
            seen.add(event.message_id)
        if not is_synthetic_prompt(text):
            context = await self.on_chat_message(session_id, text)
            if context:
                logger.debug(f"{len(context)} context part(s) prepared for {session_id}")

    # ------------------------------------------------------------------
    # Fresh user prompts
    # ------------------------------------------------------------------

    async def on_chat_message(self, session_id: str, text: str) -> list[str]:
        """Handle a fresh user prompt; returns extra context parts to attach to it."""
        if is_synthetic_prompt(text):
            return []

        self.scheduler.cancel(session_id)
        self.pauses.resume(session_id)
        self.pauses.clear_interruption(session_id)

        context = await self._apply_trigger(session_id, text)
        if self._feature_enabled("keyword-hints"):
            hints = detect_keyword_hints(text)
            if hints:
                logger.info(f"Keyword hints for {session_id}: {', '.join(h.type for h in hints)}")
            context.extend(h.message for h in hints)
        return context

    async def _apply_trigger(self, session_id: str, text: str) -> list[str]:
        trigger = classify_prompt(text)
        kind = trigger.kind

        if kind == TriggerKind.NONE:
            return []

        if kind == TriggerKind.CANCEL_GOAL_LOOP:
            await self.goal_loop.cancel(session_id)
            return []
        if kind == TriggerKind.CANCEL_PIPELINE:
            await self.pipeline.cancel(session_id)
            return []
        if kind == TriggerKind.CANCEL_QA_CYCLE:
            await self.qa_cycle.cancel(session_id)
            return []
        if kind == TriggerKind.CANCEL_WORK_INTENSITY:
            await self.work_intensity.cancel(session_id)
            return []

        if kind in (TriggerKind.GOAL_LOOP, TriggerKind.GOAL_LOOP_INTENSE):
            if self.pipeline.is_active(session_id):
                await notify(self.host, "Goal Loop", "A pipeline is already driving this session", "warning")
                return []
            intense = kind == TriggerKind.GOAL_LOOP_INTENSE
            if await self.goal_loop.start(session_id, trigger.argument, intense=intense):
                return [self.modes.get_prompt(session_id)]
            return []

        if kind == TriggerKind.PIPELINE:
            if self.goal_loop.is_active(session_id):
                await notify(self.host, "Pipeline", "A goal loop is already driving this session", "warning")
                return []
            state = await self.pipeline.start(session_id, trigger.argument)
            return [build_phase_prompt(state)] if state else []

        if kind == TriggerKind.QA_CYCLE:
            state = await self.qa_cycle.start(session_id, trigger.argument)
            return [build_qa_prompt(state, self.qa_cycle.settings)] if state else []

        if kind == TriggerKind.WORK_INTENSITY:
            state = await self.work_intensity.start(session_id, trigger.argument)
            return [self.modes.get_prompt(session_id)] if state else []

        return []

    def snapshot(self, session_id: Optional[str] = None) -> dict:
        sessions = [session_id] if session_id else sorted(
            {*self.goal_loop.active_sessions(), *self.pauses.paused_sessions()}
        )
        return {
            "sessions": {
                sid: {
                    "mode": self.modes.get_mode(sid).value,
                    "paused": self.pauses.is_paused(sid),
                    "recovering": self.pauses.is_recovering(sid),
                    "goal_loop": self.goal_loop.get_state(sid),
                    "countdown_pending": self.scheduler.is_pending(sid)
                }
                for sid in sessions
            },
            "pipeline": self.pipeline.get_state(),
            "qa_cycle": self.qa_cycle.get_state(),
            "work_intensity": self.work_intensity.get_state()
        }
