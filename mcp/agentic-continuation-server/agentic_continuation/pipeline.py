"""
Pipeline Driver

Walks a session through expansion -> planning -> execution -> qa ->
validation -> complete. A phase advances only when the assistant's latest
output carries that phase's completion signal; otherwise the current phase
prompt is repeated, up to `max_phase_retries` times in a row, before the
pipeline stops. State lives in `.omc/pipeline-state.json`, one pipeline per
project.
"""

import logging
import re
from typing import Optional

from .config_tools import config_get_pipeline
from .continuation import ContinuationDriver
from .host import notify
from .state_tools import (
    PIPELINE_PHASES,
    add_task_progress,
    clear_pipeline_state,
    create_pipeline_state,
    get_next_pipeline_phase,
    mark_pipeline_complete,
    read_pipeline_state,
    update_pipeline_phase,
    update_task_progress,
    write_pipeline_state,
)

logger = logging.getLogger(__name__)


PHASE_SIGNALS: dict[str, list[re.Pattern]] = {
    "expansion": [re.compile(r"EXPANSION_COMPLETE", re.IGNORECASE), re.compile(r"spec.*complete", re.IGNORECASE)],
    "planning": [re.compile(r"PLANNING_COMPLETE", re.IGNORECASE), re.compile(r"plan.*approved", re.IGNORECASE)],
    "execution": [re.compile(r"EXECUTION_COMPLETE", re.IGNORECASE), re.compile(r"implementation.*complete", re.IGNORECASE)],
    "qa": [re.compile(r"QA_COMPLETE", re.IGNORECASE), re.compile(r"all.*tests.*pass", re.IGNORECASE)],
    "validation": [re.compile(r"PIPELINE_COMPLETE", re.IGNORECASE), re.compile(r"validation.*approved", re.IGNORECASE)],
}

PHASE_PROMPTS: dict[str, str] = {
    "expansion": (
        "Expand the request into a complete specification: requirements, constraints, "
        "edge cases and acceptance criteria. When the specification is complete, output: EXPANSION_COMPLETE"
    ),
    "planning": (
        "Turn the specification into an implementation plan. List each task as a checklist "
        "line `- [ ] <task>`. When the plan is final, output: PLANNING_COMPLETE"
    ),
    "execution": (
        "Implement the plan task by task. Tick each finished task as `- [x] <task>`. "
        "When every task is implemented, output: EXECUTION_COMPLETE"
    ),
    "qa": (
        "Build the project, run the linters and run the full test suite. Fix every failure. "
        "When everything passes, output: QA_COMPLETE"
    ),
    "validation": (
        "Validate the result against the original specification and acceptance criteria. "
        "When the work is validated, output: PIPELINE_COMPLETE"
    ),
}

CHECKLIST_ITEM = re.compile(r"^\s*[-*]\s*\[( |x|X)\]\s*(.+?)\s*$", re.MULTILINE)


def detect_phase_signal(phase: str, text: Optional[str]) -> bool:
    if not text:
        return False
    return any(p.search(text) for p in PHASE_SIGNALS.get(phase, []))


def build_phase_prompt(state: dict) -> str:
    phase = state["phase"]
    number = PIPELINE_PHASES.index(phase) + 1
    lines = [
        f"[Pipeline - Phase {number}/{len(PIPELINE_PHASES) - 1}: {phase}]",
        "",
        PHASE_PROMPTS[phase],
        "",
        f"Task: {state['spec']}"
    ]
    open_tasks = [t for t in state.get("progress", []) if t["status"] not in ("completed", "failed")]
    if phase == "execution" and open_tasks:
        lines += ["", "Open plan tasks:"] + [f"- [ ] {t['description']}" for t in open_tasks]
    return "\n".join(lines)


def parse_checklist(text: str) -> list[tuple[bool, str]]:
    return [(mark.lower() == "x", item) for mark, item in CHECKLIST_ITEM.findall(text or "")]


class PipelineDriver(ContinuationDriver):
    name = "pipeline"
    feature = "pipeline"

    def __init__(self, ctx):
        super().__init__(ctx)
        self.settings = config_get_pipeline(ctx.config)

    def get_state(self) -> Optional[dict]:
        state = read_pipeline_state(self.ctx.project_dir)
        if not state or not state.get("active"):
            return None
        if state.get("phase") not in PIPELINE_PHASES:
            logger.warning(f"Pipeline state has unknown phase {state.get('phase')!r}, ignoring")
            return None
        return state

    def is_active(self, session_id: str) -> bool:
        state = self.get_state()
        return bool(state and state.get("session_id") == session_id)

    async def start(self, session_id: str, task: str) -> Optional[dict]:
        if not self.enabled:
            logger.info(f"Pipeline disabled, not starting for {session_id}")
            return None
        existing = self.get_state()
        if existing:
            logger.info(f"Pipeline already active for session {existing.get('session_id')}")
            return None

        state = create_pipeline_state(session_id, task)
        write_pipeline_state(self.ctx.project_dir, state)
        logger.info(f"Pipeline started for {session_id}")
        await notify(self.ctx.host, "Pipeline Started", f"Task: {task[:50]}...", "success", 3000)
        return state

    async def cancel(self, session_id: str) -> bool:
        if not self.is_active(session_id):
            return False
        clear_pipeline_state(self.ctx.project_dir)
        logger.info(f"Pipeline cancelled for {session_id}")
        await notify(self.ctx.host, "Pipeline Cancelled", "Pipeline stopped", "warning", 3000)
        return True

    def _record_phase_output(self, state: dict, phase: str, output: str) -> None:
        project_dir = self.ctx.project_dir
        if phase == "expansion":
            state["spec"] = f"{state['spec']}\n\n{output}".strip()
        elif phase == "planning":
            state["plan"] = output
            for index, (_, item) in enumerate(parse_checklist(output), start=1):
                add_task_progress(project_dir, state, f"T{index:03d}", item)
        elif phase == "execution":
            for entry in state.get("progress", []):
                if entry["status"] not in ("completed", "failed"):
                    update_task_progress(project_dir, state, entry["task_id"], "completed")

    def _track_execution(self, state: dict, output: str) -> None:
        done = {item for checked, item in parse_checklist(output) if checked}
        for entry in state.get("progress", []):
            if entry["description"] in done and entry["status"] != "completed":
                update_task_progress(self.ctx.project_dir, state, entry["task_id"], "completed")

    async def claim_idle(self, session_id: str) -> bool:
        state = self.get_state()
        if not state or state.get("session_id") != session_id:
            return False

        project_dir = self.ctx.project_dir
        phase = state["phase"]
        output = await self.latest_assistant_text(session_id)

        if phase == "execution":
            self._track_execution(state, output)

        if detect_phase_signal(phase, output):
            self._record_phase_output(state, phase, output)
            next_phase = get_next_pipeline_phase(phase)
            if next_phase == "complete":
                mark_pipeline_complete(project_dir, state)
                logger.info(f"Pipeline complete for {session_id}")
                await notify(self.ctx.host, "Pipeline Complete", "All phases finished", "success", 5000)
                return True

            update_pipeline_phase(project_dir, state, next_phase)
            logger.info(f"Pipeline for {session_id} advanced {phase} -> {next_phase}")
            await notify(self.ctx.host, "Pipeline", f"Phase: {next_phase}", "info", 3000)
            await self.inject(session_id, build_phase_prompt(state))
            return True

        state["phase_retries"] = state.get("phase_retries", 0) + 1
        max_retries = int(self.settings["max_phase_retries"])
        if state["phase_retries"] > max_retries:
            state["active"] = False
            state["completion_reason"] = f"stalled in {phase}"
            write_pipeline_state(project_dir, state)
            logger.info(f"Pipeline for {session_id} stalled in {phase} after {max_retries} retries")
            await notify(
                self.ctx.host, "Pipeline Stopped",
                f"No progress in {phase} after {max_retries} retries", "warning", 5000
            )
            return True

        write_pipeline_state(project_dir, state)
        await self.inject(session_id, build_phase_prompt(state))
        return True

    def on_session_deleted(self, session_id: str) -> None:
        state = self.get_state()
        if state and state.get("session_id") == session_id:
            clear_pipeline_state(self.ctx.project_dir)
