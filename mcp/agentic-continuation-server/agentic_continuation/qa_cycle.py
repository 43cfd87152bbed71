"""
QA Cycle Driver

Loops build -> lint -> test until everything passes or the iteration cap is
reached. Results come from `BUILD: PASS|FAIL`, `LINT: ...` and `TEST: ...`
lines in the assistant's output, or from the qa_cycle_report tool. A check
that never ran counts as passing.
"""

import logging
import re
from typing import Optional

from .config_tools import config_get_qa_cycle
from .continuation import ContinuationDriver
from .host import notify
from .state_tools import (
    add_qa_issue,
    clear_qa_cycle_state,
    create_qa_cycle_state,
    is_qa_passing,
    mark_qa_cycle_complete,
    read_qa_cycle_state,
    update_qa_iteration,
    write_qa_cycle_state,
)

logger = logging.getLogger(__name__)


QA_COMPLETE_SIGNAL = "QA_COMPLETE"

RESULT_LINE = re.compile(r"^\s*(BUILD|LINT|TEST)\s*:\s*(PASS|FAIL)\b", re.IGNORECASE | re.MULTILINE)


def parse_qa_results(text: Optional[str]) -> dict[str, str]:
    """Last reported result per check; checks not mentioned are omitted."""
    results = {}
    for check, outcome in RESULT_LINE.findall(text or ""):
        results[check.lower()] = outcome.lower()
    return results


def _format_result(value: Optional[str]) -> str:
    return value.upper() if value else "NOT RUN"


def build_qa_prompt(state: dict, settings: dict) -> str:
    open_issues = [i for i in state.get("issues", []) if not i.get("fixed_at")]
    lines = [
        f"[QA Cycle - Iteration {state['iteration'] + 1}/{state['max_iterations']}]",
        "",
        f"Goal: {state['goal']}",
        "",
        "Run each check and fix what fails:",
        f"1. Build: {settings['build_command']}",
        f"2. Lint: {settings['lint_command']}",
        f"3. Test: {settings['test_command']}",
        "",
        "Current status:",
        f"- Build: {_format_result(state.get('last_build_result'))}",
        f"- Lint: {_format_result(state.get('last_lint_result'))}",
        f"- Test: {_format_result(state.get('last_test_result'))}",
    ]
    if open_issues:
        lines += ["", "Open issues:"]
        for issue in open_issues:
            location = f" ({issue['file']}:{issue['line']})" if issue.get("file") else ""
            lines.append(f"- [{issue['type']}] {issue['message']}{location}")
    lines += [
        "",
        "Report each result on its own line as `BUILD: PASS|FAIL`, `LINT: PASS|FAIL`, `TEST: PASS|FAIL`.",
        f"When ALL pass, output: {QA_COMPLETE_SIGNAL}"
    ]
    return "\n".join(lines)


class QACycleDriver(ContinuationDriver):
    name = "qa-cycle"
    feature = "qa-cycle"

    def __init__(self, ctx):
        super().__init__(ctx)
        self.settings = config_get_qa_cycle(ctx.config)

    def get_state(self) -> Optional[dict]:
        state = read_qa_cycle_state(self.ctx.project_dir)
        return state if state and state.get("active") else None

    def is_active(self, session_id: str) -> bool:
        state = self.get_state()
        return bool(state and state.get("session_id") == session_id)

    async def start(self, session_id: str, goal: str) -> Optional[dict]:
        if not self.enabled:
            logger.info(f"QA cycle disabled, not starting for {session_id}")
            return None
        if self.get_state():
            logger.info("QA cycle already active for this project")
            return None

        state = create_qa_cycle_state(session_id, goal, int(self.settings["max_iterations"]))
        write_qa_cycle_state(self.ctx.project_dir, state)
        logger.info(f"QA cycle started for {session_id}")
        await notify(self.ctx.host, "QA Cycle Started", f"Goal: {goal[:50]}", "success", 3000)
        return state

    async def cancel(self, session_id: str) -> bool:
        if not self.is_active(session_id):
            return False
        clear_qa_cycle_state(self.ctx.project_dir)
        logger.info(f"QA cycle cancelled for {session_id}")
        await notify(self.ctx.host, "QA Cycle Cancelled", "QA cycle stopped", "warning", 3000)
        return True

    def record_report(
        self,
        results: dict[str, Optional[str]],
        issues: Optional[list[dict]] = None
    ) -> dict:
        """Record one iteration reported from outside the conversation."""
        state = self.get_state()
        if state is None:
            return {"success": False, "error": "No active QA cycle"}

        update_qa_iteration(self.ctx.project_dir, state, results)
        for issue in issues or []:
            add_qa_issue(
                self.ctx.project_dir, state,
                issue["type"], issue["message"], issue.get("file"), issue.get("line")
            )
        finished = self._check_finished(state, reported=True)
        return {
            "success": True,
            "iteration": state["iteration"],
            "passing": is_qa_passing(state),
            "complete": finished is not None,
            "completion_reason": finished
        }

    def _check_finished(self, state: dict, reported: bool) -> Optional[str]:
        if reported and is_qa_passing(state):
            mark_qa_cycle_complete(self.ctx.project_dir, state, "passing")
            return "passing"
        if state["iteration"] >= state["max_iterations"]:
            mark_qa_cycle_complete(self.ctx.project_dir, state, "max_iterations")
            return "max_iterations"
        return None

    async def claim_idle(self, session_id: str) -> bool:
        state = self.get_state()
        if not state or state.get("session_id") != session_id:
            return False

        output = await self.latest_assistant_text(session_id)
        results = parse_qa_results(output)
        update_qa_iteration(self.ctx.project_dir, state, results)

        reported = bool(results) or QA_COMPLETE_SIGNAL in output
        finished = self._check_finished(state, reported)
        if finished == "passing":
            logger.info(f"QA cycle passed for {session_id} after {state['iteration']} iterations")
            await notify(
                self.ctx.host, "QA Cycle Complete",
                f"All checks passing after {state['iteration']} iterations", "success", 5000
            )
            return True
        if finished == "max_iterations":
            logger.info(f"QA cycle for {session_id} hit max iterations ({state['max_iterations']})")
            await notify(
                self.ctx.host, "QA Cycle Stopped",
                f"Max iterations ({state['max_iterations']}) reached", "warning", 5000
            )
            return True

        await self.inject(session_id, build_qa_prompt(state, self.settings))
        return True

    def on_session_deleted(self, session_id: str) -> None:
        state = self.get_state()
        if state and state.get("session_id") == session_id:
            clear_qa_cycle_state(self.ctx.project_dir)

