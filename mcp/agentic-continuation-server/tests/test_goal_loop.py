"""
Tests for goal_loop.py - iteration accounting, completion markers and review.

Run with: pytest tests/test_goal_loop.py -v
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from agentic_continuation.backlog import read_backlog, read_progress
from agentic_continuation.continuation import ContinuationContext
from agentic_continuation.goal_loop import (
    GoalLoopDriver,
    detect_completion_marker,
    parse_verdict,
)
from agentic_continuation.modes import Mode, ModeRegistry
from agentic_continuation.pause_state import PauseRegistry
from agentic_continuation.state_tools import read_goal_loop_states, read_verification_state


class TestCompletionMarker:
    def test_default_marker_anywhere_in_text(self):
        assert detect_completion_marker("All done.\n<promise>TASK_COMPLETE</promise>\nBye")

    def test_legacy_marker_still_honored(self):
        assert detect_completion_marker("<promise>DONE</promise>")

    def test_near_miss_not_detected(self):
        assert not detect_completion_marker("<promise>TASK_COMPLETE")
        assert not detect_completion_marker("TASK_COMPLETE")
        assert not detect_completion_marker(None)

    def test_custom_marker(self):
        assert detect_completion_marker("SHIPPED!", marker="SHIPPED!")
        assert not detect_completion_marker("<promise>TASK_COMPLETE</promise>", marker="SHIPPED!")


class TestParseVerdict:
    def test_approved(self):
        assert parse_verdict("Looks good. <verdict>APPROVED</verdict>") == (True, "Looks good.")

    def test_rejected_with_feedback(self):
        approved, feedback = parse_verdict("<verdict>rejected</verdict> tests are missing")
        assert approved is False
        assert feedback == "tests are missing"

    def test_no_verdict(self):
        assert parse_verdict("still thinking") is None


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_seeds_backlog_and_state(self, ctx, project_dir, host):
        driver = GoalLoopDriver(ctx)
        assert await driver.start("s1", "migrate to postgres") is True
        assert driver.is_active("s1")
        assert ctx.modes.get_mode("s1") == Mode.GOAL_LOOP
        assert read_backlog(project_dir)["user_stories"][0]["description"] == "migrate to postgres"
        assert "Task: migrate to postgres" in read_progress(project_dir)
        assert read_goal_loop_states(project_dir)["s1"]["iteration"] == 0
        assert "Goal Loop Started" in host.toast_titles()

    @pytest.mark.asyncio
    async def test_start_reseeds_backlog_for_new_task(self, ctx, project_dir):
        driver = GoalLoopDriver(ctx)
        await driver.start("s1", "old task")
        await driver.cancel("s1")
        await driver.start("s1", "new task")
        assert read_backlog(project_dir)["description"] == "new task"
        assert "Task: new task" in read_progress(project_dir)

    @pytest.mark.asyncio
    async def test_start_resumes_same_task(self, ctx, project_dir):
        driver = GoalLoopDriver(ctx)
        await driver.start("s1", "same task")
        await driver.claim_idle("s1")
        await driver.cancel("s1")
        await driver.start("s1", "same task")
        assert "## Iteration 1" in read_progress(project_dir)

    @pytest.mark.asyncio
    async def test_start_twice_refused(self, ctx):
        driver = GoalLoopDriver(ctx)
        await driver.start("s1", "task")
        assert await driver.start("s1", "another") is False
        assert driver.get_state("s1")["prompt"] == "task"

    @pytest.mark.asyncio
    async def test_disabled_feature(self, ctx):
        ctx.config["disabled_features"] = ["goal-loop"]
        assert await GoalLoopDriver(ctx).start("s1", "task") is False

    @pytest.mark.asyncio
    async def test_intense_mode(self, ctx):
        driver = GoalLoopDriver(ctx)
        await driver.start("s1", "task", intense=True)
        assert ctx.modes.get_mode("s1") == Mode.GOAL_LOOP_INTENSE

    @pytest.mark.asyncio
    async def test_cancel(self, ctx, project_dir, host):
        driver = GoalLoopDriver(ctx)
        await driver.start("s1", "task")
        assert await driver.cancel("s1") is True
        assert not driver.is_active("s1")
        assert ctx.modes.get_mode("s1") == Mode.NONE
        assert read_goal_loop_states(project_dir) == {}
        assert "Goal Loop Cancelled" in host.toast_titles()
        assert await driver.cancel("s1") is False

    @pytest.mark.asyncio
    async def test_restore_after_restart(self, ctx, host, project_dir, config):
        await GoalLoopDriver(ctx).start("s1", "task", intense=True)

        fresh = ContinuationContext(host, project_dir, config, PauseRegistry(), ModeRegistry())
        driver = GoalLoopDriver(fresh)
        assert driver.restore() == 1
        assert driver.is_active("s1")
        assert fresh.modes.get_mode("s1") == Mode.GOAL_LOOP_INTENSE


class TestIdleTicks:
    @pytest.mark.asyncio
    async def test_each_tick_increments_once_and_injects(self, ctx, host):
        driver = GoalLoopDriver(ctx)
        await driver.start("s1", "ship it", max_iterations=5)

        assert await driver.claim_idle("s1") is True
        assert driver.get_state("s1")["iteration"] == 1
        prompt = host.prompts_for("s1")[0]
        assert prompt.startswith("[continuation:goal-loop]\n[Goal Loop - Iteration 1/5]")
        assert "Original task: ship it" in prompt
        assert "<promise>TASK_COMPLETE</promise>" in prompt

        await driver.claim_idle("s1")
        assert driver.get_state("s1")["iteration"] == 2

    @pytest.mark.asyncio
    async def test_stops_at_max_without_injection(self, ctx, host, project_dir):
        driver = GoalLoopDriver(ctx)
        await driver.start("s1", "ship it", max_iterations=3)

        await driver.claim_idle("s1")
        await driver.claim_idle("s1")
        assert await driver.claim_idle("s1") is True
        assert len(host.prompts_for("s1")) == 2
        assert not driver.is_active("s1")
        assert read_goal_loop_states(project_dir) == {}
        assert "Goal Loop Stopped" in host.toast_titles()

    @pytest.mark.asyncio
    async def test_inactive_session_not_claimed(self, ctx, host):
        assert await GoalLoopDriver(ctx).claim_idle("s1") is False
        assert host.prompts == []

    @pytest.mark.asyncio
    async def test_progress_entry_per_tick(self, ctx, project_dir):
        driver = GoalLoopDriver(ctx)
        await driver.start("s1", "task")
        await driver.claim_idle("s1")
        assert "## Iteration 1" in read_progress(project_dir)


class TestCompletion:
    @pytest.mark.asyncio
    async def test_marker_completes_loop(self, ctx, host, project_dir):
        driver = GoalLoopDriver(ctx)
        await driver.start("s1", "task")
        await driver.claim_idle("s1")

        await driver.on_assistant_message("s1", "Finished. <promise>TASK_COMPLETE</promise>")
        assert not driver.is_active("s1")
        assert all(s["passes"] for s in read_backlog(project_dir)["user_stories"])
        assert "Goal Loop Completed" in host.toast_titles()

        assert await driver.claim_idle("s1") is False
        assert len(host.prompts_for("s1")) == 1

    @pytest.mark.asyncio
    async def test_near_miss_keeps_looping(self, ctx):
        driver = GoalLoopDriver(ctx)
        await driver.start("s1", "task")
        await driver.on_assistant_message("s1", "I think the TASK_COMPLETE now")
        assert driver.is_active("s1")


class TestVerification:
    @pytest.mark.asyncio
    async def test_rejection_then_approval(self, ctx, host, project_dir):
        ctx.config["goal_loop"]["require_verification"] = True
        driver = GoalLoopDriver(ctx)
        await driver.start("s1", "task")

        await driver.on_assistant_message("s1", "<promise>TASK_COMPLETE</promise>")
        assert driver.is_active("s1")
        assert read_verification_state(project_dir)["pending"] is True

        await driver.claim_idle("s1")
        assert "[Goal Loop - Completion Review]" in host.prompts_for("s1")[-1]

        await driver.on_assistant_message("s1", "<verdict>REJECTED</verdict> no tests yet")
        assert driver.is_active("s1")
        assert driver.get_state("s1")["last_feedback"] == "no tests yet"

        await driver.claim_idle("s1")
        assert "no tests yet" in host.prompts_for("s1")[-1]

        await driver.on_assistant_message("s1", "<promise>TASK_COMPLETE</promise>")
        await driver.on_assistant_message("s1", "<verdict>APPROVED</verdict>")
        assert not driver.is_active("s1")
        assert read_verification_state(project_dir) is None

    @pytest.mark.asyncio
    async def test_exhausted_attempts_skip_review(self, ctx):
        ctx.config["goal_loop"]["require_verification"] = True
        ctx.config["goal_loop"]["max_verification_attempts"] = 1
        driver = GoalLoopDriver(ctx)
        await driver.start("s1", "task")

        await driver.on_assistant_message("s1", "<promise>TASK_COMPLETE</promise>")
        await driver.on_assistant_message("s1", "<verdict>REJECTED</verdict>")
        assert driver.get_state("s1")["verification_disabled"] is True

        await driver.on_assistant_message("s1", "<promise>TASK_COMPLETE</promise>")
        assert not driver.is_active("s1")


class TestSessionDeleted:
    @pytest.mark.asyncio
    async def test_state_purged(self, ctx, project_dir):
        driver = GoalLoopDriver(ctx)
        await driver.start("s1", "task")
        driver.on_session_deleted("s1")
        assert driver.get_state("s1") is None
        assert read_goal_loop_states(project_dir) == {}
