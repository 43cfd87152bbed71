"""
Tests for pipeline.py - phase signals, advancement, retries and completion.

Run with: pytest tests/test_pipeline.py -v
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import assistant_message
from agentic_continuation.pipeline import (
    PipelineDriver,
    build_phase_prompt,
    detect_phase_signal,
    parse_checklist,
)
from agentic_continuation.state_tools import (
    create_pipeline_state,
    read_pipeline_state,
    write_pipeline_state,
)


def reply(host, text):
    host.messages["s1"] = [assistant_message(text)]


class TestSignals:
    @pytest.mark.parametrize("phase,text", [
        ("expansion", "EXPANSION_COMPLETE"),
        ("expansion", "The spec is now complete."),
        ("planning", "Plan approved by the team"),
        ("execution", "Implementation complete"),
        ("qa", "all 42 tests pass"),
        ("validation", "PIPELINE_COMPLETE"),
        ("qa", "qa_complete"),
    ])
    def test_signals(self, phase, text):
        assert detect_phase_signal(phase, text)

    def test_signal_belongs_to_phase(self):
        assert not detect_phase_signal("planning", "EXPANSION_COMPLETE")
        assert not detect_phase_signal("expansion", "")

    def test_checklist(self):
        text = "- [ ] add model\n* [x] add view\nnot a task"
        assert parse_checklist(text) == [(False, "add model"), (True, "add view")]

    def test_phase_prompt_header(self):
        state = create_pipeline_state("s1", "todo app")
        prompt = build_phase_prompt(state)
        assert prompt.startswith("[Pipeline - Phase 1/5: expansion]")
        assert "EXPANSION_COMPLETE" in prompt
        assert prompt.endswith("Task: todo app")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_cancel(self, ctx, host, project_dir):
        driver = PipelineDriver(ctx)
        state = await driver.start("s1", "todo app")
        assert state["phase"] == "expansion"
        assert driver.is_active("s1")
        assert not driver.is_active("s2")
        assert "Pipeline Started" in host.toast_titles()

        assert await driver.cancel("s1") is True
        assert read_pipeline_state(project_dir) is None
        assert await driver.cancel("s1") is False

    @pytest.mark.asyncio
    async def test_one_pipeline_per_project(self, ctx):
        driver = PipelineDriver(ctx)
        await driver.start("s1", "a")
        assert await driver.start("s2", "b") is None

    @pytest.mark.asyncio
    async def test_unknown_phase_reads_inactive(self, ctx, project_dir):
        state = create_pipeline_state("s1", "x")
        state["phase"] = "deploy"
        write_pipeline_state(project_dir, state)
        assert PipelineDriver(ctx).get_state() is None


class TestIdleTicks:
    @pytest.mark.asyncio
    async def test_advance_on_signal(self, ctx, host, project_dir):
        driver = PipelineDriver(ctx)
        await driver.start("s1", "todo app")
        reply(host, "Requirements: ...\nEXPANSION_COMPLETE")

        assert await driver.claim_idle("s1") is True
        state = read_pipeline_state(project_dir)
        assert state["phase"] == "planning"
        assert "Requirements" in state["spec"]
        assert "[Pipeline - Phase 2/5: planning]" in host.prompts_for("s1")[-1]

    @pytest.mark.asyncio
    async def test_plan_tasks_tracked_through_execution(self, ctx, host, project_dir):
        driver = PipelineDriver(ctx)
        await driver.start("s1", "todo app")
        reply(host, "EXPANSION_COMPLETE")
        await driver.claim_idle("s1")
        reply(host, "- [ ] add model\n- [ ] add view\nPLANNING_COMPLETE")
        await driver.claim_idle("s1")

        state = read_pipeline_state(project_dir)
        assert state["phase"] == "execution"
        assert [t["task_id"] for t in state["progress"]] == ["T001", "T002"]
        assert "- [ ] add view" in host.prompts_for("s1")[-1]

        reply(host, "- [x] add model")
        await driver.claim_idle("s1")
        statuses = {t["description"]: t["status"] for t in read_pipeline_state(project_dir)["progress"]}
        assert statuses == {"add model": "completed", "add view": "pending"}

    @pytest.mark.asyncio
    async def test_repeat_phase_without_signal(self, ctx, host, project_dir):
        driver = PipelineDriver(ctx)
        await driver.start("s1", "todo app")
        reply(host, "still thinking")
        await driver.claim_idle("s1")
        state = read_pipeline_state(project_dir)
        assert state["phase"] == "expansion"
        assert state["phase_retries"] == 1
        assert "[Pipeline - Phase 1/5: expansion]" in host.prompts_for("s1")[-1]

    @pytest.mark.asyncio
    async def test_stalls_after_max_retries(self, ctx, host, project_dir):
        driver = PipelineDriver(ctx)
        await driver.start("s1", "todo app")
        reply(host, "still thinking")
        for _ in range(4):
            assert await driver.claim_idle("s1") is True

        assert len(host.prompts_for("s1")) == 3
        state = read_pipeline_state(project_dir)
        assert state["active"] is False
        assert state["completion_reason"] == "stalled in expansion"
        assert "Pipeline Stopped" in host.toast_titles()
        assert await driver.claim_idle("s1") is False

    @pytest.mark.asyncio
    async def test_completion(self, ctx, host, project_dir):
        state = create_pipeline_state("s1", "todo app")
        state["phase"] = "validation"
        write_pipeline_state(project_dir, state)
        reply(host, "PIPELINE_COMPLETE")

        assert await PipelineDriver(ctx).claim_idle("s1") is True
        state = read_pipeline_state(project_dir)
        assert state["phase"] == "complete"
        assert state["active"] is False
        assert host.prompts == []
        assert "Pipeline Complete" in host.toast_titles()

    @pytest.mark.asyncio
    async def test_other_session_not_claimed(self, ctx, host):
        driver = PipelineDriver(ctx)
        await driver.start("s1", "todo app")
        assert await driver.claim_idle("s2") is False

    @pytest.mark.asyncio
    async def test_session_deleted_clears(self, ctx, project_dir):
        driver = PipelineDriver(ctx)
        await driver.start("s1", "todo app")
        driver.on_session_deleted("s1")
        assert read_pipeline_state(project_dir) is None
