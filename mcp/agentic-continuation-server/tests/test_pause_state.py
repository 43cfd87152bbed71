"""
Tests for pause_state.py - pause registry, grace window and session recovery.

Run with: pytest tests/test_pause_state.py -v
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import FailingHost
from agentic_continuation.pause_state import (
    PauseRegistry,
    SessionRecovery,
    is_recoverable_error,
)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestPauseRegistry:
    def test_pause_and_resume(self):
        pauses = PauseRegistry()
        pauses.pause("s1", "user_abort")
        assert pauses.is_paused("s1")
        assert pauses.get_state("s1").reason == "user_abort"
        assert pauses.paused_sessions() == ["s1"]
        assert pauses.resume("s1") is True
        assert not pauses.is_paused("s1")
        assert pauses.resume("s1") is False

    def test_invalid_reason(self):
        with pytest.raises(ValueError, match="Invalid pause reason"):
            PauseRegistry().pause("s1", "bored")

    def test_recovering_flag(self):
        pauses = PauseRegistry()
        pauses.mark_recovering("s1")
        assert pauses.is_recovering("s1")
        pauses.mark_recovery_complete("s1")
        assert not pauses.is_recovering("s1")

    def test_grace_window(self):
        clock = FakeClock()
        pauses = PauseRegistry(grace_seconds=3.0, clock=clock)
        pauses.record_interruption("s1")
        clock.now += 1.0
        assert pauses.consume_grace_window("s1") is True
        # consumed: the next idle is not suppressed
        assert pauses.consume_grace_window("s1") is False

    def test_grace_window_expired(self):
        clock = FakeClock()
        pauses = PauseRegistry(grace_seconds=3.0, clock=clock)
        pauses.record_interruption("s1")
        clock.now += 5.0
        assert pauses.consume_grace_window("s1") is False

    def test_clear_purges_everything(self):
        pauses = PauseRegistry()
        pauses.pause("s1")
        pauses.mark_recovering("s1")
        pauses.record_interruption("s1")
        pauses.clear("s1")
        assert not pauses.is_paused("s1")
        assert not pauses.is_recovering("s1")
        assert pauses.consume_grace_window("s1") is False


class TestSessionRecovery:
    def test_recoverable_errors(self):
        assert is_recoverable_error("EmptyMessageError")
        assert is_recoverable_error("MessageAbortedError")
        assert not is_recoverable_error("RateLimitError")
        assert not is_recoverable_error(None)

    @pytest.mark.asyncio
    async def test_abort_pauses_without_prompt(self, host):
        pauses = PauseRegistry()
        recovered = await SessionRecovery(host, pauses).handle_error("s1", "MessageAbortedError")
        assert recovered is False
        assert pauses.get_state("s1").reason == "user_abort"
        assert host.prompts == []

    @pytest.mark.asyncio
    async def test_recoverable_error_sends_continue(self, host):
        pauses = PauseRegistry()
        recovered = await SessionRecovery(host, pauses).handle_error("s1", "ThinkingBlockError")
        assert recovered is True
        assert host.prompts_for("s1") == ["[continuation:recovery]\ncontinue"]
        assert not pauses.is_recovering("s1")
        assert not pauses.is_paused("s1")

    @pytest.mark.asyncio
    async def test_unrecoverable_error_pauses(self, host):
        pauses = PauseRegistry()
        assert await SessionRecovery(host, pauses).handle_error("s1", "RateLimitError") is False
        assert pauses.get_state("s1").reason == "error"
        assert host.prompts == []

    @pytest.mark.asyncio
    async def test_failed_recovery_pauses_and_clears_flag(self):
        host = FailingHost()
        pauses = PauseRegistry()
        assert await SessionRecovery(host, pauses).handle_error("s1", "EmptyMessageError") is False
        assert pauses.get_state("s1").reason == "error"
        assert not pauses.is_recovering("s1")
