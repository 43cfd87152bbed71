"""
Pause and Recovery Coordination

Tracks, per session, whether the user interrupted the agent or a recovery is in
flight, so continuation drivers know when to stay quiet. The idle event for an
aborted turn can arrive just after the abort itself, so injection stays
suppressed for a short grace window after every interruption.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from .host import HostClient, HostError
from .keyword_detector import mark_synthetic

logger = logging.getLogger(__name__)


RECOVERABLE_ERRORS = {"MessageAbortedError", "AbortError", "ThinkingBlockError", "EmptyMessageError"}
ABORT_ERRORS = {"MessageAbortedError", "AbortError"}
PAUSE_REASONS = ["user_abort", "error", "explicit"]

RECOVERY_PROMPT = "continue"


@dataclass
class PauseState:
    is_paused: bool
    reason: str
    paused_at: datetime = field(default_factory=datetime.now)


class PauseRegistry:
    def __init__(self, grace_seconds: float = 3.0, clock: Callable[[], float] = time.monotonic):
        self.grace_seconds = grace_seconds
        self._clock = clock
        self._paused: dict[str, PauseState] = {}
        self._recovering: set[str] = set()
        self._interrupted_at: dict[str, float] = {}

    def pause(self, session_id: str, reason: str = "explicit") -> None:
        if reason not in PAUSE_REASONS:
            raise ValueError(f"Invalid pause reason '{reason}'. Must be one of: {', '.join(PAUSE_REASONS)}")
        self._paused[session_id] = PauseState(is_paused=True, reason=reason)
        logger.info(f"Session {session_id} paused ({reason})")

    def resume(self, session_id: str) -> bool:
        if self._paused.pop(session_id, None) is None:
            return False
        logger.info(f"Session {session_id} resumed")
        return True

    def is_paused(self, session_id: str) -> bool:
        state = self._paused.get(session_id)
        return bool(state and state.is_paused)

    def get_state(self, session_id: str) -> Optional[PauseState]:
        return self._paused.get(session_id)

    def paused_sessions(self) -> list[str]:
        return list(self._paused)

    def mark_recovering(self, session_id: str) -> None:
        self._recovering.add(session_id)

    def mark_recovery_complete(self, session_id: str) -> None:
        self._recovering.discard(session_id)

    def is_recovering(self, session_id: str) -> bool:
        return session_id in self._recovering

    def record_interruption(self, session_id: str) -> None:
        self._interrupted_at[session_id] = self._clock()

    def clear_interruption(self, session_id: str) -> None:
        self._interrupted_at.pop(session_id, None)

    def consume_grace_window(self, session_id: str) -> bool:
        """True if an interruption happened within the grace window. Clears the mark either way."""
        interrupted_at = self._interrupted_at.pop(session_id, None)
        if interrupted_at is None:
            return False
        return self._clock() - interrupted_at < self.grace_seconds

    def clear(self, session_id: str) -> None:
        self._paused.pop(session_id, None)
        self._recovering.discard(session_id)
        self._interrupted_at.pop(session_id, None)


def is_recoverable_error(error_name: Optional[str]) -> bool:
    return error_name in RECOVERABLE_ERRORS


class SessionRecovery:
    """Turns recoverable session errors into a pause or a resume attempt."""

    def __init__(self, host: HostClient, pauses: PauseRegistry):
        self.host = host
        self.pauses = pauses

    async def handle_error(self, session_id: str, error_name: Optional[str]) -> bool:
        """Returns True only when a recovery prompt was delivered."""
        self.pauses.record_interruption(session_id)

        if error_name in ABORT_ERRORS:
            self.pauses.pause(session_id, "user_abort")
            return False

        if not is_recoverable_error(error_name):
            self.pauses.pause(session_id, "error")
            return False

        logger.info(f"Attempting recovery of session {session_id} after {error_name}")
        self.pauses.mark_recovering(session_id)
        try:
            await self.host.submit_prompt(session_id, mark_synthetic("recovery", RECOVERY_PROMPT))
            logger.info(f"Session {session_id} recovered")
            return True
        except HostError as e:
            logger.warning(f"Recovery of session {session_id} failed: {e}")
            self.pauses.pause(session_id, "error")
            return False
        finally:
            self.pauses.mark_recovery_complete(session_id)
