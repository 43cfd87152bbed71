"""
State Management Tools for Agentic Continuation Server

Persists per-project driver state as JSON documents under the project-local
`.omc/` directory. Each document is guarded by a FileLock so the host can run
several plugin instances against the same project. A missing or unreadable
document always reads back as None ("inactive"), never as an error.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from filelock import FileLock

logger = logging.getLogger(__name__)


STATE_DIR_NAME = ".omc"

PIPELINE_STATE_FILE = "pipeline-state.json"
GOAL_LOOP_STATE_FILE = "goal-loop-state.json"
QA_CYCLE_STATE_FILE = "qa-cycle-state.json"
WORK_INTENSITY_STATE_FILE = "work-intensity-state.json"
VERIFICATION_STATE_FILE = "verification-state.json"
AUDIT_LOG_FILE = "logs/delegation-audit.jsonl"

PIPELINE_PHASES = ["expansion", "planning", "execution", "qa", "validation", "complete"]
TASK_PROGRESS_STATUSES = ["pending", "in_progress", "completed", "failed"]
QA_CHECKS = ["build", "lint", "test"]
QA_RESULTS = ["pass", "fail"]


def get_state_dir(project_dir: str) -> Path:
    return Path(project_dir) / STATE_DIR_NAME


def _document_path(project_dir: str, name: str) -> Path:
    return get_state_dir(project_dir) / name


def _now() -> str:
    return datetime.now().isoformat()


def read_document(project_dir: str, name: str) -> Optional[dict]:
    path = _document_path(project_dir, name)
    if not path.exists():
        return None

    lock_file = path.with_name(path.name + ".lock")
    try:
        with FileLock(str(lock_file), timeout=5):
            with open(path) as f:
                data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Treating unreadable state document {path} as absent: {e}")
        return None

    if not isinstance(data, dict):
        logger.warning(f"Treating state document {path} as absent: not a JSON object")
        return None
    return data


def write_document(project_dir: str, name: str, data: dict) -> None:
    path = _document_path(project_dir, name)
    path.parent.mkdir(parents=True, exist_ok=True)
    data["updated_at"] = _now()
    lock_file = path.with_name(path.name + ".lock")
    with FileLock(str(lock_file), timeout=5):
        with open(path, "w") as f:
            json.dump(data, f, indent=2)


def clear_document(project_dir: str, name: str) -> bool:
    path = _document_path(project_dir, name)
    if not path.exists():
        return False
    lock_file = path.with_name(path.name + ".lock")
    with FileLock(str(lock_file), timeout=5):
        path.unlink(missing_ok=True)
    return True


def append_jsonl(project_dir: str, name: str, entry: dict) -> None:
    path = _document_path(project_dir, name)
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_file = path.with_name(path.name + ".lock")
    with FileLock(str(lock_file), timeout=5):
        with open(path, "a") as f:
            f.write(json.dumps(entry) + "\n")


def read_jsonl(project_dir: str, name: str) -> list[dict]:
    path = _document_path(project_dir, name)
    if not path.exists():
        return []
    entries = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug(f"Skipping malformed line in {path}")
    return entries


# ============================================================================
# Pipeline
# ============================================================================

def create_pipeline_state(session_id: str, task: str = "") -> dict[str, Any]:
    now = _now()
    return {
        "active": True,
        "session_id": session_id,
        "phase": PIPELINE_PHASES[0],
        "spec": task,
        "plan": "",
        "progress": [],
        "phase_retries": 0,
        "started_at": now,
        "completed_at": None,
        "last_activity_at": now
    }


def read_pipeline_state(project_dir: str) -> Optional[dict]:
    return read_document(project_dir, PIPELINE_STATE_FILE)


def write_pipeline_state(project_dir: str, state: dict) -> None:
    write_document(project_dir, PIPELINE_STATE_FILE, state)


def clear_pipeline_state(project_dir: str) -> bool:
    return clear_document(project_dir, PIPELINE_STATE_FILE)


def get_next_pipeline_phase(phase: str) -> str:
    idx = PIPELINE_PHASES.index(phase)
    return PIPELINE_PHASES[min(idx + 1, len(PIPELINE_PHASES) - 1)]


def update_pipeline_phase(project_dir: str, state: dict, phase: str) -> None:
    if phase not in PIPELINE_PHASES:
        raise ValueError(f"Invalid pipeline phase: {phase}")
    state["phase"] = phase
    state["phase_retries"] = 0
    state["last_activity_at"] = _now()
    write_pipeline_state(project_dir, state)


def add_task_progress(project_dir: str, state: dict, task_id: str, description: str) -> dict:
    entry = {
        "task_id": task_id,
        "description": description,
        "status": "pending",
        "started_at": None,
        "completed_at": None,
        "error": None
    }
    state.setdefault("progress", []).append(entry)
    state["last_activity_at"] = _now()
    write_pipeline_state(project_dir, state)
    return entry


def update_task_progress(
    project_dir: str,
    state: dict,
    task_id: str,
    status: str,
    error: Optional[str] = None
) -> bool:
    if status not in TASK_PROGRESS_STATUSES:
        raise ValueError(f"Invalid task status: {status}")

    entry = next((t for t in state.get("progress", []) if t["task_id"] == task_id), None)
    if entry is None:
        return False

    entry["status"] = status
    if status == "in_progress" and not entry.get("started_at"):
        entry["started_at"] = _now()
    if status in ("completed", "failed") and not entry.get("completed_at"):
        entry["completed_at"] = _now()
    if error:
        entry["error"] = error
    state["last_activity_at"] = _now()
    write_pipeline_state(project_dir, state)
    return True


def mark_pipeline_complete(project_dir: str, state: dict) -> None:
    now = _now()
    state["active"] = False
    state["phase"] = "complete"
    state["completed_at"] = now
    state["last_activity_at"] = now
    write_pipeline_state(project_dir, state)


# ============================================================================
# QA cycle
# ============================================================================

def create_qa_cycle_state(session_id: str, goal: str, max_iterations: int = 10) -> dict[str, Any]:
    now = _now()
    return {
        "active": True,
        "session_id": session_id,
        "goal": goal,
        "iteration": 0,
        "max_iterations": max_iterations,
        "last_build_result": None,
        "last_lint_result": None,
        "last_test_result": None,
        "issues": [],
        "started_at": now,
        "completed_at": None,
        "completion_reason": None,
        "last_activity_at": now
    }


def read_qa_cycle_state(project_dir: str) -> Optional[dict]:
    return read_document(project_dir, QA_CYCLE_STATE_FILE)


def write_qa_cycle_state(project_dir: str, state: dict) -> None:
    write_document(project_dir, QA_CYCLE_STATE_FILE, state)


def clear_qa_cycle_state(project_dir: str) -> bool:
    return clear_document(project_dir, QA_CYCLE_STATE_FILE)


def update_qa_iteration(project_dir: str, state: dict, results: dict[str, Optional[str]]) -> None:
    """Record one QA cycle. Checks missing from `results` keep their last value."""
    state["iteration"] = state.get("iteration", 0) + 1
    state["last_activity_at"] = _now()

    for check in QA_CHECKS:
        value = results.get(check)
        if value is None:
            continue
        if value not in QA_RESULTS:
            raise ValueError(f"Invalid {check} result '{value}'. Must be one of: {', '.join(QA_RESULTS)}")
        state[f"last_{check}_result"] = value

    write_qa_cycle_state(project_dir, state)


def add_qa_issue(
    project_dir: str,
    state: dict,
    issue_type: str,
    message: str,
    file: Optional[str] = None,
    line: Optional[int] = None
) -> dict:
    if issue_type not in QA_CHECKS:
        raise ValueError(f"Invalid issue type '{issue_type}'. Must be one of: {', '.join(QA_CHECKS)}")
    issue = {"type": issue_type, "message": message, "file": file, "line": line, "fixed_at": None}
    state.setdefault("issues", []).append(issue)
    state["last_activity_at"] = _now()
    write_qa_cycle_state(project_dir, state)
    return issue


def mark_issue_fixed(project_dir: str, state: dict, issue_index: int) -> bool:
    issues = state.get("issues", [])
    if not 0 <= issue_index < len(issues):
        return False
    issues[issue_index]["fixed_at"] = _now()
    state["last_activity_at"] = _now()
    write_qa_cycle_state(project_dir, state)
    return True


def mark_qa_cycle_complete(project_dir: str, state: dict, reason: str) -> None:
    now = _now()
    state["active"] = False
    state["completed_at"] = now
    state["completion_reason"] = reason
    state["last_activity_at"] = now
    write_qa_cycle_state(project_dir, state)


def is_qa_passing(state: dict) -> bool:
    """A check that never ran does not count as failing."""
    return all(state.get(f"last_{check}_result") in ("pass", None) for check in QA_CHECKS)


# ============================================================================
# Work intensity
# ============================================================================

def create_work_intensity_state(session_id: str, original_prompt: str) -> dict[str, Any]:
    now = _now()
    return {
        "active": True,
        "session_id": session_id,
        "original_prompt": original_prompt,
        "reinforcement_count": 0,
        "started_at": now,
        "last_checked_at": now
    }


def read_work_intensity_state(project_dir: str) -> Optional[dict]:
    return read_document(project_dir, WORK_INTENSITY_STATE_FILE)


def write_work_intensity_state(project_dir: str, state: dict) -> None:
    write_document(project_dir, WORK_INTENSITY_STATE_FILE, state)


def clear_work_intensity_state(project_dir: str) -> bool:
    return clear_document(project_dir, WORK_INTENSITY_STATE_FILE)


def record_work_intensity_reinforcement(project_dir: str, state: dict) -> None:
    state["reinforcement_count"] = state.get("reinforcement_count", 0) + 1
    state["last_checked_at"] = _now()
    write_work_intensity_state(project_dir, state)


# ============================================================================
# Verification
# ============================================================================

def create_verification_state(
    session_id: str,
    original_task: str,
    completion_claim: str,
    max_attempts: int = 3
) -> dict[str, Any]:
    return {
        "pending": True,
        "session_id": session_id,
        "original_task": original_task,
        "completion_claim": completion_claim,
        "verification_attempts": 0,
        "max_verification_attempts": max_attempts,
        "reviewer_feedback": None,
        "last_attempt_at": None
    }


def read_verification_state(project_dir: str) -> Optional[dict]:
    return read_document(project_dir, VERIFICATION_STATE_FILE)


def write_verification_state(project_dir: str, state: dict) -> None:
    write_document(project_dir, VERIFICATION_STATE_FILE, state)


def clear_verification_state(project_dir: str) -> bool:
    return clear_document(project_dir, VERIFICATION_STATE_FILE)


def update_verification_attempt(
    project_dir: str,
    state: dict,
    feedback: Optional[str],
    approved: bool
) -> None:
    state["verification_attempts"] = state.get("verification_attempts", 0) + 1
    state["reviewer_feedback"] = feedback
    state["last_attempt_at"] = _now()
    state["pending"] = False
    state["approved"] = approved
    write_verification_state(project_dir, state)


# ============================================================================
# Goal loop
# ============================================================================

def read_goal_loop_states(project_dir: str) -> dict[str, dict]:
    document = read_document(project_dir, GOAL_LOOP_STATE_FILE)
    if not document:
        return {}
    sessions = document.get("sessions")
    return sessions if isinstance(sessions, dict) else {}


def write_goal_loop_state(project_dir: str, state: dict) -> None:
    sessions = read_goal_loop_states(project_dir)
    state["last_activity_at"] = _now()
    sessions[state["session_id"]] = state
    write_document(project_dir, GOAL_LOOP_STATE_FILE, {"sessions": sessions})


def remove_goal_loop_state(project_dir: str, session_id: str) -> bool:
    sessions = read_goal_loop_states(project_dir)
    if session_id not in sessions:
        return False
    del sessions[session_id]
    write_document(project_dir, GOAL_LOOP_STATE_FILE, {"sessions": sessions})
    return True


# ============================================================================
# Delegation audit
# ============================================================================

def write_audit_entry(project_dir: str, entry: dict) -> None:
    entry.setdefault("timestamp", _now())
    append_jsonl(project_dir, AUDIT_LOG_FILE, entry)


def read_audit_entries(project_dir: str) -> list[dict]:
    return read_jsonl(project_dir, AUDIT_LOG_FILE)


def list_state_documents(project_dir: str) -> dict[str, Any]:
    """Snapshot of every persisted document, None where absent."""
    return {
        "pipeline": read_pipeline_state(project_dir),
        "goal_loop": read_goal_loop_states(project_dir),
        "qa_cycle": read_qa_cycle_state(project_dir),
        "work_intensity": read_work_intensity_state(project_dir),
        "verification": read_verification_state(project_dir),
        "state_dir": str(get_state_dir(project_dir))
    }
