"""
Backlog and Progress Log for the Goal Loop

The backlog is a JSON document of ordered user stories; the progress log is a
plain-text file the goal loop appends to once per iteration. Both live under
the project `.omc/` directory and survive restarts.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from filelock import FileLock

from .state_tools import get_state_dir, read_document, write_document

logger = logging.getLogger(__name__)


BACKLOG_FILE = "backlog.json"
PROGRESS_FILE = "progress.txt"
ITERATION_HEADER = "## Iteration"


def create_backlog_from_task(task: str, project_name: Optional[str] = None) -> dict[str, Any]:
    """Build a single-story backlog whose only story is the task itself."""
    now = datetime.now().isoformat()
    title = task.strip().splitlines()[0][:80] if task.strip() else "Task"
    return {
        "project": project_name or "project",
        "description": task,
        "user_stories": [
            {
                "id": "US-001",
                "title": title,
                "description": task,
                "acceptance_criteria": ["Task is implemented and verified"],
                "priority": 1,
                "passes": False,
                "notes": None,
                "completed_at": None
            }
        ],
        "created_at": now
    }


def read_backlog(project_dir: str) -> Optional[dict]:
    backlog = read_document(project_dir, BACKLOG_FILE)
    if backlog is None:
        return None
    if not isinstance(backlog.get("user_stories"), list):
        logger.warning(f"Backlog in {project_dir} has no story list, ignoring")
        return None
    return backlog


def write_backlog(project_dir: str, backlog: dict) -> None:
    write_document(project_dir, BACKLOG_FILE, backlog)


def get_incomplete_stories(backlog: dict) -> list[dict]:
    stories = [s for s in backlog.get("user_stories", []) if not s.get("passes")]
    return sorted(stories, key=lambda s: s.get("priority", 0))


def get_completed_stories(backlog: dict) -> list[dict]:
    return [s for s in backlog.get("user_stories", []) if s.get("passes")]


def get_next_story(backlog: dict) -> Optional[dict]:
    incomplete = get_incomplete_stories(backlog)
    return incomplete[0] if incomplete else None


def mark_story_complete(project_dir: str, story_id: str, notes: Optional[str] = None) -> bool:
    backlog = read_backlog(project_dir)
    if backlog is None:
        return False

    story = next((s for s in backlog["user_stories"] if s.get("id") == story_id), None)
    if story is None:
        return False

    story["passes"] = True
    story["completed_at"] = datetime.now().isoformat()
    if notes:
        story["notes"] = notes
    write_backlog(project_dir, backlog)
    return True


def add_story(project_dir: str, story: dict) -> bool:
    backlog = read_backlog(project_dir)
    if backlog is None:
        return False
    if any(s.get("id") == story.get("id") for s in backlog["user_stories"]):
        return False

    entry = {
        "acceptance_criteria": [],
        "priority": len(backlog["user_stories"]) + 1,
        "passes": False,
        "notes": None,
        "completed_at": None
    }
    entry.update(story)
    backlog["user_stories"].append(entry)
    write_backlog(project_dir, backlog)
    return True


def get_backlog_status(backlog: dict) -> dict[str, Any]:
    total = len(backlog.get("user_stories", []))
    completed = len(get_completed_stories(backlog))
    return {
        "total": total,
        "completed": completed,
        "remaining": total - completed,
        "percent_complete": round(completed * 100 / total) if total else 0
    }


def format_backlog_status(backlog: dict) -> str:
    status = get_backlog_status(backlog)
    lines = [
        f"Backlog: {backlog.get('project', 'project')}",
        f"Progress: {status['completed']}/{status['total']} stories ({status['percent_complete']}%)"
    ]
    next_story = get_next_story(backlog)
    if next_story:
        lines.append(f"Next: [{next_story['id']}] {next_story.get('title', '')}")
        for criterion in next_story.get("acceptance_criteria", []):
            lines.append(f"  - {criterion}")
    else:
        lines.append("All stories complete.")
    return "\n".join(lines)


# ============================================================================
# Progress log
# ============================================================================

def _progress_path(project_dir: str) -> Path:
    return get_state_dir(project_dir) / PROGRESS_FILE


def initialize_progress(project_dir: str, task: str) -> None:
    path = _progress_path(project_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    header = (
        f"# Progress Log\n"
        f"Started: {datetime.now().isoformat()}\n"
        f"Task: {task}\n\n"
    )
    with FileLock(str(path) + ".lock", timeout=5):
        path.write_text(header)


def append_progress_entry(
    project_dir: str,
    iteration: int,
    summary: str,
    story_id: Optional[str] = None,
    files_changed: Optional[list[str]] = None
) -> None:
    path = _progress_path(project_dir)
    path.parent.mkdir(parents=True, exist_ok=True)

    lines = [f"{ITERATION_HEADER} {iteration} ({datetime.now().isoformat()})"]
    if story_id:
        lines.append(f"Story: {story_id}")
    lines.append(summary)
    if files_changed:
        lines.append("Files: " + ", ".join(files_changed))

    with FileLock(str(path) + ".lock", timeout=5):
        with open(path, "a") as f:
            f.write("\n".join(lines) + "\n\n")


def read_progress(project_dir: str) -> Optional[str]:
    path = _progress_path(project_dir)
    if not path.exists():
        return None
    try:
        return path.read_text()
    except OSError as e:
        logger.warning(f"Could not read progress log {path}: {e}")
        return None


def get_progress_summary(project_dir: str, last_n: int = 3) -> str:
    content = read_progress(project_dir)
    if not content:
        return ""

    entries = content.split(ITERATION_HEADER)[1:]
    if not entries:
        return ""
    recent = entries[-last_n:]
    return "\n".join(f"{ITERATION_HEADER}{entry.rstrip()}" for entry in recent)
