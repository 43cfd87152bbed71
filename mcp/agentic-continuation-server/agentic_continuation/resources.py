"""
MCP Resources for Agentic Continuation Server

Provides URI-based access to continuation state and configuration data.

Resource URIs:
  - continuation://state                - Every persisted state document
  - continuation://tasks                - Background task pool snapshot
  - continuation://tasks/{id}           - One background task
  - config://effective                  - Fully merged effective config
"""

import json
from typing import Any, Optional

from .backlog import get_backlog_status, read_backlog
from .config_tools import config_get_effective
from .state_tools import list_state_documents
from .task_pool import TaskPool


def get_state_snapshot(project_dir: str) -> dict[str, Any]:
    snapshot = list_state_documents(project_dir)
    backlog = read_backlog(project_dir)
    snapshot["backlog"] = get_backlog_status(backlog) if backlog else None
    return snapshot


def get_tasks_list(pool: Optional[TaskPool]) -> dict[str, Any]:
    if pool is None:
        return {"tasks": [], "count": 0}
    return pool.snapshot()


def get_task(pool: Optional[TaskPool], task_id: str) -> dict[str, Any]:
    task = pool.get_task(task_id) if pool else None
    if task is None:
        return {"error": f"Task {task_id} not found"}
    return task.to_dict()


def resolve_resource(uri: str, project_dir: str, pool: Optional[TaskPool] = None) -> str:
    if uri == "continuation://state":
        return json.dumps(get_state_snapshot(project_dir), indent=2)

    if uri == "continuation://tasks":
        return json.dumps(get_tasks_list(pool), indent=2)

    if uri == "config://effective":
        return json.dumps(config_get_effective(project_dir), indent=2)

    if uri.startswith("continuation://tasks/"):
        task_id = uri.replace("continuation://tasks/", "")
        return json.dumps(get_task(pool, task_id), indent=2)

    return json.dumps({"error": f"Unknown resource URI: {uri}"})


RESOURCE_DESCRIPTIONS = {
    "continuation://state": {
        "name": "Continuation state",
        "description": "Pipeline, goal loop, QA cycle, work intensity and verification documents from .omc/",
        "mimeType": "application/json"
    },
    "continuation://tasks": {
        "name": "Background tasks",
        "description": "All background tasks with status, queue and per-model running counts",
        "mimeType": "application/json"
    },
    "config://effective": {
        "name": "Effective configuration",
        "description": "Fully merged continuation configuration from all sources",
        "mimeType": "application/json"
    }
}


RESOURCE_TEMPLATES = {
    "continuation://tasks/{task_id}": {
        "name": "Background task",
        "description": "Status and result of one background task by ID",
        "mimeType": "application/json"
    }
}
