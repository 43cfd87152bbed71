"""
Background Task Pool

Runs delegated agent work in child sessions under concurrency ceilings.

Ceilings are keyed by the resolved provider/model pair, so agents that share a
model share one quota. A task whose key is at its ceiling waits in a FIFO queue
as `queued` and starts when a task with a matching key reaches a terminal
state. Status only moves forward:

    queued -> running -> completed | failed | cancelled
    queued -> cancelled

The pool never raises to its callers; host failures become `failed` tasks.
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .host import HostClient, ModelConfig, extract_text, is_model_error, last_assistant_text, notify

logger = logging.getLogger(__name__)


TERMINAL_STATUSES = {"completed", "failed", "cancelled"}
DEFAULT_MODEL_KEY = "default"


@dataclass
class Task:
    id: str
    status: str
    description: str
    parent_session_id: str
    prompt: str
    label: str
    model: Optional[ModelConfig] = None
    fallback_model: Optional[ModelConfig] = None
    tools: Optional[dict[str, bool]] = None
    child_session_id: Optional[str] = None
    result: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_ms(self) -> Optional[int]:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.id,
            "status": self.status,
            "description": self.description,
            "agent": self.label,
            "parent_session_id": self.parent_session_id,
            "session_id": self.child_session_id,
            "model": self.model.key if self.model else None,
            "result": self.result,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms
        }


def prompt_error(response: dict[str, Any]) -> Optional[dict]:
    error = (response.get("info") or {}).get("error")
    return error if isinstance(error, dict) else None


def format_prompt_error(error: dict) -> str:
    name = error.get("name") or "UnknownError"
    message = (error.get("data") or {}).get("message") or name
    return f"[{name}] {message}"


async def submit_with_fallback(
    host: HostClient,
    session_id: str,
    text: str,
    model: Optional[ModelConfig],
    fallback: Optional[ModelConfig],
    tools: Optional[dict[str, bool]] = None
) -> dict[str, Any]:
    """Submit a prompt; retry once on the fallback model after a provider/model error."""
    response = await host.submit_prompt(session_id, text, model, tools)
    error = prompt_error(response)
    if error and is_model_error(error.get("name")) and fallback and fallback != model:
        logger.warning(
            f"Model {model.key if model else 'default'} failed with {error.get('name')} "
            f"in session {session_id}, retrying with {fallback.key}"
        )
        response = await host.submit_prompt(session_id, text, fallback, tools)
    return response


class TaskPool:
    def __init__(self, host: HostClient, config: Optional[dict] = None):
        config = config or {}
        self.host = host
        self.default_concurrency = int(config.get("default_concurrency", 5))
        self.model_concurrency: dict[str, int] = dict(config.get("model_concurrency") or {})
        self.provider_concurrency: dict[str, int] = dict(config.get("provider_concurrency") or {})

        self._tasks: dict[str, Task] = {}
        self._queue: list[str] = []
        self._running_by_model: dict[str, int] = {}
        self._running_by_provider: dict[str, int] = {}
        self._done_events: dict[str, asyncio.Event] = {}
        self._runners: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    @staticmethod
    def _model_key(model: Optional[ModelConfig]) -> str:
        return model.key if model else DEFAULT_MODEL_KEY

    def _model_limit(self, key: str) -> int:
        return int(self.model_concurrency.get(key, self.default_concurrency))

    def _has_slot(self, model: Optional[ModelConfig]) -> bool:
        key = self._model_key(model)
        if self._running_by_model.get(key, 0) >= self._model_limit(key):
            return False
        if model and model.provider_id in self.provider_concurrency:
            limit = int(self.provider_concurrency[model.provider_id])
            if self._running_by_provider.get(model.provider_id, 0) >= limit:
                return False
        return True

    def running_count(self, model: Optional[ModelConfig] = None) -> int:
        return self._running_by_model.get(self._model_key(model), 0)

    async def get_parent_session_model(self, parent_session_id: str) -> Optional[ModelConfig]:
        try:
            return await self.host.get_session_model(parent_session_id)
        except Exception as e:
            logger.debug(f"Parent model lookup failed for {parent_session_id}: {e}")
            return None

    async def create_task(
        self,
        parent_session_id: str,
        description: str,
        prompt: str,
        label: str,
        model_override: Optional[ModelConfig] = None,
        tools: Optional[dict[str, bool]] = None
    ) -> Task:
        parent_model = await self.get_parent_session_model(parent_session_id)
        model = model_override or parent_model

        # Everything below runs without awaiting, so admission is atomic on the loop
        task = Task(
            id=f"bg_{next(self._ids):04d}",
            status="queued",
            description=description,
            parent_session_id=parent_session_id,
            prompt=prompt,
            label=label,
            model=model,
            fallback_model=parent_model,
            tools=tools
        )
        self._tasks[task.id] = task
        self._done_events[task.id] = asyncio.Event()

        if self._has_slot(model):
            self._start(task)
        else:
            self._queue.append(task.id)
            logger.info(
                f"Task {task.id} queued: {self._model_key(model)} at ceiling "
                f"({len(self._queue)} waiting)"
            )
        return task

    def _start(self, task: Task) -> None:
        key = self._model_key(task.model)
        task.status = "running"
        self._running_by_model[key] = self._running_by_model.get(key, 0) + 1
        if task.model:
            provider = task.model.provider_id
            self._running_by_provider[provider] = self._running_by_provider.get(provider, 0) + 1
        self._runners[task.id] = asyncio.create_task(self._run(task))
        logger.info(f"Task {task.id} started ({task.label}: {task.description}) on {key}")

    def _release(self, task: Task) -> None:
        key = self._model_key(task.model)
        self._running_by_model[key] = max(0, self._running_by_model.get(key, 0) - 1)
        if task.model:
            provider = task.model.provider_id
            self._running_by_provider[provider] = max(0, self._running_by_provider.get(provider, 0) - 1)

    def _drain_queue(self) -> None:
        for task_id in list(self._queue):
            task = self._tasks[task_id]
            if self._has_slot(task.model):
                self._queue.remove(task_id)
                self._start(task)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run(self, task: Task) -> None:
        creation = asyncio.ensure_future(
            self.host.create_session(task.parent_session_id, f"{task.label}: {task.description}")
        )
        try:
            try:
                child_id = await asyncio.shield(creation)
            except asyncio.CancelledError:
                # The host may still finish creating the child after a cancel
                creation.add_done_callback(self._abort_orphan)
                raise
            task.child_session_id = child_id
            if task.is_terminal:
                await self._abort_child(child_id)
                return

            response = await submit_with_fallback(
                self.host, child_id, task.prompt, task.model, task.fallback_model, task.tools
            )
            error = prompt_error(response)
            if error:
                self._finish(task, "failed", error=format_prompt_error(error))
                return

            result = extract_text(response.get("parts"))
            if not result:
                result = last_assistant_text(await self.host.list_messages(child_id))
            self._finish(task, "completed", result=result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Task {task.id} failed: {e}")
            self._finish(task, "failed", error=str(e))

    def _finish(
        self,
        task: Task,
        status: str,
        result: Optional[str] = None,
        error: Optional[str] = None
    ) -> bool:
        if task.is_terminal:
            return False

        was_running = task.status == "running"
        task.status = status
        task.result = result
        task.error = error
        task.completed_at = datetime.now()
        self._runners.pop(task.id, None)

        if was_running:
            self._release(task)
        elif task.id in self._queue:
            self._queue.remove(task.id)

        self._done_events[task.id].set()
        logger.info(f"Task {task.id} {status}" + (f": {error}" if error else ""))

        self._spawn(notify(
            self.host,
            f"Background task {status}",
            f"{task.label}: {task.description}",
            "success" if status == "completed" else "warning",
            3000
        ))
        self._drain_queue()
        return True

    def _spawn(self, coro) -> None:
        runner = asyncio.create_task(coro)
        self._background.add(runner)
        runner.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def get_tasks_by_parent_session(self, parent_session_id: str) -> list[Task]:
        return [t for t in self._tasks.values() if t.parent_session_id == parent_session_id]

    def has_running_tasks(self, parent_session_id: str) -> bool:
        return any(
            t.status in ("running", "queued")
            for t in self.get_tasks_by_parent_session(parent_session_id)
        )

    def list_tasks(self) -> list[Task]:
        return list(self._tasks.values())

    def cancel_task(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.is_terminal:
            return False

        runner = self._runners.get(task.id)
        child_id = task.child_session_id
        self._finish(task, "cancelled")

        if runner and not runner.done():
            runner.cancel()
        if child_id:
            self._spawn(self._abort_child(child_id))
        return True

    async def _abort_child(self, child_session_id: str) -> None:
        try:
            await self.host.abort_session(child_session_id)
        except Exception as e:
            logger.warning(f"Abort of child session {child_session_id} failed: {e}")

    def _abort_orphan(self, creation: asyncio.Future) -> None:
        if creation.cancelled() or creation.exception() is not None:
            return
        self._spawn(self._abort_child(creation.result()))

    def cancel_all_tasks(self, parent_session_id: Optional[str] = None) -> int:
        targets = [
            t.id for t in self._tasks.values()
            if not t.is_terminal and (parent_session_id is None or t.parent_session_id == parent_session_id)
        ]
        return sum(1 for task_id in targets if self.cancel_task(task_id))

    async def wait_for_task(self, task_id: str, timeout_ms: Optional[int] = None) -> Optional[Task]:
        """Wait for a terminal state; on timeout the task is returned as it is."""
        task = self._tasks.get(task_id)
        if task is None or task.is_terminal:
            return task

        done = self._done_events[task_id]
        timeout = timeout_ms / 1000 if timeout_ms is not None else None
        try:
            await asyncio.wait_for(done.wait(), timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Wait for {task_id} timed out after {timeout_ms}ms")
        return task

    def snapshot(self) -> dict[str, Any]:
        tasks = [t.to_dict() for t in self._tasks.values()]
        return {
            "tasks": tasks,
            "count": len(tasks),
            "queued": list(self._queue),
            "running_by_model": {k: v for k, v in self._running_by_model.items() if v},
            "default_concurrency": self.default_concurrency
        }
