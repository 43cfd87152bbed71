"""
Shared fixtures: an in-memory host and a project directory with default config.
"""

import asyncio
import copy
import sys
from pathlib import Path
from typing import Any, Optional

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from agentic_continuation.config_tools import DEFAULT_CONFIG
from agentic_continuation.continuation import ContinuationContext
from agentic_continuation.host import HostError, ModelConfig
from agentic_continuation.modes import ModeRegistry
from agentic_continuation.pause_state import PauseRegistry


def assistant_message(text: str, message_id: str = "msg_a", model: Optional[ModelConfig] = None) -> dict:
    info: dict[str, Any] = {"id": message_id, "role": "assistant"}
    if model:
        info["providerID"] = model.provider_id
        info["modelID"] = model.model_id
    return {"info": info, "parts": [{"type": "text", "text": text}]}


def user_message(text: str, message_id: str = "msg_u") -> dict:
    return {"info": {"id": message_id, "role": "user"}, "parts": [{"type": "text", "text": text}]}


def text_response(text: str) -> dict:
    return {"info": {"role": "assistant"}, "parts": [{"type": "text", "text": text}]}


def error_response(name: str, message: str = "") -> dict:
    return {"info": {"role": "assistant", "error": {"name": name, "data": {"message": message}}}, "parts": []}


class FakeHost:
    """In-memory HostClient recording everything sent to it."""

    def __init__(self):
        self.prompts: list[dict] = []
        self.toasts: list[dict] = []
        self.aborted: list[str] = []
        self.created: list[dict] = []
        self.todos: dict[str, list[dict]] = {}
        self.messages: dict[str, list[dict]] = {}
        self.session_models: dict[str, ModelConfig] = {}
        self.events_payloads: list[dict] = []
        self.reply_text = "done"
        self.replies_by_model: dict[str, dict] = {}
        self.submit_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self._next_session = 0

    async def create_session(self, parent_id, title):
        if self.create_error:
            raise self.create_error
        self._next_session += 1
        session_id = f"child_{self._next_session}"
        self.created.append({"id": session_id, "parent_id": parent_id, "title": title})
        return session_id

    async def submit_prompt(self, session_id, text, model=None, tools=None):
        self.prompts.append({"session_id": session_id, "text": text, "model": model, "tools": tools})
        if self.submit_error:
            raise self.submit_error
        if self.gate is not None:
            await self.gate.wait()
        if model and model.key in self.replies_by_model:
            return self.replies_by_model[model.key]
        return text_response(self.reply_text)

    async def list_messages(self, session_id):
        return self.messages.get(session_id, [])

    async def list_todos(self, session_id):
        return self.todos.get(session_id, [])

    async def show_toast(self, title, message, variant="info", duration_ms=3000):
        self.toasts.append({"title": title, "message": message, "variant": variant})

    async def abort_session(self, session_id):
        self.aborted.append(session_id)

    async def get_session_model(self, session_id):
        return self.session_models.get(session_id)

    async def events(self):
        for payload in self.events_payloads:
            yield payload

    def prompts_for(self, session_id: str) -> list[str]:
        return [p["text"] for p in self.prompts if p["session_id"] == session_id]

    def toast_titles(self) -> list[str]:
        return [t["title"] for t in self.toasts]


class FailingHost(FakeHost):
    """Every call fails the way an unreachable host does."""

    async def submit_prompt(self, session_id, text, model=None, tools=None):
        self.prompts.append({"session_id": session_id, "text": text, "model": model, "tools": tools})
        raise HostError("connection refused")

    async def list_messages(self, session_id):
        raise HostError("connection refused")

    async def list_todos(self, session_id):
        raise HostError("connection refused")


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def project_dir(tmp_path):
    return str(tmp_path)


@pytest.fixture
def config():
    """Default config with a countdown short enough for tests."""
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["todo_continuation"]["countdown_seconds"] = 0.05
    return cfg


@pytest.fixture
def ctx(host, project_dir, config):
    """Driver context wired to the fake host, without a task pool."""
    return ContinuationContext(
        host=host,
        project_dir=project_dir,
        config=config,
        pauses=PauseRegistry(),
        modes=ModeRegistry()
    )
