"""
Host Runtime Boundary

Everything the continuation core needs from the host coding-agent runtime goes
through the `HostClient` protocol: sessions, prompts, messages, todos, toasts
and the lifecycle event stream. `HttpHostClient` talks to an OpenCode-style
REST server over httpx; tests substitute an in-memory fake.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class HostError(Exception):
    """Transport or protocol failure talking to the host."""


@dataclass(frozen=True)
class ModelConfig:
    provider_id: str
    model_id: str

    @property
    def key(self) -> str:
        return f"{self.provider_id}/{self.model_id}"

    def to_body(self) -> dict[str, str]:
        return {"providerID": self.provider_id, "modelID": self.model_id}


class HostClient(Protocol):
    async def create_session(self, parent_id: Optional[str], title: str) -> str: ...

    async def submit_prompt(
        self,
        session_id: str,
        text: str,
        model: Optional[ModelConfig] = None,
        tools: Optional[dict[str, bool]] = None
    ) -> dict[str, Any]: ...

    async def list_messages(self, session_id: str) -> list[dict[str, Any]]: ...

    async def list_todos(self, session_id: str) -> list[dict[str, Any]]: ...

    async def show_toast(
        self,
        title: str,
        message: str,
        variant: str = "info",
        duration_ms: int = 3000
    ) -> None: ...

    async def abort_session(self, session_id: str) -> None: ...

    async def get_session_model(self, session_id: str) -> Optional[ModelConfig]: ...

    def events(self) -> AsyncIterator[dict[str, Any]]: ...


def extract_text(parts: Optional[list[dict[str, Any]]]) -> str:
    if not parts:
        return ""
    return "\n".join(
        p["text"] for p in parts
        if p.get("type") == "text" and isinstance(p.get("text"), str) and p["text"]
    )


def _last_text_for_role(messages: list[dict[str, Any]], role: str) -> str:
    for message in reversed(messages):
        if (message.get("info") or {}).get("role") == role:
            return extract_text(message.get("parts"))
    return ""


def last_assistant_text(messages: list[dict[str, Any]]) -> str:
    return _last_text_for_role(messages, "assistant")


def last_user_text(messages: list[dict[str, Any]]) -> str:
    return _last_text_for_role(messages, "user")


def model_from_messages(messages: list[dict[str, Any]]) -> Optional[ModelConfig]:
    """Most recent model recorded on any message, in either host shape."""
    for message in reversed(messages):
        info = message.get("info") or {}
        nested = info.get("model") if isinstance(info.get("model"), dict) else {}
        provider = info.get("providerID") or nested.get("providerID")
        model = info.get("modelID") or nested.get("modelID")
        if provider and model:
            return ModelConfig(provider_id=provider, model_id=model)
    return None


def is_model_error(error_name: Optional[str]) -> bool:
    return bool(error_name) and ("Model" in error_name or "Provider" in error_name)


async def notify(
    host: HostClient,
    title: str,
    message: str,
    variant: str = "info",
    duration_ms: int = 3000
) -> None:
    """Show a toast; display failures never reach the caller."""
    try:
        await host.show_toast(title, message, variant, duration_ms)
    except Exception as e:
        logger.debug(f"Toast '{title}' not shown: {e}")


class HttpHostClient:
    """HostClient over the host's local HTTP API."""

    def __init__(self, base_url: str, directory: Optional[str] = None, timeout: float = 300.0):
        self.base_url = base_url.rstrip("/")
        self.directory = directory
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    def _params(self) -> dict[str, str]:
        return {"directory": self.directory} if self.directory else {}

    async def _request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        try:
            response = await self.client.request(method, path, params=self._params(), json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise HostError(f"{method} {path} failed: {e}") from e

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise HostError(f"{method} {path} returned invalid JSON") from e

    async def create_session(self, parent_id: Optional[str], title: str) -> str:
        body: dict[str, Any] = {"title": title}
        if parent_id:
            body["parentID"] = parent_id
        data = await self._request("POST", "/session", body)
        session_id = (data or {}).get("id")
        if not session_id:
            raise HostError("Failed to create session: response carried no id")
        return session_id

    async def submit_prompt(
        self,
        session_id: str,
        text: str,
        model: Optional[ModelConfig] = None,
        tools: Optional[dict[str, bool]] = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"parts": [{"type": "text", "text": text}]}
        if model:
            body["model"] = model.to_body()
        if tools:
            body["tools"] = tools
        data = await self._request("POST", f"/session/{session_id}/message", body)
        return data if isinstance(data, dict) else {}

    async def list_messages(self, session_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/session/{session_id}/message")
        return data if isinstance(data, list) else []

    async def list_todos(self, session_id: str) -> list[dict[str, Any]]:
        data = await self._request("GET", f"/session/{session_id}/todo")
        return data if isinstance(data, list) else []

    async def show_toast(
        self,
        title: str,
        message: str,
        variant: str = "info",
        duration_ms: int = 3000
    ) -> None:
        await self._request("POST", "/tui/show-toast", {
            "title": title,
            "message": message,
            "variant": variant,
            "duration": duration_ms
        })

    async def abort_session(self, session_id: str) -> None:
        await self._request("POST", f"/session/{session_id}/abort")

    async def get_session_model(self, session_id: str) -> Optional[ModelConfig]:
        try:
            messages = await self.list_messages(session_id)
        except HostError as e:
            logger.debug(f"Could not read model for session {session_id}: {e}")
            return None
        return model_from_messages(messages)

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Server-sent lifecycle events, one decoded payload per `data:` line."""
        try:
            async with self.client.stream("GET", "/event", params=self._params(), timeout=None) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    payload = line[len("data:"):].strip()
                    if not payload:
                        continue
                    try:
                        yield json.loads(payload)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping undecodable event payload: {payload[:200]}")
        except httpx.HTTPError as e:
            raise HostError(f"Event stream failed: {e}") from e

    async def aclose(self) -> None:
        await self.client.aclose()
