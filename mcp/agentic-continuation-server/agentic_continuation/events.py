"""
Host lifecycle events.

The host delivers loosely-typed `{"type": ..., "properties": {...}}` payloads.
`parse_event` turns them into one of a closed set of dataclasses; anything it
does not recognise becomes `UnknownEvent` so dispatch can ignore it.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Union


@dataclass
class SessionCreated:
    session_id: str
    parent_id: Optional[str] = None


@dataclass
class SessionIdle:
    session_id: str


@dataclass
class SessionError:
    session_id: str
    error_name: Optional[str] = None
    message: Optional[str] = None


@dataclass
class SessionDeleted:
    session_id: str


@dataclass
class MessageUpdated:
    session_id: str
    role: str
    message_id: Optional[str] = None


@dataclass
class ToolExecuted:
    session_id: str
    tool: Optional[str] = None


@dataclass
class UnknownEvent:
    type: str
    properties: dict[str, Any] = field(default_factory=dict)


HostEvent = Union[
    SessionCreated,
    SessionIdle,
    SessionError,
    SessionDeleted,
    MessageUpdated,
    ToolExecuted,
    UnknownEvent,
]


def _string(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def parse_event(raw: Any) -> HostEvent:
    if not isinstance(raw, dict):
        return UnknownEvent(type="")

    event_type = raw.get("type") if isinstance(raw.get("type"), str) else ""
    props = raw.get("properties")
    if not isinstance(props, dict):
        props = {}
    info = props.get("info") if isinstance(props.get("info"), dict) else {}

    if event_type == "session.created":
        session_id = _string(info.get("id"))
        if session_id:
            return SessionCreated(session_id=session_id, parent_id=_string(info.get("parentID")))

    elif event_type == "session.idle":
        session_id = _string(props.get("sessionID"))
        if session_id:
            return SessionIdle(session_id=session_id)

    elif event_type == "session.error":
        session_id = _string(props.get("sessionID"))
        if session_id:
            error = props.get("error") if isinstance(props.get("error"), dict) else {}
            data = error.get("data") if isinstance(error.get("data"), dict) else {}
            return SessionError(
                session_id=session_id,
                error_name=_string(error.get("name")),
                message=_string(data.get("message")) or _string(error.get("message"))
            )

    elif event_type == "session.deleted":
        session_id = _string(info.get("id"))
        if session_id:
            return SessionDeleted(session_id=session_id)

    elif event_type == "message.updated":
        session_id = _string(info.get("sessionID"))
        role = _string(info.get("role"))
        if session_id and role:
            return MessageUpdated(session_id=session_id, role=role, message_id=_string(info.get("id")))

    elif event_type in ("tool.execute.before", "tool.execute.after"):
        session_id = _string(props.get("sessionID"))
        if session_id:
            return ToolExecuted(session_id=session_id, tool=_string(props.get("tool")))

    return UnknownEvent(type=event_type, properties=props)
