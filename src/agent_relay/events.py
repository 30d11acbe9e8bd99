"""Typed events of the agent's stream-json protocol.

One JSON object per line. Lines that are not typed JSON objects become a
``NoiseEvent`` and are dropped by the dispatcher; they never fail a send.
Typed objects without a handler become an ``OtherEvent``.
"""

from dataclasses import dataclass, field
import json
from typing import Any, Union

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str


@dataclass(frozen=True)
class Denial:
    """A tool call the agent refused because the tool was not allowed."""

    tool_name: str
    tool_use_id: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InitEvent:
    session_id: str | None = None
    uuid: str | None = None


@dataclass(frozen=True)
class AssistantEvent:
    content: tuple[TextBlock | ToolUseBlock, ...] = ()
    session_id: str | None = None
    parent_tool_use_id: str | None = None
    uuid: str | None = None


@dataclass(frozen=True)
class UserEvent:
    content: tuple[ToolResultBlock, ...] = ()
    session_id: str | None = None
    uuid: str | None = None


@dataclass(frozen=True)
class ResultEvent:
    is_error: bool = False
    error: str | None = None
    denials: tuple[Denial, ...] = ()
    subtype: str | None = None
    result: str | None = None
    session_id: str | None = None
    uuid: str | None = None


@dataclass(frozen=True)
class OtherEvent:
    """A well-formed event of a type or system subtype with no handler.

    It still carries ``session_id`` and ``uuid`` and counts as the last event
    seen for paragraph breaks.
    """

    type: str
    subtype: str | None = None
    session_id: str | None = None
    uuid: str | None = None


@dataclass(frozen=True)
class NoiseEvent:
    line: str
    reason: str


ProtocolEvent = Union[InitEvent, AssistantEvent, UserEvent, ResultEvent, OtherEvent, NoiseEvent]


def event_kind(event: ProtocolEvent) -> str:
    """Wire ``type`` name for an event (``noise`` for dropped lines)."""
    if isinstance(event, InitEvent):
        return "system"
    if isinstance(event, AssistantEvent):
        return "assistant"
    if isinstance(event, UserEvent):
        return "user"
    if isinstance(event, ResultEvent):
        return "result"
    if isinstance(event, OtherEvent):
        return event.type
    return "noise"


def parse_event(line: str) -> ProtocolEvent:
    """Parse one framed stdout line into a protocol event."""
    stripped = line.strip()
    if not stripped:
        return NoiseEvent(line=line, reason="empty")

    try:
        data = json.loads(stripped)
    except json.JSONDecodeError:
        logger.debug("non_json_line", line=stripped[:200])
        return NoiseEvent(line=line, reason="not_json")

    if not isinstance(data, dict):
        logger.debug("non_object_line", line=stripped[:200])
        return NoiseEvent(line=line, reason="not_object")

    event_type = data.get("type")
    if not isinstance(event_type, str) or not event_type:
        logger.debug("untyped_line", line=stripped[:200])
        return NoiseEvent(line=line, reason="untyped")
    uuid = _opt_str(data.get("uuid"))
    session_id = _opt_str(data.get("session_id"))

    if event_type == "system":
        subtype = _opt_str(data.get("subtype"))
        if subtype != "init":
            return OtherEvent(type=event_type, subtype=subtype, session_id=session_id, uuid=uuid)
        return InitEvent(session_id=session_id, uuid=uuid)

    if event_type == "assistant":
        return AssistantEvent(
            content=tuple(_assistant_blocks(data.get("message"))),
            session_id=session_id,
            parent_tool_use_id=_opt_str(data.get("parent_tool_use_id")),
            uuid=uuid,
        )

    if event_type == "user":
        return UserEvent(
            content=tuple(_tool_result_blocks(data.get("message"))),
            session_id=session_id,
            uuid=uuid,
        )

    if event_type == "result":
        is_error = data.get("is_error") is True
        result_text = _opt_str(data.get("result"))
        error = _opt_str(data.get("error"))
        if is_error and error is None:
            error = result_text
        return ResultEvent(
            is_error=is_error,
            error=error,
            denials=tuple(_denials(data.get("permission_denials"))),
            subtype=_opt_str(data.get("subtype")),
            result=result_text,
            session_id=session_id,
            uuid=uuid,
        )

    logger.debug("unknown_event_type", event_type=event_type)
    return OtherEvent(
        type=event_type,
        subtype=_opt_str(data.get("subtype")),
        session_id=session_id,
        uuid=uuid,
    )


def _opt_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _content_items(message: object) -> list[dict]:
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [item for item in content if isinstance(item, dict)]


def _assistant_blocks(message: object) -> list[TextBlock | ToolUseBlock]:
    blocks: list[TextBlock | ToolUseBlock] = []
    for item in _content_items(message):
        block_type = item.get("type")
        if block_type == "text":
            text = item.get("text")
            if isinstance(text, str) and text:
                blocks.append(TextBlock(text=text))
        elif block_type == "tool_use":
            tool_id = _opt_str(item.get("id"))
            name = _opt_str(item.get("name"))
            if tool_id and name:
                inp = item.get("input")
                blocks.append(ToolUseBlock(
                    id=tool_id,
                    name=name,
                    input=inp if isinstance(inp, dict) else {},
                ))
    return blocks


def _tool_result_blocks(message: object) -> list[ToolResultBlock]:
    blocks: list[ToolResultBlock] = []
    for item in _content_items(message):
        if item.get("type") != "tool_result":
            continue
        tool_use_id = _opt_str(item.get("tool_use_id"))
        if tool_use_id:
            blocks.append(ToolResultBlock(tool_use_id=tool_use_id))
    return blocks


def _denials(raw: object) -> list[Denial]:
    if not isinstance(raw, list):
        return []
    denials: list[Denial] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        name = _opt_str(item.get("tool_name"))
        if not name:
            continue
        inp = item.get("tool_input")
        denials.append(Denial(
            tool_name=name,
            tool_use_id=_opt_str(item.get("tool_use_id")) or "",
            tool_input=inp if isinstance(inp, dict) else {},
        ))
    return denials
