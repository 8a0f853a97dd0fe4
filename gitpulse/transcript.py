"""Transcript messages and role classification.

The backend may hand us the same logical message in several shapes (our own
``Message``, plain dicts in OpenAI or LangChain-serialized form, SDK
objects). ``classify_message`` and the accessors below are the only places
allowed to look inside a message; everything else goes through them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageRole(str, Enum):
    AI = "ai"
    HUMAN = "human"
    TOOL = "tool"
    SYSTEM = "system"
    UNKNOWN = "unknown"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict = field(default_factory=dict)


@dataclass
class Message:
    role: MessageRole
    content: str = ""
    name: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str = ""


@dataclass
class Snapshot:
    """Full transcript at one point of the stream (replace, not append)."""

    messages: list[Any]
    step: int = 0


_LITERAL_TYPES = {
    "ai": MessageRole.AI,
    "human": MessageRole.HUMAN,
    "tool": MessageRole.TOOL,
    "system": MessageRole.SYSTEM,
}

_ROLE_FIELD = {
    "assistant": MessageRole.AI,
    "user": MessageRole.HUMAN,
    "tool": MessageRole.TOOL,
    "system": MessageRole.SYSTEM,
}


def _field(msg: Any, name: str, default: Any = None) -> Any:
    if isinstance(msg, dict):
        return msg.get(name, default)
    return getattr(msg, name, default)


def _from_class_name(name: str) -> MessageRole | None:
    if name in ("dict", "object"):
        return None
    if "AI" in name or "Ai" in name or "Assistant" in name:
        return MessageRole.AI
    if "Human" in name or "User" in name:
        return MessageRole.HUMAN
    if "Tool" in name:
        return MessageRole.TOOL
    if "System" in name:
        return MessageRole.SYSTEM
    return None


def classify_message(msg: Any) -> MessageRole:
    """Classify a message's role, trying each representation in order.

    1. explicit discriminator (``Message.role``, ``get_type()``/``_get_type()``)
    2. literal ``type`` string
    3. class name
    4. serialized envelope (``{"kwargs": {"type": ...}}`` / ``{"id": [..., "AIMessage"]}``)
    5. ``role`` field
    6. tool-call payload
    """
    if msg is None:
        return MessageRole.UNKNOWN

    # 1
    if isinstance(msg, Message):
        return msg.role
    for getter in ("get_type", "_get_type"):
        fn = getattr(msg, getter, None)
        if callable(fn):
            value = fn()
            if isinstance(value, str) and value in _LITERAL_TYPES:
                return _LITERAL_TYPES[value]

    # 2
    literal = _field(msg, "type")
    if isinstance(literal, str) and literal in _LITERAL_TYPES:
        return _LITERAL_TYPES[literal]

    # 3
    by_name = _from_class_name(type(msg).__name__)
    if by_name is not None:
        return by_name

    # 4
    kwargs = _field(msg, "kwargs")
    if isinstance(kwargs, dict):
        inner = kwargs.get("type")
        if isinstance(inner, str) and inner in _LITERAL_TYPES:
            return _LITERAL_TYPES[inner]
    ident = _field(msg, "id")
    if isinstance(ident, list) and ident and isinstance(ident[-1], str):
        by_name = _from_class_name(ident[-1])
        if by_name is not None:
            return by_name

    # 5
    role = _field(msg, "role")
    if isinstance(role, str) and role in _ROLE_FIELD:
        return _ROLE_FIELD[role]

    # 6
    extra = _field(msg, "additional_kwargs")
    if _field(msg, "tool_calls") is not None or (
        isinstance(extra, dict) and extra.get("tool_calls")
    ):
        return MessageRole.AI
    if _field(msg, "tool_call_id") is not None:
        return MessageRole.TOOL

    return MessageRole.UNKNOWN


def _envelope(msg: Any) -> Any:
    kwargs = _field(msg, "kwargs")
    if isinstance(kwargs, dict) and "content" in kwargs and _field(msg, "content") is None:
        return kwargs
    return msg


def message_text(msg: Any) -> str:
    """Textual content of a message; ``""`` when it has none."""
    content = _field(_envelope(msg), "content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif _field(block, "type") == "text" and isinstance(_field(block, "text"), str):
                parts.append(_field(block, "text"))
        return "".join(parts)
    return ""


def message_name(msg: Any) -> str:
    name = _field(_envelope(msg), "name")
    return name if isinstance(name, str) else ""


def tool_call_count(msg: Any) -> int:
    calls = _field(_envelope(msg), "tool_calls")
    if not calls:
        extra = _field(msg, "additional_kwargs")
        calls = extra.get("tool_calls") if isinstance(extra, dict) else None
    return len(calls) if isinstance(calls, list) else 0


MODEL_LIMIT_SENTINEL = "Model call limits exceeded"
TOOL_LIMIT_SENTINEL = "Tool call limits exceeded"


def is_budget_sentinel(text: str) -> bool:
    """True for the terminal message a loop appends when a call limit is hit."""
    return MODEL_LIMIT_SENTINEL in text or TOOL_LIMIT_SENTINEL in text
