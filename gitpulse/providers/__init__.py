"""Model backends."""

from __future__ import annotations

from .chat import AssistantTurn, HttpChatModel, create_chat_model

__all__ = ["AssistantTurn", "HttpChatModel", "create_chat_model"]
