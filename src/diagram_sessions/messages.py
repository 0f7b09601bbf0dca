"""Helpers over chat message lists: titles, sanitation, file-part stripping."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from .config import TITLE_MAX_CHARS
from .models import AssistantMessage, ChatMessage, ConversationMeta, ToolMessage, UserMessage

logger = logging.getLogger(__name__)


def derive_conversation_title(messages: Sequence[ChatMessage]) -> str | None:
    """Use the first user text part, trimmed to TITLE_MAX_CHARS, as the title."""
    first_user = next((m for m in messages if isinstance(m, UserMessage)), None)
    if first_user is None:
        return None
    text = next((p.text for p in first_user.parts if p.type == "text" and p.text), "")
    trimmed = text.strip()
    if not trimmed:
        return None
    return trimmed[:TITLE_MAX_CHARS]


def display_title(conversations: Sequence[ConversationMeta], conversation_id: str, locale: str = "en") -> str:
    """Saved title, else "Session N" by list position, else the raw id."""
    for idx, meta in enumerate(conversations):
        if meta.id != conversation_id:
            continue
        if meta.title:
            return meta.title
        return f"会话 {idx + 1}" if locale == "zh-CN" else f"Session {idx + 1}"
    return conversation_id


def sanitize_messages(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Drop empty tool messages and the assistant tool-call parts that pointed at them.

    Empty tool results break tool-call/response pairing when the history is
    replayed to a model provider.
    """
    invalid_call_ids = {
        m.tool_call_id for m in messages if isinstance(m, ToolMessage) and not m.parts and m.tool_call_id
    }
    if not invalid_call_ids:
        return messages

    sanitized: list[ChatMessage] = []
    for msg in messages:
        if isinstance(msg, ToolMessage) and not msg.parts:
            continue
        if isinstance(msg, AssistantMessage):
            kept = [p for p in msg.parts if p.tool_call_id not in invalid_call_ids]
            if not kept:
                continue
            if len(kept) != len(msg.parts):
                msg = msg.model_copy(update={"parts": kept})
        sanitized.append(msg)

    logger.info("Removed %d problematic messages", len(messages) - len(sanitized))
    return sanitized


def strip_file_parts(messages: list[ChatMessage]) -> list[ChatMessage]:
    """Remove ``file`` parts, keeping text and tool parts."""
    stripped: list[ChatMessage] = []
    for msg in messages:
        kept = [p for p in msg.parts if p.type != "file"]
        if len(kept) != len(msg.parts):
            msg = msg.model_copy(update={"parts": kept})
        stripped.append(msg)
    return stripped
