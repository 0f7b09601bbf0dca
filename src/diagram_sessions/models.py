"""Data models for conversations, messages and diagram versions.

Fields are snake_case in Python and camelCase in stored/wire records.
Timestamps are integer milliseconds since the epoch.
"""

from __future__ import annotations

import random
import string
import time
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .config import MAX_XML_SIZE
from .errors import DiagramTooLargeError


def now_ms() -> int:
    return int(time.time() * 1000)


def _random_suffix(length: int) -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=length))


def create_conversation_id() -> str:
    return f"conv-{now_ms()}-{_random_suffix(6)}"


def create_session_id() -> str:
    return f"session-{now_ms()}-{_random_suffix(7)}"


def create_version_id() -> str:
    return f"v-{now_ms()}-{_random_suffix(6)}"


def normalize_cursor(cursor: int, length: int) -> int:
    """Clamp a version cursor into [-1, length - 1]."""
    return min(max(cursor, -1), length - 1)


def check_xml_size(xml: str, limit: int = MAX_XML_SIZE) -> None:
    """Raise DiagramTooLargeError when ``xml`` is above the ceiling."""
    if xml and len(xml) > limit:
        raise DiagramTooLargeError(len(xml), limit)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> dict[str, Any]:
        """Dump to the camelCase JSON-compatible form used in storage and on the wire."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MessagePart(CamelModel):
    """One part of a chat message. Unknown fields are preserved."""

    model_config = ConfigDict(extra="allow")

    type: str
    text: str | None = None
    tool_call_id: str | None = None


class _MessageBase(CamelModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""
    parts: list[MessagePart] = Field(default_factory=list)


class UserMessage(_MessageBase):
    role: Literal["user"] = "user"


class AssistantMessage(_MessageBase):
    role: Literal["assistant"] = "assistant"


class SystemMessage(_MessageBase):
    role: Literal["system"] = "system"


class ToolMessage(_MessageBase):
    role: Literal["tool"] = "tool"
    tool_call_id: str | None = None


ChatMessage = Annotated[
    Union[UserMessage, AssistantMessage, SystemMessage, ToolMessage],
    Field(discriminator="role"),
]


class DiagramVersion(CamelModel):
    """Immutable snapshot of the diagram xml."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=create_version_id)
    created_at: int = Field(default_factory=now_ms)
    xml: str
    note: str | None = None


class ConversationMeta(CamelModel):
    id: str
    created_at: int
    updated_at: int
    title: str | None = None


class ConversationPayload(CamelModel):
    """Full conversation record: messages, current xml and version history."""

    messages: list[ChatMessage] = Field(default_factory=list)
    xml: str = ""
    diagram_versions: list[DiagramVersion] = Field(default_factory=list)
    diagram_version_cursor: int = -1
    diagram_version_marks: dict[int, int] = Field(default_factory=dict)
    session_id: str = Field(default_factory=create_session_id)

    @model_validator(mode="after")
    def _normalize_history(self) -> ConversationPayload:
        length = len(self.diagram_versions)
        self.diagram_version_cursor = normalize_cursor(self.diagram_version_cursor, length)
        self.diagram_version_marks = {
            message_index: version_index
            for message_index, version_index in self.diagram_version_marks.items()
            if 0 <= version_index < length
        }
        return self


def empty_payload(xml: str = "", session_id: str | None = None) -> ConversationPayload:
    """Template for a fresh (or unreadable) conversation."""
    return ConversationPayload(xml=xml, session_id=session_id or create_session_id())


class PushRecord(CamelModel):
    """Remote upsert record; ``deleted=True`` makes it a tombstone."""

    id: str
    payload: ConversationPayload | None = None
    deleted: bool | None = None
    title: str | None = None
    created_at: int | None = None
    updated_at: int | None = None


class OutboxEntry(CamelModel):
    conversation_id: str
    deleted: bool = False
    seq: int = 0
    attempts: int = 0
    enqueued_at: int = Field(default_factory=now_ms)


class DiagramVersionState(CamelModel):
    """Version-history view handed to undo/redo controls."""

    diagram_versions: list[DiagramVersion] = Field(default_factory=list)
    cursor: int = -1
    marks: dict[int, int] = Field(default_factory=dict)

    @property
    def can_undo(self) -> bool:
        return self.cursor > 0

    @property
    def can_redo(self) -> bool:
        return 0 <= self.cursor < len(self.diagram_versions) - 1
