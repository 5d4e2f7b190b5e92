"""Data models for conversations, messages and side threads."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .config import TEMP_ID_PREFIX

Role = Literal["user", "assistant", "system"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_temp_id(kind: str) -> str:
    """Client-generated id for an optimistic message, e.g. ``temp_user_3f2a...``."""
    return f"{TEMP_ID_PREFIX}{kind}_{uuid.uuid4().hex[:12]}"


class WireModel(BaseModel):
    """Base for models exchanged with the backend in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps from the backend are UTC; keep every value comparable
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Attachment(WireModel):
    id: str | None = None
    file_name: str | None = None
    file_type: str | None = None
    file_size: int | None = None
    url: str | None = None


class Message(WireModel):
    id: str
    conversation_id: str
    role: Role
    content: str = ""
    attachments: list[Attachment] | None = None
    parent_message_id: str | None = None
    version_of: str | None = None
    version_number: int = 1
    branch_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @property
    def is_temporary(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)


class Conversation(WireModel):
    id: str
    title: str | None = None
    is_pinned: bool = False
    project_id: str | None = None
    user_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _timestamps_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class Folder(WireModel):
    id: str
    name: str
    description: str | None = None
    conversation_ids: list[str] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _timestamps_utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class StatusPill(BaseModel):
    phase: str
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class SearchSource(WireModel):
    model_config = ConfigDict(extra="allow")

    type: str | None = None
    url: str | None = None
    title: str | None = None
    snippet: str | None = None
    image: str | None = None


class SearchResults(WireModel):
    model_config = ConfigDict(extra="allow")

    query: str | None = None
    sources: list[SearchSource] = []
    strategy: list[str] | None = None
    total_results: int | None = None


class SubThreadMessage(WireModel):
    id: str
    role: Literal["user", "assistant"]
    content: str
    created_at: datetime = Field(default_factory=utcnow)


class SubThread(WireModel):
    id: str
    conversation_id: str
    source_message_id: str
    quoted_text: str
    messages: list[SubThreadMessage] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.source_message_id, self.quoted_text)


class CreditState(BaseModel):
    remaining: int | None = None

    @property
    def exhausted(self) -> bool:
        return self.remaining is not None and self.remaining <= 0


class Job(WireModel):
    model_config = ConfigDict(extra="allow")

    id: str
    status: Literal["queued", "processing", "complete", "error"]
    result: Any = None
    error: str | None = None


def active_versions(messages: list[Message]) -> list[Message]:
    """Keep only the active version of each turn, in turn order.

    Messages are grouped by their version root (``version_of`` or their own id);
    the highest ``version_number`` in each group wins. A turn keeps the slot of
    its earliest version, so an edited message stays where it was asked.
    """
    groups: dict[str, Message] = {}
    anchors: dict[str, datetime] = {}
    for msg in messages:
        root = msg.version_of or msg.id
        current = groups.get(root)
        if current is None or msg.version_number > current.version_number:
            groups[root] = msg
        if root not in anchors or msg.created_at < anchors[root]:
            anchors[root] = msg.created_at
    return sorted(groups.values(), key=lambda m: anchors[m.version_of or m.id])
