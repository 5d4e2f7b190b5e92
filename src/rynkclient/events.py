"""Typed events produced by the stream demultiplexer."""

from __future__ import annotations

import logging
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class ContentEvent(_Event):
    """Full reply text accumulated so far. Consumers replace, never append."""

    kind: Literal["content"] = "content"
    text: str


class StatusEvent(_Event):
    kind: Literal["status"] = "status"
    phase: str
    message: str = ""

    @property
    def is_complete(self) -> bool:
        return self.phase == "complete"


class SearchResultsEvent(_Event):
    kind: Literal["search_results"] = "search_results"
    payload: dict[str, Any]


class ContextCardsEvent(_Event):
    kind: Literal["context_cards"] = "context_cards"
    payload: dict[str, Any]


class MetaEvent(_Event):
    """Server-issued ids for the messages of the current turn."""

    kind: Literal["meta"] = "meta"
    user_message_id: str | None = None
    assistant_message_id: str | None = None


class ErrorEvent(_Event):
    kind: Literal["error"] = "error"
    message: str
    status: int | None = None


class DoneEvent(_Event):
    kind: Literal["done"] = "done"


StreamEvent = Union[
    ContentEvent,
    StatusEvent,
    SearchResultsEvent,
    ContextCardsEvent,
    MetaEvent,
    ErrorEvent,
    DoneEvent,
]


def event_from_payload(payload: Any) -> StreamEvent | None:
    """Map a decoded structured line to an event.

    ``content`` payloads are not mapped here: their text belongs to the
    accumulated reply and is handled by the demultiplexer. Unknown or typeless
    payloads are logged and dropped.
    """
    if not isinstance(payload, dict):
        logger.warning("Dropping structured line that is not an object: %r", payload)
        return None

    kind = payload.get("type")
    if kind == "status":
        return StatusEvent(
            phase=str(payload.get("status") or ""),
            message=str(payload.get("message") or ""),
        )
    if kind == "search_results":
        return SearchResultsEvent(payload=payload)
    if kind == "context_cards":
        return ContextCardsEvent(payload=payload)
    if kind == "meta":
        return MetaEvent(
            user_message_id=payload.get("userMessageId"),
            assistant_message_id=payload.get("assistantMessageId"),
        )
    if kind == "error":
        return ErrorEvent(message=str(payload.get("error") or payload.get("message") or "Chat error"))

    logger.debug("Ignoring structured line with unknown type %r", kind)
    return None
