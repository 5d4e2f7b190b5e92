"""Parse backend JSON payloads into models, skipping entries that do not validate."""

from __future__ import annotations

import logging
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from .models import Conversation, Folder, Job, Message, SubThread

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def _parse_list(model: type[M], data: Any, label: str) -> list[M]:
    if data is None:
        return []
    if not isinstance(data, list):
        logger.warning("Expected a list of %ss, got %s", label, type(data).__name__)
        return []

    items: list[M] = []
    for entry in data:
        try:
            items.append(model.model_validate(entry))
        except ValidationError:
            entry_id = entry.get("id", "unknown") if isinstance(entry, dict) else "unknown"
            logger.warning("Failed to parse %s '%s'", label, entry_id, exc_info=True)
    return items


def parse_message(data: Any) -> Message | None:
    """Parse a single message dict. Returns None if it cannot be parsed."""
    if not isinstance(data, dict) or not data.get("id"):
        logger.warning("Skipping message with missing id")
        return None
    try:
        return Message.model_validate(data)
    except ValidationError:
        logger.warning("Failed to parse message '%s'", data.get("id"), exc_info=True)
        return None


def parse_messages(data: Any) -> list[Message]:
    return _parse_list(Message, data, "message")


def parse_conversations(data: Any) -> list[Conversation]:
    return _parse_list(Conversation, data, "conversation")


def parse_folders(data: Any) -> list[Folder]:
    return _parse_list(Folder, data, "folder")


def parse_folder(data: Any) -> Folder | None:
    folders = parse_folders([data] if data is not None else [])
    return folders[0] if folders else None


def parse_sub_threads(data: Any) -> list[SubThread]:
    return _parse_list(SubThread, data, "sub-thread")


def parse_sub_thread(data: Any) -> SubThread | None:
    threads = parse_sub_threads([data] if data is not None else [])
    return threads[0] if threads else None


def parse_job(data: Any) -> Job | None:
    jobs = _parse_list(Job, [data] if data is not None else [], "job")
    return jobs[0] if jobs else None
