"""In-memory ordered message collection with pagination state."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from .models import Message, active_versions

logger = logging.getLogger(__name__)


def _by_created_at(messages: Iterable[Message]) -> list[Message]:
    # sorted() is stable, so equal timestamps keep insertion order
    return sorted(messages, key=lambda m: m.created_at)


class MessageStore:
    """Messages of the current conversation, unique by id and sorted by ``created_at``."""

    def __init__(self, messages: Iterable[Message] = ()):
        self._messages: list[Message] = []
        self.next_cursor: str | None = None
        self.has_more_messages = False
        self.is_loading_more = False
        self.set_messages(messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))

    def __contains__(self, message_id: object) -> bool:
        return any(m.id == message_id for m in self._messages)

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def ids(self) -> list[str]:
        return [m.id for m in self._messages]

    def active_messages(self) -> list[Message]:
        """Primary timeline: one active version per turn."""
        return active_versions(self._messages)

    def get(self, message_id: str) -> Message | None:
        for msg in self._messages:
            if msg.id == message_id:
                return msg
        return None

    def set_messages(self, messages: Iterable[Message]):
        """Replace the whole collection (canonical reload)."""
        unique: dict[str, Message] = {}
        for msg in messages:
            unique.setdefault(msg.id, msg)
        self._messages = _by_created_at(unique.values())

    def add_messages(self, batch: Iterable[Message]) -> list[Message]:
        """Add messages whose ids are not present yet, then re-sort everything.

        Returns the messages that were actually added.
        """
        existing = {m.id for m in self._messages}
        added: list[Message] = []
        for msg in batch:
            if msg.id in existing:
                continue
            existing.add(msg.id)
            added.append(msg)
        if added:
            self._messages = _by_created_at(self._messages + added)
        return added

    def update_message(self, message_id: str, **changes: Any) -> Message | None:
        """Merge ``changes`` into a message. No-op when the id is absent."""
        for idx, msg in enumerate(self._messages):
            if msg.id == message_id:
                updated = msg.model_copy(update=changes)
                self._messages[idx] = updated
                if "created_at" in changes:
                    self._messages = _by_created_at(self._messages)
                return updated
        logger.debug("update_message: %s not in store", message_id)
        return None

    def replace_message(self, old_id: str, new_message: Message):
        """Swap a message for another one, typically a temp id for a server id.

        When ``new_message.id`` is already stored under another entry, the old
        entry is dropped instead of creating a duplicate.
        """
        if new_message.id != old_id and new_message.id in self:
            self._messages = [m for m in self._messages if m.id != old_id]
            return
        replaced = [new_message if m.id == old_id else m for m in self._messages]
        self._messages = _by_created_at(replaced)

    def prepend_messages(self, batch: Iterable[Message]) -> list[Message]:
        """Insert an older page in front of the earliest stored message.

        The page is assumed to be ordered already; ids already present are skipped.
        """
        existing = {m.id for m in self._messages}
        page = [m for m in batch if m.id not in existing]
        self._messages = _by_created_at(page + self._messages)
        return page

    def remove_messages(self, predicate: Callable[[Message], bool]) -> list[Message]:
        removed = [m for m in self._messages if predicate(m)]
        if removed:
            self._messages = [m for m in self._messages if not predicate(m)]
        return removed

    def remove_message(self, message_id: str) -> bool:
        return bool(self.remove_messages(lambda m: m.id == message_id))

    def set_page_cursor(self, cursor: str | None):
        self.next_cursor = cursor
        self.has_more_messages = cursor is not None

    def clear(self):
        self._messages = []
        self.next_cursor = None
        self.has_more_messages = False
        self.is_loading_more = False
