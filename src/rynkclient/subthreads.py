"""Sub-threads: side discussions anchored to a quoted span of a message."""

from __future__ import annotations

import asyncio
import logging
import uuid

from .client import ApiClient
from .exceptions import NetworkFailure
from .models import SubThread, SubThreadMessage
from .parser import parse_sub_thread, parse_sub_threads

logger = logging.getLogger(__name__)


class SubThreadManager:
    """Keeps the sub-threads of one conversation, at most one per (message, quote)."""

    def __init__(self, api: ApiClient, conversation_id: str | None = None):
        self.api = api
        self.conversation_id = conversation_id
        self.threads: list[SubThread] = []
        self.active: SubThread | None = None
        self.is_loading = False
        self._pending: dict[tuple[str, str], asyncio.Task] = {}

    @property
    def message_ids_with_threads(self) -> set[str]:
        return {t.source_message_id for t in self.threads}

    def find(self, source_message_id: str, quoted_text: str) -> SubThread | None:
        key = (source_message_id, quoted_text)
        return next((t for t in self.threads if t.key == key), None)

    def threads_for_message(self, message_id: str) -> list[SubThread]:
        return [t for t in self.threads if t.source_message_id == message_id]

    async def load(self, conversation_id: str | None = None) -> list[SubThread]:
        if conversation_id is not None and conversation_id != self.conversation_id:
            self.conversation_id = conversation_id
            self.active = None
        if not self.conversation_id:
            self.threads = []
            return []

        self.is_loading = True
        try:
            response = await self.api.get(
                self.api.path("/sub-chats"), params={"conversationId": self.conversation_id}
            )
        finally:
            self.is_loading = False
        self.threads = parse_sub_threads(response.get("subChats"))
        return self.threads

    async def open(self, quoted_text: str, source_message_id: str, full_message_content: str = "") -> SubThread | None:
        """Open the sub-thread for a quote, creating it only if none exists.

        Concurrent calls for the same quote share one creation request.
        """
        if not self.conversation_id:
            logger.debug("No conversation selected; not opening a sub-thread")
            return None

        existing = self.find(source_message_id, quoted_text)
        if existing is not None:
            self.active = existing
            return existing

        key = (source_message_id, quoted_text)
        task = self._pending.get(key)
        if task is None:
            task = asyncio.create_task(self._create(quoted_text, source_message_id, full_message_content))
            self._pending[key] = task
            task.add_done_callback(lambda _: self._pending.pop(key, None))
        thread = await asyncio.shield(task)
        self.active = thread
        return thread

    async def _create(self, quoted_text: str, source_message_id: str, full_message_content: str) -> SubThread:
        response = await self.api.post(
            self.api.path("/sub-chats"),
            {
                "conversationId": self.conversation_id,
                "sourceMessageId": source_message_id,
                "quotedText": quoted_text,
                "sourceMessageContent": full_message_content,
            },
        )
        thread = parse_sub_thread(response.get("subChat"))
        if thread is None:
            raise NetworkFailure(None, "Sub-thread creation returned no sub-thread")
        # the server may have returned an existing thread for this quote
        self.threads = [thread] + [t for t in self.threads if t.id != thread.id and t.key != thread.key]
        return thread

    def view_for_message(self, message_id: str) -> SubThread | None:
        """Activate the first sub-thread attached to ``message_id``."""
        threads = self.threads_for_message(message_id)
        self.active = threads[0] if threads else None
        return self.active

    def close(self):
        self.active = None

    async def delete(self, thread_id: str):
        await self.api.delete(self.api.path(f"/sub-chats/{thread_id}"))
        self.threads = [t for t in self.threads if t.id != thread_id]
        if self.active is not None and self.active.id == thread_id:
            self.active = None

    async def send_in_thread(self, content: str) -> SubThread | None:
        """Send a message in the active sub-thread.

        The user entry is shown immediately and replaced by the server's copy
        of the thread on success, or removed again on failure.
        """
        thread = self.active
        text = content.strip()
        if thread is None or not text:
            return None

        pending = SubThreadMessage(id=f"msg_{uuid.uuid4().hex[:12]}", role="user", content=text)
        self._replace(thread.model_copy(update={"messages": [*thread.messages, pending]}))
        try:
            response = await self.api.post(self.api.path(f"/sub-chats/{thread.id}/message"), {"content": text})
            updated = parse_sub_thread(response.get("subChat"))
            if updated is None:
                raise NetworkFailure(None, "Sub-thread reply returned no sub-thread")
        except Exception:
            current = self._get(thread.id)
            if current is not None:
                self._replace(current.model_copy(update={"messages": [m for m in current.messages if m.id != pending.id]}))
            raise

        self._replace(updated)
        return updated

    def _get(self, thread_id: str) -> SubThread | None:
        return next((t for t in self.threads if t.id == thread_id), None)

    def _replace(self, thread: SubThread):
        # last write wins
        self.threads = [thread if t.id == thread.id else t for t in self.threads]
        if self.active is not None and self.active.id == thread.id:
            self.active = thread
