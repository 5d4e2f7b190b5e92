"""
Conversation controller: one send at a time, from optimistic insert to final commit.

A send inserts an optimistic user message and an empty assistant placeholder,
streams the reply into the placeholder through the demultiplexer and the
streaming session, and either commits the final text or removes every message
of the turn again.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Coroutine
from contextlib import aclosing
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Literal

from .client import ApiClient, ChatStream
from .config import (
    ASSISTANT_MESSAGE_ID_HEADER,
    INITIAL_STATUS,
    MESSAGE_PAGE_SIZE,
    USER_MESSAGE_ID_HEADER,
)
from .credits import CreditGovernor
from .demux import demux, demux_polled
from .events import DoneEvent, ErrorEvent, MetaEvent, SearchResultsEvent, StatusEvent
from .exceptions import CreditExhausted, NetworkFailure, RynkError, is_credit_failure
from .models import Conversation, Folder, Message, SearchResults, new_temp_id, utcnow
from .parser import parse_conversations, parse_folder, parse_folders, parse_messages
from .session import StreamingSession
from .store import MessageStore

logger = logging.getLogger(__name__)

Delivery = Literal["incremental", "polled"]


@dataclass
class _Turn:
    """Ids of the messages one send added to the store."""

    conversation_id: str
    assistant_id: str
    user_id: str | None = None

    @property
    def ids(self) -> set[str]:
        return {i for i in (self.user_id, self.assistant_id) if i}


class ConversationController:
    """Owns the conversation list, the message store and the streaming session.

    Credits and the single-flight guard are instance state, so several
    controllers can run side by side without sharing either.
    """

    def __init__(
        self,
        api: ApiClient,
        credits: CreditGovernor | None = None,
        project_id: str | None = None,
        delivery: Delivery = "incremental",
        generate_titles: bool | None = None,
    ):
        self.api = api
        self.credits = credits or api.credits or CreditGovernor()
        self.api.credits = self.credits
        self.project_id = project_id
        self.delivery = delivery
        # guest conversations get their title from the backend
        self.generate_titles = (not api.is_guest) if generate_titles is None else generate_titles

        self.store = MessageStore()
        self.session = StreamingSession()
        self.conversations: list[Conversation] = []
        self.folders: list[Folder] = []
        self.current_conversation_id: str | None = None
        self.search_results: dict[str, SearchResults] = {}
        self.is_loading_conversations = False
        self.is_sending = False
        self.error: str | None = None

        self._stream_task: asyncio.Task | None = None
        self._aborted = False
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def current_conversation(self) -> Conversation | None:
        for conv in self.conversations:
            if conv.id == self.current_conversation_id:
                return conv
        return None

    @property
    def messages(self) -> list[Message]:
        return self.store.active_messages()

    @property
    def is_streaming(self) -> bool:
        return self.session.is_streaming

    def clear_error(self):
        self.error = None

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def load_conversations(self) -> list[Conversation]:
        self.is_loading_conversations = True
        try:
            params = {"projectId": self.project_id} if self.project_id else None
            response = await self.api.get(self.api.path("/conversations"), params=params)
        finally:
            self.is_loading_conversations = False

        conversations = parse_conversations(response.get("conversations"))
        if self.project_id:
            conversations = [c for c in conversations if c.project_id == self.project_id]
        elif not self.api.is_guest:
            conversations = [c for c in conversations if not c.project_id]
        self.conversations = conversations
        return conversations

    async def select_conversation(self, conversation_id: str | None):
        changed = conversation_id != self.current_conversation_id
        self.current_conversation_id = conversation_id
        self.error = None
        self.session.clear()
        if conversation_id is None:
            self.store.clear()
            return
        if changed:
            self.store.clear()
        await self.load_messages()

    def create_new_chat(self):
        logger.debug("Starting a new chat")
        self.current_conversation_id = None
        self.store.clear()
        self.session.clear()
        self.error = None

    async def delete_conversation(self, conversation_id: str):
        await self.api.delete(self.api.path(f"/conversations/{conversation_id}"))
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        self.search_results.pop(conversation_id, None)
        if self.current_conversation_id == conversation_id:
            self.create_new_chat()

    async def rename_conversation(self, conversation_id: str, title: str):
        await self.api.patch(self.api.path(f"/conversations/{conversation_id}"), {"title": title})
        self.conversations = [
            c.model_copy(update={"title": title, "updated_at": utcnow()}) if c.id == conversation_id else c
            for c in self.conversations
        ]

    async def toggle_pin(self, conversation_id: str):
        """Flip the pin locally first; revert if the server rejects it."""
        self._flip_pin(conversation_id)
        conv = next((c for c in self.conversations if c.id == conversation_id), None)
        is_pinned = conv.is_pinned if conv is not None else True
        try:
            await self.api.put(self.api.path(f"/conversations/{conversation_id}/pin"), {"isPinned": is_pinned})
        except RynkError:
            logger.warning("Failed to toggle pin for %s", conversation_id, exc_info=True)
            self._flip_pin(conversation_id)
            raise

    def _flip_pin(self, conversation_id: str):
        self.conversations = [
            c.model_copy(update={"is_pinned": not c.is_pinned}) if c.id == conversation_id else c
            for c in self.conversations
        ]

    async def branch_conversation(self, message_id: str) -> str:
        conv_id = self._require_conversation()
        response = await self.api.post(
            self.api.path("/conversations/branch"),
            {"conversationId": conv_id, "messageId": message_id},
        )
        branch_id = response.get("conversationId")
        if not branch_id:
            raise NetworkFailure(None, "Branch request returned no conversation id")
        return branch_id

    async def create_share_link(self, conversation_id: str) -> str:
        response = await self.api.post(self.api.path("/share"), {"conversationId": conversation_id})
        share = response.get("share") or {}
        if not share.get("id"):
            raise NetworkFailure(None, "Share request returned no share id")
        return share["id"]

    def _require_conversation(self) -> str:
        if not self.current_conversation_id:
            raise RynkError("No active conversation")
        return self.current_conversation_id

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------

    async def load_folders(self) -> list[Folder]:
        response = await self.api.get(self.api.path("/folders"))
        self.folders = parse_folders(response.get("folders"))
        return self.folders

    async def create_folder(
        self,
        name: str,
        description: str | None = None,
        conversation_ids: list[str] | None = None,
    ) -> Folder:
        response = await self.api.post(
            self.api.path("/folders"),
            {"name": name, "description": description, "conversationIds": conversation_ids or []},
        )
        folder = parse_folder(response.get("folder"))
        if folder is None:
            raise NetworkFailure(None, "Folder creation returned no folder")
        self.folders = [folder] + [f for f in self.folders if f.id != folder.id]
        return folder

    async def update_folder(
        self,
        folder_id: str,
        name: str | None = None,
        description: str | None = None,
        conversation_ids: list[str] | None = None,
    ) -> Folder | None:
        """Send only the fields that are given. Returns the server's copy, if any."""
        updates: dict[str, Any] = {}
        if name is not None:
            updates["name"] = name
        if description is not None:
            updates["description"] = description
        if conversation_ids is not None:
            updates["conversationIds"] = conversation_ids
        response = await self.api.patch(self.api.path(f"/folders/{folder_id}"), updates)
        folder = parse_folder(response.get("folder"))
        if folder is not None:
            self.folders = [folder if f.id == folder_id else f for f in self.folders]
        return folder

    async def delete_folder(self, folder_id: str):
        await self.api.delete(self.api.path(f"/folders/{folder_id}"))
        self.folders = [f for f in self.folders if f.id != folder_id]

    # ------------------------------------------------------------------
    # Messages and pagination
    # ------------------------------------------------------------------

    def _messages_path(self, conversation_id: str) -> str:
        return self.api.path(f"/conversations/{conversation_id}/messages")

    async def load_messages(self) -> list[Message]:
        """Load the newest page of the current conversation."""
        conv_id = self.current_conversation_id
        if not conv_id:
            return []
        if self.is_sending:
            logger.debug("Skipping message load while a send is in flight")
            return self.store.messages

        response = await self.api.get(self._messages_path(conv_id), params={"limit": MESSAGE_PAGE_SIZE})
        # a send may have started while the page was loading; keep its optimistic messages
        if self.is_sending or conv_id != self.current_conversation_id:
            logger.debug("Discarding message page for %s", conv_id)
            return self.store.messages

        self.store.set_messages(parse_messages(response.get("messages")))
        self.store.set_page_cursor(response.get("nextCursor"))
        return self.store.messages

    async def load_more_messages(self) -> list[Message]:
        """Prepend the next older page. Returns the messages that were added."""
        conv_id = self.current_conversation_id
        store = self.store
        if not conv_id or store.is_loading_more or not store.next_cursor or not store.has_more_messages:
            return []

        store.is_loading_more = True
        try:
            response = await self.api.get(
                self._messages_path(conv_id),
                params={"limit": MESSAGE_PAGE_SIZE, "cursor": store.next_cursor},
            )
        finally:
            store.is_loading_more = False

        page = parse_messages(response.get("messages"))
        if not page:
            store.has_more_messages = False
            return []
        added = store.prepend_messages(page)
        store.set_page_cursor(response.get("nextCursor"))
        return added

    async def reload_messages(self) -> list[Message]:
        """Replace the store with the server's canonical message list."""
        conv_id = self.current_conversation_id
        if not conv_id:
            return []
        response = await self.api.get(self._messages_path(conv_id))
        self.store.set_messages(parse_messages(response.get("messages")))
        return self.store.messages

    async def delete_message(self, message_id: str):
        conv_id = self._require_conversation()
        await self.api.delete(self.api.path(f"/conversations/{conv_id}/messages/{message_id}"))
        # deletion cascades server-side
        await self.reload_messages()

    async def get_message_versions(self, message_id: str) -> list[Message]:
        response = await self.api.get(self.api.path(f"/messages/{message_id}/versions"))
        return parse_messages(response.get("versions"))

    async def switch_to_message_version(self, version_id: str):
        conv_id = self._require_conversation()
        await self.api.post(self.api.path(f"/messages/{version_id}/versions"), {"conversationId": conv_id})
        await self.reload_messages()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(
        self,
        content: str,
        referenced_conversations: list[dict[str, str]] | None = None,
        attachments: list[dict[str, Any]] | None = None,
        referenced_folders: list[dict[str, str]] | None = None,
    ) -> Message | None:
        """Send one user turn and stream the reply.

        Returns the committed assistant message, or None when the call was
        rejected (empty content or another send in flight). Failures roll the
        turn back and are re-raised.
        """
        text = content.strip()
        if not text or self.is_sending:
            return None
        # set before the first await so a second call cannot slip through
        self.is_sending = True
        try:
            try:
                self.credits.check()
            except CreditExhausted as exc:
                self.error = str(exc)
                raise
            self.error = None

            try:
                conv_id, is_new = await self._ensure_conversation()
            except RynkError as exc:
                self.error = str(exc)
                raise

            now = utcnow()
            user_message = Message(
                id=new_temp_id("user"),
                conversation_id=conv_id,
                role="user",
                content=text,
                attachments=attachments or None,
                created_at=now,
            )
            placeholder = Message(
                id=new_temp_id("assistant"),
                conversation_id=conv_id,
                role="assistant",
                content="",
                created_at=now + timedelta(microseconds=1),
            )
            logger.debug("Adding optimistic messages %s, %s", user_message.id, placeholder.id)
            self.store.add_messages([user_message, placeholder])

            turn = _Turn(conversation_id=conv_id, user_id=user_message.id, assistant_id=placeholder.id)
            payload = {
                "conversationId": conv_id,
                "message": text,
                "useReasoning": "auto",
                "referencedConversations": referenced_conversations or [],
                "referencedFolders": referenced_folders or [],
            }
            if attachments:
                payload["attachments"] = attachments

            reply = await self._stream_reply(payload, turn)

            if is_new and self.generate_titles:
                self._spawn(self._generate_title(conv_id, text))
            return reply
        finally:
            self.is_sending = False

    async def regenerate(self, message: Message) -> Message | None:
        """Stream a fresh reply to an existing user message (e.g. a new version)."""
        if self.is_sending:
            return None
        self.is_sending = True
        try:
            self.credits.check()
            placeholder = Message(
                id=new_temp_id("assistant"),
                conversation_id=message.conversation_id,
                role="assistant",
                content="",
                created_at=max(utcnow(), message.created_at + timedelta(microseconds=1)),
            )
            self.store.add_messages([placeholder])
            turn = _Turn(conversation_id=message.conversation_id, assistant_id=placeholder.id)
            payload = {
                "conversationId": message.conversation_id,
                "messageId": message.id,
                "useReasoning": "auto",
            }
            return await self._stream_reply(payload, turn)
        finally:
            self.is_sending = False

    def cancel(self) -> bool:
        """Abort the in-flight stream, keeping the partial reply. Idempotent."""
        task = self._stream_task
        if task is None or task.done():
            return False
        self._aborted = True
        task.cancel()
        return True

    async def _ensure_conversation(self) -> tuple[str, bool]:
        if self.current_conversation_id:
            return self.current_conversation_id, False

        if self.api.is_guest:
            # created server-side together with the first message
            conv_id = str(uuid.uuid4())
        else:
            payload = {"projectId": self.project_id} if self.project_id else {}
            response = await self.api.post(self.api.path("/conversations"), payload)
            conv_id = response.get("conversationId")
            if not conv_id:
                raise NetworkFailure(None, "Failed to create conversation: no id returned")
        self.current_conversation_id = conv_id
        return conv_id, True

    async def _stream_reply(self, payload: dict, turn: _Turn) -> Message | None:
        self.session.start(turn.assistant_id, initial_status=INITIAL_STATUS)
        self._aborted = False
        self._stream_task = asyncio.create_task(self._pump(payload, turn))
        try:
            await self._stream_task
        except asyncio.CancelledError:
            self.session.cancel(self.store)
            if not self._aborted:
                raise
            logger.debug("Stream aborted; kept partial reply for %s", turn.assistant_id)
            return self.store.get(turn.assistant_id)
        except Exception as exc:
            self._rollback(turn, exc)
            raise
        finally:
            self._stream_task = None

        self.session.finish(self.store)
        self.credits.record_turn()
        self._spawn(self._refresh_conversations())
        return self.store.get(turn.assistant_id)

    async def _pump(self, payload: dict, turn: _Turn):
        async with self.api.stream_chat(self.api.path("/chat"), payload) as stream:
            self._apply_server_ids(
                turn,
                stream.headers.get(USER_MESSAGE_ID_HEADER),
                stream.headers.get(ASSISTANT_MESSAGE_ID_HEADER),
            )
            async with aclosing(self._events(stream)) as events:
                async for event in events:
                    if isinstance(event, ErrorEvent):
                        if is_credit_failure(event.status, event.message, guest=self.api.is_guest):
                            self.credits.mark_exhausted()
                            raise CreditExhausted()
                        raise NetworkFailure(event.status, event.message)
                    if isinstance(event, MetaEvent):
                        self._apply_server_ids(turn, event.user_message_id, event.assistant_message_id)
                        continue
                    if isinstance(event, SearchResultsEvent):
                        results = self.session.set_search_results(event.payload)
                        if results is not None:
                            self.search_results[turn.conversation_id] = results
                        continue
                    self.session.apply(event)
                    if isinstance(event, DoneEvent) or (isinstance(event, StatusEvent) and event.is_complete):
                        break

    def _events(self, stream: ChatStream):
        if self.delivery == "polled":
            return demux_polled(stream.snapshots())
        return demux(stream.deltas())

    def _apply_server_ids(self, turn: _Turn, user_id: str | None, assistant_id: str | None):
        if user_id and turn.user_id and user_id != turn.user_id:
            self._swap_id(turn.user_id, user_id)
            turn.user_id = user_id
        if assistant_id and assistant_id != turn.assistant_id:
            self._swap_id(turn.assistant_id, assistant_id)
            turn.assistant_id = assistant_id
            self.session.retarget(assistant_id)

    def _swap_id(self, old_id: str, new_id: str):
        message = self.store.get(old_id)
        if message is not None:
            self.store.replace_message(old_id, message.model_copy(update={"id": new_id}))

    def _rollback(self, turn: _Turn, exc: BaseException):
        logger.warning("Send failed, removing optimistic messages: %s", exc)
        ids = turn.ids
        self.store.remove_messages(lambda m: m.id in ids)
        if self.session.is_streaming:
            self.session.fail(str(exc))
        self.error = str(exc)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _refresh_conversations(self):
        try:
            await self.load_conversations()
        except RynkError:
            logger.warning("Failed to refresh conversations", exc_info=True)

    async def _generate_title(self, conversation_id: str, content: str):
        try:
            await self.api.post(
                self.api.path("/chat/title"),
                {"conversationId": conversation_id, "messageContent": content},
            )
        except RynkError:
            logger.warning("Failed to generate title for %s", conversation_id, exc_info=True)
            return
        await self._refresh_conversations()

    async def wait_background(self):
        """Wait for title generation and list refreshes started by sends."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self):
        self.cancel()
        await self.wait_background()
