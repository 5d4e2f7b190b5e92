"""Editing a user message into a new version, with optional regeneration."""

from __future__ import annotations

import logging

from .controller import ConversationController
from .exceptions import NetworkFailure, RynkError
from .models import Message
from .parser import parse_message

logger = logging.getLogger(__name__)


def is_last_user_turn(messages: list[Message], message_id: str) -> bool:
    """True if ``message_id`` is the most recent user message in ``messages``.

    ``messages`` must be the active timeline in turn order, as returned by
    ``active_versions``.
    """
    last_user = None
    for index, msg in enumerate(messages):
        if msg.role == "user":
            last_user = index
    for index, msg in enumerate(messages):
        if msg.id == message_id:
            return index == last_user
    return False


class EditController:
    """Draft state for editing one user message at a time.

    Saving creates a new version server-side and reloads the list. A reply is
    regenerated only when the edited message was the latest user turn; older
    turns are left as they are.
    """

    def __init__(self, chat: ConversationController):
        self.chat = chat
        self.editing_message_id: str | None = None
        self.draft = ""
        self.is_saving = False

    @property
    def is_editing(self) -> bool:
        return self.editing_message_id is not None

    def start_edit(self, message: Message) -> bool:
        if self.chat.is_sending:
            logger.debug("Cannot edit %s while a send is in flight", message.id)
            return False
        if message.role != "user":
            logger.debug("Only user messages can be edited")
            return False
        self.editing_message_id = message.id
        self.draft = message.content
        return True

    def update_draft(self, content: str):
        self.draft = content

    def cancel_edit(self):
        self.editing_message_id = None
        self.draft = ""

    async def save_edit(self) -> Message | None:
        """Persist the draft as a new version. Returns the new version, or None if nothing was saved."""
        chat = self.chat
        conv_id = chat.current_conversation_id
        message_id = self.editing_message_id
        content = self.draft.strip()
        if not message_id or not conv_id or not content or self.is_saving or chat.is_sending:
            return None

        # decided against the list as it was before the edit
        regenerate = is_last_user_turn(chat.messages, message_id)

        self.is_saving = True
        self.cancel_edit()
        try:
            response = await chat.api.post(
                chat.api.path("/messages/edit"),
                {"conversationId": conv_id, "messageId": message_id, "newContent": content},
            )
            new_message = parse_message(response.get("newMessage"))
            if new_message is None:
                raise NetworkFailure(None, "Failed to create message version")

            await chat.reload_messages()
            if regenerate:
                logger.debug("Regenerating reply for edited message %s", new_message.id)
                await chat.regenerate(new_message)
            return new_message
        except RynkError as exc:
            chat.error = str(exc)
            raise
        finally:
            self.is_saving = False
