"""Tests for models, payload parsing, events and error helpers."""

import logging
from datetime import datetime, timezone

from rynkclient.events import ErrorEvent, MetaEvent, StatusEvent, event_from_payload
from rynkclient.exceptions import CreditExhausted, NetworkFailure, error_message_from_body, is_credit_failure
from rynkclient.models import Message, new_temp_id
from rynkclient.parser import parse_conversations, parse_job, parse_message, parse_messages


class TestMessage:

    def test_camel_case_wire_format(self):
        msg = Message.model_validate({
            "id": "m1",
            "conversationId": "c1",
            "role": "user",
            "content": "hi",
            "versionOf": "m0",
            "versionNumber": 2,
            "createdAt": "2025-01-01T12:00:00Z",
        })
        assert msg.conversation_id == "c1"
        assert msg.version_number == 2
        assert msg.to_wire()["conversationId"] == "c1"

    def test_naive_timestamp_is_utc(self):
        msg = Message(id="m1", conversation_id="c1", role="user", created_at=datetime(2025, 1, 1))
        assert msg.created_at.tzinfo == timezone.utc

    def test_temp_ids(self):
        temp_id = new_temp_id("user")
        assert temp_id.startswith("temp_user_")
        assert Message(id=temp_id, conversation_id="c1", role="user").is_temporary
        assert temp_id != new_temp_id("user")


class TestParser:

    def test_invalid_entries_are_skipped(self, caplog):
        with caplog.at_level(logging.WARNING):
            messages = parse_messages([
                {"id": "m1", "conversationId": "c1", "role": "user"},
                {"id": "bad", "role": "user"},
            ])
        assert [m.id for m in messages] == ["m1"]
        assert "bad" in caplog.text

    def test_non_list(self):
        assert parse_conversations({"id": "c1"}) == []
        assert parse_conversations(None) == []

    def test_single_message(self):
        assert parse_message({"id": "m1", "conversationId": "c1", "role": "assistant"}).role == "assistant"
        assert parse_message({"content": "no id"}) is None

    def test_job(self):
        assert parse_job({"id": "j1", "status": "queued"}).status == "queued"
        assert parse_job({"id": "j1", "status": "exploded"}) is None


class TestEventFromPayload:

    def test_status(self):
        event = event_from_payload({"type": "status", "status": "searching", "message": "Looking"})
        assert event == StatusEvent(phase="searching", message="Looking")

    def test_meta(self):
        event = event_from_payload({"type": "meta", "userMessageId": "u1", "assistantMessageId": "a1"})
        assert event == MetaEvent(user_message_id="u1", assistant_message_id="a1")

    def test_error_uses_error_or_message(self):
        assert event_from_payload({"type": "error", "error": "x"}) == ErrorEvent(message="x")
        assert event_from_payload({"type": "error", "message": "y"}) == ErrorEvent(message="y")

    def test_unknown_and_non_object(self):
        assert event_from_payload({"type": "mystery"}) is None
        assert event_from_payload({"no": "type"}) is None
        assert event_from_payload([1, 2]) is None


class TestErrors:

    def test_message_from_json(self):
        assert error_message_from_body('{"message":"a","error":"b"}') == "a"
        assert error_message_from_body('{"error":"b"}') == "b"

    def test_raw_text_is_truncated(self):
        assert len(error_message_from_body("x" * 2000)) == 500

    def test_empty_body_uses_default(self):
        assert error_message_from_body("", default="Chat request failed") == "Chat request failed"

    def test_credit_failures(self):
        assert is_credit_failure(402, "Payment required")
        assert is_credit_failure(403, "credit limit reached")
        assert is_credit_failure(429, "Daily credit limit reached")
        assert is_credit_failure(None, "Out of credits")
        assert is_credit_failure(403, "Forbidden", guest=True)
        assert not is_credit_failure(403, "Forbidden")
        assert not is_credit_failure(500, "Internal error", guest=True)

    def test_credit_exhausted_is_a_network_failure(self):
        exc = CreditExhausted()
        assert isinstance(exc, NetworkFailure)
        assert exc.status == 402
