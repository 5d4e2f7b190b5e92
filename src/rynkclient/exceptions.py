"""
Error taxonomy for the chat client.

Send-level failures roll back optimistic state and surface one of these;
protocol parse failures are logged by the demultiplexer and never raised.
"""

from __future__ import annotations

import json

from .config import ERROR_TEXT_LIMIT

__all__ = [
    "CreditExhausted",
    "JobFailed",
    "JobTimeout",
    "NetworkFailure",
    "ProtocolParseFailure",
    "RynkError",
    "VersionConflict",
    "error_message_from_body",
]

CREDITS_EXHAUSTED_MESSAGE = "Credits exhausted. Please sign in to continue."


class RynkError(RuntimeError):
    """Base class for every error raised by rynkclient."""


class NetworkFailure(RynkError):
    """Transport-level or non-2xx failure. Never retried automatically."""

    def __init__(self, status: int | None, message: str):
        super().__init__(message)
        self.status = status
        self.message = message

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"[{self.status}] {self.message}"


class CreditExhausted(NetworkFailure):
    """The session has no credits left; the caller should offer an upgrade, not a retry."""

    def __init__(self, message: str = CREDITS_EXHAUSTED_MESSAGE):
        super().__init__(402, message)


class VersionConflict(NetworkFailure):
    """An edit or version switch targeted a stale message."""

    def __init__(self, message: str = "Message version conflict"):
        super().__init__(409, message)


class JobTimeout(RynkError):
    """A polled job did not finish within its attempt budget."""

    def __init__(self, job_id: str, attempts: int):
        super().__init__(f"Job {job_id} did not complete after {attempts} attempts")
        self.job_id = job_id
        self.attempts = attempts


class JobFailed(RynkError):
    """A polled job reported ``status: error``."""

    def __init__(self, job_id: str, message: str | None = None):
        super().__init__(message or f"Job {job_id} failed")
        self.job_id = job_id


class ProtocolParseFailure(RynkError):
    """A structured stream line could not be decoded."""

    def __init__(self, line: str, reason: str):
        super().__init__(f"Malformed structured line ({reason}): {line[:120]!r}")
        self.line = line
        self.reason = reason


def error_message_from_body(text: str, default: str = "Request failed") -> str:
    """Pull a human-readable message out of an error response body.

    Tries JSON ``{"message": ...}`` then ``{"error": ...}``; otherwise returns
    the raw text truncated to ``ERROR_TEXT_LIMIT`` characters.
    """
    text = (text or "").strip()
    if not text:
        return default
    try:
        data = json.loads(text)
    except ValueError:
        data = None
    if isinstance(data, dict):
        for key in ("message", "error"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    return text[:ERROR_TEXT_LIMIT]


def is_credit_failure(status: int | None, message: str, guest: bool = False) -> bool:
    """A 402, a 403 on the guest endpoints, or any failure that mentions credits."""
    if status == 402 or (guest and status == 403):
        return True
    return "credit" in message.lower()
