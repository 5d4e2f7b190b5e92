"""Remaining-quota tracking for guest sessions."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from .config import CREDITS_HEADER
from .exceptions import CreditExhausted
from .models import CreditState

logger = logging.getLogger(__name__)

CreditsListener = Callable[[int | None], None]


class CreditGovernor:
    """Tracks remaining credits and blocks sends once they run out.

    ``remaining`` is None until the server reports a value; None never blocks.
    The server is the source of truth: header values win over body values,
    and the local decrement after a turn is only a placeholder until the next
    authoritative value arrives.
    """

    def __init__(self, remaining: int | None = None):
        self._state = CreditState(remaining=remaining)
        self._listeners: list[CreditsListener] = []

    @property
    def remaining(self) -> int | None:
        return self._state.remaining

    @property
    def exhausted(self) -> bool:
        return self._state.exhausted

    @property
    def state(self) -> CreditState:
        return self._state.model_copy()

    def on_change(self, listener: CreditsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set(self, remaining: int | None):
        if remaining == self._state.remaining:
            return
        logger.debug("Credits remaining: %s -> %s", self._state.remaining, remaining)
        self._state = CreditState(remaining=remaining)
        for listener in list(self._listeners):
            listener(remaining)

    def check(self):
        """Raise CreditExhausted before any network call if nothing is left."""
        if self.exhausted:
            raise CreditExhausted()

    def update_from_headers(self, headers: Mapping[str, str]) -> bool:
        value = headers.get(CREDITS_HEADER)
        if value is None:
            return False
        try:
            remaining = int(value.strip())
        except ValueError:
            logger.warning("Ignoring non-numeric %s header: %r", CREDITS_HEADER, value)
            return False
        self.set(remaining)
        return True

    def update_from_body(self, body: Any) -> bool:
        if not isinstance(body, dict):
            return False
        value = body.get("creditsRemaining")
        # bool is an int subclass, reject it explicitly
        if isinstance(value, bool) or not isinstance(value, int):
            return False
        self.set(value)
        return True

    def reconcile(self, headers: Mapping[str, str], body: Any = None) -> bool:
        """Apply the authoritative value from a response; the header wins."""
        if self.update_from_headers(headers):
            return True
        return self.update_from_body(body)

    def record_turn(self):
        """Pessimistic local decrement after a successful turn."""
        if self._state.remaining is not None and self._state.remaining > 0:
            self.set(self._state.remaining - 1)

    def mark_exhausted(self):
        self.set(0)
