"""Per-request streaming state: target message, reply text, status pills, search results."""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable

from pydantic import ValidationError

from .events import (
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    MetaEvent,
    SearchResultsEvent,
    StatusEvent,
    StreamEvent,
)
from .models import SearchResults, StatusPill
from .store import MessageStore

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    ERROR = "error"


class SessionStateError(RuntimeError):
    """A transition was requested from a state that does not allow it."""


Listener = Callable[["StreamingSession"], None]


class StreamingSession:
    """State machine for the single active stream.

    Idle -> Requesting -> Streaming -> Finalizing -> Idle, with Error reachable
    from Requesting and Streaming. Only the active send writes to it; any
    number of listeners may observe it.
    """

    def __init__(self):
        self.state = SessionState.IDLE
        self.message_id: str | None = None
        self.content = ""
        self.status_pills: list[StatusPill] = []
        self.search_results: SearchResults | None = None
        self.error: str | None = None
        self._listeners: list[Listener] = []

    @property
    def is_streaming(self) -> bool:
        return self.state in (SessionState.REQUESTING, SessionState.STREAMING)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` after every change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self):
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:
                logger.warning("Streaming session listener failed", exc_info=True)

    def start(self, message_id: str, initial_status: tuple[str, str] | None = None):
        """Begin a stream. ``initial_status`` is shown before any byte arrives."""
        if self.state not in (SessionState.IDLE, SessionState.ERROR):
            raise SessionStateError(f"Cannot start a stream while {self.state.value}")
        self.state = SessionState.REQUESTING
        self.message_id = message_id
        self.content = ""
        self.status_pills = []
        self.search_results = None
        self.error = None
        if initial_status is not None:
            phase, message = initial_status
            self.status_pills.append(StatusPill(phase=phase, message=message))
        logger.debug("Streaming session started for %s", message_id)
        self._publish()

    def retarget(self, message_id: str):
        """Point the session at the server-issued id of the streaming message."""
        self.message_id = message_id
        self._publish()

    def add_status(self, phase: str, message: str = ""):
        self._enter_streaming()
        self.status_pills.append(StatusPill(phase=phase, message=message))
        self._publish()

    def replace_content(self, text: str):
        """Each content event carries the full text so far, so it replaces the buffer."""
        self._enter_streaming()
        self.content = text
        self._publish()

    def set_search_results(self, payload: dict) -> SearchResults | None:
        """Store a search snapshot. A payload that does not validate is logged and dropped."""
        try:
            results = SearchResults.model_validate(payload)
        except ValidationError:
            logger.warning("Dropping malformed search results", exc_info=True)
            return None
        self.search_results = results
        self._publish()
        return results

    def apply(self, event: StreamEvent):
        """Apply one stream event.

        Done and Error are handled by ``finish``/``fail``; Meta ids are
        reconciled by the owner of the store, which calls ``retarget``.
        """
        if not self.is_streaming:
            logger.debug("Ignoring %s event outside an active stream", event.kind)
            return
        if isinstance(event, ContentEvent):
            self.replace_content(event.text)
        elif isinstance(event, StatusEvent):
            self.add_status(event.phase, event.message)
        elif isinstance(event, SearchResultsEvent):
            self.set_search_results(event.payload)
        elif isinstance(event, (DoneEvent, ErrorEvent, MetaEvent)):
            pass
        # context cards are not rendered by this client

    def finish(self, store: MessageStore | None = None, content: str | None = None) -> str:
        """Commit the reply into the target message and return to Idle."""
        final = self.content if content is None else content
        self.state = SessionState.FINALIZING
        self.content = final
        self._publish()
        if store is not None and self.message_id is not None:
            store.update_message(self.message_id, content=final)
        self.state = SessionState.IDLE
        self.message_id = None
        self._publish()
        return final

    def fail(self, message: str):
        if not self.is_streaming:
            raise SessionStateError(f"Cannot fail a stream while {self.state.value}")
        self.state = SessionState.ERROR
        self.error = message
        self.message_id = None
        self._publish()

    def cancel(self, store: MessageStore | None = None) -> str:
        """Abort: keep what was already shown by committing the partial reply."""
        if not self.is_streaming:
            return self.content
        logger.debug("Streaming session cancelled for %s", self.message_id)
        return self.finish(store)

    def clear(self):
        """Drop pills and search results (new or switched conversation)."""
        self.status_pills = []
        self.search_results = None
        if not self.is_streaming:
            self.state = SessionState.IDLE
            self.content = ""
            self.error = None
        self._publish()

    def _enter_streaming(self):
        if self.state == SessionState.REQUESTING:
            self.state = SessionState.STREAMING
