"""Turn raw response-body deltas into an ordered sequence of stream events."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable

from .classifier import ContentChunk, NeedMoreData, StructuredLine, classify
from .events import (
    ContentEvent,
    DoneEvent,
    ErrorEvent,
    StatusEvent,
    StreamEvent,
    event_from_payload,
)
from .exceptions import error_message_from_body

logger = logging.getLogger(__name__)


class StreamDemultiplexer:
    """Incremental demultiplexer over one growing response buffer.

    Feed it either deltas (``feed``) or the whole response text seen so far
    (``feed_total``); both produce the same events for the same final body,
    wherever the chunk boundaries fall. ``ContentEvent.text`` always carries
    the full reply accumulated so far. A partial line is only published once
    it is closed by a newline, a control line or ``close()``.
    """

    def __init__(self):
        self._buffer = ""
        self._seen = 0
        self._text = ""
        self._published = ""
        self._line_start = True
        self._after_control = False
        self.finished = False

    @property
    def text(self) -> str:
        """Reply text accumulated so far, published or not."""
        return self._text

    def feed(self, delta: str) -> list[StreamEvent]:
        if self.finished or not delta:
            return []
        self._buffer += delta
        return self._drain(final=False)

    def feed_total(self, total: str) -> list[StreamEvent]:
        """Polled delivery: ``total`` is the entire body received so far."""
        if len(total) < self._seen:
            logger.warning(
                "Response buffer shrank from %d to %d chars; ignoring snapshot",
                self._seen, len(total),
            )
            return []
        delta = total[self._seen:]
        self._seen = len(total)
        return self.feed(delta)

    def close(self) -> list[StreamEvent]:
        """Transport closed: flush whatever is left in the buffer."""
        if self.finished:
            return []
        events = self._drain(final=True)
        if not self.finished:
            events.extend(self._close_run())
            self.finished = True
        return events

    def _drain(self, final: bool) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        while self._buffer and not self.finished:
            outcome = classify(self._buffer, line_start=self._line_start, final=final)
            if isinstance(outcome, NeedMoreData):
                if final:
                    # only whitespace is left
                    self._buffer = ""
                break
            self._buffer = outcome.remainder
            if isinstance(outcome, StructuredLine):
                events.extend(self._close_run())
                self._line_start = True
                self._after_control = True
                events.extend(self._apply_structured(outcome))
            elif isinstance(outcome, ContentChunk):
                events.extend(self._apply_content(outcome))
        return events

    def _apply_content(self, chunk: ContentChunk) -> list[StreamEvent]:
        text = chunk.text
        if self._after_control:
            text = text.lstrip()
        if text:
            self._after_control = False
            self._text += text
            self._line_start = text.endswith("\n")
        if chunk.closed:
            return self._close_run()
        return []

    def _apply_structured(self, line: StructuredLine) -> list[StreamEvent]:
        if line.done:
            self.finished = True
            return [DoneEvent()]

        payload = line.payload
        if payload is None:
            return []
        if isinstance(payload, dict) and payload.get("type") == "content":
            self._text += str(payload.get("content") or "")
            return self._close_run()

        event = event_from_payload(payload)
        if event is None:
            return []
        if isinstance(event, ErrorEvent) or (isinstance(event, StatusEvent) and event.is_complete):
            self.finished = True
        return [event]

    def _close_run(self) -> list[StreamEvent]:
        tail = self._text[len(self._published):]
        if not tail.strip():
            return []
        self._published = self._text
        return [ContentEvent(text=self._text)]


def error_event_for_status(status: int, body: str) -> ErrorEvent:
    """Error event for a non-2xx chat response."""
    return ErrorEvent(message=error_message_from_body(body, default="Chat request failed"), status=status)


def demux_chunks(chunks: Iterable[str], polled: bool = False) -> list[StreamEvent]:
    """Run a fully buffered body, split into ``chunks``, through a demultiplexer.

    With ``polled`` the chunks are fed as growing totals instead of deltas.
    """
    demuxer = StreamDemultiplexer()
    events: list[StreamEvent] = []
    total = ""
    for chunk in chunks:
        if polled:
            total += chunk
            events.extend(demuxer.feed_total(total))
        else:
            events.extend(demuxer.feed(chunk))
        if demuxer.finished:
            return events
    events.extend(demuxer.close())
    return events


async def demux(deltas: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
    """Incremental delivery: each item is new text since the previous one."""
    demuxer = StreamDemultiplexer()
    async for delta in deltas:
        for event in demuxer.feed(delta):
            yield event
        if demuxer.finished:
            return
    for event in demuxer.close():
        yield event


async def demux_polled(snapshots: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
    """Polled delivery: each item is the whole body received so far."""
    demuxer = StreamDemultiplexer()
    async for total in snapshots:
        for event in demuxer.feed_total(total):
            yield event
        if demuxer.finished:
            return
    for event in demuxer.close():
        yield event

