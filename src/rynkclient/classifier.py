"""
Decide whether the head of a stream buffer is a structured control line or reply text.

The chat endpoints write newline-terminated JSON control lines (bare or behind an
SSE ``data: `` prefix) into the same response body as the raw reply text, with
no framing. Everything that has to guess lives here behind ``classify()``, so a
properly framed transport can replace it without touching the consumers.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Union

from .config import DONE_TOKEN, SSE_PREFIX, STRUCTURED_SENTINELS
from .exceptions import ProtocolParseFailure

logger = logging.getLogger(__name__)

_SSE_FIELD = SSE_PREFIX.rstrip()


@dataclass(frozen=True)
class NeedMoreData:
    """Not enough of the buffer has arrived to decide."""


@dataclass(frozen=True)
class StructuredLine:
    """A complete control line split off the buffer.

    ``payload`` is the decoded JSON, or None when the line was empty or
    malformed (malformed lines are already logged). ``done`` marks the
    ``[DONE]`` completion token.
    """

    line: str
    remainder: str
    payload: Any = None
    done: bool = False


@dataclass(frozen=True)
class ContentChunk:
    """Reply text from the head of the buffer.

    ``closed`` is True when the chunk ends a run of text: it ends in a newline,
    it was cut in front of a sentinel, or the stream is over.
    """

    text: str
    remainder: str
    closed: bool


NEED_MORE_DATA = NeedMoreData()

Outcome = Union[NeedMoreData, StructuredLine, ContentChunk]


def _starts_structured(head: str) -> bool:
    return head.startswith("{") or head.startswith(SSE_PREFIX) or head.startswith(DONE_TOKEN)


def _may_become_structured(head: str) -> bool:
    # "da" could still turn into "data: ", "[DO" into "[DONE]"
    return any(marker.startswith(head) for marker in (SSE_PREFIX, DONE_TOKEN))


def _partial_sentinel_at(text: str) -> int:
    """Index of a trailing fragment that could grow into a sentinel, or -1."""
    idx = text.rfind("{")
    if idx < 0:
        return -1
    fragment = text[idx:]
    if any(sentinel.startswith(fragment) for sentinel in STRUCTURED_SENTINELS):
        return idx
    return -1


def _decode_line(line: str, remainder: str) -> Outcome:
    data = line.strip()
    sse = data.startswith(_SSE_FIELD)
    if sse:
        data = data[len(_SSE_FIELD):].strip()

    if data == DONE_TOKEN:
        return StructuredLine(line=data, remainder=remainder, done=True)
    if not data:
        return StructuredLine(line=data, remainder=remainder)
    if sse and not data.startswith("{"):
        # SSE-framed reply text: keep the line break it was sent with
        return ContentChunk(text=data + "\n", remainder=remainder, closed=True)

    try:
        payload = json.loads(data)
    except ValueError as exc:
        logger.warning("%s", ProtocolParseFailure(data, str(exc)))
        return StructuredLine(line=data, remainder=remainder)
    return StructuredLine(line=data, remainder=remainder, payload=payload)


def _split_structured(head: str, final: bool) -> Outcome:
    newline = head.find("\n")
    if newline < 0:
        if not final:
            return NEED_MORE_DATA
        return _decode_line(head, "")
    return _decode_line(head[:newline], head[newline + 1:])


def _split_content(buffer: str, final: bool) -> Outcome:
    newline = buffer.find("\n")
    line_end = newline + 1 if newline >= 0 else len(buffer)
    line = buffer[:line_end]

    cut = min(
        (idx for idx in (line.find(s) for s in STRUCTURED_SENTINELS) if idx > 0),
        default=-1,
    )
    if cut > 0:
        return ContentChunk(text=buffer[:cut], remainder=buffer[cut:], closed=True)

    if newline >= 0:
        return ContentChunk(text=line, remainder=buffer[line_end:], closed=True)

    if not final:
        held = _partial_sentinel_at(buffer)
        if held == 0:
            return NEED_MORE_DATA
        if held > 0:
            return ContentChunk(text=buffer[:held], remainder=buffer[held:], closed=False)

    return ContentChunk(text=buffer, remainder="", closed=final)


def classify(buffer: str, line_start: bool = True, final: bool = False) -> Outcome:
    """Classify the head of ``buffer``.

    Args:
        buffer: Unconsumed stream text.
        line_start: True when the previous consumed text ended a line. Control
            lines are recognised by their ``{`` / ``data: `` prefix only at a
            line start; in the middle of a line only the known sentinels count.
        final: The transport is closed, so the end of the buffer terminates
            whatever is pending.
    """
    if line_start:
        head = buffer.lstrip()
        if not head:
            return NEED_MORE_DATA
        if _starts_structured(head):
            return _split_structured(head, final)
        if not final and _may_become_structured(head):
            return NEED_MORE_DATA
    elif buffer.startswith(STRUCTURED_SENTINELS):
        return _split_structured(buffer, final)

    return _split_content(buffer, final)
