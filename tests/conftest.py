"""
Shared fixtures for the rynkclient test suite.

HTTP is faked with httpx.MockTransport. ``FakeBackend`` routes requests by
method and path and records every request it sees; streaming bodies are
async byte iterators so each test controls exactly where chunks split.
"""

import json
from collections import deque
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from rynkclient.client import ApiClient
from rynkclient.models import Message

BASE_URL = "https://rynk.test/api"
T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def chunked(*parts: str):
    """Async byte iterator yielding ``parts`` as separate transport chunks."""

    async def body():
        for part in parts:
            yield part.encode("utf-8")

    return body()


def make_message(id, role="user", content="", minutes=0, conversation_id="c1", **kwargs):
    return Message(
        id=id,
        conversation_id=conversation_id,
        role=role,
        content=content,
        created_at=T0 + timedelta(minutes=minutes),
        **kwargs,
    )


def message_json(id, role="user", content="", minutes=0, conversation_id="c1", **extra):
    return {
        "id": id,
        "conversationId": conversation_id,
        "role": role,
        "content": content,
        "createdAt": (T0 + timedelta(minutes=minutes)).isoformat(),
        **extra,
    }


class FakeBackend:
    """Callable MockTransport handler with per-route canned responses.

    A route holds a queue of response factories; the last one repeats once
    the queue is down to it.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], deque] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method, path, json_body=None, status=200, headers=None, chunks=None, handler=None):
        if handler is None:
            def handler(request):
                if chunks is not None:
                    return httpx.Response(
                        status,
                        headers={"content-type": "text/plain; charset=utf-8", **(headers or {})},
                        content=chunked(*chunks),
                    )
                return httpx.Response(status, headers=headers, json=json_body)
        self.routes.setdefault((method, path), deque()).append(handler)
        return self

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        path = request.url.path.removeprefix("/api")
        queue = self.routes.get((request.method, path))
        if not queue:
            return httpx.Response(404, json={"error": f"no route for {request.method} {path}"})
        handler = queue.popleft() if len(queue) > 1 else queue[0]
        return handler(request)

    def sent(self, method, path):
        """Requests made to one route."""
        return [r for r in self.requests if r.method == method and r.url.path.removeprefix("/api") == path]

    @staticmethod
    def body(request: httpx.Request):
        return json.loads(request.content) if request.content else None


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def make_api(backend):
    def factory(family="guest", **kwargs):
        return ApiClient(BASE_URL, family=family, transport=httpx.MockTransport(backend), **kwargs)

    return factory
