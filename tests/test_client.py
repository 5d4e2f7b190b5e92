"""Tests for rynkclient.client (ApiClient and ChatStream) over httpx.MockTransport."""

import httpx
import pytest

from rynkclient.client import ApiClient
from rynkclient.config import ERROR_TEXT_LIMIT
from rynkclient.credits import CreditGovernor
from rynkclient.exceptions import CreditExhausted, NetworkFailure, VersionConflict


class TestRequests:

    @pytest.mark.asyncio
    async def test_get_returns_json(self, backend, make_api):
        backend.add("GET", "/guest/conversations", {"conversations": []})
        api = make_api()
        assert await api.get(api.path("/conversations")) == {"conversations": []}

    @pytest.mark.asyncio
    async def test_empty_body_is_empty_dict(self, backend, make_api):
        backend.add("DELETE", "/mobile/conversations/c1", status=204)
        api = make_api("mobile", token="tok")
        assert await api.delete(api.path("/conversations/c1")) == {}

    @pytest.mark.asyncio
    async def test_bearer_token(self, backend, make_api):
        backend.add("GET", "/mobile/conversations", {"conversations": []})
        api = make_api("mobile", token="secret")
        await api.get(api.path("/conversations"))
        assert backend.requests[0].headers["authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_token_provider(self, backend, make_api):
        backend.add("GET", "/mobile/conversations", {})

        async def provider():
            return "fresh"

        api = make_api("mobile", token_provider=provider)
        await api.get(api.path("/conversations"))
        assert backend.requests[0].headers["authorization"] == "Bearer fresh"

    @pytest.mark.asyncio
    async def test_error_message_from_json(self, backend, make_api):
        backend.add("GET", "/guest/conversations", {"message": "Database down"}, status=500)
        api = make_api()
        with pytest.raises(NetworkFailure) as exc_info:
            await api.get(api.path("/conversations"))
        assert exc_info.value.status == 500
        assert str(exc_info.value) == "[500] Database down"

    @pytest.mark.asyncio
    async def test_plain_text_error_is_truncated(self, backend, make_api):
        backend.add("GET", "/guest/conversations", handler=lambda request: httpx.Response(500, text="x" * 600))
        api = make_api()
        with pytest.raises(NetworkFailure) as exc_info:
            await api.get(api.path("/conversations"))
        assert exc_info.value.status == 500
        assert exc_info.value.message == "x" * ERROR_TEXT_LIMIT

    @pytest.mark.asyncio
    async def test_plain_text_chat_error_is_truncated(self, backend, make_api):
        backend.add("POST", "/guest/chat", handler=lambda request: httpx.Response(500, text="<html>" + "y" * 600))
        api = make_api()
        with pytest.raises(NetworkFailure) as exc_info:
            async with api.stream_chat(api.path("/chat"), {"message": "hi"}):
                pass
        assert len(exc_info.value.message) == ERROR_TEXT_LIMIT
        assert exc_info.value.message.startswith("<html>")

    @pytest.mark.asyncio
    async def test_conflict(self, backend, make_api):
        backend.add("POST", "/mobile/messages/edit", {"error": "stale"}, status=409)
        api = make_api("mobile")
        with pytest.raises(VersionConflict):
            await api.post(api.path("/messages/edit"), {})

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        api = ApiClient("https://rynk.test/api", family="guest", transport=httpx.MockTransport(refuse))
        with pytest.raises(NetworkFailure) as exc_info:
            await api.get(api.path("/conversations"))
        assert exc_info.value.status is None

    def test_unknown_family(self):
        with pytest.raises(ValueError):
            ApiClient(family="desktop")


class TestCredits:

    @pytest.mark.asyncio
    async def test_header_is_authoritative(self, backend, make_api):
        backend.add(
            "GET", "/guest/conversations",
            {"conversations": [], "creditsRemaining": 9},
            headers={"x-guest-credits-remaining": "3"},
        )
        credits = CreditGovernor()
        api = make_api(credits=credits)
        await api.get(api.path("/conversations"))
        assert credits.remaining == 3

    @pytest.mark.asyncio
    async def test_body_used_without_header(self, backend, make_api):
        backend.add("GET", "/guest/conversations", {"creditsRemaining": 9})
        credits = CreditGovernor()
        api = make_api(credits=credits)
        await api.get(api.path("/conversations"))
        assert credits.remaining == 9

    @pytest.mark.asyncio
    async def test_credit_failure_marks_exhausted(self, backend, make_api):
        backend.add("POST", "/guest/chat", {"error": "credit limit reached"}, status=403)
        credits = CreditGovernor()
        api = make_api(credits=credits)
        with pytest.raises(CreditExhausted):
            async with api.stream_chat(api.path("/chat"), {"message": "hi"}):
                pass
        assert credits.remaining == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, body", [
        (403, {"error": "Forbidden"}),
        (429, {"error": "Daily credit limit reached"}),
    ])
    async def test_guest_credit_failures(self, backend, make_api, status, body):
        backend.add("POST", "/guest/chat", body, status=status)
        credits = CreditGovernor()
        api = make_api(credits=credits)
        with pytest.raises(CreditExhausted):
            async with api.stream_chat(api.path("/chat"), {"message": "hi"}):
                pass
        assert credits.remaining == 0

    @pytest.mark.asyncio
    async def test_mobile_forbidden_is_not_a_credit_failure(self, backend, make_api):
        backend.add("GET", "/mobile/conversations", {"error": "Forbidden"}, status=403)
        credits = CreditGovernor()
        api = make_api("mobile", token="tok", credits=credits)
        with pytest.raises(NetworkFailure) as exc_info:
            await api.get(api.path("/conversations"))
        assert not isinstance(exc_info.value, CreditExhausted)
        assert credits.remaining is None

    @pytest.mark.asyncio
    async def test_gate_blocks_before_network(self, backend, make_api):
        api = make_api(credits=CreditGovernor(remaining=0))
        with pytest.raises(CreditExhausted):
            async with api.stream_chat(api.path("/chat"), {"message": "hi"}):
                pass
        assert backend.requests == []


class TestChatStream:

    @pytest.mark.asyncio
    async def test_deltas_follow_transport_chunks(self, backend, make_api):
        backend.add("POST", "/guest/chat", chunks=["Hel", "lo\n"], headers={"x-assistant-message-id": "a1"})
        api = make_api()
        async with api.stream_chat(api.path("/chat"), {"message": "hi"}) as stream:
            assert stream.status_code == 200
            assert stream.headers["x-assistant-message-id"] == "a1"
            deltas = [d async for d in stream.deltas()]
        assert deltas == ["Hel", "lo\n"]
        assert backend.body(backend.requests[-1]) == {"message": "hi"}

    @pytest.mark.asyncio
    async def test_snapshots_grow(self, backend, make_api):
        backend.add("POST", "/guest/chat", chunks=["a", "b", "c"])
        api = make_api()
        async with api.stream_chat(api.path("/chat"), {}) as stream:
            assert [s async for s in stream.snapshots()] == ["a", "ab", "abc"]

    @pytest.mark.asyncio
    async def test_body_is_single_use(self, backend, make_api):
        backend.add("POST", "/guest/chat", chunks=["a"])
        api = make_api()
        async with api.stream_chat(api.path("/chat"), {}) as stream:
            [d async for d in stream.deltas()]
            with pytest.raises(RuntimeError):
                [d async for d in stream.deltas()]

