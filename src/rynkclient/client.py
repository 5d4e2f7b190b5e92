"""HTTP client for the chat backend."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, Union

import httpx

from .config import API_BASE_URL, ENDPOINT_FAMILIES, REQUEST_TIMEOUT
from .credits import CreditGovernor
from .exceptions import (
    CreditExhausted,
    NetworkFailure,
    VersionConflict,
    error_message_from_body,
    is_credit_failure,
)

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[Union[str, None]]]


class ChatStream:
    """An open streaming chat response.

    ``deltas()`` yields new text as it arrives; ``snapshots()`` yields the
    whole body received so far, for consumers that can only observe a growing
    buffer.
    """

    def __init__(self, response: httpx.Response):
        self.response = response
        self._consumed = False

    @property
    def headers(self) -> httpx.Headers:
        return self.response.headers

    @property
    def status_code(self) -> int:
        return self.response.status_code

    async def deltas(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("Stream body has already been consumed")
        self._consumed = True
        try:
            async for text in self.response.aiter_text():
                if text:
                    yield text
        except httpx.HTTPError as exc:
            raise NetworkFailure(None, f"Stream interrupted: {exc}") from exc

    async def snapshots(self) -> AsyncIterator[str]:
        total = ""
        async for delta in self.deltas():
            total += delta
            yield total

    async def aclose(self):
        await self.response.aclose()


class ApiClient:
    """Async JSON client for one endpoint family (``guest`` or ``mobile``).

    Authentication is external: pass a bearer ``token`` or an async
    ``token_provider``. When a ``credits`` governor is attached, every
    response refreshes it.
    """

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        family: str = "mobile",
        token: str | None = None,
        token_provider: TokenProvider | None = None,
        credits: CreditGovernor | None = None,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if family not in ENDPOINT_FAMILIES:
            raise ValueError(f"Unknown endpoint family {family!r}; expected one of {sorted(ENDPOINT_FAMILIES)}")
        self.family = family
        self.prefix = ENDPOINT_FAMILIES[family]
        self.credits = credits
        self._token = token
        self._token_provider = token_provider
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout, read=None),
            transport=transport,
        )

    @property
    def is_guest(self) -> bool:
        return self.family == "guest"

    def path(self, endpoint: str) -> str:
        """Prefix ``endpoint`` with the family root, e.g. ``/conversations`` -> ``/guest/conversations``."""
        return f"{self.prefix}{endpoint}"

    async def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self._token
        if self._token_provider is not None:
            token = await self._token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _raise_for_status(self, response: httpx.Response, body: str):
        if response.is_success:
            return
        status = response.status_code
        message = error_message_from_body(body)
        if is_credit_failure(status, message, guest=self.is_guest):
            if self.credits is not None:
                self.credits.mark_exhausted()
            raise CreditExhausted()
        if status == 409:
            raise VersionConflict(message)
        raise NetworkFailure(status, message)

    async def request(self, method: str, endpoint: str, data: Any = None, params: dict | None = None) -> dict:
        """Send a request to ``endpoint`` (already family-prefixed) and decode the JSON reply."""
        logger.debug("%s %s", method, endpoint)
        try:
            response = await self._http.request(
                method,
                endpoint,
                headers=await self._headers(),
                content=json.dumps(data) if data is not None else None,
                params=params,
            )
        except httpx.HTTPError as exc:
            raise NetworkFailure(None, f"{method} {endpoint} failed: {exc}") from exc

        body = response.text
        from_header = self.credits is not None and self.credits.update_from_headers(response.headers)
        self._raise_for_status(response, body)

        if not body:
            return {}
        try:
            parsed = json.loads(body)
        except ValueError:
            logger.warning("Non-JSON response from %s %s", method, endpoint)
            return {}
        if self.credits is not None and not from_header:
            self.credits.update_from_body(parsed)
        return parsed if isinstance(parsed, dict) else {"data": parsed}

    async def get(self, endpoint: str, params: dict | None = None) -> dict:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, data: Any = None) -> dict:
        return await self.request("POST", endpoint, data)

    async def put(self, endpoint: str, data: Any = None) -> dict:
        return await self.request("PUT", endpoint, data)

    async def patch(self, endpoint: str, data: Any = None) -> dict:
        return await self.request("PATCH", endpoint, data)

    async def delete(self, endpoint: str) -> dict:
        return await self.request("DELETE", endpoint)

    @asynccontextmanager
    async def stream_chat(self, endpoint: str, payload: dict) -> AsyncIterator[ChatStream]:
        """Open a streaming chat POST.

        Non-2xx responses are read in full and raised as NetworkFailure (or
        CreditExhausted / VersionConflict). The response is closed when the
        block exits, which also aborts an unfinished transfer.
        """
        if self.credits is not None:
            self.credits.check()

        logger.debug("POST %s (stream)", endpoint)
        request = self._http.build_request(
            "POST", endpoint, headers=await self._headers(), content=json.dumps(payload)
        )
        try:
            response = await self._http.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise NetworkFailure(None, f"Chat request failed: {exc}") from exc

        try:
            if self.credits is not None:
                self.credits.update_from_headers(response.headers)
            if not response.is_success:
                await response.aread()
                body = response.text
                logger.warning("Chat request failed with %s: %s", response.status_code, body[:200])
                self._raise_for_status(response, body or "Chat request failed")
            yield ChatStream(response)
        finally:
            await response.aclose()

    async def aclose(self):
        await self._http.aclose()

    async def __aenter__(self) -> ApiClient:
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()
