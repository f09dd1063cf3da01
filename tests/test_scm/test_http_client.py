"""Unit tests for the SCM HTTP client retry contract (autoship.scm.base).

Tests cover:
- JSON and empty-body responses
- 429 honouring Retry-After (numeric and unparseable)
- 5xx exponential backoff and exhaustion
- 4xx raised immediately without retry
- Transport errors retried
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from autoship.errors import ScmError
from autoship.scm import ScmHttpClient


def _client(responses: list, **kwargs) -> tuple[ScmHttpClient, AsyncMock]:
    """Build a client whose transport replays ``responses`` in order."""
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    sleep = AsyncMock()
    return ScmHttpClient(transport=httpx.MockTransport(handler), sleep=sleep, **kwargs), sleep


URL = "https://api.example.test/thing"


class TestScmHttpClient:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_returns_json(self):
        client, sleep = _client([httpx.Response(200, json={"id": 7})])
        assert await client.request("GET", URL) == {"id": 7}
        sleep.assert_not_awaited()
        assert client.last.statuses == [200]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_body_is_empty_dict(self):
        client, _ = _client([httpx.Response(204)])
        assert await client.request("DELETE", URL) == {}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_429_waits_retry_after(self):
        client, sleep = _client([
            httpx.Response(429, headers={"Retry-After": "7"}),
            httpx.Response(200, json={"ok": True}),
        ])
        assert await client.request("GET", URL) == {"ok": True}
        sleep.assert_awaited_once_with(7.0)
        assert client.last.statuses == [429, 200]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_429_without_header_uses_default(self):
        client, sleep = _client(
            [httpx.Response(429), httpx.Response(200, json={})],
            default_retry_after=60.0,
        )
        await client.request("GET", URL)
        assert client.last.sleeps == [60.0]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_5xx_backs_off_then_raises(self):
        client, sleep = _client([httpx.Response(502, text="bad gateway") for _ in range(3)])
        with pytest.raises(ScmError) as exc_info:
            await client.request("GET", URL)
        assert exc_info.value.status_code == 502
        assert client.last.sleeps == [2, 4]
        assert client.last.statuses == [502, 502, 502]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_5xx_then_success(self):
        client, _ = _client([httpx.Response(503), httpx.Response(200, json={"v": 1})])
        assert await client.request("GET", URL) == {"v": 1}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_4xx_not_retried(self):
        client, sleep = _client([httpx.Response(404, text="not found"), httpx.Response(200, json={})])
        with pytest.raises(ScmError) as exc_info:
            await client.request("GET", URL)
        assert exc_info.value.status_code == 404
        assert exc_info.value.url == URL
        sleep.assert_not_awaited()
        assert client.last.statuses == [404]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_retried(self):
        client, _ = _client([httpx.ConnectError("refused"), httpx.Response(200, json={"a": 1})])
        assert await client.request("GET", URL) == {"a": 1}
        assert client.last.statuses == [None, 200]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_exhausted(self):
        client, _ = _client([httpx.ConnectError("refused") for _ in range(3)])
        with pytest.raises(ScmError, match="API request failed"):
            await client.request("GET", URL)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sends_headers_and_body(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={})

        client = ScmHttpClient(transport=httpx.MockTransport(handler), sleep=AsyncMock())
        await client.request("POST", URL, headers={"X-Token": "t"}, json_body={"k": "v"})
        assert seen[0].headers["X-Token"] == "t"
        assert json.loads(seen[0].content) == {"k": "v"}
