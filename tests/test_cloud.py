"""Tests for the Sync Service HTTP client."""

import httpx
import pytest

from syncvault.errors import (
    AuthorizationError,
    NotFoundError,
    PayloadTooLargeError,
    SyncServerError,
    SyncServerUnavailable,
    ValidationError,
)
from syncvault.sync.cloud import TOKEN_HEADER, SyncCloudClient


def _client(config, handler, retries=2):
    delays = []

    async def sleep(delay):
        delays.append(delay)

    config = config.model_copy(update={"sync_request_retries": retries, "sync_retry_delay": 1.0})
    client = SyncCloudClient(
        "http://sync.test/",
        config=config,
        transport=httpx.MockTransport(handler),
        sleep=sleep,
    )
    return client, delays


class TestRequests:

    @pytest.mark.asyncio
    async def test_sends_token_header(self, config):
        seen = {}

        def handler(request):
            seen["token"] = request.headers.get(TOKEN_HEADER)
            seen["path"] = request.url.path
            return httpx.Response(200, json={"ok": True})

        client, _ = _client(config, handler)
        assert await client.fetch("acc-1", "token-1") == {"ok": True}
        assert seen == {"token": "token-1", "path": "/api/sync/acc-1"}
        assert client.server_url == "http://sync.test"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_retries_server_errors_with_backoff(self, config):
        responses = iter([httpx.Response(503), httpx.Response(502), httpx.Response(200, json={})])
        client, delays = _client(config, lambda request: next(responses))
        assert await client.fetch("acc-1", "t") == {}
        assert delays == [1.0, 2.0]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_honours_retry_after(self, config):
        responses = iter([httpx.Response(429, headers={"Retry-After": "7"}), httpx.Response(200, json={})])
        client, delays = _client(config, lambda request: next(responses))
        await client.push("acc-1", "t", {"data": "x"})
        assert delays == [7.0]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_network_errors_exhaust_retries(self, config):
        calls = []

        def handler(request):
            calls.append(1)
            raise httpx.ConnectError("refused", request=request)

        client, delays = _client(config, handler)
        with pytest.raises(SyncServerUnavailable):
            await client.fetch("acc-1", "t")
        assert len(calls) == 3
        assert delays == [1.0, 2.0]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_health(self, config):
        client, _ = _client(config, lambda request: httpx.Response(503))
        assert await client.health() is False
        await client.aclose()


class TestStatusMapping:

    @pytest.mark.parametrize("status, error", [
        (400, ValidationError),
        (401, AuthorizationError),
        (404, NotFoundError),
        (413, PayloadTooLargeError),
        (418, SyncServerError),
    ])
    @pytest.mark.asyncio
    async def test_maps_status(self, config, status, error):
        client, _ = _client(config, lambda request: httpx.Response(status, json={"error": "nope"}))
        with pytest.raises(error):
            await client.fetch("acc-1", "t")
        await client.aclose()

    @pytest.mark.asyncio
    async def test_persistent_server_error_is_unavailable(self, config):
        client, _ = _client(config, lambda request: httpx.Response(503, text="down"), retries=0)
        with pytest.raises(SyncServerUnavailable):
            await client.delete("acc-1", "t")
        await client.aclose()
