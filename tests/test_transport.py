"""HttpTransport response mapping, against httpx.MockTransport."""

from __future__ import annotations

import httpx
import pytest

from notesync.client.config import SyncSettings
from notesync.client.transport import HttpTransport
from notesync.errors import RateLimited, TransportFailure, VersionRejected
from notesync.models import SyncRequest

HEALTHY = {"status": "healthy", "database": "connected", "version": "0.3.0", "timestamp": "2024-01-01T00:00:00Z"}


def _transport(handler) -> HttpTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransport("http://sync.example/", client=client)


def _request() -> SyncRequest:
    return SyncRequest(public_key="a" * 64, notes=[], client_version="0.3.0")


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json=HEALTHY)

        assert await _transport(handler).health() == (True, True)
        assert seen == ["http://sync.example/api/health"]

    @pytest.mark.asyncio
    async def test_store_disconnected(self) -> None:
        body = {**HEALTHY, "status": "unhealthy", "database": "disconnected"}
        transport = _transport(lambda r: httpx.Response(500, json=body))
        assert await transport.health() == (False, False)

    @pytest.mark.asyncio
    async def test_network_error_never_raises(self) -> None:
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert await _transport(handler).health() == (False, False)

    @pytest.mark.asyncio
    async def test_garbage_body(self) -> None:
        transport = _transport(lambda r: httpx.Response(200, text="<html>"))
        assert await transport.health() == (False, False)


class TestSync:
    @pytest.mark.asyncio
    async def test_success(self) -> None:
        body = {"notes": [{"id": "0000000000000001"}], "updated": ["0000000000000001"], "conflicts": []}
        response = await _transport(lambda r: httpx.Response(200, json=body)).sync(_request())
        assert response.updated == ["0000000000000001"]
        assert response.notes == [{"id": "0000000000000001"}]

    @pytest.mark.asyncio
    async def test_rate_limited(self) -> None:
        transport = _transport(lambda r: httpx.Response(429, headers={"Retry-After": "7"}))
        with pytest.raises(RateLimited) as info:
            await transport.sync(_request())
        assert info.value.retry_after == 7.0
        assert info.value.retryable

    @pytest.mark.asyncio
    async def test_version_rejected(self) -> None:
        transport = _transport(lambda r: httpx.Response(426, json={"detail": "Please update"}))
        with pytest.raises(VersionRejected) as info:
            await transport.sync(_request())
        assert not info.value.retryable
        assert "Please update" in str(info.value)

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self) -> None:
        transport = _transport(lambda r: httpx.Response(503, text="down"))
        with pytest.raises(TransportFailure) as info:
            await transport.sync(_request())
        assert info.value.retryable
        assert info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self) -> None:
        transport = _transport(lambda r: httpx.Response(400, json={"detail": "Invalid public_key"}))
        with pytest.raises(TransportFailure) as info:
            await transport.sync(_request())
        assert not info.value.retryable

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransportFailure) as info:
            await _transport(handler).sync(_request())
        assert info.value.retryable

    @pytest.mark.asyncio
    async def test_invalid_body(self) -> None:
        transport = _transport(lambda r: httpx.Response(200, json={"notes": "nope"}))
        with pytest.raises(TransportFailure):
            await transport.sync(_request())


class TestFromSettings:
    @pytest.mark.asyncio
    async def test_uses_server_url_and_timeout(self) -> None:
        transport = HttpTransport.from_settings(SyncSettings(server_url="http://sync.example/", request_timeout=5.0))
        assert transport._url("/sync") == "http://sync.example/api/sync"
        assert transport._client.timeout == httpx.Timeout(5.0)
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_health_requires_connected_store(self) -> None:
        body = {**HEALTHY, "database": "disconnected"}
        transport = _transport(lambda r: httpx.Response(200, json=body))
        assert await transport.health() == (False, False)
