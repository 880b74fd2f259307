import logging
from typing import Optional, Tuple

import httpx
from pydantic import ValidationError

from ..errors import RateLimited, TransportFailure, VersionRejected
from ..models import HealthStatus, RawSyncResponse, SyncRequest
from .config import SyncSettings

logger = logging.getLogger(__name__)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body)
    return str(body)


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class HttpTransport:
    """Talks to the sync server's /api endpoints."""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout, headers={"Accept": "application/json"}
        )

    @classmethod
    def from_settings(cls, settings: SyncSettings, client: Optional[httpx.AsyncClient] = None) -> "HttpTransport":
        return cls(settings.server_url, client=client, timeout=settings.request_timeout)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api{path}"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def health(self) -> Tuple[bool, bool]:
        """(service healthy, store connected); never raises."""
        try:
            response = await self._client.get(self._url("/health"))
            status = HealthStatus(**response.json())
        except (httpx.HTTPError, ValueError, ValidationError, TypeError) as exc:
            logger.warning("Health check failed: %s", exc)
            return False, False
        return response.is_success and status.healthy, status.database == "connected"

    async def sync(self, request: SyncRequest) -> RawSyncResponse:
        try:
            response = await self._client.post(
                self._url("/sync"), content=request.model_dump_json(), headers={"Content-Type": "application/json"}
            )
        except httpx.HTTPError as exc:
            raise TransportFailure(f"network error: {exc}") from exc

        code = response.status_code
        if code == 429:
            raise RateLimited("rate limited by server", retry_after=_retry_after(response))
        if code == 426:
            raise VersionRejected(_error_detail(response))
        if code >= 500:
            raise TransportFailure(f"server error {code}: {_error_detail(response)}", status_code=code)
        if code >= 400:
            raise TransportFailure(
                f"request rejected {code}: {_error_detail(response)}", retryable=False, status_code=code
            )

        try:
            return RawSyncResponse(**response.json())
        except (ValueError, ValidationError, TypeError) as exc:
            raise TransportFailure(f"invalid server response: {exc}") from exc
