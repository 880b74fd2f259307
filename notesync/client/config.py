from typing import List

from pydantic import AnyHttpUrl, BaseModel, Field, TypeAdapter, ValidationError

CLIENT_VERSION = "0.3.0"
DEFAULT_SERVER_URL = "http://localhost:3222"
DEFAULT_SERVERS = [DEFAULT_SERVER_URL]
DAY_MS = 24 * 60 * 60 * 1000

_url_adapter = TypeAdapter(AnyHttpUrl)


def normalize_server_url(url: str) -> str:
    url = (url or "").strip().rstrip("/")
    try:
        _url_adapter.validate_python(url)
    except ValidationError as exc:
        raise ValueError(f"invalid server url: {url!r}") from exc
    return url


class SyncSettings(BaseModel):
    """Client sync configuration."""

    server_url: str = DEFAULT_SERVER_URL
    custom_servers: List[str] = Field(default_factory=list)
    auto_sync: bool = False
    sync_interval: float = Field(default=300, description="Seconds between auto-syncs")
    client_version: str = CLIENT_VERSION
    request_timeout: float = 30.0

    # throttling / retries
    min_sync_interval: float = Field(default=2.0, description="Seconds between sync starts")
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    rate_limit_delay: float = 15.0

    # local policy
    tombstone_retention_ms: int = 30 * DAY_MS
    allow_classical_fallback: bool = True

    # Server list
    @property
    def servers(self) -> List[str]:
        return DEFAULT_SERVERS + self.custom_servers

    def add_server(self, url: str) -> str:
        """Register a custom server and make it the active one."""
        url = normalize_server_url(url)
        if url in self.servers:
            raise ValueError("server already exists")
        self.custom_servers = [*self.custom_servers, url]
        self.server_url = url
        return url

    def remove_server(self, url: str) -> None:
        url = normalize_server_url(url)
        self.custom_servers = [s for s in self.custom_servers if s != url]
        if self.server_url == url:
            self.server_url = DEFAULT_SERVERS[0]

    def select_server(self, url: str) -> None:
        url = normalize_server_url(url)
        if url not in self.servers:
            raise ValueError(f"unknown server: {url}")
        self.server_url = url
