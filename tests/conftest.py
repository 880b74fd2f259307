"""Shared test fixtures for notesync."""

from __future__ import annotations

import httpx
import pytest
from fastapi.testclient import TestClient

from notesync.client.config import SyncSettings
from notesync.client.keys import KeyBundle, derive
from notesync.client.store import NoteStore
from notesync.client.sync import SyncCoordinator
from notesync.client.transport import HttpTransport
from notesync.models import Note
from notesync.server.config import Settings
from notesync.server.main import create_app
from notesync.server.storage import ReplicaStore

PHRASE = "legal winner thank year wave sausage worth useful legal winner thank yellow"
OTHER_PHRASE = "letter advice cage absurd amount doctor acoustic avoid letter advice cage above"


@pytest.fixture(scope="session")
def classical_bundle() -> KeyBundle:
    """Key bundle without post-quantum material."""
    return derive(PHRASE, use_pq=False)


@pytest.fixture(scope="session")
def pq_bundle() -> KeyBundle:
    """Full bundle; skips the test when the post-quantum backend is unavailable."""
    bundle = derive(PHRASE)
    if not bundle.has_pq:
        pytest.skip("post-quantum backend unavailable")
    return bundle


@pytest.fixture
def make_note():
    def _make(note_id: int = 1, title: str = "x", content: str = "body", updated_at: int = 1000, **kw) -> Note:
        return Note(
            id=note_id,
            title=title,
            content=content,
            created_at=kw.pop("created_at", updated_at),
            updated_at=updated_at,
            **kw,
        )

    return _make


@pytest.fixture
def replica() -> ReplicaStore:
    store = ReplicaStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def server_settings() -> Settings:
    settings = Settings()
    settings.MIN_CLIENT_VERSION = "0.1.0"
    settings.ALLOWED_ORIGINS = ["*"]
    return settings


@pytest.fixture
def app(server_settings: Settings, replica: ReplicaStore):
    return create_app(server_settings, replica)


@pytest.fixture
def api(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def fast_settings() -> SyncSettings:
    return SyncSettings(min_sync_interval=0, retry_base_delay=0.01, rate_limit_delay=0.05)


@pytest.fixture
def device_factory(app, fast_settings: SyncSettings):
    """Build a SyncCoordinator talking to the in-process app."""

    def _device(bundle: KeyBundle, store: NoteStore | None = None) -> SyncCoordinator:
        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")
        transport = HttpTransport("http://testserver", client=client)
        return SyncCoordinator(bundle, store or NoteStore(), transport, fast_settings)

    return _device
