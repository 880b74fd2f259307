# notesync/server/main.py
import logging
import sqlite3
import sys
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from ..models import HealthStatus, SyncRequest, SyncResponse
from .config import Settings
from .deps import setup_cors
from .security import check_client_version, validate_owner_id, validate_pq_public_key
from .storage import ReplicaStore

logger = logging.getLogger(__name__)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def create_app(settings: Optional[Settings] = None, store: Optional[ReplicaStore] = None) -> FastAPI:
    settings = settings or Settings()
    store = store or ReplicaStore(settings.DB_PATH)

    app = FastAPI(title="notesync", version=settings.VERSION)
    app.state.settings = settings
    app.state.store = store
    setup_cors(app, settings)

    # -------------------- Health --------------------
    @app.get("/api/health", response_model=HealthStatus)
    def health():
        if not store.ping():
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=HealthStatus(
                    status="unhealthy",
                    database="disconnected",
                    version=settings.VERSION,
                    timestamp=_utcnow(),
                ).model_dump(),
            )
        return HealthStatus(
            status="healthy",
            database="connected",
            version=settings.VERSION,
            timestamp=_utcnow(),
        )

    # -------------------- Sync --------------------
    @app.post("/api/sync", response_model=SyncResponse)
    def sync(payload: SyncRequest):
        check_client_version(payload.client_version, settings.MIN_CLIENT_VERSION)
        owner_id = validate_owner_id(payload.public_key)
        pq_key = validate_pq_public_key(payload.pq_public_key) if payload.pq_public_key else None

        logger.info(
            "Sync request owner=%s... notes=%d client=%s pq=%s",
            owner_id[:12],
            len(payload.notes),
            payload.client_version,
            pq_key is not None,
        )
        result = store.reconcile(owner_id, payload.notes, pq_public_key=pq_key)
        return SyncResponse(notes=result.notes, updated=result.updated, conflicts=result.conflicts)

    @app.exception_handler(sqlite3.Error)
    async def store_error(request: Request, exc: sqlite3.Error):
        logger.error("Store error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    return app


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def run() -> None:
    import uvicorn

    settings = Settings()
    setup_logging(settings.LOG_LEVEL)
    app = create_app(settings)
    logger.info("Sync endpoint: http://%s:%d/api/sync", settings.HOST, settings.PORT)
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
