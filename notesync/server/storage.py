import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Union

from ..models import EncryptedEnvelope, envelope_adapter

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS envelopes (
    owner_id TEXT NOT NULL,
    id TEXT NOT NULL,
    version INTEGER NOT NULL,
    signature_version INTEGER NOT NULL,
    data TEXT NOT NULL,
    nonce TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    signature TEXT NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (owner_id, id)
);
CREATE INDEX IF NOT EXISTS idx_envelopes_timestamp ON envelopes(timestamp DESC);
CREATE TABLE IF NOT EXISTS owners (
    owner_id TEXT PRIMARY KEY,
    pq_public_key TEXT,
    pq_upgradeable INTEGER NOT NULL DEFAULT 0,
    last_sync TEXT,
    sync_count INTEGER NOT NULL DEFAULT 0
);
"""


@dataclass
class ReconcileResult:
    notes: List[EncryptedEnvelope] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)


@dataclass
class OwnerRecord:
    owner_id: str
    pq_public_key: Optional[str]
    pq_upgradeable: bool
    last_sync: Optional[str]
    sync_count: int


def _row_to_envelope(row: sqlite3.Row) -> EncryptedEnvelope:
    return envelope_adapter.validate_python(
        {
            "id": row["id"],
            "version": row["version"],
            "signatureVersion": row["signature_version"],
            "data": row["data"],
            "nonce": row["nonce"],
            "timestamp": row["timestamp"],
            "signature": row["signature"],
            "deleted": bool(row["deleted"]),
        }
    )


class ReplicaStore:
    """One current envelope per (owner_id, id); history is not kept."""

    def __init__(self, path: Union[str, Path] = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        with self._lock:
            self._conn.executescript(SCHEMA)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def ping(self) -> bool:
        try:
            with self._lock:
                self._conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as exc:
            logger.error("Store ping failed: %s", exc)
            return False

    # Envelopes
    def reconcile(
        self,
        owner_id: str,
        incoming: Iterable[EncryptedEnvelope],
        pq_public_key: Optional[str] = None,
    ) -> ReconcileResult:
        """Last-writer-wins upsert of a batch, then the owner's full snapshot.

        Runs as one transaction: concurrent requests for the same owner never
        observe a partially applied batch.
        """
        result = ReconcileResult()
        incoming = list(incoming)
        with self._transaction() as conn:
            for env in incoming:
                existing = conn.execute(
                    "SELECT timestamp, signature FROM envelopes WHERE owner_id = ? AND id = ?",
                    (owner_id, env.id),
                ).fetchone()

                if existing is None or existing["timestamp"] < env.timestamp:
                    if env.deleted:
                        conn.execute(
                            "DELETE FROM envelopes WHERE owner_id = ? AND id = ?",
                            (owner_id, env.id),
                        )
                    else:
                        conn.execute(
                            """
                            INSERT INTO envelopes
                            (owner_id, id, version, signature_version, data, nonce, timestamp, signature, deleted)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0)
                            ON CONFLICT(owner_id, id) DO UPDATE SET
                                version = excluded.version,
                                signature_version = excluded.signature_version,
                                data = excluded.data,
                                nonce = excluded.nonce,
                                timestamp = excluded.timestamp,
                                signature = excluded.signature,
                                deleted = 0
                            """,
                            (
                                owner_id,
                                env.id,
                                env.version,
                                env.signatureVersion,
                                env.data,
                                env.nonce,
                                env.timestamp,
                                env.signature,
                            ),
                        )
                    result.updated.append(env.id)
                elif existing["timestamp"] == env.timestamp and existing["signature"] != env.signature:
                    result.conflicts.append(env.id)

            self._touch_owner(conn, owner_id, pq_public_key)
            result.notes = self._snapshot(conn, owner_id)

        logger.info(
            "Reconciled owner=%s... incoming=%d updated=%d conflicts=%d snapshot=%d",
            owner_id[:12],
            len(incoming),
            len(result.updated),
            len(result.conflicts),
            len(result.notes),
        )
        return result

    def snapshot(self, owner_id: str) -> List[EncryptedEnvelope]:
        with self._lock:
            return self._snapshot(self._conn, owner_id)

    def _snapshot(self, conn: sqlite3.Connection, owner_id: str) -> List[EncryptedEnvelope]:
        rows = conn.execute(
            "SELECT * FROM envelopes WHERE owner_id = ? AND deleted = 0 ORDER BY id",
            (owner_id,),
        ).fetchall()
        return [_row_to_envelope(r) for r in rows]

    # Owners
    def _touch_owner(self, conn: sqlite3.Connection, owner_id: str, pq_public_key: Optional[str]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        conn.execute(
            """
            INSERT INTO owners (owner_id, last_sync, sync_count) VALUES (?, ?, 1)
            ON CONFLICT(owner_id) DO UPDATE SET last_sync = excluded.last_sync, sync_count = sync_count + 1
            """,
            (owner_id, now),
        )
        if pq_public_key:
            row = conn.execute(
                "SELECT pq_public_key FROM owners WHERE owner_id = ?", (owner_id,)
            ).fetchone()
            if row["pq_public_key"] is None:
                logger.info("Owner %s... registered a post-quantum key", owner_id[:12])
            conn.execute(
                "UPDATE owners SET pq_public_key = ?, pq_upgradeable = 1 WHERE owner_id = ?",
                (pq_public_key, owner_id),
            )

    def get_owner(self, owner_id: str) -> Optional[OwnerRecord]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM owners WHERE owner_id = ?", (owner_id,)).fetchone()
        if row is None:
            return None
        return OwnerRecord(
            owner_id=row["owner_id"],
            pq_public_key=row["pq_public_key"],
            pq_upgradeable=bool(row["pq_upgradeable"]),
            last_sync=row["last_sync"],
            sync_count=row["sync_count"],
        )
