"""
Client sync cycle.

    load local -> encrypt+sign pending writes -> health check + POST /api/sync
    -> verify each returned envelope -> decrypt -> merge -> persist -> prune

Signatures are checked before any decapsulation or decryption, and a failed
check never falls back to another scheme. One bad envelope is skipped and
reported; the rest of the batch proceeds.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from ..errors import (
    KeyUnavailable,
    NoteSyncError,
    Phase,
    RateLimited,
    SignatureVerificationFailure,
    TransportFailure,
)
from ..models import (
    POST_QUANTUM,
    Note,
    SyncRequest,
    envelope_adapter,
    note_id_from_hex,
    note_id_to_hex,
)
from . import signer
from .config import SyncSettings
from .engine import EncryptionEngine
from .keys import KeyBundle
from .merge import merge_notes
from .store import NoteStore, now_ms
from .transport import HttpTransport

logger = logging.getLogger(__name__)


@dataclass
class SyncIssue:
    note_id: Optional[str]
    phase: Phase
    message: str

    @classmethod
    def from_error(cls, exc: NoteSyncError, note_id: Optional[str], phase: Phase) -> "SyncIssue":
        return cls(exc.note_id or note_id, exc.phase or phase, str(exc))


@dataclass
class SyncReport:
    sent: int = 0
    received: int = 0
    updated: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    issues: List[SyncIssue] = field(default_factory=list)
    downgraded: List[str] = field(default_factory=list)
    pruned: int = 0

    @property
    def ok(self) -> bool:
        return not self.issues


class SyncGate:
    """Serializes sync calls and spaces their starts by min_interval seconds."""

    def __init__(
        self,
        min_interval: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_start: Optional[float] = None

    async def __aenter__(self) -> "SyncGate":
        await self._lock.acquire()
        try:
            if self._last_start is not None:
                wait = self.min_interval - (self._clock() - self._last_start)
                if wait > 0:
                    logger.debug("Sync throttled, waiting %.2fs", wait)
                    await self._sleep(wait)
            self._last_start = self._clock()
        except BaseException:
            self._lock.release()
            raise
        return self

    async def __aexit__(self, *exc) -> None:
        self._lock.release()


class SyncCoordinator:
    def __init__(
        self,
        bundle: KeyBundle,
        store: NoteStore,
        transport: Optional[HttpTransport] = None,
        settings: Optional[SyncSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.bundle = bundle
        self.store = store
        self.settings = settings or SyncSettings()
        self.transport = transport or HttpTransport.from_settings(self.settings)
        self.engine = EncryptionEngine(self.settings.allow_classical_fallback)
        self._sleep = sleep
        self.gate = SyncGate(self.settings.min_sync_interval, clock=clock, sleep=sleep)

    async def sync(self) -> SyncReport:
        async with self.gate:
            return await self._sync_once()

    async def run_periodic(self, stop: asyncio.Event) -> None:
        """Auto-sync every settings.sync_interval seconds until stop is set.

        A tick is skipped while settings.auto_sync is off; the flag is re-read
        on every tick.
        """
        while not stop.is_set():
            if not self.settings.auto_sync:
                logger.debug("Auto-sync disabled, skipping tick")
                await self._wait_tick(stop)
                continue
            try:
                report = await self.sync()
                if report.issues:
                    logger.warning("Auto-sync finished with %d issue(s)", len(report.issues))
            except NoteSyncError as exc:
                logger.error("Auto-sync failed: %s", exc)
            await self._wait_tick(stop)

    async def _wait_tick(self, stop: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(stop.wait(), timeout=self.settings.sync_interval)
        except asyncio.TimeoutError:
            pass

    # -------------------- one cycle --------------------
    async def _sync_once(self) -> SyncReport:
        report = SyncReport()
        cutoff = now_ms() - self.settings.tombstone_retention_ms

        local = self.store.load_all()
        outgoing = [n for n in local if n.pending_sync and not (n.deleted and n.updated_at < cutoff)]

        sealed = await asyncio.gather(*(asyncio.to_thread(self._seal_one, n) for n in outgoing))
        envelopes = []
        sent: Dict[int, Tuple[int, int]] = {}
        for note, envelope, downgraded, issue in sealed:
            if issue is not None:
                report.issues.append(issue)
                continue
            envelopes.append(envelope)
            sent[note.id] = (note.updated_at, envelope.version)
            if downgraded:
                report.downgraded.append(envelope.id)
        report.sent = len(envelopes)

        request = SyncRequest(
            public_key=self.bundle.owner_id,
            notes=envelopes,
            client_version=self.settings.client_version,
            pq_public_key=self.bundle.pq_public_key_b64(),
        )
        response = await self._transmit(request)
        report.updated = list(response.updated)
        report.conflicts = list(response.conflicts)
        report.received = len(response.notes)

        opened = await asyncio.gather(*(asyncio.to_thread(self._open_one, raw) for raw in response.notes))
        remote: List[Note] = []
        for note, issue in opened:
            if issue is not None:
                report.issues.append(issue)
            else:
                remote.append(note)

        accepted = {i: sent[i][0] for i in _ids(response.updated) if i in sent}
        conflicts = list(_ids(response.conflicts))

        with self.store.transaction():
            merged = merge_notes(self.store.load_all(), remote, accepted=accepted, conflicts=conflicts)
            merged = [_stamp_encryption(n, sent) for n in merged]
            self.store.replace_all(merged)
            report.pruned = self.store.prune_tombstones(cutoff)

        for issue in report.issues:
            logger.warning("Sync issue note=%s phase=%s: %s", issue.note_id, issue.phase.value, issue.message)
        if report.conflicts:
            logger.info("Server reported %d conflict(s): %s", len(report.conflicts), report.conflicts)
        logger.info(
            "Sync complete: sent=%d received=%d updated=%d conflicts=%d pruned=%d",
            report.sent, report.received, len(report.updated), len(report.conflicts), report.pruned,
        )
        return report

    def _seal_one(self, note: Note):
        envelope_id = note_id_to_hex(note.id)
        try:
            envelope, downgraded = signer.seal(self.bundle, note, self.engine)
        except NoteSyncError as exc:
            return note, None, False, SyncIssue.from_error(exc, envelope_id, Phase.ENCRYPT)
        return note, envelope, downgraded, None

    def _open_one(self, raw: dict):
        envelope_id = raw.get("id") if isinstance(raw, dict) else None
        try:
            envelope = envelope_adapter.validate_python(raw)
        except ValidationError as exc:
            return None, SyncIssue(envelope_id, Phase.VERIFY, f"malformed envelope: {exc.error_count()} error(s)")

        if not signer.verify(self.bundle.public_keys(), envelope, self.bundle.pq_backend):
            scheme = "post-quantum" if envelope.version == POST_QUANTUM else "classical"
            exc = SignatureVerificationFailure(f"{scheme} signature did not verify", envelope.id, Phase.VERIFY)
            return None, SyncIssue.from_error(exc, envelope.id, Phase.VERIFY)

        try:
            return self.engine.decrypt(self.bundle, envelope), None
        except NoteSyncError as exc:
            return None, SyncIssue.from_error(exc, envelope.id, Phase.DECRYPT)

    async def _transmit(self, request: SyncRequest):
        attempts = max(1, self.settings.max_attempts)
        for attempt in range(attempts):
            try:
                service_ok, store_ok = await self.transport.health()
                if not (service_ok and store_ok):
                    raise TransportFailure("sync server is unhealthy")
                return await self.transport.sync(request)
            except TransportFailure as exc:
                if not exc.retryable or attempt + 1 >= attempts:
                    raise
                if isinstance(exc, RateLimited):
                    delay = max(self.settings.rate_limit_delay * 2 ** attempt, exc.retry_after or 0.0)
                else:
                    delay = self.settings.retry_base_delay * 2 ** attempt
                logger.warning(
                    "Sync attempt %d/%d failed (%s), retrying in %.1fs", attempt + 1, attempts, exc, delay
                )
                await self._sleep(delay)

    # -------------------- follow-ups --------------------
    def advance_conflicts(self, note_ids: Iterable[str]) -> List[Note]:
        """Bump local timestamps of conflicting notes so the next sync wins."""
        advanced = []
        with self.store.transaction():
            for note_id in _ids(note_ids):
                note = self.store.load_note(note_id)
                if note is not None:
                    advanced.append(self.store.save_note(note))
        return advanced

    def migrate_to_pq(self) -> int:
        """Queue every live note for re-encryption under the post-quantum path."""
        if not self.bundle.has_pq:
            raise KeyUnavailable("post-quantum keys are not available on this device")
        count = 0
        with self.store.transaction():
            for note in self.store.list_notes():
                self.store.save_note(note.model_copy(update={"encryptionType": POST_QUANTUM}))
                count += 1
        logger.info("Queued %d notes for post-quantum re-encryption", count)
        return count


def _ids(hex_ids: Iterable[str]) -> Iterable[int]:
    for value in hex_ids:
        try:
            yield note_id_from_hex(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed note id from server: %r", value)


def _stamp_encryption(note: Note, sent: Dict[int, Tuple[int, int]]) -> Note:
    entry = sent.get(note.id)
    if entry is None or note.pending_sync or entry[0] != note.updated_at:
        return note
    return note.model_copy(update={"encryptionType": entry[1]})
