import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from ..models import Note

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class NoteStore:
    """Plaintext notes on this device.

    One lock guards every record: the editing surface and the sync merge
    both go through it, and transaction() holds it across read -> merge ->
    write so the two writers never interleave.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._notes: Dict[int, Note] = {}
        self._last_id = 0
        self._lock = threading.RLock()
        if self.path and self.path.exists():
            self._load()

    # Persistence
    def _load(self) -> None:
        raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        self._notes = {n.id: n for n in (Note(**item) for item in raw)}
        self._last_id = max(self._notes, default=0)
        logger.debug("Loaded %d notes from %s", len(self._notes), self.path)

    def _flush(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        data = [n.model_dump() for n in sorted(self._notes.values(), key=lambda n: n.id)]
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    @contextmanager
    def transaction(self) -> Iterator["NoteStore"]:
        with self._lock:
            yield self

    # Editing surface
    def _next_id(self) -> int:
        candidate = max(now_ms(), self._last_id + 1)
        self._last_id = candidate
        return candidate

    def create_note(self, title: str = "", content: str = "") -> Note:
        with self._lock:
            ts = now_ms()
            note = Note(
                id=self._next_id(),
                title=title,
                content=content,
                created_at=ts,
                updated_at=ts,
                pending_sync=True,
            )
            self._notes[note.id] = note
            self._flush()
            return note

    def save_note(self, note: Note) -> Note:
        with self._lock:
            if note.id is None:
                raise ValueError("note has no id; use create_note()")
            previous = self._notes.get(note.id)
            stamp = now_ms()
            if previous is not None:
                stamp = max(stamp, previous.updated_at + 1)
            saved = note.model_copy(update={"updated_at": stamp, "pending_sync": True})
            self._notes[saved.id] = saved
            if saved.id > self._last_id:
                self._last_id = saved.id
            self._flush()
            return saved

    def delete_note(self, note_id: int) -> Optional[Note]:
        with self._lock:
            note = self._notes.get(note_id)
            if note is None:
                return None
            return self.save_note(note.model_copy(update={"deleted": True}))

    def get_note(self, note_id: int) -> Optional[Note]:
        with self._lock:
            note = self._notes.get(note_id)
            return None if note is None or note.deleted else note

    def list_notes(self) -> List[Note]:
        with self._lock:
            return sorted(
                (n for n in self._notes.values() if not n.deleted),
                key=lambda n: n.updated_at,
                reverse=True,
            )

    # Sync
    def load_note(self, note_id: int) -> Optional[Note]:
        """Like get_note() but also returns tombstones."""
        with self._lock:
            return self._notes.get(note_id)

    def load_all(self) -> List[Note]:
        with self._lock:
            return sorted(self._notes.values(), key=lambda n: n.id)

    def replace_all(self, notes: List[Note]) -> None:
        with self._lock:
            self._notes = {n.id: n for n in notes}
            self._last_id = max([self._last_id, *self._notes])
            self._flush()

    def prune_tombstones(self, cutoff_ms: int) -> int:
        with self._lock:
            stale = [i for i, n in self._notes.items() if n.deleted and n.updated_at < cutoff_ms]
            for note_id in stale:
                del self._notes[note_id]
            if stale:
                self._flush()
            return len(stale)
