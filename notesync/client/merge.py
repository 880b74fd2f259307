"""
Three-way merge of local notes against the decrypted server snapshot.

Every caller (sync loop, extension bridges) goes through merge_notes();
there is exactly one merge policy.
"""

from typing import Dict, Iterable, List, Optional

from ..models import Note


def same_body(a: Note, b: Note) -> bool:
    return (
        a.updated_at == b.updated_at
        and a.title == b.title
        and a.content == b.content
        and a.deleted == b.deleted
    )


def merge_notes(
    local: Iterable[Note],
    remote: Iterable[Note],
    *,
    accepted: Optional[Dict[int, int]] = None,
    conflicts: Iterable[int] = (),
) -> List[Note]:
    """Last-writer-wins merge keyed by note id.

    accepted maps note id -> updated_at of the copy the server took in this
    round trip. A pending flag is cleared only for that exact version, or
    when an acknowledged server copy is identical to the local one (a retried
    upload whose first response was lost). Local tombstones the server has
    not taken yet are carried forward so the deletion is retried.
    """
    accepted = accepted or {}
    conflict_ids = set(conflicts)
    local = list(local)

    result: Dict[int, Note] = {n.id: n for n in local if not n.deleted}
    tombstones: Dict[int, Note] = {n.id: n for n in local if n.deleted and n.pending_sync}
    remote_by_id: Dict[int, Note] = {}

    for r in remote:
        remote_by_id[r.id] = r
        mine = result.get(r.id)
        tomb = tombstones.get(r.id)
        if tomb is not None and tomb.updated_at >= r.updated_at:
            continue
        if r.deleted:
            if mine is not None and mine.pending_sync and mine.updated_at > r.updated_at:
                continue
            result.pop(r.id, None)
        elif mine is None or r.updated_at > mine.updated_at:
            result[r.id] = r.model_copy(update={"pending_sync": False})
        # otherwise the local copy stands

    for t in local:
        if not t.deleted or not t.pending_sync or t.id in result:
            continue
        if accepted.get(t.id) == t.updated_at and t.id not in conflict_ids:
            continue
        r = remote_by_id.get(t.id)
        if r is not None and r.updated_at > t.updated_at:
            continue
        result[t.id] = t

    merged: List[Note] = []
    for note_id in sorted(result):
        note = result[note_id]
        if note.pending_sync and not note.deleted:
            r = remote_by_id.get(note_id)
            if accepted.get(note_id) == note.updated_at and note_id not in conflict_ids:
                note = note.model_copy(update={"pending_sync": False})
            elif r is not None and not r.pending_sync and same_body(note, r):
                note = note.model_copy(update={"pending_sync": False})
        merged.append(note)
    return merged
