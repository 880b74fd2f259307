"""Tests for the last-writer-wins merge."""

from __future__ import annotations

from notesync.client.merge import merge_notes


def _by_id(notes):
    return {n.id: n for n in notes}


class TestLastWriterWins:
    def test_newer_remote_replaces_local(self, make_note) -> None:
        local = [make_note(1, content="old", updated_at=100)]
        remote = [make_note(1, content="new", updated_at=200)]
        merged = merge_notes(local, remote)
        assert len(merged) == 1
        assert merged[0].content == "new"
        assert not merged[0].pending_sync

    def test_newer_local_is_kept(self, make_note) -> None:
        local = [make_note(1, content="mine", updated_at=200)]
        remote = [make_note(1, content="theirs", updated_at=100)]
        assert merge_notes(local, remote)[0].content == "mine"

    def test_equal_timestamp_keeps_local(self, make_note) -> None:
        local = [make_note(1, content="mine", updated_at=100)]
        remote = [make_note(1, content="theirs", updated_at=100)]
        assert merge_notes(local, remote)[0].content == "mine"

    def test_union_sorted_by_id(self, make_note) -> None:
        local = [make_note(3), make_note(1)]
        remote = [make_note(2)]
        assert [n.id for n in merge_notes(local, remote)] == [1, 2, 3]

    def test_idempotent(self, make_note) -> None:
        local = [make_note(1, updated_at=100), make_note(2, updated_at=300)]
        remote = [make_note(1, content="r", updated_at=200), make_note(3)]
        once = merge_notes(local, remote)
        assert merge_notes(once, remote) == once


class TestPendingWrites:
    def test_pending_local_survives_older_remote(self, make_note) -> None:
        local = [make_note(1, content="draft", updated_at=50, pending_sync=True)]
        remote = [make_note(1, content="server", updated_at=40)]
        merged = merge_notes(local, remote)
        assert merged[0].content == "draft"
        assert merged[0].pending_sync

    def test_accepted_clears_pending(self, make_note) -> None:
        local = [make_note(1, updated_at=50, pending_sync=True)]
        merged = merge_notes(local, [make_note(1, updated_at=50)], accepted={1: 50})
        assert not merged[0].pending_sync

    def test_accepted_older_version_keeps_pending(self, make_note) -> None:
        """An edit made after the upload started stays queued."""
        local = [make_note(1, content="edited again", updated_at=60, pending_sync=True)]
        remote = [make_note(1, updated_at=50)]
        merged = merge_notes(local, remote, accepted={1: 50})
        assert merged[0].pending_sync
        assert merged[0].content == "edited again"

    def test_conflict_keeps_pending(self, make_note) -> None:
        local = [make_note(1, content="a", updated_at=50, pending_sync=True)]
        remote = [make_note(1, content="b", updated_at=50)]
        merged = merge_notes(local, remote, accepted={1: 50}, conflicts=[1])
        assert merged[0].pending_sync
        assert merged[0].content == "a"

    def test_identical_remote_copy_clears_pending(self, make_note) -> None:
        local = [make_note(1, content="same", updated_at=50, pending_sync=True)]
        remote = [make_note(1, content="same", updated_at=50)]
        assert not merge_notes(local, remote)[0].pending_sync


class TestTombstones:
    def test_remote_tombstone_removes_note(self, make_note) -> None:
        local = [make_note(1, updated_at=100)]
        remote = [make_note(1, updated_at=200, deleted=True)]
        assert merge_notes(local, remote) == []

    def test_remote_tombstone_loses_to_newer_pending_edit(self, make_note) -> None:
        local = [make_note(1, content="keep", updated_at=300, pending_sync=True)]
        remote = [make_note(1, updated_at=200, deleted=True)]
        assert _by_id(merge_notes(local, remote))[1].content == "keep"

    def test_pending_tombstone_carried_forward(self, make_note) -> None:
        local = [make_note(1, updated_at=100, deleted=True, pending_sync=True)]
        merged = merge_notes(local, [])
        assert len(merged) == 1
        assert merged[0].deleted and merged[0].pending_sync

    def test_pending_tombstone_hides_older_remote_copy(self, make_note) -> None:
        local = [make_note(1, updated_at=100, deleted=True, pending_sync=True)]
        remote = [make_note(1, updated_at=90)]
        merged = merge_notes(local, remote)
        assert len(merged) == 1
        assert merged[0].deleted

    def test_accepted_tombstone_dropped(self, make_note) -> None:
        local = [make_note(1, updated_at=100, deleted=True, pending_sync=True)]
        assert merge_notes(local, [], accepted={1: 100}) == []

    def test_newer_remote_resurrects_over_tombstone(self, make_note) -> None:
        local = [make_note(1, updated_at=100, deleted=True, pending_sync=True)]
        remote = [make_note(1, content="revived", updated_at=150)]
        merged = merge_notes(local, remote)
        assert merged[0].content == "revived"
        assert not merged[0].deleted

    def test_acknowledged_local_tombstone_not_kept(self, make_note) -> None:
        local = [make_note(1, updated_at=100, deleted=True)]
        assert merge_notes(local, []) == []


class TestSelfMerge:
    def test_merging_local_with_itself_is_identity(self, make_note) -> None:
        """Pending writes and pending tombstones come back untouched."""
        local = [
            make_note(1, content="draft", updated_at=100, pending_sync=True),
            make_note(2, content="synced", updated_at=200),
            make_note(3, updated_at=300, deleted=True, pending_sync=True),
        ]
        assert merge_notes(local, local) == local

    def test_empty(self) -> None:
        assert merge_notes([], []) == []
