"""Tests for the index writer and per-source write ordering."""
import pytest
from sqlalchemy.exc import OperationalError

from mention_graph.exceptions import ErrorCode, StorageError
from mention_graph.models.schema import MentionKind, ResolvedMention
from mention_graph.services.index_writer import IndexWriter, SourceSequencer

SCOPE = "user-1"


def tag(name):
    return ResolvedMention(kind=MentionKind.TAG, target_key=name, raw_text=name)


def note(key, target_id=None, raw_text=None):
    return ResolvedMention(
        kind=MentionKind.NOTE,
        target_key=key,
        resolved_target_id=target_id,
        raw_text=raw_text or key,
    )


@pytest.fixture
def writer(reference_repository):
    return IndexWriter(reference_repository)


class TestSourceSequencer:
    """Tests for SourceSequencer."""

    def test_latest_ticket_is_current(self):
        sequencer = SourceSequencer()
        first = sequencer.issue("s1")
        second = sequencer.issue("s1")
        assert not sequencer.is_current(first)
        assert sequencer.is_current(second)
        sequencer.release(first)
        sequencer.release(second)

    def test_sources_are_independent(self):
        sequencer = SourceSequencer()
        with sequencer.ticket("a") as a, sequencer.ticket("b") as b:
            assert sequencer.is_current(a)
            assert sequencer.is_current(b)

    def test_slots_released_when_idle(self):
        sequencer = SourceSequencer()
        with sequencer.ticket("s1"):
            assert "s1" in sequencer._slots
        assert sequencer._slots == {}

    def test_released_ticket_cannot_commit(self):
        sequencer = SourceSequencer()
        with sequencer.ticket("s1") as ticket:
            pass
        with sequencer.commit_slot(ticket) as current:
            assert current is False


class TestIndexWriter:
    """Tests for IndexWriter."""

    def test_reindex_is_idempotent(self, writer, reference_repository):
        candidates = [tag("work"), note("plan", "n1")]
        first = writer.reindex("s1", SCOPE, candidates)
        second = writer.reindex("s1", SCOPE, candidates)

        assert (first.created, first.kept) == (2, 0)
        assert (second.created, second.kept, second.updated, second.removed) == (0, 2, 0, 0)
        assert len(reference_repository.get_outgoing("s1")) == 2
        assert reference_repository.list_indexed_source_ids(SCOPE) == ["s1"]

    def test_reindex_diffs_rows(self, writer, reference_repository):
        writer.reindex("s1", SCOPE, [tag("work"), note("plan"), tag("old")])
        result = writer.reindex("s1", SCOPE, [tag("work"), note("plan", "n1"), tag("new")])

        assert result.kept == 1
        assert result.updated == 1
        assert result.created == 1
        assert result.removed == 1
        keys = [e.target_key for e in reference_repository.get_outgoing("s1")]
        assert keys == ["work", "plan", "new"]

    def test_failed_write_leaves_previous_rows(
        self, writer, reference_repository, monkeypatch
    ):
        writer.reindex("s1", SCOPE, [tag("alpha"), tag("beta")])

        def broken_state_row(**kwargs):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(
            "mention_graph.storage.reference_repository.DBReferenceSource",
            broken_state_row,
        )
        with pytest.raises(StorageError) as exc_info:
            writer.reindex("s1", SCOPE, [tag("gamma")])
        monkeypatch.undo()

        assert exc_info.value.code == ErrorCode.STORAGE_WRITE_FAILED
        keys = [e.target_key for e in reference_repository.get_outgoing("s1")]
        assert keys == ["alpha", "beta"]
        assert reference_repository.list_indexed_source_ids(SCOPE) == ["s1"]

    def test_stale_ticket_is_skipped(self, writer, reference_repository):
        stale = writer.sequencer.issue("s1")
        fresh = writer.sequencer.issue("s1")
        try:
            skipped = writer.reindex("s1", SCOPE, [tag("old")], ticket=stale)
            applied = writer.reindex("s1", SCOPE, [tag("new")], ticket=fresh)
        finally:
            writer.sequencer.release(stale)
            writer.sequencer.release(fresh)

        assert skipped.superseded
        assert not applied.superseded
        assert [e.target_key for e in reference_repository.get_outgoing("s1")] == ["new"]

    def test_purge_supersedes_writes_in_flight(self, writer, reference_repository):
        writer.reindex("s1", SCOPE, [tag("work")])
        in_flight = writer.sequencer.issue("s1")
        try:
            assert writer.purge("s1") == 1
            late = writer.reindex("s1", SCOPE, [tag("work")], ticket=in_flight)
        finally:
            writer.sequencer.release(in_flight)

        assert late.superseded
        assert reference_repository.get_outgoing("s1") == []
        assert reference_repository.list_indexed_source_ids(SCOPE) == []
