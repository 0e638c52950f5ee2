"""Concurrency tests: overlapping writes to the same and to different sources."""
import threading

import pytest

from mention_graph.models.db_models import init_db
from mention_graph.models.schema import SourceRecord
from mention_graph.services.reference_service import ReferenceService

SCOPE = "user-1"


@pytest.fixture
def gated_resolver(reference_service, monkeypatch):
    """Make resolution of text containing #slow block until released."""
    original = reference_service.resolver.resolve
    entered = threading.Event()
    release = threading.Event()

    def resolve(mentions, owner_scope):
        if any(m.normalized_key == "slow" for m in mentions):
            entered.set()
            release.wait(10)
        return original(mentions, owner_scope)

    monkeypatch.setattr(reference_service.resolver, "resolve", resolve)
    yield entered, release
    release.set()


class TestSameSourceOrdering:
    """The write that started last wins, whatever order they finish in."""

    def test_slow_older_write_never_overwrites_newer(
        self, reference_service, make_record, gated_resolver
    ):
        entered, release = gated_resolver
        make_record("a", text_content="#slow #x")
        results = []

        first = threading.Thread(
            target=lambda: results.append(
                reference_service.on_content_committed("a", SCOPE, "#slow #x")
            )
        )
        first.start()
        assert entered.wait(5)

        second = reference_service.on_content_committed("a", SCOPE, "#y")
        assert not second.superseded

        release.set()
        first.join(10)
        assert not first.is_alive()

        assert results[0].superseded
        keys = [e.target_key for e in reference_service.get_outgoing_references("a")]
        assert keys == ["y"]

    def test_write_after_purge_cannot_resurrect_rows(
        self, reference_service, make_record, record_repository, gated_resolver
    ):
        entered, release = gated_resolver
        make_record("a", text_content="#slow")
        worker = threading.Thread(
            target=reference_service.on_content_committed, args=("a", SCOPE, "#slow")
        )
        worker.start()
        assert entered.wait(5)

        record_repository.hard_delete("a")
        reference_service.on_source_hard_deleted("a")
        release.set()
        worker.join(10)

        assert reference_service.get_outgoing_references("a") == []

    def test_sequencer_is_empty_when_idle(self, reference_service, write_record):
        write_record("a", "#one")
        write_record("a", "#two")
        assert reference_service.sequencer._slots == {}


class TestUnrelatedSources:
    """Writes to different sources proceed independently."""

    def test_parallel_writes_to_distinct_sources(self, reference_service, make_record):
        for i in range(8):
            make_record(f"s{i}", text_content=f"#tag{i} #shared")
        errors = []

        def write(i):
            try:
                reference_service.on_content_committed(f"s{i}", SCOPE, f"#tag{i} #shared")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=write, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        assert errors == []
        counts = {t.tag: t.count for t in reference_service.get_tags(SCOPE)}
        assert counts["shared"] == 8
        for i in range(8):
            assert counts[f"tag{i}"] == 1

    def test_slow_source_does_not_block_others(
        self, reference_service, make_record, gated_resolver
    ):
        entered, release = gated_resolver
        make_record("slow-one", text_content="#slow")
        make_record("fast-one", text_content="#fast")
        worker = threading.Thread(
            target=reference_service.on_content_committed,
            args=("slow-one", SCOPE, "#slow"),
        )
        worker.start()
        assert entered.wait(5)

        result = reference_service.on_content_committed("fast-one", SCOPE, "#fast")
        assert result.created == 1

        release.set()
        worker.join(10)
        assert [e.target_key for e in reference_service.get_outgoing_references("slow-one")] == [
            "slow"
        ]


@pytest.fixture
def memory_service():
    """Service on an in-memory database, as run with --in-memory."""
    engine = init_db("sqlite:///:memory:")
    service = ReferenceService(engine=engine, resolve_timeout_seconds=30.0)
    yield service
    service.shutdown()
    engine.dispose()


class TestInMemoryDatabase:
    """The single in-memory connection is shared safely between threads."""

    def test_concurrent_writes_keep_every_source_consistent(self, memory_service):
        for i in range(20):
            memory_service.records.save(
                SourceRecord(id=f"s{i}", owner_scope=SCOPE, title=f"Note {i}")
            )
        errors = []

        def content(i, round_):
            return f"#t{i} #round{round_} [[Note {(i + 1) % 20}]] @2025-03-{round_ + 1:02d}"

        def write(i):
            try:
                for round_ in range(10):
                    memory_service.on_content_committed(f"s{i}", SCOPE, content(i, round_))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=write, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(60)

        assert errors == []
        for i in range(20):
            entries = memory_service.get_outgoing_references(f"s{i}")
            assert [(e.kind.value, e.target_key) for e in entries] == [
                ("tag", f"t{i}"),
                ("tag", "round9"),
                ("note", f"note {(i + 1) % 20}"),
                ("date", "2025-03-10"),
            ]
            assert entries[2].resolved_target_id == f"s{(i + 1) % 20}"
