"""Common test fixtures for the mention graph engine."""

import datetime
import tempfile
from datetime import timezone
from pathlib import Path

import pytest

from mention_graph.config import config
from mention_graph.models.db_models import get_session_factory, init_db
from mention_graph.models.schema import Collection, RecordKind, SourceRecord
from mention_graph.services.reference_service import ReferenceService
from mention_graph.storage.collection_repository import CollectionRepository
from mention_graph.storage.record_repository import RecordRepository
from mention_graph.storage.reference_repository import ReferenceRepository
from mention_graph.storage.tag_repository import TagRepository

SCOPE = "user-1"
OTHER_SCOPE = "user-2"


@pytest.fixture
def temp_db_dir():
    """Create a temporary directory for the database."""
    with tempfile.TemporaryDirectory() as db_dir:
        yield Path(db_dir)


@pytest.fixture
def test_config(temp_db_dir, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    monkeypatch.setattr(config, "database_path", temp_db_dir / "test_mention_graph.db")
    monkeypatch.setattr(config, "in_memory_db", False)
    monkeypatch.setattr(config, "resolve_timeout_seconds", 5.0)
    yield config


@pytest.fixture
def engine(test_config):
    """File-backed engine; threads in the concurrency tests need real connections."""
    engine = init_db(test_config.get_db_url())
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest.fixture
def record_repository(session_factory):
    return RecordRepository(session_factory)


@pytest.fixture
def collection_repository(session_factory):
    return CollectionRepository(session_factory)


@pytest.fixture
def reference_repository(session_factory):
    return ReferenceRepository(session_factory)


@pytest.fixture
def tag_repository(session_factory):
    return TagRepository(session_factory)


@pytest.fixture
def reference_service(session_factory):
    """Create a test ReferenceService sharing the fixture database."""
    service = ReferenceService(session_factory=session_factory)
    yield service
    service.shutdown()


_CLOCK = {"tick": 0}


def _next_timestamp() -> datetime.datetime:
    # Strictly increasing so "most recently updated" is well defined
    _CLOCK["tick"] += 1
    return datetime.datetime(2025, 1, 1, tzinfo=timezone.utc) + datetime.timedelta(
        seconds=_CLOCK["tick"]
    )


@pytest.fixture
def make_record(record_repository):
    """Factory that saves a record; later calls get later updated_at."""

    def _make(
        record_id,
        title="",
        text_content="",
        owner_scope=SCOPE,
        record_kind=RecordKind.NOTE,
        url=None,
        updated_at=None,
    ):
        stamp = updated_at or _next_timestamp()
        return record_repository.save(
            SourceRecord(
                id=record_id,
                owner_scope=owner_scope,
                title=title,
                url=url,
                text_content=text_content,
                record_kind=record_kind,
                created_at=stamp,
                updated_at=stamp,
            )
        )

    return _make


@pytest.fixture
def make_collection(collection_repository):
    """Factory that saves a collection."""

    def _make(collection_id, slug, owner_scope=SCOPE, name=""):
        stamp = _next_timestamp()
        return collection_repository.save(
            Collection(
                id=collection_id,
                owner_scope=owner_scope,
                slug=slug,
                name=name or slug,
                created_at=stamp,
                updated_at=stamp,
            )
        )

    return _make


@pytest.fixture
def write_record(make_record, reference_service):
    """Save a record and run the post-commit hook, as the CRUD layer would."""

    def _write(record_id, text_content, title="", **kwargs):
        record = make_record(record_id, title=title, text_content=text_content, **kwargs)
        return reference_service.on_content_committed(
            record.id, record.owner_scope, record.text_content
        )

    return _write
