"""Repository for source records (notes and bookmarks).

The records table belongs to the CRUD layer. The engine only needs read
access: records by id, by normalized title and by normalized URL, always
restricted to one owner scope and to non-deleted rows. The write helpers
(save, mark_deleted, hard_delete) are what the CRUD layer calls; they keep
the normalized lookup columns in step with title and URL.
"""
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, select

from mention_graph.models.db_models import DBRecord
from mention_graph.models.schema import (
    RecordKind,
    SourceRecord,
    ensure_timezone_aware,
    utc_now,
)
from mention_graph.utils import normalize_title, normalize_url

logger = logging.getLogger(__name__)


class RecordRepository:
    """Repository for reading (and, for the CRUD layer, writing) records."""

    def __init__(self, session_factory):
        """Initialize the record repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    @staticmethod
    def _to_model(db_record: DBRecord) -> SourceRecord:
        return SourceRecord(
            id=db_record.id,
            owner_scope=db_record.owner_scope,
            title=db_record.title or "",
            url=db_record.url,
            text_content=db_record.text_content or "",
            record_kind=RecordKind(db_record.record_kind),
            is_deleted=bool(db_record.is_deleted),
            created_at=ensure_timezone_aware(db_record.created_at),
            updated_at=ensure_timezone_aware(db_record.updated_at),
        )

    def save(self, record: SourceRecord) -> SourceRecord:
        """Insert or update a record, refreshing its lookup keys.

        Args:
            record: The record to persist.

        Returns:
            The persisted record.
        """
        with self.session_factory() as session:
            db_record = session.get(DBRecord, record.id)
            if db_record is None:
                db_record = DBRecord(id=record.id, created_at=record.created_at)
                session.add(db_record)
            db_record.owner_scope = record.owner_scope
            db_record.title = record.title
            db_record.title_key = normalize_title(record.title)
            db_record.url = record.url
            db_record.url_key = normalize_url(record.url) if record.url else None
            db_record.text_content = record.text_content
            db_record.record_kind = record.record_kind.value
            db_record.is_deleted = record.is_deleted
            db_record.updated_at = record.updated_at
            session.commit()
            return self._to_model(db_record)

    def get(self, record_id: str) -> Optional[SourceRecord]:
        """Get a record by ID, deleted or not."""
        with self.session_factory() as session:
            db_record = session.get(DBRecord, record_id)
            if db_record is None:
                return None
            return self._to_model(db_record)

    def mark_deleted(self, record_id: str, deleted: bool = True) -> bool:
        """Soft-delete (or restore) a record.

        Returns:
            True if the record exists, False otherwise.
        """
        with self.session_factory() as session:
            db_record = session.get(DBRecord, record_id)
            if db_record is None:
                return False
            db_record.is_deleted = deleted
            db_record.updated_at = utc_now()
            session.commit()
            return True

    def hard_delete(self, record_id: str) -> bool:
        """Permanently remove a record row.

        Index rows are not touched here; the caller follows up with
        ReferenceService.on_source_hard_deleted.
        """
        with self.session_factory() as session:
            result = session.execute(delete(DBRecord).where(DBRecord.id == record_id))
            session.commit()
            return result.rowcount > 0

    def list_active(self, owner_scope: str) -> List[SourceRecord]:
        """Get all non-deleted records in a scope, oldest update first."""
        with self.session_factory() as session:
            db_records = session.scalars(
                select(DBRecord)
                .where(
                    (DBRecord.owner_scope == owner_scope)
                    & (DBRecord.is_deleted.is_(False))
                )
                .order_by(DBRecord.updated_at, DBRecord.id)
            ).all()
            return [self._to_model(r) for r in db_records]

    def find_by_title_keys(
        self,
        owner_scope: str,
        title_keys: Iterable[str],
        record_kinds: Optional[Iterable[RecordKind]] = None,
    ) -> Dict[str, List[SourceRecord]]:
        """Batch-look-up non-deleted records by normalized title.

        Args:
            owner_scope: Scope to search in.
            title_keys: Normalized titles (see utils.normalize_title).
            record_kinds: Restrict to these record kinds. None means any.

        Returns:
            Mapping from title key to every matching record.
        """
        keys = sorted(set(title_keys))
        if not keys:
            return {}
        with self.session_factory() as session:
            query = select(DBRecord).where(
                (DBRecord.owner_scope == owner_scope)
                & (DBRecord.is_deleted.is_(False))
                & (DBRecord.title_key.in_(keys))
            )
            if record_kinds is not None:
                query = query.where(
                    DBRecord.record_kind.in_([k.value for k in record_kinds])
                )
            matches: Dict[str, List[SourceRecord]] = defaultdict(list)
            for db_record in session.scalars(query).all():
                matches[db_record.title_key].append(self._to_model(db_record))
            return dict(matches)

    def find_by_url_keys(
        self, owner_scope: str, url_keys: Iterable[str]
    ) -> Dict[str, List[SourceRecord]]:
        """Batch-look-up non-deleted records by normalized URL."""
        keys = sorted(set(url_keys))
        if not keys:
            return {}
        with self.session_factory() as session:
            db_records = session.scalars(
                select(DBRecord).where(
                    (DBRecord.owner_scope == owner_scope)
                    & (DBRecord.is_deleted.is_(False))
                    & (DBRecord.url_key.in_(keys))
                )
            ).all()
            matches: Dict[str, List[SourceRecord]] = defaultdict(list)
            for db_record in db_records:
                matches[db_record.url_key].append(self._to_model(db_record))
            return dict(matches)
