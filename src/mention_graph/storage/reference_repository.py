"""Repository for index entry storage and retrieval."""
import datetime
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from mention_graph.models.db_models import (
    DBCollection,
    DBRecord,
    DBReference,
    DBReferenceSource,
)
from mention_graph.models.schema import (
    RECORD_KINDS,
    BacklinkEntry,
    BacklinkTarget,
    BacklinkTargetType,
    IndexEntry,
    MentionKind,
    RecordKind,
    ResolvedMention,
    TargetStatus,
    ensure_timezone_aware,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass
class ReplaceCounts:
    """Row counts from replacing a source's index entries."""
    created: int = 0
    kept: int = 0
    updated: int = 0
    removed: int = 0


class ReferenceRepository:
    """Repository for the mention index.

    Writes always replace the complete row set of one source inside a
    single transaction. Reads join against the records table so that
    soft-deleted sources never show up as backlinks.
    """

    def __init__(self, session_factory):
        """Initialize the reference repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def replace_for_source(
        self,
        source_id: str,
        owner_scope: str,
        candidates: Sequence[ResolvedMention],
    ) -> ReplaceCounts:
        """Make a source's rows exactly match ``candidates``, atomically.

        Rows that already match a candidate are left alone, rows whose
        target or display text changed are updated in place, the rest are
        deleted or inserted. Everything, including the source state row,
        commits together or not at all.

        Args:
            source_id: The source record ID.
            owner_scope: Scope of the source record.
            candidates: Resolved mentions in order of first appearance.

        Returns:
            Counts of created, kept, updated and removed rows.
        """
        counts = ReplaceCounts()
        with self.session_factory() as session, session.begin():
            existing = session.scalars(
                select(DBReference).where(DBReference.source_id == source_id)
            ).all()
            by_key = {(row.kind, row.target_key): row for row in existing}
            seen: Set[tuple] = set()

            position = 0
            for candidate in candidates:
                key = (candidate.kind.value, candidate.target_key)
                if key in seen:
                    continue
                seen.add(key)

                row = by_key.pop(key, None)
                if row is None:
                    session.add(
                        DBReference(
                            source_id=source_id,
                            owner_scope=owner_scope,
                            kind=candidate.kind.value,
                            target_key=candidate.target_key,
                            resolved_target_id=candidate.resolved_target_id,
                            raw_text=candidate.raw_text,
                            position=position,
                        )
                    )
                    counts.created += 1
                elif (
                    row.resolved_target_id == candidate.resolved_target_id
                    and row.raw_text == candidate.raw_text
                    and row.position == position
                    and row.owner_scope == owner_scope
                ):
                    counts.kept += 1
                else:
                    row.resolved_target_id = candidate.resolved_target_id
                    row.raw_text = candidate.raw_text
                    row.position = position
                    row.owner_scope = owner_scope
                    counts.updated += 1
                position += 1

            for stale in by_key.values():
                session.delete(stale)
                counts.removed += 1

            session.merge(
                DBReferenceSource(
                    source_id=source_id,
                    owner_scope=owner_scope,
                    entry_count=len(seen),
                    indexed_at=utc_now(),
                )
            )
        return counts

    def delete_for_source(self, source_id: str) -> int:
        """Delete all outgoing rows of a source and its state row.

        Rows of other sources that point at this source are left as they
        are; they read back as deleted targets.

        Returns:
            Number of index rows deleted.
        """
        with self.session_factory() as session, session.begin():
            result = session.execute(
                delete(DBReference).where(DBReference.source_id == source_id)
            )
            session.execute(
                delete(DBReferenceSource).where(
                    DBReferenceSource.source_id == source_id
                )
            )
            return result.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_outgoing(self, source_id: str) -> List[IndexEntry]:
        """Get all index entries of a source, in order of appearance.

        Args:
            source_id: The source record ID.

        Returns:
            List of IndexEntry objects with their read-time status.
        """
        with self.session_factory() as session:
            rows = session.scalars(
                select(DBReference)
                .where(DBReference.source_id == source_id)
                .order_by(DBReference.position, DBReference.id)
            ).all()
            return self._to_entries(session, rows)

    def find_backlinks(self, target: BacklinkTarget) -> List[BacklinkEntry]:
        """Find the sources that mention a target.

        Dangling rows never match: a record or collection target only
        matches rows that resolved to it. Each source is returned once,
        most recently updated source first.

        Args:
            target: A record, date or collection target.

        Returns:
            List of BacklinkEntry objects.
        """
        query = (
            select(
                DBReference,
                DBRecord.title,
                DBRecord.record_kind,
            )
            .join(DBRecord, DBRecord.id == DBReference.source_id)
            .where(
                (DBRecord.is_deleted.is_(False))
                & (DBRecord.owner_scope == DBReference.owner_scope)
            )
        )

        if target.target_type == BacklinkTargetType.RECORD:
            query = query.where(
                (DBReference.kind.in_([k.value for k in RECORD_KINDS]))
                & (DBReference.resolved_target_id == target.key)
            )
        elif target.target_type == BacklinkTargetType.DATE:
            query = query.where(
                (DBReference.kind == MentionKind.DATE.value)
                & (DBReference.target_key == target.key)
            )
        elif target.target_type == BacklinkTargetType.COLLECTION:
            query = query.where(
                (DBReference.kind == MentionKind.COLLECTION.value)
                & (DBReference.target_key == target.key)
                & (DBReference.resolved_target_id.is_not(None))
            )
        else:
            raise ValueError(f"Unhandled backlink target type: {target.target_type}")

        if target.target_type != BacklinkTargetType.RECORD:
            if not target.owner_scope:
                raise ValueError(f"{target.target_type.value} targets need an owner scope")
            query = query.where(DBReference.owner_scope == target.owner_scope)
        elif target.owner_scope is not None:
            query = query.where(DBReference.owner_scope == target.owner_scope)

        query = query.order_by(
            DBRecord.updated_at.desc(), DBReference.source_id, DBReference.position
        )

        with self.session_factory() as session:
            results: List[BacklinkEntry] = []
            seen: Set[str] = set()
            for row, title, record_kind in session.execute(query).all():
                if row.source_id in seen:
                    continue
                seen.add(row.source_id)
                results.append(
                    BacklinkEntry(
                        source_id=row.source_id,
                        kind=MentionKind(row.kind),
                        raw_text=row.raw_text,
                        source_title=title or "",
                        source_kind=RecordKind(record_kind),
                        owner_scope=row.owner_scope,
                    )
                )
            return results

    def list_entries(
        self,
        owner_scope: str,
        source_id: Optional[str] = None,
        kind: Optional[MentionKind] = None,
        target_key: Optional[str] = None,
        since: Optional[datetime.datetime] = None,
        include_dangling: bool = True,
        limit: int = 100,
        offset: int = 0,
    ) -> List[IndexEntry]:
        """List index entries in a scope with optional filters.

        Entries of soft-deleted sources are excluded. Newest rows first.

        Args:
            owner_scope: Scope to list.
            source_id: Only entries of this source.
            kind: Only entries of this mention kind.
            target_key: Only entries with this target key.
            since: Only entries created after this time.
            include_dangling: When False, drop entries that never resolved.
            limit: Maximum number of entries.
            offset: Number of entries to skip.
        """
        query = (
            select(DBReference)
            .join(DBRecord, DBRecord.id == DBReference.source_id)
            .where(
                (DBReference.owner_scope == owner_scope)
                & (DBRecord.is_deleted.is_(False))
            )
        )
        if source_id:
            query = query.where(DBReference.source_id == source_id)
        if kind:
            query = query.where(DBReference.kind == kind.value)
        if target_key:
            query = query.where(DBReference.target_key == target_key)
        if since:
            query = query.where(DBReference.created_at > since)
        if not include_dangling:
            query = query.where(
                (DBReference.kind == MentionKind.TAG.value)
                | (DBReference.resolved_target_id.is_not(None))
            )
        query = (
            query.order_by(
                DBReference.created_at.desc(),
                DBReference.source_id,
                DBReference.position,
            )
            .limit(limit)
            .offset(offset)
        )

        with self.session_factory() as session:
            rows = session.scalars(query).all()
            return self._to_entries(session, rows)

    def count_dates(self, owner_scope: str) -> Dict[str, int]:
        """Count distinct non-deleted sources per referenced date in a scope.

        Returns:
            Dictionary mapping ISO date to source count, in date order.
        """
        with self.session_factory() as session:
            result = session.execute(
                select(
                    DBReference.target_key,
                    func.count(func.distinct(DBReference.source_id)),
                )
                .join(DBRecord, DBRecord.id == DBReference.source_id)
                .where(
                    (DBReference.owner_scope == owner_scope)
                    & (DBReference.kind == MentionKind.DATE.value)
                    & (DBRecord.is_deleted.is_(False))
                )
                .group_by(DBReference.target_key)
                .order_by(DBReference.target_key)
            ).all()
            return {date: count for date, count in result}

    def find_dangling(self, owner_scope: str) -> List[IndexEntry]:
        """Find entries in a scope whose target is missing or deleted.

        Only entries of non-deleted sources are considered.
        """
        with self.session_factory() as session:
            rows = session.scalars(
                select(DBReference)
                .join(DBRecord, DBRecord.id == DBReference.source_id)
                .where(
                    (DBReference.owner_scope == owner_scope)
                    & (DBRecord.is_deleted.is_(False))
                    & (
                        DBReference.kind.in_(
                            [k.value for k in RECORD_KINDS]
                            + [MentionKind.COLLECTION.value]
                        )
                    )
                )
                .order_by(DBReference.source_id, DBReference.position)
            ).all()
            entries = self._to_entries(session, rows)
            return [e for e in entries if e.status != TargetStatus.RESOLVED]

    def list_indexed_source_ids(self, owner_scope: str) -> List[str]:
        """Get IDs of every source with index state in a scope."""
        with self.session_factory() as session:
            return list(
                session.scalars(
                    select(DBReferenceSource.source_id)
                    .where(DBReferenceSource.owner_scope == owner_scope)
                    .order_by(DBReferenceSource.source_id)
                ).all()
            )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _live_ids(session: Session, model, ids: Iterable[str]) -> Set[str]:
        """Return the subset of ``ids`` that exist and are not deleted."""
        wanted = sorted(set(ids))
        if not wanted:
            return set()
        return set(
            session.scalars(
                select(model.id).where(
                    (model.id.in_(wanted)) & (model.is_deleted.is_(False))
                )
            ).all()
        )

    def _to_entries(
        self, session: Session, rows: Sequence[DBReference]
    ) -> List[IndexEntry]:
        """Convert rows to IndexEntry objects, computing target status."""
        record_ids = [
            r.resolved_target_id
            for r in rows
            if r.resolved_target_id and MentionKind(r.kind) in RECORD_KINDS
        ]
        collection_ids = [
            r.resolved_target_id
            for r in rows
            if r.resolved_target_id and r.kind == MentionKind.COLLECTION.value
        ]
        live_records = self._live_ids(session, DBRecord, record_ids)
        live_collections = self._live_ids(session, DBCollection, collection_ids)

        entries = []
        for row in rows:
            kind = MentionKind(row.kind)
            if kind in (MentionKind.TAG, MentionKind.DATE):
                status = TargetStatus.RESOLVED
            elif row.resolved_target_id is None:
                status = TargetStatus.MISSING
            elif kind == MentionKind.COLLECTION:
                status = (
                    TargetStatus.RESOLVED
                    if row.resolved_target_id in live_collections
                    else TargetStatus.DELETED
                )
            else:
                status = (
                    TargetStatus.RESOLVED
                    if row.resolved_target_id in live_records
                    else TargetStatus.DELETED
                )
            entries.append(
                IndexEntry(
                    source_id=row.source_id,
                    owner_scope=row.owner_scope,
                    kind=kind,
                    target_key=row.target_key,
                    resolved_target_id=row.resolved_target_id,
                    raw_text=row.raw_text,
                    position=row.position,
                    status=status,
                    created_at=ensure_timezone_aware(row.created_at),
                )
            )
        return entries
