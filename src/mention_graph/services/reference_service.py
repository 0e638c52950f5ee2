"""Service layer for the mention graph engine.

ReferenceService is what the CRUD layer and query callers talk to. A
committed content write runs extraction, resolution and the index write
in that order; reads go straight to the repositories and only ever see
committed index state.
"""

import datetime
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timezone
from typing import Dict, Iterator, List, Optional, Union

from mention_graph.exceptions import ErrorCode, RecordNotFoundError, ValidationError
from mention_graph.models.db_models import get_session_factory, init_db
from mention_graph.models.schema import (
    BacklinkEntry,
    BacklinkTarget,
    BacklinkTargetType,
    IndexEntry,
    MentionKind,
    ReindexResult,
    TagCount,
)
from mention_graph.observability import traced
from mention_graph.services.index_writer import IndexWriter, SourceSequencer, WriteTicket
from mention_graph.services.mention_extractor import extract_mentions
from mention_graph.services.target_resolver import TargetResolver
from mention_graph.storage.collection_repository import CollectionRepository
from mention_graph.storage.record_repository import RecordRepository
from mention_graph.storage.reference_repository import ReferenceRepository
from mention_graph.storage.tag_repository import TagRepository

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 500


def _require(value: Optional[str], field: str) -> str:
    if not value or not value.strip():
        raise ValidationError(f"{field} cannot be empty", field=field)
    return value


@dataclass
class PendingWrite:
    """A content write that has not committed yet.

    Set ``text_content`` inside ReferenceService.content_write(); the index
    is only updated if the block completes.
    """
    source_id: str
    owner_scope: str
    text_content: Optional[str] = None
    result: Optional[ReindexResult] = None


class ReferenceService:
    """Reference and backlink engine.

    Write hooks (called by the CRUD layer):
        on_content_committed, on_source_hard_deleted, content_write

    Maintenance:
        reindex_record, rebuild_scope

    Queries:
        get_backlinks, get_tags, get_records_by_tag, get_records_by_tags,
        get_outgoing_references, list_references, get_date_references,
        find_dangling_references
    """

    def __init__(
        self,
        engine=None,
        session_factory=None,
        resolve_timeout_seconds: Optional[float] = None,
        resolver_max_workers: Optional[int] = None,
    ):
        """Initialize the service.

        Args:
            engine: Pre-configured SQLAlchemy engine. Created with init_db()
                    when neither engine nor session_factory is given.
            session_factory: Session factory to use instead of one bound
                             to ``engine``.
            resolve_timeout_seconds: Override for config.resolve_timeout_seconds.
            resolver_max_workers: Override for config.resolver_max_workers.
        """
        if session_factory is None:
            session_factory = get_session_factory(engine if engine is not None else init_db())
        self.session_factory = session_factory

        self.records = RecordRepository(session_factory)
        self.collections = CollectionRepository(session_factory)
        self.references = ReferenceRepository(session_factory)
        self.tags = TagRepository(session_factory)

        self.resolver = TargetResolver(
            self.records,
            self.collections,
            timeout_seconds=resolve_timeout_seconds,
            max_workers=resolver_max_workers,
        )
        self.sequencer = SourceSequencer()
        self.writer = IndexWriter(self.references, self.sequencer)

    def shutdown(self) -> None:
        """Release background resources."""
        self.resolver.shutdown()

    # ------------------------------------------------------------------
    # Write hooks
    # ------------------------------------------------------------------

    @traced("on_content_committed")
    def on_content_committed(
        self, source_id: str, owner_scope: str, text_content: str
    ) -> ReindexResult:
        """Reindex a source after its content write committed.

        Must only be called for a write that actually committed. When two
        calls for the same source overlap, the one that started last wins,
        whichever finishes first.

        Args:
            source_id: ID of the written record.
            owner_scope: Scope of the record.
            text_content: The committed content.

        Returns:
            ReindexResult (``superseded`` if a newer write took over).

        Raises:
            ValidationError: If source_id or owner_scope is empty.
            StorageError: If resolution or the index write fails. The
                previous index state of the source is left in place;
                saving again retries.
        """
        _require(source_id, "source_id")
        _require(owner_scope, "owner_scope")
        with self.sequencer.ticket(source_id) as ticket:
            return self._reindex(ticket, owner_scope, text_content or "")

    def _reindex(
        self, ticket: WriteTicket, owner_scope: str, text_content: str
    ) -> ReindexResult:
        mentions = extract_mentions(text_content)
        if not self.sequencer.is_current(ticket):
            # A newer write already started; skip the lookups entirely
            return ReindexResult(source_id=ticket.source_id, superseded=True)
        candidates = self.resolver.resolve(mentions, owner_scope)
        return self.writer.reindex(
            ticket.source_id, owner_scope, candidates, ticket=ticket
        )

    @contextmanager
    def content_write(self, source_id: str, owner_scope: str) -> Iterator[PendingWrite]:
        """Wrap a content write so the reindex runs only if it succeeds.

        Example:
            with service.content_write(record.id, record.owner_scope) as write:
                crud.save(record)              # may raise; then no reindex
                write.text_content = record.text_content
            print(write.result)
        """
        write = PendingWrite(source_id=source_id, owner_scope=owner_scope)
        yield write
        if write.text_content is None:
            logger.debug(f"Write of {source_id} set no content; index untouched")
            return
        write.result = self.on_content_committed(
            source_id, owner_scope, write.text_content
        )

    @traced("on_source_hard_deleted")
    def on_source_hard_deleted(self, source_id: str) -> int:
        """Purge a hard-deleted source's outgoing index rows.

        Rows of other sources that mention it are not rewritten; they read
        back with status ``deleted``.

        Returns:
            Number of rows removed.
        """
        _require(source_id, "source_id")
        return self.writer.purge(source_id)

    @traced("reindex_record")
    def reindex_record(self, source_id: str) -> ReindexResult:
        """Reindex one record from the content stored in the records table.

        Raises:
            RecordNotFoundError: If no such record exists.
        """
        _require(source_id, "source_id")
        record = self.records.get(source_id)
        if record is None:
            raise RecordNotFoundError(source_id)
        return self.on_content_committed(
            record.id, record.owner_scope, record.text_content
        )

    @traced("rebuild_scope")
    def rebuild_scope(self, owner_scope: str) -> int:
        """Re-run the write pipeline for every live record in a scope.

        Resolution is otherwise write-time only; this is the explicit way
        to pick up targets created after their mentions were indexed. Index
        state of sources whose record no longer exists is purged.

        Returns:
            Number of sources reindexed.
        """
        _require(owner_scope, "owner_scope")
        active = self.records.list_active(owner_scope)
        for record in active:
            self.on_content_committed(record.id, owner_scope, record.text_content)

        orphaned = 0
        for source_id in self.references.list_indexed_source_ids(owner_scope):
            if self.records.get(source_id) is None:
                self.writer.purge(source_id)
                orphaned += 1

        logger.info(
            f"Rebuilt scope {owner_scope}: {len(active)} sources reindexed, "
            f"{orphaned} orphaned sources purged"
        )
        return len(active)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @traced("get_backlinks")
    def get_backlinks(self, target: BacklinkTarget) -> List[BacklinkEntry]:
        """Get the live sources that mention a record, date or collection.

        Raises:
            ValidationError: If a date or collection target has no owner
                scope, or a date target is not a valid YYYY-MM-DD date.
        """
        if target.target_type != BacklinkTargetType.RECORD:
            _require(target.owner_scope, "owner_scope")
        if target.target_type == BacklinkTargetType.DATE:
            parsed = target.iso_date()
            if parsed is None:
                raise ValidationError(
                    f"Invalid date '{target.key}', expected YYYY-MM-DD",
                    field="date",
                    value=target.key,
                    code=ErrorCode.INVALID_DATE,
                )
            target = BacklinkTarget.date(parsed.isoformat(), target.owner_scope)
        return self.references.find_backlinks(target)

    @traced("get_tags")
    def get_tags(self, owner_scope: str) -> List[TagCount]:
        """Get tags in a scope with distinct-source counts."""
        _require(owner_scope, "owner_scope")
        return self.tags.get_with_counts(owner_scope)

    @traced("get_records_by_tag")
    def get_records_by_tag(self, owner_scope: str, tag: str) -> List[str]:
        """Get IDs of live records in a scope that carry a tag."""
        _require(owner_scope, "owner_scope")
        return self.tags.find_source_ids_by_tag(owner_scope, tag)

    @traced("get_records_by_tags")
    def get_records_by_tags(
        self, owner_scope: str, tags: List[str], match_all: bool = False
    ) -> List[str]:
        """Get IDs of live records carrying any (or all) of the tags."""
        _require(owner_scope, "owner_scope")
        return self.tags.find_source_ids_by_tags(owner_scope, tags, match_all)

    @traced("get_outgoing_references")
    def get_outgoing_references(self, source_id: str) -> List[IndexEntry]:
        """Get a source's own index entries, dangling ones included."""
        _require(source_id, "source_id")
        return self.references.get_outgoing(source_id)

    @traced("list_references")
    def list_references(
        self,
        owner_scope: str,
        source_id: Optional[str] = None,
        kind: Optional[Union[MentionKind, str]] = None,
        target_key: Optional[str] = None,
        since: Optional[datetime.datetime] = None,
        include_dangling: bool = True,
        limit: int = 100,
        offset: int = 0,
    ) -> List[IndexEntry]:
        """List index entries in a scope, newest first, with filters.

        Raises:
            ValidationError: On an unknown kind or out-of-range paging.
        """
        _require(owner_scope, "owner_scope")
        if limit < 1 or limit > MAX_LIST_LIMIT:
            raise ValidationError(
                f"limit must be between 1 and {MAX_LIST_LIMIT}",
                field="limit",
                value=limit,
            )
        if offset < 0:
            raise ValidationError("offset cannot be negative", field="offset", value=offset)
        if kind is not None and not isinstance(kind, MentionKind):
            try:
                kind = MentionKind(kind)
            except ValueError:
                raise ValidationError(
                    f"Unknown mention kind '{kind}'",
                    field="kind",
                    value=kind,
                    code=ErrorCode.INVALID_MENTION_KIND,
                )
        if since is not None and since.tzinfo is not None:
            # Stored timestamps are naive UTC
            since = since.astimezone(timezone.utc).replace(tzinfo=None)

        return self.references.list_entries(
            owner_scope,
            source_id=source_id,
            kind=kind,
            target_key=target_key,
            since=since,
            include_dangling=include_dangling,
            limit=limit,
            offset=offset,
        )

    @traced("get_date_references")
    def get_date_references(self, owner_scope: str) -> Dict[str, int]:
        """Get referenced dates in a scope with distinct-source counts."""
        _require(owner_scope, "owner_scope")
        return self.references.count_dates(owner_scope)

    @traced("find_dangling_references")
    def find_dangling_references(self, owner_scope: str) -> List[IndexEntry]:
        """Get entries in a scope whose target is missing or deleted."""
        _require(owner_scope, "owner_scope")
        return self.references.find_dangling(owner_scope)
