"""Repository for tag aggregation over the mention index."""
import logging
from typing import List

from sqlalchemy import func, intersect, select

from mention_graph.models.db_models import DBRecord, DBReference
from mention_graph.models.schema import MentionKind, TagCount
from mention_graph.utils import normalize_tag

logger = logging.getLogger(__name__)


class TagRepository:
    """Repository for tag queries.

    Tags are not stored separately: a tag is any index entry of kind
    ``tag``. Counts are distinct non-deleted sources, not occurrences.
    """

    def __init__(self, session_factory):
        """Initialize the tag repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    def _tag_rows(self, owner_scope: str):
        """Base query: tag entries of live sources in a scope."""
        return (
            select(DBReference.source_id)
            .join(DBRecord, DBRecord.id == DBReference.source_id)
            .where(
                (DBReference.owner_scope == owner_scope)
                & (DBReference.kind == MentionKind.TAG.value)
                & (DBRecord.is_deleted.is_(False))
            )
        )

    def get_with_counts(self, owner_scope: str) -> List[TagCount]:
        """Get all tags in a scope with their usage counts.

        Returns:
            TagCount objects sorted by count descending, then tag ascending.
        """
        source_count = func.count(func.distinct(DBReference.source_id))
        with self.session_factory() as session:
            result = session.execute(
                select(DBReference.target_key, source_count)
                .join(DBRecord, DBRecord.id == DBReference.source_id)
                .where(
                    (DBReference.owner_scope == owner_scope)
                    & (DBReference.kind == MentionKind.TAG.value)
                    & (DBRecord.is_deleted.is_(False))
                )
                .group_by(DBReference.target_key)
                .order_by(source_count.desc(), DBReference.target_key)
            ).all()

            return [TagCount(tag=tag, count=count) for tag, count in result]

    def find_source_ids_by_tag(self, owner_scope: str, tag_name: str) -> List[str]:
        """Find all source IDs in a scope that carry a tag.

        Args:
            owner_scope: Scope to search in.
            tag_name: Tag name, with or without a leading '#', any case.

        Returns:
            List of source IDs, most recently updated first.
        """
        tag = normalize_tag(tag_name)
        if not tag:
            return []
        with self.session_factory() as session:
            result = session.execute(
                self._tag_rows(owner_scope)
                .where(DBReference.target_key == tag)
                .order_by(DBRecord.updated_at.desc(), DBReference.source_id)
            ).all()

            return [row[0] for row in result]

    def find_source_ids_by_tags(
        self, owner_scope: str, tag_names: List[str], match_all: bool = False
    ) -> List[str]:
        """Find source IDs that have any or all of the specified tags.

        Args:
            owner_scope: Scope to search in.
            tag_names: List of tag names.
            match_all: If True, only return sources that have ALL tags.
                       If False, return sources that have ANY of the tags.

        Returns:
            Sorted list of source IDs.
        """
        tags = sorted({normalize_tag(t) for t in tag_names if normalize_tag(t)})
        if not tags:
            return []

        with self.session_factory() as session:
            if match_all:
                # One subquery per tag, intersected
                subqueries = [
                    self._tag_rows(owner_scope).where(DBReference.target_key == tag)
                    for tag in tags
                ]
                query = subqueries[0] if len(subqueries) == 1 else intersect(*subqueries)
                result = session.execute(query).all()
            else:
                result = session.execute(
                    self._tag_rows(owner_scope)
                    .where(DBReference.target_key.in_(tags))
                    .distinct()
                ).all()

            return sorted(row[0] for row in result)
