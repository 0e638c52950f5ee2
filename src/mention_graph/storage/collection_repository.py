"""Repository for collections (the targets of @#slug mentions)."""
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select

from mention_graph.models.db_models import DBCollection
from mention_graph.models.schema import Collection, ensure_timezone_aware, utc_now

logger = logging.getLogger(__name__)


class CollectionRepository:
    """Repository for collections.

    Like records, collections are owned by the CRUD layer; the engine only
    looks them up by slug within a scope.
    """

    def __init__(self, session_factory):
        """Initialize the collection repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    @staticmethod
    def _to_model(db_collection: DBCollection) -> Collection:
        return Collection(
            id=db_collection.id,
            owner_scope=db_collection.owner_scope,
            slug=db_collection.slug,
            name=db_collection.name or "",
            is_deleted=bool(db_collection.is_deleted),
            created_at=ensure_timezone_aware(db_collection.created_at),
            updated_at=ensure_timezone_aware(db_collection.updated_at),
        )

    def save(self, collection: Collection) -> Collection:
        """Insert or update a collection."""
        with self.session_factory() as session:
            db_collection = session.get(DBCollection, collection.id)
            if db_collection is None:
                db_collection = DBCollection(
                    id=collection.id, created_at=collection.created_at
                )
                session.add(db_collection)
            db_collection.owner_scope = collection.owner_scope
            db_collection.slug = collection.slug
            db_collection.name = collection.name
            db_collection.is_deleted = collection.is_deleted
            db_collection.updated_at = collection.updated_at
            session.commit()
            return self._to_model(db_collection)

    def get(self, collection_id: str) -> Optional[Collection]:
        """Get a collection by ID, deleted or not."""
        with self.session_factory() as session:
            db_collection = session.get(DBCollection, collection_id)
            return self._to_model(db_collection) if db_collection else None

    def mark_deleted(self, collection_id: str, deleted: bool = True) -> bool:
        """Soft-delete (or restore) a collection."""
        with self.session_factory() as session:
            db_collection = session.get(DBCollection, collection_id)
            if db_collection is None:
                return False
            db_collection.is_deleted = deleted
            db_collection.updated_at = utc_now()
            session.commit()
            return True

    def find_by_slugs(
        self, owner_scope: str, slugs: Iterable[str]
    ) -> Dict[str, List[Collection]]:
        """Batch-look-up non-deleted collections by slug within a scope."""
        keys = sorted(set(slugs))
        if not keys:
            return {}
        with self.session_factory() as session:
            db_collections = session.scalars(
                select(DBCollection).where(
                    (DBCollection.owner_scope == owner_scope)
                    & (DBCollection.is_deleted.is_(False))
                    & (DBCollection.slug.in_(keys))
                )
            ).all()
            matches: Dict[str, List[Collection]] = defaultdict(list)
            for db_collection in db_collections:
                matches[db_collection.slug].append(self._to_model(db_collection))
            return dict(matches)
