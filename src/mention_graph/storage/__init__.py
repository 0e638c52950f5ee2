"""Storage layer for the mention graph engine."""

from mention_graph.storage.collection_repository import CollectionRepository
from mention_graph.storage.record_repository import RecordRepository
from mention_graph.storage.reference_repository import ReferenceRepository
from mention_graph.storage.tag_repository import TagRepository

__all__ = [
    "RecordRepository",
    "CollectionRepository",
    "ReferenceRepository",
    "TagRepository",
]
