"""SQLAlchemy database models for the mention graph engine."""
import datetime
from typing import Optional

from sqlalchemy import (Boolean, Column, DateTime, Index, Integer, String, Text,
                        UniqueConstraint, create_engine, event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from mention_graph.config import config
from mention_graph.models.schema import MentionKind, RecordKind


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# Create base class for SQLAlchemy models
Base = declarative_base()


class DBRecord(Base):
    """Database model for a source record (note or bookmark).

    Owned by the CRUD layer. The engine reads it and never writes it
    while indexing.
    """
    __tablename__ = "records"
    id = Column(String(255), primary_key=True, index=True)
    owner_scope = Column(String(255), nullable=False, index=True)
    title = Column(String(500), nullable=False, default="")
    title_key = Column(String(500), nullable=False, default="", index=True)
    url = Column(Text, nullable=True)
    url_key = Column(String(1000), nullable=True, index=True)
    text_content = Column(Text, nullable=False, default="")
    record_kind = Column(String(20), default=RecordKind.NOTE.value, nullable=False)
    is_deleted = Column(Boolean, default=False, nullable=False, index=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of record."""
        return f"<Record(id='{self.id}', title='{self.title}')>"


class DBCollection(Base):
    """Database model for a collection."""
    __tablename__ = "collections"
    id = Column(String(255), primary_key=True, index=True)
    owner_scope = Column(String(255), nullable=False, index=True)
    slug = Column(String(255), nullable=False, index=True)
    name = Column(String(500), nullable=False, default="")
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of collection."""
        return f"<Collection(id='{self.id}', slug='{self.slug}')>"


class DBReference(Base):
    """Database model for one index entry (a resolved mention of a source).

    source_id deliberately has no foreign key: rows must survive a soft
    delete of their source and are purged explicitly on hard delete.
    """
    __tablename__ = "reference_entries"
    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(String(255), nullable=False, index=True)
    owner_scope = Column(String(255), nullable=False, index=True)
    kind = Column(String(20), default=MentionKind.TAG.value, nullable=False)
    target_key = Column(String(1000), nullable=False)
    resolved_target_id = Column(String(255), nullable=True, index=True)
    raw_text = Column(Text, nullable=False, default="")
    position = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    # One row per (kind, key) per source; the extractor deduplicates on the same pair
    __table_args__ = (
        UniqueConstraint('source_id', 'kind', 'target_key',
                         name='unique_source_mention'),
        Index('ix_reference_entries_kind_target', 'kind', 'target_key'),
    )

    def __repr__(self) -> str:
        """Return string representation of index entry."""
        return (
            f"<Reference(id={self.id}, source='{self.source_id}', "
            f"kind='{self.kind}', target='{self.target_key}')>"
        )


class DBReferenceSource(Base):
    """Database model for the index state of one source."""
    __tablename__ = "reference_sources"
    source_id = Column(String(255), primary_key=True)
    owner_scope = Column(String(255), nullable=False, index=True)
    entry_count = Column(Integer, nullable=False, default=0)
    indexed_at = Column(DateTime, default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ReferenceSource(source='{self.source_id}', "
            f"entries={self.entry_count})>"
        )


def init_db(database_url: Optional[str] = None) -> Engine:
    """Initialize the database with hardened configuration.

    File databases get:
    - WAL (Write-Ahead Logging) mode so readers see committed snapshots
      while a reindex is writing
    - NORMAL synchronous mode
    - QueuePool with pre-ping and a busy timeout so concurrent writers
      wait instead of failing

    An in-memory database lives in a single connection, so the pool holds
    exactly one and hands it to one session at a time. Sessions on other
    threads (resolver workers included) wait for it, which keeps each
    transaction on the connection whole.

    Args:
        database_url: SQLAlchemy URL. Defaults to config.get_db_url().

    Returns:
        The configured engine with all tables created.
    """
    url = database_url or config.get_db_url()

    if ":memory:" in url:
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=1,
            max_overflow=0,
            pool_timeout=30,
            connect_args={"check_same_thread": False},
        )
    else:
        # SQLite is single-writer, so a small pool is ideal
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=5,           # Base pool size (concurrent reads)
            max_overflow=10,       # Allow up to 15 total connections under load
            pool_timeout=30,       # Wait up to 30s for a connection
            pool_recycle=3600,     # Recycle connections after 1 hour
            pool_pre_ping=True,    # Validate connections before use
            connect_args={"timeout": 30, "check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA cache_size=-64000")  # 64MB cache
            cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine=None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine, expire_on_commit=False)
