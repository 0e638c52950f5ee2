"""Data models for the mention graph engine."""

import datetime
from datetime import timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from mention_graph.utils import normalize_slug, parse_iso_date


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite drops tzinfo on the way back out, so every datetime read from
    the database passes through here.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


class MentionKind(str, Enum):
    """Kinds of mentions recognized in record content."""

    TAG = "tag"  # #word
    NOTE = "note"  # [[Note Title]]
    CARD = "card"  # @"Card Title" or @https://example.com
    DATE = "date"  # @2025-03-10
    COLLECTION = "collection"  # @#collection-slug


# Mention kinds that point at a row in the records table
RECORD_KINDS = (MentionKind.NOTE, MentionKind.CARD)


class MentionForm(str, Enum):
    """Syntactic form of a card mention."""

    TITLE = "title"
    URL = "url"


# URL-form card keys carry this prefix; title-form keys never do
URL_KEY_PREFIX = "url:"


class RecordKind(str, Enum):
    """Kinds of source records."""

    NOTE = "note"
    BOOKMARK = "bookmark"


class TargetStatus(str, Enum):
    """How an index entry's target looks at read time."""

    RESOLVED = "resolved"  # Target exists (or needs no lookup: tags, dates)
    MISSING = "missing"  # Nothing matched when the source was indexed
    DELETED = "deleted"  # Matched at index time, gone or trashed since


class BacklinkTargetType(str, Enum):
    """What a backlink query is keyed on."""

    RECORD = "record"
    DATE = "date"
    COLLECTION = "collection"


class Mention(BaseModel):
    """A mention found in text. Ephemeral, never persisted on its own."""

    kind: MentionKind = Field(..., description="Kind of mention")
    raw_text: str = Field(..., description="Text as written, for display")
    normalized_key: str = Field(..., description="Normalized lookup key")
    form: Optional[MentionForm] = Field(
        default=None, description="Title or URL form (card mentions only)"
    )

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("normalized_key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        """Reject empty keys; empty mention bodies are dropped before this."""
        if not v.strip():
            raise ValueError("Mention key cannot be empty")
        return v


class ResolvedMention(BaseModel):
    """A mention after target resolution; the candidate for one index row."""

    kind: MentionKind = Field(..., description="Kind of mention")
    target_key: str = Field(..., description="Normalized lookup key of the target")
    resolved_target_id: Optional[str] = Field(
        default=None, description="Resolved target, None when dangling"
    )
    raw_text: str = Field(..., description="Text as written, for display")

    model_config = {"extra": "forbid", "frozen": True}

    @property
    def is_dangling(self) -> bool:
        """True when the mention could not be matched to a target."""
        return self.kind != MentionKind.TAG and self.resolved_target_id is None


class IndexEntry(BaseModel):
    """One persisted index row, as returned to readers."""

    source_id: str = Field(..., description="ID of the mentioning record")
    owner_scope: str = Field(..., description="Scope shared by source and target")
    kind: MentionKind = Field(..., description="Kind of mention")
    target_key: str = Field(..., description="Normalized lookup key of the target")
    resolved_target_id: Optional[str] = Field(
        default=None, description="Resolved target, None when dangling"
    )
    raw_text: str = Field(..., description="Text as written, for display")
    position: int = Field(default=0, description="Order of first appearance")
    status: TargetStatus = Field(
        default=TargetStatus.RESOLVED, description="Target state at read time"
    )
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the row was first written (UTC)"
    )

    model_config = {"extra": "forbid", "frozen": True}


class BacklinkTarget(BaseModel):
    """Target of a backlink query: a record, an ISO date or a collection.

    Record ids are global. Dates and collection slugs only mean something
    within one owner scope, so those targets are queried per scope.
    """

    target_type: BacklinkTargetType
    key: str
    owner_scope: Optional[str] = None

    model_config = {"extra": "forbid", "frozen": True}

    @classmethod
    def record(cls, record_id: str) -> "BacklinkTarget":
        return cls(target_type=BacklinkTargetType.RECORD, key=record_id)

    @classmethod
    def date(cls, iso_date: str, owner_scope: Optional[str]) -> "BacklinkTarget":
        return cls(
            target_type=BacklinkTargetType.DATE, key=iso_date, owner_scope=owner_scope
        )

    @classmethod
    def collection(
        cls, slug: str, owner_scope: Optional[str]
    ) -> "BacklinkTarget":
        return cls(
            target_type=BacklinkTargetType.COLLECTION,
            key=normalize_slug(slug),
            owner_scope=owner_scope,
        )

    @field_validator("key")
    @classmethod
    def validate_key(cls, v: str) -> str:
        """Validate that the key is not empty."""
        if not v or not v.strip():
            raise ValueError("Backlink target key cannot be empty")
        return v.strip()

    def iso_date(self) -> Optional[datetime.date]:
        """Parsed date for date targets, None if the key is not a valid date."""
        return parse_iso_date(self.key)


class BacklinkEntry(BaseModel):
    """A source that mentions a target, with display metadata."""

    source_id: str
    kind: MentionKind
    raw_text: str
    source_title: str
    source_kind: RecordKind
    owner_scope: str

    model_config = {"frozen": True}


class TagCount(BaseModel):
    """A tag with the number of distinct sources using it."""

    tag: str
    count: int

    model_config = {"frozen": True}


class ReindexResult(BaseModel):
    """Outcome of one reindex of a source."""

    source_id: str
    created: int = 0
    kept: int = 0
    updated: int = 0
    removed: int = 0
    superseded: bool = Field(
        default=False,
        description="True when a newer write for the source made this one stale",
    )

    model_config = {"frozen": True}


class SourceRecord(BaseModel):
    """A note or bookmark, as the engine reads it from the records table."""

    id: str = Field(..., description="Unique ID of the record")
    owner_scope: str = Field(..., description="Owner/workspace the record belongs to")
    title: str = Field(default="", description="Title of the record")
    url: Optional[str] = Field(default=None, description="Bookmark URL")
    text_content: str = Field(default="", description="Free-text content")
    record_kind: RecordKind = Field(default=RecordKind.NOTE)
    is_deleted: bool = Field(default=False)
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("id", "owner_scope")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Validate that identifiers are not blank."""
        if not v or not v.strip():
            raise ValueError("Identifier cannot be empty")
        return v


class Collection(BaseModel):
    """A collection that records can be grouped into."""

    id: str = Field(..., description="Unique ID of the collection")
    owner_scope: str = Field(..., description="Owner/workspace")
    slug: str = Field(..., description="URL-style slug (alphanumeric and hyphens)")
    name: str = Field(default="", description="Display name")
    is_deleted: bool = Field(default=False)
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v: str) -> str:
        """Normalize the slug and reject characters mentions cannot express."""
        slug = normalize_slug(v)
        if not slug or not all(c.isascii() and (c.isalnum() or c == "-") for c in slug):
            raise ValueError(
                "Collection slug can only contain letters, numbers and hyphens"
            )
        return slug
