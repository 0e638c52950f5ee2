"""Target resolution: mentions -> index entry candidates.

Lookups are batched per target type and run on a small worker pool so
that each one can be waited on with a deadline. A lookup that misses the
deadline leaves its mentions dangling instead of failing the write.
"""
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from mention_graph.config import config
from mention_graph.exceptions import ErrorCode, StorageError
from mention_graph.models.schema import (
    Collection,
    Mention,
    MentionForm,
    MentionKind,
    RecordKind,
    ResolvedMention,
    SourceRecord,
    URL_KEY_PREFIX,
)
from mention_graph.storage.collection_repository import CollectionRepository
from mention_graph.storage.record_repository import RecordRepository

logger = logging.getLogger(__name__)


def _url_lookup_key(mention: Mention) -> str:
    """Records are keyed by the bare normalized URL."""
    return mention.normalized_key[len(URL_KEY_PREFIX):]


def pick_record(
    candidates: Sequence[SourceRecord], raw_text: str, by_url: bool = False
) -> Optional[SourceRecord]:
    """Choose one record among several with the same normalized key.

    A record whose title (or URL, for URL mentions) equals the mention text
    case-sensitively wins. Otherwise the most recently updated record wins.
    Equal timestamps fall back to the smaller ID so the choice is stable.
    """
    if not candidates:
        return None
    wanted = raw_text.strip()
    exact = [
        r for r in candidates
        if ((r.url or "") if by_url else r.title).strip() == wanted
    ]
    pool = exact or list(candidates)
    return sorted(pool, key=lambda r: (-r.updated_at.timestamp(), r.id))[0]


def pick_collection(candidates: Sequence[Collection]) -> Optional[Collection]:
    """Choose the most recently updated collection (smaller ID on ties)."""
    if not candidates:
        return None
    return sorted(candidates, key=lambda c: (-c.updated_at.timestamp(), c.id))[0]


class TargetResolver:
    """Resolves mentions to targets within one owner scope.

    Never raises for a mention that matches nothing; that mention comes
    back with ``resolved_target_id=None``. Database errors are raised as
    StorageError.
    """

    def __init__(
        self,
        record_repository: RecordRepository,
        collection_repository: CollectionRepository,
        timeout_seconds: Optional[float] = None,
        max_workers: Optional[int] = None,
    ):
        """Initialize the resolver.

        Args:
            record_repository: Read access to records.
            collection_repository: Read access to collections.
            timeout_seconds: Deadline for all lookups of one resolve() call.
                             Defaults to config.resolve_timeout_seconds.
            max_workers: Lookup worker threads. Defaults to
                         config.resolver_max_workers.
        """
        self.records = record_repository
        self.collections = collection_repository
        self.timeout_seconds = timeout_seconds or config.resolve_timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or config.resolver_max_workers,
            thread_name_prefix="mention-resolver",
        )

    def shutdown(self) -> None:
        """Stop the lookup workers without waiting for abandoned lookups."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    def resolve(
        self, mentions: Sequence[Mention], owner_scope: str
    ) -> List[ResolvedMention]:
        """Resolve mentions to index entry candidates.

        Args:
            mentions: Output of extract_mentions.
            owner_scope: Scope of the source record; lookups never leave it.

        Returns:
            One ResolvedMention per mention, in the same order.

        Raises:
            StorageError: If a lookup fails with a database error.
        """
        note_keys = [m.normalized_key for m in mentions if m.kind == MentionKind.NOTE]
        card_title_keys = [
            m.normalized_key
            for m in mentions
            if m.kind == MentionKind.CARD and m.form != MentionForm.URL
        ]
        card_url_keys = [
            _url_lookup_key(m)
            for m in mentions
            if m.kind == MentionKind.CARD and m.form == MentionForm.URL
        ]
        slugs = [m.normalized_key for m in mentions if m.kind == MentionKind.COLLECTION]

        pending: Dict[str, Future] = {}
        if note_keys:
            pending["note"] = self._executor.submit(
                self.records.find_by_title_keys,
                owner_scope,
                note_keys,
                [RecordKind.NOTE],
            )
        if card_title_keys:
            pending["card_title"] = self._executor.submit(
                self.records.find_by_title_keys, owner_scope, card_title_keys
            )
        if card_url_keys:
            pending["card_url"] = self._executor.submit(
                self.records.find_by_url_keys, owner_scope, card_url_keys
            )
        if slugs:
            pending["collection"] = self._executor.submit(
                self.collections.find_by_slugs, owner_scope, slugs
            )

        deadline = time.monotonic() + self.timeout_seconds
        found = {
            name: self._await(name, future, deadline, owner_scope)
            for name, future in pending.items()
        }

        resolved = [self._resolve_one(m, found) for m in mentions]
        dangling = sum(1 for r in resolved if r.is_dangling)
        logger.debug(
            f"Resolved {len(resolved)} mentions in scope {owner_scope} "
            f"({dangling} dangling)"
        )
        return resolved

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _await(
        self, name: str, future: Future, deadline: float, owner_scope: str
    ) -> Dict[str, list]:
        """Wait for one lookup; a missed deadline yields no matches."""
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeoutError:
            future.cancel()
            logger.warning(
                f"Lookup '{name}' in scope {owner_scope} exceeded "
                f"{self.timeout_seconds}s; its mentions are stored as dangling"
            )
            return {}
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to resolve mention targets ({name})",
                operation="resolve",
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

    @staticmethod
    def _resolve_one(
        mention: Mention, found: Dict[str, Dict[str, list]]
    ) -> ResolvedMention:
        """Resolve a single mention against the batched lookup results."""
        kind = mention.kind
        key = mention.normalized_key

        if kind == MentionKind.TAG:
            target_id = None
        elif kind == MentionKind.DATE:
            # Dates always exist; the ISO string is the target
            target_id = key
        elif kind == MentionKind.NOTE:
            record = pick_record(found.get("note", {}).get(key, []), mention.raw_text)
            target_id = record.id if record else None
        elif kind == MentionKind.CARD:
            if mention.form == MentionForm.URL:
                record = pick_record(
                    found.get("card_url", {}).get(_url_lookup_key(mention), []),
                    mention.raw_text,
                    by_url=True,
                )
            else:
                record = pick_record(
                    found.get("card_title", {}).get(key, []), mention.raw_text
                )
            target_id = record.id if record else None
        elif kind == MentionKind.COLLECTION:
            collection = pick_collection(found.get("collection", {}).get(key, []))
            target_id = collection.id if collection else None
        else:
            raise ValueError(f"Unhandled mention kind: {kind}")

        return ResolvedMention(
            kind=kind,
            target_key=key,
            resolved_target_id=target_id,
            raw_text=mention.raw_text,
        )
