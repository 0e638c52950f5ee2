"""Index writer: atomic per-source replacement of index rows.

Writes for the same source are ordered by ticket. A ticket is issued when
a content write is committed; only the most recently issued ticket of a
source may commit its rows. Older writes that finish late are dropped, so
a slow write can never overwrite the result of a newer one.
"""
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from mention_graph.exceptions import ErrorCode, StorageError
from mention_graph.models.schema import ReindexResult, ResolvedMention
from mention_graph.storage.reference_repository import ReferenceRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteTicket:
    """Position of one write in its source's write order."""
    source_id: str
    number: int


@dataclass
class _SourceSlot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    issued: int = 0
    outstanding: int = 0


class SourceSequencer:
    """Per-source write ordering: one lock and one ticket counter per source.

    Slots exist only while a source has outstanding tickets, so the
    registry does not grow with the number of sources ever written.
    Unrelated sources never share a lock.
    """

    def __init__(self):
        self._slots: Dict[str, _SourceSlot] = {}
        self._slots_lock = threading.Lock()  # Protects _slots and counters

    def issue(self, source_id: str) -> WriteTicket:
        """Issue the next ticket for a source. Call release() when done."""
        with self._slots_lock:
            slot = self._slots.get(source_id)
            if slot is None:
                slot = _SourceSlot()
                self._slots[source_id] = slot
            slot.issued += 1
            slot.outstanding += 1
            return WriteTicket(source_id=source_id, number=slot.issued)

    def release(self, ticket: WriteTicket) -> None:
        """Mark a ticket as finished (committed, superseded or failed)."""
        with self._slots_lock:
            slot = self._slots.get(ticket.source_id)
            if slot is None:
                return
            slot.outstanding -= 1
            if slot.outstanding <= 0:
                del self._slots[ticket.source_id]

    def is_current(self, ticket: WriteTicket) -> bool:
        """True if no newer ticket has been issued for the ticket's source."""
        with self._slots_lock:
            slot = self._slots.get(ticket.source_id)
            return slot is not None and slot.issued == ticket.number

    @contextmanager
    def ticket(self, source_id: str) -> Iterator[WriteTicket]:
        """Issue a ticket for the duration of a block."""
        issued = self.issue(source_id)
        try:
            yield issued
        finally:
            self.release(issued)

    @contextmanager
    def commit_slot(self, ticket: WriteTicket) -> Iterator[bool]:
        """Hold the source's lock; yields whether the ticket may still commit."""
        with self._slots_lock:
            slot = self._slots.get(ticket.source_id)
        if slot is None:
            # Ticket already released; nothing may commit on its behalf
            yield False
            return
        with slot.lock:
            yield self.is_current(ticket)


class IndexWriter:
    """Writes a source's resolved mentions to the index.

    Never touches the records table.
    """

    def __init__(
        self,
        reference_repository: ReferenceRepository,
        sequencer: Optional[SourceSequencer] = None,
    ):
        """Initialize the writer.

        Args:
            reference_repository: Storage for index rows.
            sequencer: Per-source write ordering. A private one is created
                       when omitted.
        """
        self.references = reference_repository
        self.sequencer = sequencer or SourceSequencer()

    def reindex(
        self,
        source_id: str,
        owner_scope: str,
        candidates: Sequence[ResolvedMention],
        ticket: Optional[WriteTicket] = None,
    ) -> ReindexResult:
        """Replace a source's index rows with ``candidates``.

        Args:
            source_id: The source record ID.
            owner_scope: Scope of the source record.
            candidates: Resolved mentions in order of first appearance.
            ticket: Ticket issued when the content was committed. Without
                    one, a ticket is issued here, which orders this write
                    after every write already in flight.

        Returns:
            ReindexResult; ``superseded`` is True if a newer write for the
            source was issued before this one could commit.

        Raises:
            StorageError: If the transaction fails. Old rows stay in place.
        """
        if ticket is None:
            with self.sequencer.ticket(source_id) as own_ticket:
                return self.reindex(
                    source_id, owner_scope, candidates, own_ticket
                )

        with self.sequencer.commit_slot(ticket) as current:
            if not current:
                logger.info(
                    f"Skipping stale reindex of {source_id} "
                    f"(ticket {ticket.number} superseded)"
                )
                return ReindexResult(source_id=source_id, superseded=True)
            try:
                counts = self.references.replace_for_source(
                    source_id, owner_scope, candidates
                )
            except SQLAlchemyError as e:
                logger.error(f"Reindex of {source_id} failed, index unchanged: {e}")
                raise StorageError(
                    "Failed to write index entries",
                    operation="reindex",
                    source_id=source_id,
                    code=ErrorCode.STORAGE_WRITE_FAILED,
                    original_error=e,
                ) from e

        logger.debug(
            f"Reindexed {source_id}: created={counts.created} kept={counts.kept} "
            f"updated={counts.updated} removed={counts.removed}"
        )
        return ReindexResult(
            source_id=source_id,
            created=counts.created,
            kept=counts.kept,
            updated=counts.updated,
            removed=counts.removed,
        )

    def purge(self, source_id: str, ticket: Optional[WriteTicket] = None) -> int:
        """Remove every outgoing row of a source.

        Issues (or uses) a ticket like reindex(), so any write for the
        source still in flight is superseded and cannot bring rows back.

        Returns:
            Number of rows removed.

        Raises:
            StorageError: If the delete fails.
        """
        if ticket is None:
            with self.sequencer.ticket(source_id) as own_ticket:
                return self.purge(source_id, own_ticket)

        with self.sequencer.commit_slot(ticket) as current:
            if not current:
                return 0
            try:
                removed = self.references.delete_for_source(source_id)
            except SQLAlchemyError as e:
                raise StorageError(
                    "Failed to delete index entries",
                    operation="purge",
                    source_id=source_id,
                    code=ErrorCode.STORAGE_DELETE_FAILED,
                    original_error=e,
                ) from e
        logger.info(f"Purged {removed} index entries of {source_id}")
        return removed
