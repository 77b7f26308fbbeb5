import logging
import zlib
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from services.outbox_service.models import OutboxCursor, OutboxEntry
from shared.clock import utc_now_ms
from shared.events import BaseEvent, encode_event

logger = logging.getLogger(__name__)


def partition_for(key: str, partitions: int) -> int:
    return zlib.crc32(key.encode("utf-8")) % partitions


class OutboxRepository:
    """Repository for outbox rows; every method works inside the caller's session."""

    def __init__(self, db: Session, partitions: int = 8, clock: Callable[[], int] = utc_now_ms):
        """Initialize with database session."""
        self.db = db
        self.partitions = partitions
        self.clock = clock

    def ensure_cursors(self) -> None:
        """Create missing partition cursors (run once at startup)."""
        existing = {c.partition for c in self.db.query(OutboxCursor).all()}
        for partition in range(self.partitions):
            if partition not in existing:
                self.db.add(OutboxCursor(partition=partition, next_seq=1))
        self.db.flush()

    def _next_seq(self, partition: int) -> int:
        cursor = (
            self.db.query(OutboxCursor)
            .filter(OutboxCursor.partition == partition)
            .with_for_update()
            .first()
        )
        if cursor is None:
            cursor = OutboxCursor(partition=partition, next_seq=1)
            self.db.add(cursor)
        seq = cursor.next_seq
        cursor.next_seq = seq + 1
        self.db.flush()
        return seq

    def append(self, event: BaseEvent) -> OutboxEntry:
        """Add event to outbox. Commits with the caller's transaction."""
        key = event.partition_key
        partition = partition_for(key, self.partitions)
        entry = OutboxEntry(
            partition=partition,
            seq=self._next_seq(partition),
            topic=event.topic,
            key=key,
            payload=encode_event(event),
            created_at=self.clock(),
            attempts=0,
        )
        self.db.add(entry)
        self.db.flush()
        logger.info(f"Added outbox event {event.topic} for {key}", extra={"event_type": event.topic})
        return entry

    def pending_partitions(self) -> List[int]:
        """Partitions that still have undispatched entries, ascending."""
        rows = (
            self.db.query(OutboxEntry.partition)
            .filter(OutboxEntry.dispatched_at.is_(None))
            .distinct()
            .order_by(OutboxEntry.partition)
            .all()
        )
        return [partition for (partition,) in rows]

    def get_undispatched(self, limit: int = 500, partition: Optional[int] = None) -> List[OutboxEntry]:
        """Undispatched entries in (partition, seq) order, optionally from one partition."""
        query = self.db.query(OutboxEntry).filter(OutboxEntry.dispatched_at.is_(None))
        if partition is not None:
            query = query.filter(OutboxEntry.partition == partition)
        return query.order_by(OutboxEntry.partition, OutboxEntry.seq).limit(limit).all()

    def mark_dispatched(self, entry_id: int) -> None:
        entry = self.db.get(OutboxEntry, entry_id)
        if entry:
            entry.dispatched_at = self.clock()
            entry.attempts += 1
            entry.last_error = None
            self.db.flush()

    def mark_failed(self, entry_id: int, error: str) -> None:
        entry = self.db.get(OutboxEntry, entry_id)
        if entry:
            entry.attempts += 1
            entry.last_error = error[:1000]
            self.db.flush()

    def entries_for_key(self, key: str) -> List[OutboxEntry]:
        return (
            self.db.query(OutboxEntry)
            .filter(OutboxEntry.key == key)
            .order_by(OutboxEntry.partition, OutboxEntry.seq)
            .all()
        )
