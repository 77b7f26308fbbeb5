"""
publisher.py - Outbox Dispatcher

Polls the outbox table and publishes undispatched entries to Kafka:

    1. Ledger and saga write state + outbox row in one transaction
    2. OutboxPublisher (lease-held background thread) reads the head of each
       pending partition separately, in seq order
    3. Each row is published with its key and marked dispatched only after the
       broker confirms delivery
    4. A failed publish leaves the row undispatched and stops that partition for
       the rest of the tick, so later rows never overtake it. Other partitions
       keep flowing past a stuck one

Delivery is at-least-once: a crash between publish and mark re-sends the entry
on the next tick. Consumers de-duplicate on ``event_id``.
"""

import logging
from typing import Optional, Protocol

from sqlalchemy.orm import Session, sessionmaker

from services.outbox_service.repository import OutboxRepository
from shared.lease import RedisLease
from shared.worker import PeriodicWorker

logger = logging.getLogger(__name__)


class EventProducer(Protocol):
    def publish(self, topic: str, payload: bytes, key: str) -> None: ...


class OutboxPublisher(PeriodicWorker):
    """Background thread to publish outbox events."""

    name = "outbox-publisher"

    def __init__(
        self,
        session_factory: sessionmaker,
        producer: EventProducer,
        poll_interval: float = 1.0,
        batch_size: int = 500,
        lease: Optional[RedisLease] = None,
    ):
        """Initialize publisher."""
        super().__init__(poll_interval=poll_interval, lease=lease)
        self.session_factory = session_factory
        self.producer = producer
        self.batch_size = batch_size

    def run_once(self) -> int:
        """Publish the head of every pending partition; returns the number dispatched."""
        db = self.session_factory()
        published = 0
        try:
            repo = OutboxRepository(db)
            partitions = repo.pending_partitions()
            db.commit()

            for partition in partitions:
                published += self._drain_partition(db, repo, partition)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        return published

    def _drain_partition(self, db: Session, repo: OutboxRepository, partition: int) -> int:
        """Publish up to batch_size entries of one partition, stopping at the first failure."""
        entries = repo.get_undispatched(self.batch_size, partition=partition)
        db.commit()

        published = 0
        for entry in entries:
            try:
                self.producer.publish(entry.topic, entry.payload, entry.key)
            except Exception as e:
                logger.error(
                    f"Error publishing outbox entry {entry.partition}:{entry.seq}: {e}",
                    extra={"event_type": entry.topic},
                )
                repo.mark_failed(entry.id, str(e))
                db.commit()
                break

            repo.mark_dispatched(entry.id)
            db.commit()
            published += 1
            logger.info(
                f"Published outbox event {entry.topic} for {entry.key}",
                extra={"event_type": entry.topic},
            )
        return published
