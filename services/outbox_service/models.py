from sqlalchemy import BigInteger, Column, Index, Integer, LargeBinary, String, Text, UniqueConstraint

from shared.database import Base


class OutboxEntry(Base):
    """Outbox pattern for reliable Kafka publishing."""

    __tablename__ = "outbox"

    id = Column(Integer, primary_key=True, autoincrement=True)
    partition = Column(Integer, nullable=False)
    seq = Column(BigInteger, nullable=False)  # dense per partition
    topic = Column(String(100), nullable=False)
    key = Column(String(64), nullable=False)  # reservation_id or checkout_id
    payload = Column(LargeBinary, nullable=False)  # JSON bytes
    created_at = Column(BigInteger, nullable=False)
    dispatched_at = Column(BigInteger, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("partition", "seq", name="uq_outbox_partition_seq"),
        Index("ix_outbox_undispatched", "dispatched_at", "partition", "seq"),
    )


class OutboxCursor(Base):
    """Next sequence number to hand out per partition."""

    __tablename__ = "outbox_cursors"

    partition = Column(Integer, primary_key=True, autoincrement=False)
    next_seq = Column(BigInteger, nullable=False, default=1)
