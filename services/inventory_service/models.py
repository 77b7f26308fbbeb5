from enum import Enum

from sqlalchemy import JSON, BigInteger, CheckConstraint, Column, Index, Integer, String

from shared.database import Base


class ReservationState(str, Enum):
    HELD = "HELD"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"
    EXPIRED = "EXPIRED"

    @property
    def terminal(self) -> bool:
        return self is not ReservationState.HELD


class StockRow(Base):
    """Per-SKU counters with optimistic locking on ``version``."""

    __tablename__ = "stock_rows"

    sku_id = Column(String(255), primary_key=True)
    available = Column(Integer, nullable=False, default=0)
    reserved = Column(Integer, nullable=False, default=0)
    version = Column(BigInteger, nullable=False, default=0)  # Optimistic lock
    updated_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        CheckConstraint("available >= 0", name="ck_stock_available_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_stock_reserved_non_negative"),
    )


class Reservation(Base):
    """A held batch of SKU lines; the reservation_id is the client's idempotency key."""

    __tablename__ = "reservations"

    reservation_id = Column(String(64), primary_key=True)
    checkout_id = Column(String(64), nullable=False, index=True)
    tenant_id = Column(String(64), nullable=True)
    lines = Column(JSON, nullable=False)  # [{"sku_id": ..., "qty": ...}] sorted by sku_id
    state = Column(String(20), nullable=False, default=ReservationState.HELD.value)
    created_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False)
    terminal_at = Column(BigInteger, nullable=True)

    __table_args__ = (
        CheckConstraint("expires_at > created_at", name="ck_reservation_expiry_after_creation"),
        Index("ix_reservations_state_expires_at", "state", "expires_at"),
    )


class ReservationHistory(Base):
    """Append-only audit trail of reservation state transitions."""

    __tablename__ = "reservation_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reservation_id = Column(String(64), nullable=False, index=True)
    from_state = Column(String(20), nullable=True)  # NULL on creation
    to_state = Column(String(20), nullable=False)
    at = Column(BigInteger, nullable=False)


class ReservationLine(Base):
    """One SKU line of a reservation, indexed for per-SKU lookups."""

    __tablename__ = "reservation_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reservation_id = Column(String(64), nullable=False, index=True)
    sku_id = Column(String(255), nullable=False)
    qty = Column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint("qty > 0", name="ck_reservation_line_qty_positive"),
        Index("ix_reservation_lines_sku_id", "sku_id"),
    )


class StockAlertType(str, Enum):
    LOW_STOCK = "LOW_STOCK"
    OUT_OF_STOCK = "OUT_OF_STOCK"


class StockAlert(Base):
    """Raised when a SKU's available count drops to or below the low-stock threshold."""

    __tablename__ = "stock_alerts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sku_id = Column(String(255), nullable=False, index=True)
    alert_type = Column(String(20), nullable=False)
    current_stock = Column(Integer, nullable=False)
    created_at = Column(BigInteger, nullable=False)
