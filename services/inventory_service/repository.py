import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from services.inventory_service.models import (
    Reservation,
    ReservationHistory,
    ReservationLine,
    ReservationState,
    StockAlert,
    StockAlertType,
    StockRow,
)

logger = logging.getLogger(__name__)


class StaleStockRow(Exception):
    """A compare-and-set on StockRow.version matched no row."""

    def __init__(self, sku_id: str):
        super().__init__(f"stale version for sku {sku_id}")
        self.sku_id = sku_id


class InventoryRepository:
    """Repository for stock counters and reservations with optimistic locking."""

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def get_stock(self, sku_id: str) -> Optional[StockRow]:
        return self.db.get(StockRow, sku_id)

    def lock_stock_rows(self, sku_ids: Iterable[str]) -> Dict[str, StockRow]:
        """Row-lock the given SKUs in lexical order; missing SKUs are absent from the result."""
        rows = (
            self.db.query(StockRow)
            .filter(StockRow.sku_id.in_(sorted(set(sku_ids))))
            .order_by(StockRow.sku_id)
            .with_for_update()
            .all()
        )
        return {row.sku_id: row for row in rows}

    def apply_delta(self, row: StockRow, available_delta: int, reserved_delta: int, now: int) -> None:
        """Compare-and-set the counters of one row, bumping its version."""
        current_version = row.version
        updated = (
            self.db.query(StockRow)
            .filter(and_(StockRow.sku_id == row.sku_id, StockRow.version == current_version))
            .update(
                {
                    StockRow.available: StockRow.available + available_delta,
                    StockRow.reserved: StockRow.reserved + reserved_delta,
                    StockRow.version: current_version + 1,
                    StockRow.updated_at: now,
                },
                synchronize_session="fetch",
            )
        )
        if updated == 0:
            raise StaleStockRow(row.sku_id)

    def receive(self, sku_id: str, qty: int, now: int) -> StockRow:
        """Add physical stock, creating the row on first receipt."""
        rows = self.lock_stock_rows([sku_id])
        row = rows.get(sku_id)
        if row is None:
            row = StockRow(sku_id=sku_id, available=qty, reserved=0, version=1, updated_at=now)
            self.db.add(row)
            self.db.flush()
            logger.info(f"Created stock row {sku_id} with {qty} units")
            return row
        self.apply_delta(row, qty, 0, now)
        logger.info(f"Received {qty} units of {sku_id}")
        return row

    def set_available(self, sku_id: str, available: int, now: int) -> StockRow:
        """Overwrite the available count after a physical recount; reserved is untouched."""
        rows = self.lock_stock_rows([sku_id])
        row = rows.get(sku_id)
        if row is None:
            row = StockRow(sku_id=sku_id, available=available, reserved=0, version=1, updated_at=now)
            self.db.add(row)
            self.db.flush()
            return row
        self.apply_delta(row, available - row.available, 0, now)
        return row

    def add_alert(self, sku_id: str, alert_type: StockAlertType, current_stock: int, now: int) -> StockAlert:
        alert = StockAlert(sku_id=sku_id, alert_type=alert_type.value, current_stock=current_stock, created_at=now)
        self.db.add(alert)
        self.db.flush()
        logger.warning(f"{alert_type.value} alert for {sku_id}: {current_stock} available")
        return alert

    def alerts(self, sku_id: str, limit: int = 100) -> List[StockAlert]:
        """Most recent alerts first."""
        return (
            self.db.query(StockAlert)
            .filter(StockAlert.sku_id == sku_id)
            .order_by(StockAlert.id.desc())
            .limit(limit)
            .all()
        )

    def get_reservation(self, reservation_id: str, for_update: bool = False) -> Optional[Reservation]:
        query = self.db.query(Reservation).filter(Reservation.reservation_id == reservation_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def add_reservation(
        self,
        reservation_id: str,
        checkout_id: str,
        lines: List[dict],
        created_at: int,
        expires_at: int,
        tenant_id: Optional[str] = None,
    ) -> Reservation:
        reservation = Reservation(
            reservation_id=reservation_id,
            checkout_id=checkout_id,
            tenant_id=tenant_id,
            lines=lines,
            state=ReservationState.HELD.value,
            created_at=created_at,
            expires_at=expires_at,
        )
        self.db.add(reservation)
        self.db.add(
            ReservationHistory(
                reservation_id=reservation_id,
                from_state=None,
                to_state=ReservationState.HELD.value,
                at=created_at,
            )
        )
        for line in lines:
            self.db.add(ReservationLine(reservation_id=reservation_id, sku_id=line["sku_id"], qty=line["qty"]))
        self.db.flush()
        return reservation

    def set_state(self, reservation: Reservation, new_state: ReservationState, now: int) -> None:
        """Move a HELD reservation to a terminal state and record the transition."""
        previous = reservation.state
        reservation.state = new_state.value
        reservation.terminal_at = now
        self.db.add(
            ReservationHistory(
                reservation_id=reservation.reservation_id,
                from_state=previous,
                to_state=new_state.value,
                at=now,
            )
        )
        self.db.flush()

    def history(self, reservation_id: str) -> List[ReservationHistory]:
        return (
            self.db.query(ReservationHistory)
            .filter(ReservationHistory.reservation_id == reservation_id)
            .order_by(ReservationHistory.id)
            .all()
        )

    def reservations_for_sku(self, sku_id: str, state: Optional[ReservationState] = None) -> List[Reservation]:
        """Reservations holding a line of ``sku_id``, oldest first."""
        query = (
            self.db.query(Reservation)
            .join(ReservationLine, ReservationLine.reservation_id == Reservation.reservation_id)
            .filter(ReservationLine.sku_id == sku_id)
        )
        if state is not None:
            query = query.filter(Reservation.state == state.value)
        return query.order_by(Reservation.created_at, Reservation.reservation_id).all()

    def find_expired(self, now: int, limit: int = 100, exclude: Iterable[str] = ()) -> List[str]:
        """Ids of HELD reservations whose TTL has lapsed, oldest expiry first."""
        query = self.db.query(Reservation.reservation_id).filter(
            and_(
                Reservation.state == ReservationState.HELD.value,
                Reservation.expires_at <= now,
            )
        )
        skipped = list(exclude)
        if skipped:
            query = query.filter(Reservation.reservation_id.notin_(skipped))
        rows = (
            query.order_by(Reservation.expires_at, Reservation.reservation_id)
            .limit(limit)
            .all()
        )
        return [row.reservation_id for row in rows]
