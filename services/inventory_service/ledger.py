"""
ledger.py - Stock Ledger

PURPOSE:
    Sole owner of the per-SKU stock counters. Holds stock against a future
    commit or rollback, with a TTL after which the Expiry Reaper releases it.

OPERATIONS:
    reserve(reservation_id, checkout_id, lines, ttl_secs)
        HELD | DUPLICATE | OUT_OF_STOCK(sku) | INVALID
        available -= qty, reserved += qty for every line, or nothing at all
    commit(reservation_id)
        OK | NOT_FOUND | ALREADY_COMMITTED | ALREADY_RELEASED | EXPIRED
        reserved -= qty (stock has physically left)
    rollback(reservation_id, reason)
        OK | NOT_FOUND | ALREADY_COMMITTED | ALREADY_RELEASED
        reserved -= qty, available += qty
    query(sku_id) -> {available, reserved}
    receive_stock(sku_id, qty)
        inbound warehouse movement, creates the row on first receipt
    remove_stock(sku_id, qty)
        shrinkage or damage write-off, never touches reserved units
    set_stock(sku_id, available)
        absolute recount of available, reserved units stay held
    check_availability(sku_id, qty) -> bool
    list_reservations(sku_id, state) -> reservations holding a line of the SKU
    get_alerts(sku_id) -> LOW_STOCK / OUT_OF_STOCK alerts, newest first

LOW STOCK:
    Whenever available drops to or below ``low_stock_threshold`` an alert row is
    written in the same transaction: OUT_OF_STOCK when it reaches zero,
    LOW_STOCK otherwise. An alert fires once per crossing, not on every change
    below the threshold.

CONCURRENCY:
    1. In-process mutex per SKU, acquired in lexical sku order
    2. SELECT ... FOR UPDATE on the stock rows, ordered by sku_id
    3. Compare-and-set on StockRow.version; a stale version retries the whole
       transaction (up to MAX_RETRIES)

    Counter updates, the reservation row, its history row and the outbox row
    commit in one transaction, so a crash can never leave one without the other.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from services.inventory_service.locks import KeyedLocks
from services.inventory_service.models import Reservation, ReservationState, StockAlertType
from services.inventory_service.repository import InventoryRepository, StaleStockRow
from services.outbox_service.repository import OutboxRepository
from shared.clock import utc_now_ms
from shared.errors import ErrorKind, ServiceError
from shared.events import (
    ReservationCommittedEvent,
    ReservationExpiredEvent,
    ReservationHeldEvent,
    ReservationReleasedEvent,
)

logger = logging.getLogger(__name__)


class ReserveOutcome(str, Enum):
    HELD = "HELD"
    DUPLICATE = "DUPLICATE"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    INVALID = "INVALID"


class CommitStatus(str, Enum):
    OK = "OK"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_COMMITTED = "ALREADY_COMMITTED"
    ALREADY_RELEASED = "ALREADY_RELEASED"
    EXPIRED = "EXPIRED"


class RollbackStatus(str, Enum):
    OK = "OK"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_COMMITTED = "ALREADY_COMMITTED"
    ALREADY_RELEASED = "ALREADY_RELEASED"


class ReleaseReason(str, Enum):
    """Caller tag for rollback: explicit release or TTL expiry."""

    RELEASED = "RELEASED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class ReserveResult:
    outcome: ReserveOutcome
    reservation_id: str
    conflicting_sku: Optional[str] = None
    reason: Optional[str] = None
    reservation_state: Optional[ReservationState] = None


@dataclass(frozen=True)
class StockLevel:
    sku_id: str
    available: int
    reserved: int


@dataclass(frozen=True)
class ReservationView:
    reservation_id: str
    checkout_id: str
    lines: List[dict]
    state: ReservationState
    created_at: int
    expires_at: int
    terminal_at: Optional[int]


@dataclass(frozen=True)
class AlertView:
    sku_id: str
    alert_type: StockAlertType
    current_stock: int
    created_at: int


class InvalidLines(ValueError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def normalize_lines(lines: Iterable) -> List[dict]:
    """
    Validate reservation lines and return them as dicts sorted by sku_id.

    Accepts dicts or objects with ``sku_id``/``qty`` attributes.
    """
    normalized = []
    seen = set()
    for line in lines:
        sku_id = line["sku_id"] if isinstance(line, dict) else line.sku_id
        qty = line["qty"] if isinstance(line, dict) else line.qty
        if not isinstance(sku_id, str) or not sku_id:
            raise InvalidLines("invalid_sku")
        if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            raise InvalidLines("non_positive_qty")
        if sku_id in seen:
            raise InvalidLines("duplicate_sku")
        seen.add(sku_id)
        normalized.append({"sku_id": sku_id, "qty": qty})
    if not normalized:
        raise InvalidLines("empty_lines")
    return sorted(normalized, key=lambda line: line["sku_id"])


def _view(reservation: Reservation) -> ReservationView:
    return ReservationView(
        reservation_id=reservation.reservation_id,
        checkout_id=reservation.checkout_id,
        lines=list(reservation.lines),
        state=ReservationState(reservation.state),
        created_at=reservation.created_at,
        expires_at=reservation.expires_at,
        terminal_at=reservation.terminal_at,
    )


class StockLedger:
    """Authoritative stock counters with expiring two-phase reservations."""

    MAX_RETRIES = 3

    def __init__(
        self,
        session_factory: sessionmaker,
        outbox_partitions: int = 8,
        clock: Callable[[], int] = utc_now_ms,
        locks: Optional[KeyedLocks] = None,
        low_stock_threshold: int = 0,
    ):
        self.session_factory = session_factory
        self.outbox_partitions = outbox_partitions
        self.low_stock_threshold = low_stock_threshold
        self.clock = clock
        self.locks = locks or KeyedLocks()

    def _run(self, sku_ids: Sequence[str], work: Callable[[Session], object], description: str):
        """Run ``work`` in one transaction under the SKU guards, retrying stale versions."""
        for attempt in range(self.MAX_RETRIES):
            with self.locks.hold(sku_ids):
                db = self.session_factory()
                try:
                    result = work(db)
                    db.commit()
                    return result
                except (StaleStockRow, IntegrityError) as e:
                    db.rollback()
                    if attempt < self.MAX_RETRIES - 1:
                        logger.warning(f"Concurrent conflict during {description}, retry {attempt + 1}/{self.MAX_RETRIES}: {e}")
                        continue
                    logger.error(f"Failed {description} after {self.MAX_RETRIES} retries")
                    raise ServiceError(
                        ErrorKind.UNAVAILABLE, "Stock is busy, please retry", code="STOCK_CONTENTION"
                    ) from e
                except Exception:
                    db.rollback()
                    raise
                finally:
                    db.close()

    def _outbox(self, db: Session) -> OutboxRepository:
        return OutboxRepository(db, partitions=self.outbox_partitions, clock=self.clock)

    def _check_level(self, repo: InventoryRepository, sku_id: str, before: int, after: int, now: int) -> None:
        if after >= before or after > self.low_stock_threshold:
            return
        if after == 0:
            repo.add_alert(sku_id, StockAlertType.OUT_OF_STOCK, after, now)
        elif before > self.low_stock_threshold:
            repo.add_alert(sku_id, StockAlertType.LOW_STOCK, after, now)

    # ------------------------------------------------------------------ reserve

    def reserve(
        self,
        reservation_id: str,
        checkout_id: str,
        lines: Iterable,
        ttl_secs: int,
        tenant_id: Optional[str] = None,
    ) -> ReserveResult:
        try:
            normalized = normalize_lines(lines)
        except InvalidLines as e:
            return ReserveResult(ReserveOutcome.INVALID, reservation_id, reason=e.reason)
        if isinstance(ttl_secs, bool) or not isinstance(ttl_secs, int) or ttl_secs <= 0:
            return ReserveResult(ReserveOutcome.INVALID, reservation_id, reason="invalid_ttl")
        if not reservation_id or not checkout_id:
            return ReserveResult(ReserveOutcome.INVALID, reservation_id, reason="missing_id")

        def work(db: Session) -> ReserveResult:
            repo = InventoryRepository(db)
            existing = repo.get_reservation(reservation_id)
            if existing is not None:
                if existing.lines == normalized and existing.checkout_id == checkout_id:
                    return ReserveResult(
                        ReserveOutcome.DUPLICATE,
                        reservation_id,
                        reservation_state=ReservationState(existing.state),
                    )
                return ReserveResult(ReserveOutcome.INVALID, reservation_id, reason="reservation_id_reused")

            rows = repo.lock_stock_rows(line["sku_id"] for line in normalized)
            for line in normalized:
                row = rows.get(line["sku_id"])
                if row is None or row.available < line["qty"]:
                    return ReserveResult(ReserveOutcome.OUT_OF_STOCK, reservation_id, conflicting_sku=line["sku_id"])

            now = self.clock()
            for line in normalized:
                row = rows[line["sku_id"]]
                before = row.available
                repo.apply_delta(row, -line["qty"], line["qty"], now)
                self._check_level(repo, line["sku_id"], before, before - line["qty"], now)
            repo.add_reservation(
                reservation_id,
                checkout_id,
                normalized,
                created_at=now,
                expires_at=now + ttl_secs * 1000,
                tenant_id=tenant_id,
            )
            self._outbox(db).append(
                ReservationHeldEvent(
                    reservation_id=reservation_id,
                    checkout_id=checkout_id,
                    lines=normalized,
                    occurred_at=now,
                )
            )
            return ReserveResult(ReserveOutcome.HELD, reservation_id, reservation_state=ReservationState.HELD)

        result = self._run([line["sku_id"] for line in normalized], work, f"reserve {reservation_id}")
        if result.outcome is ReserveOutcome.HELD:
            logger.info(f"Reserved {len(normalized)} line(s) for checkout {checkout_id}", extra={"reservation_id": reservation_id})
        elif result.outcome is ReserveOutcome.OUT_OF_STOCK:
            logger.info(f"Insufficient stock for {result.conflicting_sku}", extra={"reservation_id": reservation_id})
        return result

    # ---------------------------------------------------------- commit/rollback

    def _lines_of(self, reservation_id: str) -> Optional[List[dict]]:
        db = self.session_factory()
        try:
            reservation = InventoryRepository(db).get_reservation(reservation_id)
            return list(reservation.lines) if reservation else None
        finally:
            db.close()

    def _release(self, db: Session, reservation: Reservation, reason: ReleaseReason, now: int) -> None:
        repo = InventoryRepository(db)
        rows = repo.lock_stock_rows(line["sku_id"] for line in reservation.lines)
        for line in reservation.lines:
            row = rows.get(line["sku_id"])
            if row is None:
                raise ServiceError(ErrorKind.INTERNAL, "Stock ledger is inconsistent", code="LEDGER_CORRUPT")
            repo.apply_delta(row, line["qty"], -line["qty"], now)

        event_fields = dict(
            reservation_id=reservation.reservation_id,
            checkout_id=reservation.checkout_id,
            lines=reservation.lines,
            occurred_at=now,
        )
        if reason is ReleaseReason.EXPIRED:
            repo.set_state(reservation, ReservationState.EXPIRED, now)
            self._outbox(db).append(ReservationExpiredEvent(**event_fields))
        else:
            repo.set_state(reservation, ReservationState.RELEASED, now)
            self._outbox(db).append(ReservationReleasedEvent(**event_fields))

    def commit(self, reservation_id: str) -> CommitStatus:
        lines = self._lines_of(reservation_id)
        if lines is None:
            return CommitStatus.NOT_FOUND

        def work(db: Session) -> CommitStatus:
            repo = InventoryRepository(db)
            reservation = repo.get_reservation(reservation_id, for_update=True)
            state = ReservationState(reservation.state)
            if state is ReservationState.COMMITTED:
                return CommitStatus.ALREADY_COMMITTED
            if state is ReservationState.RELEASED:
                return CommitStatus.ALREADY_RELEASED
            if state is ReservationState.EXPIRED:
                return CommitStatus.EXPIRED

            now = self.clock()
            if reservation.expires_at <= now:
                # TTL lapsed before the reaper got to it.
                self._release(db, reservation, ReleaseReason.EXPIRED, now)
                return CommitStatus.EXPIRED

            rows = repo.lock_stock_rows(line["sku_id"] for line in reservation.lines)
            for line in reservation.lines:
                row = rows.get(line["sku_id"])
                if row is None:
                    raise ServiceError(ErrorKind.INTERNAL, "Stock ledger is inconsistent", code="LEDGER_CORRUPT")
                repo.apply_delta(row, 0, -line["qty"], now)
            repo.set_state(reservation, ReservationState.COMMITTED, now)
            self._outbox(db).append(
                ReservationCommittedEvent(
                    reservation_id=reservation.reservation_id,
                    checkout_id=reservation.checkout_id,
                    lines=reservation.lines,
                    occurred_at=now,
                )
            )
            return CommitStatus.OK

        status = self._run([line["sku_id"] for line in lines], work, f"commit {reservation_id}")
        logger.info(f"Commit finished with {status.value}", extra={"reservation_id": reservation_id})
        return status

    def rollback(self, reservation_id: str, reason: ReleaseReason = ReleaseReason.RELEASED) -> RollbackStatus:
        lines = self._lines_of(reservation_id)
        if lines is None:
            return RollbackStatus.NOT_FOUND

        def work(db: Session) -> RollbackStatus:
            reservation = InventoryRepository(db).get_reservation(reservation_id, for_update=True)
            state = ReservationState(reservation.state)
            if state is ReservationState.COMMITTED:
                return RollbackStatus.ALREADY_COMMITTED
            if state.terminal:
                return RollbackStatus.ALREADY_RELEASED
            self._release(db, reservation, reason, self.clock())
            return RollbackStatus.OK

        status = self._run([line["sku_id"] for line in lines], work, f"rollback {reservation_id}")
        logger.info(
            f"Rollback ({reason.value.lower()}) finished with {status.value}",
            extra={"reservation_id": reservation_id},
        )
        return status

    # ------------------------------------------------------------------ queries

    def query(self, sku_id: str) -> StockLevel:
        db = self.session_factory()
        try:
            row = InventoryRepository(db).get_stock(sku_id)
            if row is None:
                return StockLevel(sku_id, 0, 0)
            return StockLevel(sku_id, row.available, row.reserved)
        finally:
            db.close()

    def get_reservation(self, reservation_id: str) -> Optional[ReservationView]:
        db = self.session_factory()
        try:
            reservation = InventoryRepository(db).get_reservation(reservation_id)
            return _view(reservation) if reservation else None
        finally:
            db.close()

    def find_expired(self, limit: int = 100, exclude: Iterable[str] = ()) -> List[str]:
        db = self.session_factory()
        try:
            return InventoryRepository(db).find_expired(self.clock(), limit, exclude)
        finally:
            db.close()

    def receive_stock(self, sku_id: str, qty: int) -> StockLevel:
        if not sku_id or isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            raise ServiceError(ErrorKind.INVALID, "Quantity must be a positive integer")

        def work(db: Session) -> StockLevel:
            row = InventoryRepository(db).receive(sku_id, qty, self.clock())
            return StockLevel(sku_id, row.available, row.reserved)

        return self._run([sku_id], work, f"receive {sku_id}")

    def remove_stock(self, sku_id: str, qty: int) -> StockLevel:
        """Write off available units; held units can only leave through commit or rollback."""
        if not sku_id or isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            raise ServiceError(ErrorKind.INVALID, "Quantity must be a positive integer")

        def work(db: Session) -> StockLevel:
            repo = InventoryRepository(db)
            row = repo.lock_stock_rows([sku_id]).get(sku_id)
            if row is None:
                raise ServiceError(ErrorKind.NOT_FOUND, "Unknown SKU", code="SKU_NOT_FOUND")
            if row.available < qty:
                raise ServiceError(
                    ErrorKind.OUT_OF_STOCK,
                    f"Only {row.available} unit(s) available to remove",
                    code="INSUFFICIENT_STOCK",
                )
            now = self.clock()
            before = row.available
            repo.apply_delta(row, -qty, 0, now)
            self._check_level(repo, sku_id, before, before - qty, now)
            return StockLevel(sku_id, row.available, row.reserved)

        level = self._run([sku_id], work, f"remove {sku_id}")
        logger.info(f"Removed {qty} units of {sku_id}")
        return level

    def set_stock(self, sku_id: str, available: int) -> StockLevel:
        if not sku_id or isinstance(available, bool) or not isinstance(available, int) or available < 0:
            raise ServiceError(ErrorKind.INVALID, "Available stock must be a non-negative integer")

        def work(db: Session) -> StockLevel:
            repo = InventoryRepository(db)
            existing = repo.get_stock(sku_id)
            before = existing.available if existing is not None else None
            now = self.clock()
            row = repo.set_available(sku_id, available, now)
            if before is not None:
                self._check_level(repo, sku_id, before, available, now)
            return StockLevel(sku_id, row.available, row.reserved)

        level = self._run([sku_id], work, f"set {sku_id}")
        logger.info(f"Set available stock of {sku_id} to {available}")
        return level

    def check_availability(self, sku_id: str, qty: int) -> bool:
        if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            raise ServiceError(ErrorKind.INVALID, "Quantity must be a positive integer")
        return self.query(sku_id).available >= qty

    def list_reservations(self, sku_id: str, state: Optional[ReservationState] = None) -> List[ReservationView]:
        db = self.session_factory()
        try:
            return [_view(r) for r in InventoryRepository(db).reservations_for_sku(sku_id, state)]
        finally:
            db.close()

    def get_alerts(self, sku_id: str, limit: int = 100) -> List[AlertView]:
        db = self.session_factory()
        try:
            return [
                AlertView(a.sku_id, StockAlertType(a.alert_type), a.current_stock, a.created_at)
                for a in InventoryRepository(db).alerts(sku_id, limit)
            ]
        finally:
            db.close()
