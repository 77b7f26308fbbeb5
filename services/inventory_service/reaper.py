import logging
from typing import Optional

from services.inventory_service.ledger import ReleaseReason, RollbackStatus, StockLedger
from shared.lease import RedisLease
from shared.worker import PeriodicWorker

logger = logging.getLogger(__name__)


class ExpiryReaper(PeriodicWorker):
    """
    Releases HELD reservations whose TTL has lapsed.

    Each tick scans expired reservations in ascending ``expires_at`` order and
    rolls each one back with the expiry caller tag, which emits
    ``reservation.expired``. A failure on one reservation is logged and the
    tick pages past it to later expired reservations; the failed one is picked
    up again next tick.
    """

    name = "expiry-reaper"

    def __init__(
        self,
        ledger: StockLedger,
        poll_interval: float = 1.0,
        batch_size: int = 100,
        lease: Optional[RedisLease] = None,
    ):
        super().__init__(poll_interval=poll_interval, lease=lease)
        self.ledger = ledger
        self.batch_size = batch_size

    def run_once(self) -> int:
        """Expire up to one batch; returns how many reservations this tick released."""
        released = 0
        seen = set()
        while released < self.batch_size:
            batch = self.ledger.find_expired(self.batch_size, exclude=seen)
            if not batch:
                break
            for reservation_id in batch:
                seen.add(reservation_id)
                try:
                    status = self.ledger.rollback(reservation_id, reason=ReleaseReason.EXPIRED)
                except Exception:
                    logger.exception("Failed to expire reservation", extra={"reservation_id": reservation_id})
                    continue
                if status is RollbackStatus.OK:
                    released += 1
                else:
                    logger.info(f"Skipped expiry: {status.value}", extra={"reservation_id": reservation_id})
        if released:
            logger.info(f"Expired {released} reservation(s)")
        return released
