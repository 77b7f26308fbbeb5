import logging
from typing import Callable, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from services.checkout_service.models import CANCELLABLE_STATES, Checkout, CheckoutState, can_transition
from shared.clock import utc_now_ms

logger = logging.getLogger(__name__)


class InvalidTransition(Exception):
    def __init__(self, current: CheckoutState, target: CheckoutState):
        super().__init__(f"illegal checkout transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


class CheckoutRepository:
    """Repository for checkout saga records."""

    def __init__(self, db: Session, clock: Callable[[], int] = utc_now_ms):
        """Initialize with database session."""
        self.db = db
        self.clock = clock

    def create_checkout(
        self,
        checkout_id: str,
        user_id: str,
        cart_snapshot: List[dict],
        total_amount: float,
        payment_method: str,
        ttl_secs: int,
        reservation_id: str,
        shipping_address: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Checkout:
        """Create a checkout in INIT. Raises IntegrityError if the user already has a live one."""
        now = self.clock()
        checkout = Checkout(
            checkout_id=checkout_id,
            user_id=user_id,
            active_user_id=user_id,
            tenant_id=tenant_id,
            cart_snapshot=cart_snapshot,
            total_amount=total_amount,
            payment_method=payment_method,
            shipping_address=shipping_address,
            ttl_secs=ttl_secs,
            state=CheckoutState.INIT.value,
            reservation_id=reservation_id,
            cancel_requested=False,
            created_at=now,
            updated_at=now,
        )
        self.db.add(checkout)
        self.db.flush()
        logger.info(f"Created checkout for user {user_id}", extra={"checkout_id": checkout_id})
        return checkout

    def get_checkout(self, checkout_id: str) -> Optional[Checkout]:
        """Get checkout by checkout_id."""
        return self.db.get(Checkout, checkout_id)

    def get_unfinished_ids(self, updated_before: Optional[int] = None) -> List[str]:
        """Ids of live checkouts, optionally only those untouched since ``updated_before``."""
        query = self.db.query(Checkout.checkout_id).filter(
            Checkout.state.notin_([CheckoutState.DONE.value, CheckoutState.FAILED.value])
        )
        if updated_before is not None:
            query = query.filter(Checkout.updated_at < updated_before)
        rows = query.order_by(Checkout.created_at).all()
        return [row.checkout_id for row in rows]

    def record_intent(self, checkout_id: str, step: str) -> None:
        """Persist which peer call is about to be made."""
        self.db.query(Checkout).filter(Checkout.checkout_id == checkout_id).update(
            {Checkout.pending_step: step, Checkout.updated_at: self.clock()},
            synchronize_session=False,
        )

    def transition(
        self,
        checkout_id: str,
        current: CheckoutState,
        target: CheckoutState,
        require_not_cancelled: bool = False,
        **fields,
    ) -> bool:
        """
        Move a checkout from ``current`` to ``target`` if it is still in ``current``.

        Returns False when another writer moved it first (or cancelled it, with
        ``require_not_cancelled``). Extra keyword arguments are column updates.
        """
        if not can_transition(current, target):
            raise InvalidTransition(current, target)

        conditions = [Checkout.checkout_id == checkout_id, Checkout.state == current.value]
        if require_not_cancelled:
            conditions.append(Checkout.cancel_requested.is_(False))

        values = {getattr(Checkout, name): value for name, value in fields.items()}
        values[Checkout.state] = target.value
        values[Checkout.updated_at] = self.clock()
        values[Checkout.pending_step] = None
        if target.terminal:
            values[Checkout.active_user_id] = None

        updated = self.db.query(Checkout).filter(and_(*conditions)).update(values, synchronize_session=False)
        if updated:
            logger.info(
                f"Checkout {current.value} -> {target.value}",
                extra={"checkout_id": checkout_id},
            )
        return bool(updated)

    def update_fields(self, checkout_id: str, **fields) -> None:
        values = {getattr(Checkout, name): value for name, value in fields.items()}
        values[Checkout.updated_at] = self.clock()
        self.db.query(Checkout).filter(Checkout.checkout_id == checkout_id).update(values, synchronize_session=False)

    def request_cancel(self, checkout_id: str) -> bool:
        """Flag a checkout for cancellation if it is still INIT or STOCK_HELD."""
        updated = (
            self.db.query(Checkout)
            .filter(
                and_(
                    Checkout.checkout_id == checkout_id,
                    Checkout.state.in_([state.value for state in CANCELLABLE_STATES]),
                )
            )
            .update(
                {Checkout.cancel_requested: True, Checkout.updated_at: self.clock()},
                synchronize_session=False,
            )
        )
        return bool(updated)

    def purge_finished(self, older_than: int) -> int:
        """Delete DONE/FAILED checkouts last updated before ``older_than`` (epoch ms)."""
        deleted = (
            self.db.query(Checkout)
            .filter(
                and_(
                    Checkout.state.in_([CheckoutState.DONE.value, CheckoutState.FAILED.value]),
                    Checkout.updated_at < older_than,
                )
            )
            .delete(synchronize_session=False)
        )
        if deleted:
            logger.info(f"Purged {deleted} finished checkout(s)")
        return deleted
