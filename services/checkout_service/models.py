from enum import Enum

from sqlalchemy import JSON, BigInteger, Boolean, Column, Float, Integer, String

from shared.database import Base


class CheckoutState(str, Enum):
    INIT = "INIT"
    STOCK_HELD = "STOCK_HELD"
    PAID = "PAID"
    ORDERED = "ORDERED"
    DONE = "DONE"
    COMPENSATING = "COMPENSATING"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (CheckoutState.DONE, CheckoutState.FAILED)


FORWARD_ORDER = [
    CheckoutState.INIT,
    CheckoutState.STOCK_HELD,
    CheckoutState.PAID,
    CheckoutState.ORDERED,
    CheckoutState.DONE,
]

CANCELLABLE_STATES = (CheckoutState.INIT, CheckoutState.STOCK_HELD)


def can_transition(current: CheckoutState, target: CheckoutState) -> bool:
    """Forward one step, INIT -> FAILED, any live state -> COMPENSATING, COMPENSATING -> FAILED."""
    if current.terminal:
        return False
    if current is CheckoutState.COMPENSATING:
        return target is CheckoutState.FAILED
    if target is CheckoutState.COMPENSATING:
        return True
    if current is CheckoutState.INIT and target is CheckoutState.FAILED:
        return True
    if target in FORWARD_ORDER:
        return FORWARD_ORDER.index(target) == FORWARD_ORDER.index(current) + 1
    return False


class Checkout(Base):
    """Saga record for one checkout attempt."""

    __tablename__ = "checkouts"

    checkout_id = Column(String(64), primary_key=True)
    user_id = Column(String(255), nullable=False, index=True)
    # Set to user_id while the checkout is live; the unique index admits one live checkout per user.
    active_user_id = Column(String(255), nullable=True, unique=True)
    tenant_id = Column(String(64), nullable=True)
    cart_snapshot = Column(JSON, nullable=False)  # [{"sku_id", "qty", "unit_price"}]
    total_amount = Column(Float, nullable=False)
    payment_method = Column(String(100), nullable=False)
    shipping_address = Column(String(1000), nullable=True)
    ttl_secs = Column(Integer, nullable=False)
    state = Column(String(20), nullable=False, default=CheckoutState.INIT.value)
    reservation_id = Column(String(64), nullable=False, unique=True)
    payment_id = Column(String(255), nullable=True)
    order_id = Column(String(255), nullable=True)
    last_error = Column(String(64), nullable=True)  # stable error code, never raw text
    failure_reason = Column(String(64), nullable=True)  # code that sent the saga to COMPENSATING
    cancel_requested = Column(Boolean, nullable=False, default=False)
    pending_step = Column(String(32), nullable=True)  # intent recorded before a peer call
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)
