"""
saga_handler.py - Checkout Saga Orchestration

PURPOSE:
    Drives one checkout from cart to order as a sequence of local steps, each
    with a compensating action, so a failure part way through never leaves a
    customer charged without stock or stock held without an order.

FLOW (orchestrated, stock first):
    ┌──────────────────────────────────────────────────────────────────┐
    │  INIT        reserve stock on the Stock Ledger                   │
    │              ok -> STOCK_HELD    out of stock / invalid -> FAILED │
    └──────────────────────────────────────────────────────────────────┘
                            ↓
    ┌──────────────────────────────────────────────────────────────────┐
    │  STOCK_HELD  charge the payment peer                             │
    │              ok -> PAID          declined / exhausted -> COMPENSATING │
    └──────────────────────────────────────────────────────────────────┘
                            ↓
    ┌──────────────────────────────────────────────────────────────────┐
    │  PAID        create the order                                    │
    │              ok -> ORDERED       rejected / exhausted -> COMPENSATING │
    └──────────────────────────────────────────────────────────────────┘
                            ↓
    ┌──────────────────────────────────────────────────────────────────┐
    │  ORDERED     commit the reservation, clear the cart              │
    │              ok -> DONE (order.created)                          │
    │              reservation lost -> COMPENSATING                    │
    └──────────────────────────────────────────────────────────────────┘

    COMPENSATING refunds the payment (if charged), cancels the order (if
    created) and rolls the reservation back, then moves to FAILED and writes
    order.failed. The cart is never cleared on failure.

IDEMPOTENCY:
    Every peer call carries the step key "{checkout_id}:{step}". The step about
    to run is written to ``pending_step`` before the call; after a crash
    ``resume_pending`` replays each unfinished checkout from its recorded state
    and the step keys make the replayed calls harmless.

RETRIES:
    UNAVAILABLE and TIMEOUT are retried with bounded exponential backoff
    (base 100 ms, factor 2, cap 30 s, 6 attempts) inside a per-step budget.
    Compensations use the same backoff without a budget.

BACKPRESSURE:
    One live checkout per user (CHECKOUT_IN_PROGRESS). The global token
    bucket (OVERLOADED) is checked by POST /checkouts before a checkout is
    created.
"""

import logging
import math
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from services.checkout_service.models import CANCELLABLE_STATES, Checkout, CheckoutState
from services.checkout_service.peers import CartClient, OrderClient, PaymentClient
from services.checkout_service.repository import CheckoutRepository
from services.inventory_service.ledger import (
    CommitStatus,
    InvalidLines,
    ReserveOutcome,
    RollbackStatus,
    StockLedger,
    normalize_lines,
)
from services.inventory_service.models import ReservationState
from services.outbox_service.repository import OutboxRepository
from shared.clock import utc_now_ms
from shared.errors import ErrorKind, PeerError, ServiceError
from shared.events import BaseEvent, OrderCreatedEvent, OrderFailedEvent
from shared.retry import Backoff, DeadlineExceeded, call_with_retry
from shared.worker import PeriodicWorker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepPolicy:
    rpc_timeout: float
    budget: float


@dataclass(frozen=True)
class SagaPolicy:
    """Timeouts, budgets and backoff for saga steps."""

    payment: StepPolicy = field(default_factory=lambda: StepPolicy(rpc_timeout=10.0, budget=30.0))
    order: StepPolicy = field(default_factory=lambda: StepPolicy(rpc_timeout=5.0, budget=15.0))
    cart: StepPolicy = field(default_factory=lambda: StepPolicy(rpc_timeout=3.0, budget=10.0))
    stock_budget: float = 10.0
    backoff: Backoff = field(default_factory=Backoff)
    payment_latency_p99: float = 10.0
    safety_margin: float = 30.0

    @property
    def default_ttl_secs(self) -> int:
        # The hold must outlive a slow payment.
        return int(math.ceil(2 * self.payment_latency_p99 + self.safety_margin))

    @property
    def stall_timeout_secs(self) -> float:
        """Longest a healthy saga can go without touching its checkout row."""
        return max(self.payment.budget, self.order.budget, self.cart.budget, self.stock_budget) + self.safety_margin


def step_key(checkout_id: str, step: str) -> str:
    return f"{checkout_id}:{step}"


def _is_transient(error: BaseException) -> bool:
    if isinstance(error, (PeerError, ServiceError)):
        return error.kind.retryable
    return isinstance(error, OperationalError)


def _failure_code(error: BaseException, unavailable_code: str) -> str:
    if isinstance(error, PeerError) and not error.retryable:
        return error.code
    return unavailable_code


def normalize_cart(cart_snapshot: List[dict]) -> List[dict]:
    """Validate cart lines and return ``[{sku_id, qty, unit_price}]`` sorted by sku_id."""
    prices = {}
    for line in cart_snapshot:
        price = line.get("unit_price", 0.0)
        if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
            raise InvalidLines("invalid_price")
        prices[line.get("sku_id")] = float(price)
    return [dict(line, unit_price=prices[line["sku_id"]]) for line in normalize_lines(cart_snapshot)]


class CheckoutCoordinator:
    """Runs checkout sagas on a thread pool and answers checkout queries."""

    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: StockLedger,
        payment: PaymentClient,
        orders: OrderClient,
        cart: CartClient,
        policy: Optional[SagaPolicy] = None,
        executor: Optional[Executor] = None,
        outbox_partitions: int = 8,
        clock: Callable[[], int] = utc_now_ms,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.payment = payment
        self.orders = orders
        self.cart = cart
        self.policy = policy or SagaPolicy()
        self.executor = executor or ThreadPoolExecutor(max_workers=8, thread_name_prefix="checkout-saga")
        self.outbox_partitions = outbox_partitions
        self.clock = clock
        self.sleep = sleep
        self.monotonic = monotonic
        self._active = set()
        self._active_lock = threading.Lock()
        self._steps = {
            CheckoutState.INIT: self._reserve_stock,
            CheckoutState.STOCK_HELD: self._charge_payment,
            CheckoutState.PAID: self._create_order,
            CheckoutState.ORDERED: self._complete,
            CheckoutState.COMPENSATING: self._compensate,
        }

    # ------------------------------------------------------------ public API

    def start_checkout(
        self,
        user_id: str,
        payment_method: str,
        cart_snapshot: Optional[List[dict]] = None,
        ttl_secs: Optional[int] = None,
        shipping_address: Optional[str] = None,
        tenant_id: Optional[str] = None,
        checkout_id: Optional[str] = None,
    ) -> Checkout:
        """Create a checkout in INIT and schedule its saga."""
        if not user_id or not payment_method:
            raise ServiceError(ErrorKind.INVALID, "user_id and payment_method are required")
        if ttl_secs is None:
            ttl_secs = self.policy.default_ttl_secs
        if isinstance(ttl_secs, bool) or not isinstance(ttl_secs, int) or ttl_secs <= 0:
            raise ServiceError(ErrorKind.INVALID, "ttl_secs must be a positive integer")
        if checkout_id is not None:
            existing = self._load(checkout_id)
            if existing is not None:
                # A retried request whose first attempt already created the checkout.
                if not CheckoutState(existing.state).terminal:
                    self.schedule(checkout_id)
                return existing

        if cart_snapshot is None:
            cart_snapshot = self._fetch_cart(user_id)
        try:
            lines = normalize_cart(cart_snapshot)
        except InvalidLines as e:
            raise ServiceError(ErrorKind.INVALID, f"Cart is not valid ({e.reason})", code="INVALID_CART") from e
        total = round(sum(line["qty"] * line["unit_price"] for line in lines), 2)

        checkout_id = checkout_id or str(uuid4())
        db = self.session_factory()
        try:
            checkout = CheckoutRepository(db, clock=self.clock).create_checkout(
                checkout_id=checkout_id,
                user_id=user_id,
                cart_snapshot=lines,
                total_amount=total,
                payment_method=payment_method,
                ttl_secs=ttl_secs,
                reservation_id=str(uuid4()),
                shipping_address=shipping_address,
                tenant_id=tenant_id,
            )
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise ServiceError(
                ErrorKind.CONFLICT, "A checkout is already in progress for this user", code="CHECKOUT_IN_PROGRESS"
            ) from e
        finally:
            db.close()

        self.schedule(checkout_id)
        return checkout

    def get_checkout(self, checkout_id: str) -> Checkout:
        checkout = self._load(checkout_id)
        if checkout is None:
            raise ServiceError(ErrorKind.NOT_FOUND, "Checkout not found")
        return checkout

    def cancel_checkout(self, checkout_id: str) -> Checkout:
        """Flag a checkout for cancellation; only INIT and STOCK_HELD accept it."""
        db = self.session_factory()
        try:
            repo = CheckoutRepository(db, clock=self.clock)
            checkout = repo.get_checkout(checkout_id)
            if checkout is None:
                raise ServiceError(ErrorKind.NOT_FOUND, "Checkout not found")
            if CheckoutState(checkout.state) not in CANCELLABLE_STATES or not repo.request_cancel(checkout_id):
                raise ServiceError(ErrorKind.CONFLICT, "Checkout can no longer be cancelled", code="NOT_CANCELLABLE")
            db.commit()
        finally:
            db.close()

        logger.info("Checkout cancellation requested", extra={"checkout_id": checkout_id})
        self.schedule(checkout_id)
        return self.get_checkout(checkout_id)

    def resume_pending(self) -> int:
        """Re-schedule every unfinished checkout; returns how many were scheduled."""
        db = self.session_factory()
        try:
            checkout_ids = CheckoutRepository(db, clock=self.clock).get_unfinished_ids()
        finally:
            db.close()
        for checkout_id in checkout_ids:
            self.schedule(checkout_id)
        if checkout_ids:
            logger.info(f"Resumed {len(checkout_ids)} unfinished checkout(s)")
        return len(checkout_ids)

    def resume_stalled(self, stalled_ms: int) -> int:
        """Re-schedule live checkouts whose row has not moved for ``stalled_ms``."""
        db = self.session_factory()
        try:
            checkout_ids = CheckoutRepository(db, clock=self.clock).get_unfinished_ids(
                updated_before=self.clock() - stalled_ms
            )
        finally:
            db.close()
        for checkout_id in checkout_ids:
            logger.warning("Resuming stalled checkout", extra={"checkout_id": checkout_id})
            self.schedule(checkout_id)
        return len(checkout_ids)

    def purge_finished(self, retention_ms: int) -> int:
        db = self.session_factory()
        try:
            deleted = CheckoutRepository(db, clock=self.clock).purge_finished(self.clock() - retention_ms)
            db.commit()
            return deleted
        finally:
            db.close()

    def schedule(self, checkout_id: str) -> None:
        self.executor.submit(self._drive, checkout_id)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)

    # ------------------------------------------------------------ saga loop

    def _drive(self, checkout_id: str) -> None:
        with self._active_lock:
            if checkout_id in self._active:
                return
            self._active.add(checkout_id)
        try:
            self.run(checkout_id)
        except Exception:
            logger.exception("Checkout saga step raised", extra={"checkout_id": checkout_id})
            self._recover(checkout_id)
        finally:
            with self._active_lock:
                self._active.discard(checkout_id)

    def _recover(self, checkout_id: str) -> None:
        """Compensate a checkout whose forward step raised something unclassified."""
        try:
            checkout = self._load(checkout_id)
            if checkout is None:
                return
            state = CheckoutState(checkout.state)
            if state.terminal or state is CheckoutState.COMPENSATING:
                # A failing compensation is retried by the sweeper.
                return
            self._start_compensation(checkout, "INTERNAL")
            self.run(checkout_id)
        except Exception:
            logger.exception("Checkout left for the sweeper", extra={"checkout_id": checkout_id})

    def run(self, checkout_id: str) -> Optional[CheckoutState]:
        """Run the saga until the checkout reaches DONE or FAILED."""
        while True:
            checkout = self._load(checkout_id)
            if checkout is None:
                logger.error(f"Checkout {checkout_id} not found")
                return None
            state = CheckoutState(checkout.state)
            if state.terminal:
                return state
            self._steps[state](checkout)

    def _load(self, checkout_id: str) -> Optional[Checkout]:
        db = self.session_factory()
        try:
            return CheckoutRepository(db, clock=self.clock).get_checkout(checkout_id)
        finally:
            db.close()

    def _record_intent(self, checkout: Checkout, step: str) -> None:
        db = self.session_factory()
        try:
            CheckoutRepository(db, clock=self.clock).record_intent(checkout.checkout_id, step)
            db.commit()
        finally:
            db.close()

    def _update(self, checkout: Checkout, **fields) -> None:
        db = self.session_factory()
        try:
            CheckoutRepository(db, clock=self.clock).update_fields(checkout.checkout_id, **fields)
            db.commit()
        finally:
            db.close()

    def _transition(
        self,
        checkout: Checkout,
        target: CheckoutState,
        event: Optional[BaseEvent] = None,
        require_not_cancelled: bool = False,
        **fields,
    ) -> bool:
        """State change plus its outbox event in one transaction."""
        db = self.session_factory()
        try:
            moved = CheckoutRepository(db, clock=self.clock).transition(
                checkout.checkout_id,
                CheckoutState(checkout.state),
                target,
                require_not_cancelled=require_not_cancelled,
                **fields,
            )
            if moved and event is not None:
                OutboxRepository(db, partitions=self.outbox_partitions, clock=self.clock).append(event)
            db.commit()
            return moved
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _start_compensation(self, checkout: Checkout, code: str) -> None:
        logger.warning(f"Checkout compensating: {code}", extra={"checkout_id": checkout.checkout_id})
        self._transition(checkout, CheckoutState.COMPENSATING, last_error=code, failure_reason=code)

    def _fail_directly(self, checkout: Checkout, code: str) -> None:
        """INIT -> FAILED when nothing was held."""
        event = OrderFailedEvent(
            checkout_id=checkout.checkout_id,
            user_id=checkout.user_id,
            reason=code,
            reservation_id=checkout.reservation_id,
            occurred_at=self.clock(),
        )
        if self._transition(checkout, CheckoutState.FAILED, event=event, last_error=code, failure_reason=code):
            logger.info(f"Checkout failed: {code}", extra={"checkout_id": checkout.checkout_id})

    def _call(self, fn: Callable, description: str, budget: Optional[float]):
        deadline = self.monotonic() + budget if budget is not None else None
        return call_with_retry(
            fn,
            backoff=self.policy.backoff,
            is_retryable=_is_transient,
            description=description,
            deadline=deadline,
            sleep=self.sleep,
            clock=self.monotonic,
        )

    # ---------------------------------------------------------------- steps

    def _reserve_stock(self, checkout: Checkout) -> None:
        if checkout.cancel_requested:
            # Rolling back an id that was never held is a no-op.
            self._start_compensation(checkout, "CANCELLED")
            return

        self._record_intent(checkout, "reserve")
        lines = [{"sku_id": line["sku_id"], "qty": line["qty"]} for line in checkout.cart_snapshot]
        try:
            result = self._call(
                lambda: self.ledger.reserve(
                    checkout.reservation_id,
                    checkout.checkout_id,
                    lines,
                    checkout.ttl_secs,
                    tenant_id=checkout.tenant_id,
                ),
                f"reserve for checkout {checkout.checkout_id}",
                self.policy.stock_budget,
            )
        except (ServiceError, OperationalError, DeadlineExceeded):
            # Outcome unknown: compensation rolls back whatever may have been held.
            self._start_compensation(checkout, "STOCK_UNAVAILABLE")
            return

        if result.outcome is ReserveOutcome.OUT_OF_STOCK:
            self._fail_directly(checkout, "OUT_OF_STOCK")
        elif result.outcome is ReserveOutcome.INVALID:
            self._fail_directly(checkout, "INVALID_CART")
        elif result.outcome is ReserveOutcome.DUPLICATE and result.reservation_state is not ReservationState.HELD:
            self._fail_directly(checkout, "RESERVATION_LOST")
        else:
            self._transition(checkout, CheckoutState.STOCK_HELD, require_not_cancelled=True)

    def _charge_payment(self, checkout: Checkout) -> None:
        if checkout.cancel_requested:
            self._start_compensation(checkout, "CANCELLED")
            return

        self._record_intent(checkout, "charge")
        try:
            payment_id = self._call(
                lambda: self.payment.charge(
                    checkout.user_id,
                    checkout.total_amount,
                    checkout.payment_method,
                    step_key(checkout.checkout_id, "charge"),
                ),
                f"charge for checkout {checkout.checkout_id}",
                self.policy.payment.budget,
            )
        except (PeerError, DeadlineExceeded) as e:
            code = _failure_code(e, "PAYMENT_UNAVAILABLE")
            if code == "PAYMENT_UNAVAILABLE":
                # No payment_id, so a charge that landed after the timeout is not
                # refunded here; the charge step key is the reconciliation handle.
                logger.warning("Payment outcome unknown", extra={"checkout_id": checkout.checkout_id})
            self._start_compensation(checkout, code)
            return

        if not self._transition(checkout, CheckoutState.PAID, require_not_cancelled=True, payment_id=payment_id):
            # Cancelled while charging; keep the payment id so compensation refunds it.
            self._update(checkout, payment_id=payment_id)

    def _create_order(self, checkout: Checkout) -> None:
        self._record_intent(checkout, "create_order")
        try:
            order_id = self._call(
                lambda: self.orders.create(
                    checkout.user_id,
                    checkout.cart_snapshot,
                    checkout.shipping_address,
                    checkout.reservation_id,
                    step_key(checkout.checkout_id, "create_order"),
                ),
                f"create order for checkout {checkout.checkout_id}",
                self.policy.order.budget,
            )
        except (PeerError, DeadlineExceeded) as e:
            self._start_compensation(checkout, _failure_code(e, "ORDER_UNAVAILABLE"))
            return

        self._transition(checkout, CheckoutState.ORDERED, order_id=order_id)

    def _complete(self, checkout: Checkout) -> None:
        self._record_intent(checkout, "commit")
        try:
            status = self._call(
                lambda: self.ledger.commit(checkout.reservation_id),
                f"commit for checkout {checkout.checkout_id}",
                self.policy.stock_budget,
            )
        except (ServiceError, OperationalError, DeadlineExceeded):
            self._start_compensation(checkout, "STOCK_UNAVAILABLE")
            return

        if status not in (CommitStatus.OK, CommitStatus.ALREADY_COMMITTED):
            logger.error(
                f"Reservation lost before commit ({status.value})",
                extra={"checkout_id": checkout.checkout_id, "reservation_id": checkout.reservation_id},
            )
            self._start_compensation(checkout, "RESERVATION_LOST")
            return

        cart_error = None
        try:
            self._call(
                lambda: self.cart.clear(checkout.user_id, step_key(checkout.checkout_id, "clear_cart")),
                f"clear cart for checkout {checkout.checkout_id}",
                self.policy.cart.budget,
            )
        except (PeerError, DeadlineExceeded) as e:
            logger.warning(f"Cart was not cleared: {e}", extra={"checkout_id": checkout.checkout_id})
            cart_error = "CART_CLEAR_FAILED"

        event = OrderCreatedEvent(
            checkout_id=checkout.checkout_id,
            order_id=checkout.order_id,
            user_id=checkout.user_id,
            reservation_id=checkout.reservation_id,
            lines=[{"sku_id": line["sku_id"], "qty": line["qty"]} for line in checkout.cart_snapshot],
            occurred_at=self.clock(),
        )
        if self._transition(checkout, CheckoutState.DONE, event=event, last_error=cart_error):
            logger.info(f"Checkout completed with order {checkout.order_id}", extra={"checkout_id": checkout.checkout_id})

    def _compensate(self, checkout: Checkout) -> None:
        """Refund, cancel the order, roll the reservation back, then FAILED."""
        failed = []

        if checkout.payment_id:
            try:
                self._call(
                    lambda: self.payment.refund(checkout.payment_id, step_key(checkout.checkout_id, "refund")),
                    f"refund for checkout {checkout.checkout_id}",
                    None,
                )
            except PeerError as e:
                logger.error(f"Refund failed: {e}", extra={"checkout_id": checkout.checkout_id})
                failed.append("refund")

        if checkout.order_id:
            try:
                self._call(
                    lambda: self.orders.cancel(checkout.order_id, step_key(checkout.checkout_id, "cancel_order")),
                    f"cancel order for checkout {checkout.checkout_id}",
                    None,
                )
            except PeerError as e:
                logger.error(f"Order cancel failed: {e}", extra={"checkout_id": checkout.checkout_id})
                failed.append("cancel_order")

        try:
            status = self._call(
                lambda: self.ledger.rollback(checkout.reservation_id),
                f"rollback for checkout {checkout.checkout_id}",
                None,
            )
            if status is RollbackStatus.ALREADY_COMMITTED:
                logger.error(
                    "Reservation already committed during compensation",
                    extra={"checkout_id": checkout.checkout_id, "reservation_id": checkout.reservation_id},
                )
                failed.append("rollback")
        except (ServiceError, OperationalError) as e:
            # The TTL releases it through the expiry reaper.
            logger.error(f"Rollback failed, leaving reservation to expire: {e}", extra={"checkout_id": checkout.checkout_id})
            failed.append("rollback")

        reason = checkout.failure_reason or checkout.last_error or "COMPENSATION_FAILED"
        last_error = "COMPENSATION_FAILED" if failed else reason
        event = OrderFailedEvent(
            checkout_id=checkout.checkout_id,
            user_id=checkout.user_id,
            reason=reason,
            reservation_id=checkout.reservation_id,
            order_id=checkout.order_id,
            occurred_at=self.clock(),
        )
        if self._transition(checkout, CheckoutState.FAILED, event=event, last_error=last_error):
            logger.info(
                f"Checkout failed ({reason}), compensations failed: {failed or 'none'}",
                extra={"checkout_id": checkout.checkout_id},
            )

    def _fetch_cart(self, user_id: str) -> List[dict]:
        try:
            contents = self._call(lambda: self.cart.get(user_id), f"fetch cart for {user_id}", self.policy.cart.budget)
        except (PeerError, DeadlineExceeded) as e:
            if isinstance(e, PeerError) and not e.retryable:
                raise ServiceError(ErrorKind.INVALID, "Cart could not be read", code="INVALID_CART") from e
            raise ServiceError(ErrorKind.UNAVAILABLE, "Cart service is unavailable", code="CART_UNAVAILABLE") from e
        return contents.lines


class CheckoutSweeper(PeriodicWorker):
    """Re-drives stalled checkouts and deletes finished ones past the retention window."""

    name = "checkout-sweeper"

    def __init__(
        self,
        coordinator: CheckoutCoordinator,
        retention_ms: int,
        poll_interval: float = 60.0,
        lease=None,
        stalled_ms: Optional[int] = None,
    ):
        super().__init__(poll_interval=poll_interval, lease=lease)
        self.coordinator = coordinator
        self.retention_ms = retention_ms
        if stalled_ms is None:
            stalled_ms = int(coordinator.policy.stall_timeout_secs * 1000)
        self.stalled_ms = stalled_ms

    def run_once(self) -> int:
        resumed = self.coordinator.resume_stalled(self.stalled_ms)
        return resumed + self.coordinator.purge_finished(self.retention_ms)
