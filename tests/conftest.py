"""
Pytest configuration and fixtures
"""
from concurrent.futures import Executor, Future
from types import SimpleNamespace

import pytest

from services.checkout_service.peers import CartContents
from services.checkout_service.saga_handler import CheckoutCoordinator
from services.inventory_service.ledger import StockLedger
from services.outbox_service.repository import OutboxRepository
from shared.database import create_db_engine, create_session_factory, init_db


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class InlineExecutor(Executor):
    """Runs submitted work immediately in the calling thread."""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class DeferredExecutor(Executor):
    """Collects submitted work until ``run_all`` is called."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        self.pending.append((fn, args, kwargs))
        return Future()

    def run_all(self) -> None:
        pending, self.pending = self.pending, []
        for fn, args, kwargs in pending:
            fn(*args, **kwargs)


class RecordingProducer:
    """Stands in for the Kafka producer; fails for keys in ``fail_keys``."""

    def __init__(self):
        self.messages = []
        self.fail_keys = set()

    def publish(self, topic: str, payload: bytes, key: str) -> None:
        if key in self.fail_keys:
            raise RuntimeError("broker unavailable")
        self.messages.append((topic, key, payload))


class FakePayment:
    def __init__(self):
        self.charges = []
        self.refunds = []
        self.charge_errors = []  # consumed one per call; None means succeed
        self.refund_errors = []
        self.on_charge = None

    def charge(self, user_id, amount, method, idem_key):
        self.charges.append((user_id, amount, method, idem_key))
        if self.on_charge:
            self.on_charge(idem_key)
        if self.charge_errors:
            error = self.charge_errors.pop(0)
            if error is not None:
                raise error
        return f"pay-{idem_key}"

    def refund(self, payment_id, idem_key):
        if self.refund_errors:
            error = self.refund_errors.pop(0)
            if error is not None:
                raise error
        self.refunds.append((payment_id, idem_key))


class FakeOrders:
    def __init__(self):
        self.created = []
        self.cancelled = []
        self.create_errors = []
        self.on_create = None

    def create(self, user_id, lines, address, reservation_id, idem_key):
        self.created.append((user_id, lines, address, reservation_id, idem_key))
        if self.on_create:
            self.on_create(reservation_id)
        if self.create_errors:
            error = self.create_errors.pop(0)
            if error is not None:
                raise error
        return f"order-{idem_key}"

    def cancel(self, order_id, idem_key):
        self.cancelled.append((order_id, idem_key))


class FakeCart:
    def __init__(self):
        self.carts = {}
        self.cleared = []
        self.clear_errors = []

    def get(self, user_id):
        lines = self.carts.get(user_id, [])
        return CartContents(lines=lines, total=sum(line["qty"] * line["unit_price"] for line in lines))

    def clear(self, user_id, idem_key):
        if self.clear_errors:
            error = self.clear_errors.pop(0)
            if error is not None:
                raise error
        self.cleared.append((user_id, idem_key))


@pytest.fixture
def engine(tmp_path):
    """SQLite file database with every table created."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'reservations.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = create_session_factory(engine)
    db = factory()
    OutboxRepository(db).ensure_cursors()
    db.commit()
    db.close()
    return factory


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(session_factory, clock):
    return StockLedger(session_factory, clock=clock)


@pytest.fixture
def stock(ledger):
    """stock(A=3, B=5) receives the given quantities."""

    def _stock(**levels):
        for sku_id, qty in levels.items():
            ledger.receive_stock(sku_id, qty)

    return _stock


@pytest.fixture
def peers():
    return SimpleNamespace(payment=FakePayment(), orders=FakeOrders(), cart=FakeCart())


@pytest.fixture
def make_coordinator(session_factory, ledger, peers, clock):
    def _make(executor=None, **kwargs):
        return CheckoutCoordinator(
            session_factory,
            ledger,
            payment=peers.payment,
            orders=peers.orders,
            cart=peers.cart,
            executor=executor or InlineExecutor(),
            clock=clock,
            sleep=lambda seconds: None,
            **kwargs,
        )

    return _make


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture
def outbox_topics(session_factory):
    """outbox_topics(key) -> topics written for that key, in seq order."""

    def _topics(key):
        db = session_factory()
        try:
            return [entry.topic for entry in OutboxRepository(db).entries_for_key(key)]
        finally:
            db.close()

    return _topics
