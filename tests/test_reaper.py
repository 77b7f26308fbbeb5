from services.inventory_service.ledger import CommitStatus, RollbackStatus
from services.inventory_service.models import ReservationState
from services.inventory_service.reaper import ExpiryReaper


def test_reaper_releases_lapsed_reservation(ledger, stock, clock, outbox_topics):
    stock(A=3)
    ledger.reserve("r1", "c1", [{"sku_id": "A", "qty": 2}], ttl_secs=1)
    clock.advance(2000)

    released = ExpiryReaper(ledger).run_once()

    assert released == 1
    assert ledger.query("A").available == 3
    assert ledger.query("A").reserved == 0
    assert ledger.commit("r1") is CommitStatus.EXPIRED
    assert ledger.query("A").available == 3
    assert outbox_topics("r1") == ["reservation.held", "reservation.expired"]


def test_reaper_leaves_live_reservations_alone(ledger, stock, clock):
    stock(A=3)
    ledger.reserve("r1", "c1", [{"sku_id": "A", "qty": 1}], ttl_secs=60)
    clock.advance(30_000)

    assert ExpiryReaper(ledger).run_once() == 0
    assert ledger.get_reservation("r1").state is ReservationState.HELD


def test_expired_reservations_are_found_oldest_first(ledger, stock, clock):
    stock(A=10)
    ledger.reserve("late", "c1", [{"sku_id": "A", "qty": 1}], ttl_secs=5)
    ledger.reserve("early", "c2", [{"sku_id": "A", "qty": 1}], ttl_secs=2)
    clock.advance(10_000)

    assert ledger.find_expired() == ["early", "late"]


def test_failure_on_one_reservation_does_not_block_others(ledger, stock, clock, monkeypatch):
    stock(A=10)
    ledger.reserve("r1", "c1", [{"sku_id": "A", "qty": 1}], ttl_secs=1)
    ledger.reserve("r2", "c2", [{"sku_id": "A", "qty": 1}], ttl_secs=2)
    clock.advance(5000)

    original = ledger.rollback

    def flaky_rollback(reservation_id, reason):
        if reservation_id == "r1":
            raise RuntimeError("store hiccup")
        return original(reservation_id, reason=reason)

    monkeypatch.setattr(ledger, "rollback", flaky_rollback)
    assert ExpiryReaper(ledger).run_once() == 1
    assert ledger.get_reservation("r2").state is ReservationState.EXPIRED

    monkeypatch.setattr(ledger, "rollback", original)
    assert ExpiryReaper(ledger).run_once() == 1
    assert ledger.get_reservation("r1").state is ReservationState.EXPIRED
    assert ledger.query("A").available == 10


def test_lost_race_emits_nothing(ledger, stock, clock, outbox_topics):
    stock(A=3)
    ledger.reserve("r1", "c1", [{"sku_id": "A", "qty": 1}], ttl_secs=1)
    clock.advance(2000)
    assert ledger.rollback("r1") is RollbackStatus.OK

    assert ExpiryReaper(ledger).run_once() == 0
    assert outbox_topics("r1") == ["reservation.held", "reservation.released"]


def test_full_batch_of_failures_does_not_hide_later_expiries(ledger, stock, clock, monkeypatch):
    stock(A=10)
    ledger.reserve("bad1", "c1", [{"sku_id": "A", "qty": 1}], ttl_secs=1)
    ledger.reserve("bad2", "c2", [{"sku_id": "A", "qty": 1}], ttl_secs=2)
    ledger.reserve("good", "c3", [{"sku_id": "A", "qty": 1}], ttl_secs=3)
    clock.advance(5000)

    original = ledger.rollback

    def failing_rollback(reservation_id, reason):
        if reservation_id.startswith("bad"):
            raise RuntimeError("ledger corrupt")
        return original(reservation_id, reason=reason)

    monkeypatch.setattr(ledger, "rollback", failing_rollback)
    reaper = ExpiryReaper(ledger, batch_size=2)

    assert reaper.run_once() == 1
    assert ledger.get_reservation("good").state is ReservationState.EXPIRED
    assert ledger.get_reservation("bad1").state is ReservationState.HELD
    assert reaper.run_once() == 0
