import pytest

from services.gateway.idempotency import IdempotencyRepository, IdempotencyStore, fingerprint_of
from shared.errors import ErrorKind, ServiceError

BODY = {"checkout_id": "c1", "lines": [{"sku_id": "A", "qty": 1}]}


@pytest.fixture
def store(session_factory, clock):
    return IdempotencyStore(session_factory, clock=clock, claim_ttl_ms=60_000)


def abandon_claim(session_factory, clock, resource_id="r-first"):
    """Leave a claim behind the way a request killed mid-flight does."""
    db = session_factory()
    try:
        IdempotencyRepository(db, clock=clock).claim("reserve", "k1", fingerprint_of(BODY), resource_id)
        db.commit()
    finally:
        db.close()


def test_handler_runs_once_per_key(store):
    calls = []

    def handler(resource_id):
        calls.append(resource_id)
        return 201, {"reservation_id": resource_id}

    first = store.run("reserve", "k1", BODY, lambda: "r-1", handler)
    second = store.run("reserve", "k1", BODY, lambda: "r-2", handler)

    assert first == second == (201, {"reservation_id": "r-1"})
    assert calls == ["r-1"]


def test_retryable_error_releases_the_claim(store):
    def unavailable(resource_id):
        raise ServiceError(ErrorKind.UNAVAILABLE, "busy")

    with pytest.raises(ServiceError):
        store.run("reserve", "k1", BODY, lambda: "r-1", unavailable)

    assert store.run("reserve", "k1", BODY, lambda: "r-2", lambda rid: (201, {"id": rid})) == (201, {"id": "r-2"})


def test_fresh_unfinished_claim_is_in_progress(store, session_factory, clock):
    abandon_claim(session_factory, clock)
    clock.advance(30_000)

    with pytest.raises(ServiceError) as excinfo:
        store.run("reserve", "k1", BODY, lambda: "r-new", lambda rid: (201, {"id": rid}))

    assert excinfo.value.code == "REQUEST_IN_PROGRESS"


def test_abandoned_claim_is_taken_over_with_its_resource_id(store, session_factory, clock):
    abandon_claim(session_factory, clock)
    clock.advance(61_000)

    result = store.run("reserve", "k1", BODY, lambda: "r-new", lambda rid: (201, {"id": rid}))

    assert result == (201, {"id": "r-first"})
    assert store.run("reserve", "k1", BODY, lambda: "r-other", lambda rid: (500, {})) == (201, {"id": "r-first"})


def test_abandoned_claim_still_checks_the_body(store, session_factory, clock):
    abandon_claim(session_factory, clock)
    clock.advance(61_000)

    with pytest.raises(ServiceError) as excinfo:
        store.run("reserve", "k1", {"checkout_id": "c2"}, lambda: "r-new", lambda rid: (201, {}))

    assert excinfo.value.code == "IDEMPOTENCY_KEY_REUSED"
