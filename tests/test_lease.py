import threading

import fakeredis
import pytest

from shared.lease import RedisLease
from shared.worker import PeriodicWorker


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


class CountingWorker(PeriodicWorker):
    name = "counting-worker"

    def __init__(self, lease):
        super().__init__(poll_interval=0.01, lease=lease)
        self.ticks = 0
        self.ticked = threading.Event()

    def run_once(self):
        self.ticks += 1
        self.ticked.set()
        return 0


def test_only_one_holder_at_a_time(redis_client):
    first = RedisLease(redis_client, "reaper", holder_id="a")
    second = RedisLease(redis_client, "reaper", holder_id="b")

    assert first.acquire()
    assert not second.acquire()
    assert first.acquire()  # renew


def test_release_hands_over(redis_client):
    first = RedisLease(redis_client, "reaper", holder_id="a")
    second = RedisLease(redis_client, "reaper", holder_id="b")
    first.acquire()

    second.release()  # not the holder, no effect
    assert not second.acquire()

    first.release()
    assert second.acquire()


def test_lease_carries_ttl(redis_client):
    lease = RedisLease(redis_client, "outbox", ttl_ms=5000, holder_id="a")
    lease.acquire()

    assert 0 < redis_client.pttl("lease:outbox") <= 5000


def test_worker_runs_while_holding_lease(redis_client):
    worker = CountingWorker(RedisLease(redis_client, "counting", holder_id="a"))
    worker.start()
    try:
        assert worker.ticked.wait(2.0)
    finally:
        worker.stop()

    assert redis_client.get("lease:counting") is None


def test_worker_idles_without_lease(redis_client):
    RedisLease(redis_client, "counting", holder_id="other").acquire()
    worker = CountingWorker(RedisLease(redis_client, "counting", holder_id="a"))
    worker.start()
    try:
        assert not worker.ticked.wait(0.2)
    finally:
        worker.stop()

    assert worker.ticks == 0
    assert redis_client.get("lease:counting") == "other"


def test_worker_must_define_a_tick():
    class NoTick(PeriodicWorker):
        pass

    with pytest.raises(TypeError):
        NoTick()
