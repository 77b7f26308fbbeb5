import threading
import time

from services.inventory_service.locks import KeyedLocks


def test_locks_are_dropped_once_released():
    locks = KeyedLocks()

    with locks.hold(["B", "A", "A"]):
        assert len(locks) == 2

    assert len(locks) == 0


def test_waiter_keeps_the_lock_alive():
    locks = KeyedLocks()
    order = []

    def contender():
        with locks.hold(["A"]):
            order.append("contender")

    with locks.hold(["A"]):
        thread = threading.Thread(target=contender)
        thread.start()
        while locks._entries["A"].users < 2:
            time.sleep(0.01)
        order.append("holder")

    thread.join(2.0)

    assert order == ["holder", "contender"]
    assert len(locks) == 0
