from services.outbox_service.publisher import OutboxPublisher
from services.outbox_service.repository import OutboxRepository, partition_for
from shared.events import ReservationHeldEvent, ReservationReleasedEvent, decode_event
from tests.conftest import RecordingProducer


def held(reservation_id):
    return ReservationHeldEvent(reservation_id=reservation_id, checkout_id="c1", lines=[{"sku_id": "A", "qty": 1}])


def released(reservation_id):
    return ReservationReleasedEvent(reservation_id=reservation_id, checkout_id="c1", lines=[{"sku_id": "A", "qty": 1}])


def append_all(session_factory, events):
    db = session_factory()
    try:
        repo = OutboxRepository(db)
        for event in events:
            repo.append(event)
        db.commit()
    finally:
        db.close()


def test_partition_is_stable_and_in_range():
    assert partition_for("r-1", 8) == partition_for("r-1", 8)
    assert all(0 <= partition_for(f"r-{n}", 8) < 8 for n in range(100))


def test_sequence_is_dense_per_partition(session_factory):
    append_all(session_factory, [held(f"r{n}") for n in range(40)])

    db = session_factory()
    try:
        entries = OutboxRepository(db).get_undispatched(limit=100)
    finally:
        db.close()

    by_partition = {}
    for entry in entries:
        by_partition.setdefault(entry.partition, []).append(entry.seq)
    assert len(entries) == 40
    for seqs in by_partition.values():
        assert seqs == list(range(1, len(seqs) + 1))


def test_publisher_dispatches_in_order_once(session_factory):
    append_all(session_factory, [held("r1"), released("r1"), held("r2")])
    producer = RecordingProducer()
    publisher = OutboxPublisher(session_factory, producer)

    assert publisher.run_once() == 3
    assert publisher.run_once() == 0

    r1_topics = [topic for topic, key, _ in producer.messages if key == "r1"]
    assert r1_topics == ["reservation.held", "reservation.released"]
    topic, key, payload = producer.messages[0]
    assert decode_event(topic, payload).partition_key == key


def test_failed_publish_blocks_only_its_partition(session_factory):
    other = next(f"r{n}" for n in range(2, 100) if partition_for(f"r{n}", 8) != partition_for("r1", 8))
    append_all(session_factory, [held("r1"), released("r1"), held(other)])
    producer = RecordingProducer()
    producer.fail_keys.add("r1")
    publisher = OutboxPublisher(session_factory, producer)

    assert publisher.run_once() == 1
    assert [key for _, key, _ in producer.messages] == [other]

    db = session_factory()
    try:
        pending = OutboxRepository(db).entries_for_key("r1")
        assert [entry.dispatched_at for entry in pending] == [None, None]
        assert pending[0].attempts == 1
        assert pending[0].last_error == "broker unavailable"
        assert pending[1].attempts == 0
    finally:
        db.close()

    producer.fail_keys.clear()
    assert publisher.run_once() == 2
    assert [topic for topic, key, _ in producer.messages if key == "r1"] == [
        "reservation.held",
        "reservation.released",
    ]


def test_stuck_partition_does_not_starve_the_rest(session_factory):
    stuck = next(f"r{n}" for n in range(200) if partition_for(f"r{n}", 8) == 0)
    later = next(f"r{n}" for n in range(200) if partition_for(f"r{n}", 8) > 0)
    append_all(session_factory, [held(stuck), released(stuck), held(stuck), held(later)])
    producer = RecordingProducer()
    producer.fail_keys.add(stuck)
    publisher = OutboxPublisher(session_factory, producer, batch_size=2)

    for _ in range(5):
        publisher.run_once()

    assert [key for _, key, _ in producer.messages] == [later]

    db = session_factory()
    try:
        assert [entry.attempts for entry in OutboxRepository(db).entries_for_key(stuck)] == [5, 0, 0]
    finally:
        db.close()
