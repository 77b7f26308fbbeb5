import json

import pytest
from pydantic import ValidationError

from shared.events import (
    ALL_TOPICS,
    OrderCreatedEvent,
    OrderFailedEvent,
    ReservationReleasedEvent,
    decode_event,
    encode_event,
)


def test_topics():
    assert sorted(ALL_TOPICS) == [
        "order.created",
        "order.failed",
        "reservation.committed",
        "reservation.expired",
        "reservation.held",
        "reservation.released",
    ]


def test_payload_fields_and_partition_keys():
    released = ReservationReleasedEvent(reservation_id="r1", checkout_id="c1", lines=[{"sku_id": "A", "qty": 1}])
    failed = OrderFailedEvent(checkout_id="c1", user_id="u1", reason="PAYMENT_DECLINED")

    payload = json.loads(encode_event(released))

    assert set(payload) == {"event_id", "occurred_at", "reservation_id", "checkout_id", "lines"}
    assert released.partition_key == "r1"
    assert failed.partition_key == "c1"
    assert decode_event("order.failed", encode_event(failed)) == failed


def test_unknown_fields_are_rejected():
    payload = json.dumps(
        {
            "event_id": "e1",
            "occurred_at": 1,
            "checkout_id": "c1",
            "order_id": "o1",
            "user_id": "u1",
            "reservation_id": "r1",
            "lines": [],
            "metadata": {"anything": "goes"},
        }
    )

    with pytest.raises(ValidationError):
        decode_event("order.created", payload)


def test_unit_price_is_not_an_event_field():
    with pytest.raises(ValidationError):
        OrderCreatedEvent(
            checkout_id="c1",
            order_id="o1",
            user_id="u1",
            reservation_id="r1",
            lines=[{"sku_id": "A", "qty": 1, "unit_price": 2.0}],
        )
