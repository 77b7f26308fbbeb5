import json

import httpx
import pytest

from services.checkout_service.peers import HttpCartClient, HttpOrderClient, HttpPaymentClient
from shared.errors import ErrorKind, PeerError


def mock_client(base_url, handler):
    return httpx.Client(base_url=base_url, transport=httpx.MockTransport(handler))


def payment_client(handler):
    return HttpPaymentClient("http://payments", 1.0, client=mock_client("http://payments", handler))


def test_charge_sends_idempotency_key_and_body():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["key"] = request.headers.get("Idempotency-Key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"payment_id": "p-1"})

    payment_id = payment_client(handler).charge("u1", 25.5, "card", "co-1:charge")

    assert payment_id == "p-1"
    assert seen == {
        "path": "/payments",
        "key": "co-1:charge",
        "body": {"user_id": "u1", "amount": 25.5, "method": "card"},
    }


@pytest.mark.parametrize(
    "status_code, kind, code",
    [
        (503, ErrorKind.UNAVAILABLE, "PAYMENT_UNAVAILABLE"),
        (429, ErrorKind.UNAVAILABLE, "PAYMENT_UNAVAILABLE"),
        (402, ErrorKind.INVALID, "PAYMENT_DECLINED"),
        (409, ErrorKind.CONFLICT, "PAYMENT_CONFLICT"),
    ],
)
def test_charge_error_classification(status_code, kind, code):
    client = payment_client(lambda request: httpx.Response(status_code, text="nope"))

    with pytest.raises(PeerError) as excinfo:
        client.charge("u1", 10.0, "card", "co-1:charge")

    assert excinfo.value.kind is kind
    assert excinfo.value.code == code
    assert excinfo.value.retryable is kind.retryable


def test_timeout_is_retryable():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(PeerError) as excinfo:
        payment_client(handler).charge("u1", 10.0, "card", "co-1:charge")

    assert excinfo.value.kind is ErrorKind.TIMEOUT
    assert excinfo.value.code == "PAYMENT_TIMEOUT"
    assert excinfo.value.retryable


def test_connection_error_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PeerError) as excinfo:
        payment_client(handler).refund("p-1", "co-1:refund")

    assert excinfo.value.kind is ErrorKind.UNAVAILABLE


def test_missing_payment_id_is_internal():
    client = payment_client(lambda request: httpx.Response(200, json={}))

    with pytest.raises(PeerError) as excinfo:
        client.charge("u1", 10.0, "card", "co-1:charge")

    assert excinfo.value.kind is ErrorKind.INTERNAL
    assert not excinfo.value.retryable


def test_order_create_and_cancel():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path, request.headers.get("Idempotency-Key")))
        if request.url.path == "/orders":
            assert json.loads(request.content)["reservation_id"] == "r-1"
            return httpx.Response(201, json={"order_id": "o-1"})
        return httpx.Response(204)

    client = HttpOrderClient("http://orders", 1.0, client=mock_client("http://orders", handler))
    order_id = client.create("u1", [{"sku_id": "A", "qty": 1, "unit_price": 2.0}], "1 Main St", "r-1", "co-1:create_order")
    client.cancel(order_id, "co-1:cancel_order")

    assert order_id == "o-1"
    assert calls == [
        ("POST", "/orders", "co-1:create_order"),
        ("POST", "/orders/o-1/cancel", "co-1:cancel_order"),
    ]


def test_order_rejection_code():
    client = HttpOrderClient(
        "http://orders", 1.0, client=mock_client("http://orders", lambda request: httpx.Response(400))
    )

    with pytest.raises(PeerError) as excinfo:
        client.create("u1", [], None, "r-1", "co-1:create_order")

    assert excinfo.value.code == "ORDER_REJECTED"


def test_cart_get_maps_items_to_lines():
    def handler(request):
        assert request.url.path == "/cart/u1"
        return httpx.Response(
            200,
            json={
                "user_id": "u1",
                "items": [
                    {"product_id": "A", "quantity": 2, "price": 10.0, "item_total": 20.0},
                    {"product_id": "B", "quantity": 1, "price": 5.5, "item_total": 5.5},
                ],
                "total_amount": 25.5,
                "item_count": 2,
            },
        )

    contents = HttpCartClient("http://cart", 1.0, client=mock_client("http://cart", handler)).get("u1")

    assert contents.lines == [
        {"sku_id": "A", "qty": 2, "unit_price": 10.0},
        {"sku_id": "B", "qty": 1, "unit_price": 5.5},
    ]
    assert contents.total == 25.5


def test_cart_clear_uses_delete():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path))
        return httpx.Response(200, json={"message": "Cart cleared"})

    HttpCartClient("http://cart", 1.0, client=mock_client("http://cart", handler)).clear("u1", "co-1:clear_cart")

    assert seen == [("DELETE", "/cart/u1")]


def test_undecodable_response_is_internal():
    def handler(request):
        raise httpx.DecodingError("bad gzip stream", request=request)

    with pytest.raises(PeerError) as excinfo:
        payment_client(handler).charge("u1", 10.0, "card", "co-1:charge")

    assert excinfo.value.kind is ErrorKind.INTERNAL
    assert excinfo.value.code == "PAYMENT_BAD_RESPONSE"
    assert not excinfo.value.retryable
