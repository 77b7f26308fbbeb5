"""
peers.py - HTTP clients for the payment, order and cart services

Peer contracts consumed by the checkout saga:

    Payment  POST /payments                     {user_id, amount, method}      -> {payment_id}
             POST /payments/{payment_id}/refunds                               -> {}
    Order    POST /orders                       {user_id, lines, address,
                                                 reservation_id}               -> {order_id}
             POST /orders/{order_id}/cancel                                    -> {}
    Cart     GET  /cart/{user_id}                                              -> {items, total_amount}
             DELETE /cart/{user_id}                                            -> {}

Every mutating call carries an ``Idempotency-Key`` header built from the
checkout id and the step name, so a retried step never has a second effect.

Failures are raised as PeerError:
    - connection errors, 429 and 5xx    -> UNAVAILABLE (retryable)
    - client-side timeouts              -> TIMEOUT (retryable)
    - 409                               -> CONFLICT
    - any other 4xx                     -> INVALID (the peer said no)
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

import httpx

from shared.errors import ErrorKind, PeerError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CartContents:
    lines: List[dict]  # [{"sku_id", "qty", "unit_price"}]
    total: float


class PaymentClient(Protocol):
    def charge(self, user_id: str, amount: float, method: str, idem_key: str) -> str: ...

    def refund(self, payment_id: str, idem_key: str) -> None: ...


class OrderClient(Protocol):
    def create(self, user_id: str, lines: List[dict], address: Optional[str], reservation_id: str, idem_key: str) -> str: ...

    def cancel(self, order_id: str, idem_key: str) -> None: ...


class CartClient(Protocol):
    def get(self, user_id: str) -> CartContents: ...

    def clear(self, user_id: str, idem_key: str) -> None: ...


class HttpPeer:
    """Shared request/response handling for one peer service."""

    name = "peer"
    rejected_code = "PEER_REJECTED"

    def __init__(self, base_url: str, timeout: float, client: Optional[httpx.Client] = None):
        self.timeout = timeout
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout)

    def _request(self, method: str, path: str, idem_key: Optional[str] = None, json: Optional[dict] = None) -> dict:
        prefix = self.name.upper()
        headers = {"Idempotency-Key": idem_key} if idem_key else {}
        try:
            response = self.client.request(method, path, json=json, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise PeerError(ErrorKind.TIMEOUT, f"{prefix}_TIMEOUT", str(e)) from e
        except httpx.TransportError as e:
            raise PeerError(ErrorKind.UNAVAILABLE, f"{prefix}_UNAVAILABLE", str(e)) from e
        except httpx.HTTPError as e:
            raise PeerError(ErrorKind.INTERNAL, f"{prefix}_BAD_RESPONSE", str(e)) from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise PeerError(ErrorKind.UNAVAILABLE, f"{prefix}_UNAVAILABLE", f"HTTP {status}")
        if status == 409:
            raise PeerError(ErrorKind.CONFLICT, f"{prefix}_CONFLICT", response.text[:200])
        if status >= 400:
            raise PeerError(ErrorKind.INVALID, self.rejected_code, f"HTTP {status}: {response.text[:200]}")

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise PeerError(ErrorKind.INTERNAL, f"{prefix}_BAD_RESPONSE", "response is not JSON") from e

    def close(self) -> None:
        self.client.close()


class HttpPaymentClient(HttpPeer):
    name = "payment"
    rejected_code = "PAYMENT_DECLINED"

    def charge(self, user_id: str, amount: float, method: str, idem_key: str) -> str:
        body = self._request(
            "POST",
            "/payments",
            idem_key=idem_key,
            json={"user_id": user_id, "amount": amount, "method": method},
        )
        payment_id = body.get("payment_id")
        if not payment_id:
            raise PeerError(ErrorKind.INTERNAL, "PAYMENT_BAD_RESPONSE", "missing payment_id")
        logger.info(f"Payment charged for user {user_id}: ${amount}")
        return payment_id

    def refund(self, payment_id: str, idem_key: str) -> None:
        self._request("POST", f"/payments/{payment_id}/refunds", idem_key=idem_key)
        logger.info(f"Payment {payment_id} refunded")


class HttpOrderClient(HttpPeer):
    name = "order"
    rejected_code = "ORDER_REJECTED"

    def create(self, user_id: str, lines: List[dict], address: Optional[str], reservation_id: str, idem_key: str) -> str:
        body = self._request(
            "POST",
            "/orders",
            idem_key=idem_key,
            json={"user_id": user_id, "lines": lines, "address": address, "reservation_id": reservation_id},
        )
        order_id = body.get("order_id")
        if not order_id:
            raise PeerError(ErrorKind.INTERNAL, "ORDER_BAD_RESPONSE", "missing order_id")
        return order_id

    def cancel(self, order_id: str, idem_key: str) -> None:
        self._request("POST", f"/orders/{order_id}/cancel", idem_key=idem_key)
        logger.info(f"Order {order_id} cancelled")


class HttpCartClient(HttpPeer):
    name = "cart"
    rejected_code = "CART_REJECTED"

    def get(self, user_id: str) -> CartContents:
        body = self._request("GET", f"/cart/{user_id}")
        lines = [
            {"sku_id": item["product_id"], "qty": item["quantity"], "unit_price": item["price"]}
            for item in body.get("items", [])
        ]
        return CartContents(lines=lines, total=float(body.get("total_amount", 0.0)))

    def clear(self, user_id: str, idem_key: str) -> None:
        self._request("DELETE", f"/cart/{user_id}", idem_key=idem_key)
