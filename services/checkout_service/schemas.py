from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from services.checkout_service.models import Checkout


class CartLineSchema(BaseModel):
    """Cart line snapshot."""

    model_config = ConfigDict(extra="forbid")

    sku_id: str = Field(min_length=1, max_length=255)
    qty: int
    unit_price: float = Field(default=0.0, ge=0)


class StartCheckoutRequest(BaseModel):
    """Request to start a checkout. Without ``cart_snapshot`` the cart service is read."""

    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1, max_length=255)
    payment_method: str = Field(min_length=1, max_length=100)
    cart_snapshot: Optional[List[CartLineSchema]] = None
    ttl_secs: Optional[int] = Field(default=None, gt=0)
    shipping_address: Optional[str] = Field(default=None, max_length=1000)


class ErrorBody(BaseModel):
    code: str
    message: str


# Human messages for last_error codes; the code itself is what callers match on.
ERROR_MESSAGES = {
    "OUT_OF_STOCK": "Some items are out of stock",
    "INVALID_CART": "The cart could not be checked out",
    "PAYMENT_DECLINED": "Payment was declined",
    "PAYMENT_UNAVAILABLE": "Payment could not be completed",
    "ORDER_REJECTED": "The order was rejected",
    "ORDER_UNAVAILABLE": "The order could not be created",
    "RESERVATION_LOST": "The stock hold lapsed before the order completed",
    "STOCK_UNAVAILABLE": "Stock could not be reserved",
    "CANCELLED": "Checkout was cancelled",
    "COMPENSATION_FAILED": "Checkout failed and needs manual review",
    "CART_CLEAR_FAILED": "Order placed but the cart was not cleared",
    "INTERNAL": "Checkout failed unexpectedly",
    "PAYMENT_BAD_RESPONSE": "Payment could not be completed",
    "ORDER_BAD_RESPONSE": "The order could not be created",
}


class CheckoutResponse(BaseModel):
    """Checkout state and details."""

    checkout_id: str
    user_id: str
    state: str
    total_amount: float
    reservation_id: str
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    cancel_requested: bool = False
    error: Optional[ErrorBody] = None
    created_at: int
    updated_at: int

    @classmethod
    def from_checkout(cls, checkout: Checkout) -> "CheckoutResponse":
        error = None
        if checkout.last_error:
            error = ErrorBody(
                code=checkout.last_error,
                message=ERROR_MESSAGES.get(checkout.last_error, "Checkout failed"),
            )
        return cls(
            checkout_id=checkout.checkout_id,
            user_id=checkout.user_id,
            state=checkout.state,
            total_amount=checkout.total_amount,
            reservation_id=checkout.reservation_id,
            payment_id=checkout.payment_id,
            order_id=checkout.order_id,
            cancel_requested=bool(checkout.cancel_requested),
            error=error,
            created_at=checkout.created_at,
            updated_at=checkout.updated_at,
        )
