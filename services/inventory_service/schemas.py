from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReservationLineSchema(BaseModel):
    """One SKU line of a reservation."""

    model_config = ConfigDict(extra="forbid")

    sku_id: str = Field(min_length=1, max_length=255)
    qty: int


class ReserveRequest(BaseModel):
    """Request to hold stock for a checkout."""

    model_config = ConfigDict(extra="forbid")

    reservation_id: Optional[str] = Field(default=None, max_length=64)
    checkout_id: str = Field(min_length=1, max_length=64)
    lines: List[ReservationLineSchema]
    ttl_secs: int


class ReserveResponse(BaseModel):
    """Outcome of a reserve call."""

    reservation_id: str
    state: str  # HELD | DUPLICATE | OUT_OF_STOCK | INVALID
    reservation_state: Optional[str] = None
    conflicting_sku: Optional[str] = None
    reason: Optional[str] = None


class ReservationStatusResponse(BaseModel):
    """Outcome of a commit or rollback call."""

    reservation_id: str
    state: str


class ReservationResponse(BaseModel):
    """Reservation index entry."""

    reservation_id: str
    checkout_id: str
    lines: List[ReservationLineSchema]
    state: str
    created_at: int
    expires_at: int
    terminal_at: Optional[int] = None


class StockResponse(BaseModel):
    """Stock snapshot for one SKU."""

    sku_id: str
    available: int
    reserved: int


class StockReceiptRequest(BaseModel):
    """Inbound warehouse movement."""

    model_config = ConfigDict(extra="forbid")

    qty: int = Field(gt=0)


class StockRemovalRequest(BaseModel):
    """Write-off of damaged or lost units."""

    model_config = ConfigDict(extra="forbid")

    qty: int = Field(gt=0)


class StockCountRequest(BaseModel):
    """Absolute recount of available units."""

    model_config = ConfigDict(extra="forbid")

    available: int = Field(ge=0)


class AvailabilityResponse(BaseModel):
    sku_id: str
    qty: int
    available: bool


class StockAlertResponse(BaseModel):
    sku_id: str
    alert_type: str
    current_stock: int
    created_at: int
