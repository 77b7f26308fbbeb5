import logging
from typing import List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from services.checkout_service.admission import TokenBucket
from services.checkout_service.saga_handler import CheckoutCoordinator
from services.checkout_service.schemas import CheckoutResponse, StartCheckoutRequest
from services.gateway.idempotency import IdempotencyStore
from services.inventory_service.ledger import CommitStatus, ReserveOutcome, RollbackStatus, StockLedger
from services.inventory_service.models import ReservationState
from services.inventory_service.schemas import (
    AvailabilityResponse,
    ReservationResponse,
    ReservationStatusResponse,
    ReserveRequest,
    ReserveResponse,
    StockAlertResponse,
    StockCountRequest,
    StockReceiptRequest,
    StockRemovalRequest,
    StockResponse,
)
from shared.errors import ErrorKind, ServiceError

logger = logging.getLogger(__name__)

router = APIRouter()

RESERVE_STATUS = {
    ReserveOutcome.HELD: status.HTTP_201_CREATED,
    ReserveOutcome.DUPLICATE: status.HTTP_200_OK,
    ReserveOutcome.OUT_OF_STOCK: status.HTTP_409_CONFLICT,
    ReserveOutcome.INVALID: status.HTTP_422_UNPROCESSABLE_ENTITY,
}

# Repeating the same action is a success; the opposite action already won is a conflict.
COMMIT_STATUS = {
    CommitStatus.OK: status.HTTP_200_OK,
    CommitStatus.ALREADY_COMMITTED: status.HTTP_200_OK,
    CommitStatus.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    CommitStatus.ALREADY_RELEASED: status.HTTP_409_CONFLICT,
    CommitStatus.EXPIRED: status.HTTP_409_CONFLICT,
}

ROLLBACK_STATUS = {
    RollbackStatus.OK: status.HTTP_200_OK,
    RollbackStatus.ALREADY_RELEASED: status.HTTP_200_OK,
    RollbackStatus.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RollbackStatus.ALREADY_COMMITTED: status.HTTP_409_CONFLICT,
}


def get_ledger(request: Request) -> StockLedger:
    return request.app.state.ledger


def get_coordinator(request: Request) -> CheckoutCoordinator:
    return request.app.state.coordinator


def get_idempotency(request: Request) -> IdempotencyStore:
    return request.app.state.idempotency


def get_admission(request: Request) -> Optional[TokenBucket]:
    return getattr(request.app.state, "admission", None)


def require_key(idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key")) -> str:
    if not idempotency_key or len(idempotency_key) > 255:
        raise ServiceError(ErrorKind.INVALID, "Idempotency-Key header is required", code="MISSING_IDEMPOTENCY_KEY")
    return idempotency_key


def tenant_header(x_tenant_id: Optional[str] = Header(default=None, max_length=64)) -> Optional[str]:
    return x_tenant_id


def _scope(operation: str, tenant_id: Optional[str]) -> str:
    return f"{tenant_id}/{operation}" if tenant_id else operation


# ---------------------------------------------------------------- reservations


@router.post("/reservations", tags=["reservations"])
def reserve(
    body: ReserveRequest,
    key: str = Depends(require_key),
    tenant_id: Optional[str] = Depends(tenant_header),
    ledger: StockLedger = Depends(get_ledger),
    store: IdempotencyStore = Depends(get_idempotency),
) -> JSONResponse:
    """Hold stock for every line, or for none."""

    def handle(reservation_id: str):
        result = ledger.reserve(
            reservation_id,
            body.checkout_id,
            [line.model_dump() for line in body.lines],
            body.ttl_secs,
            tenant_id=tenant_id,
        )
        response = ReserveResponse(
            reservation_id=result.reservation_id,
            state=result.outcome.value,
            reservation_state=result.reservation_state.value if result.reservation_state else None,
            conflicting_sku=result.conflicting_sku,
            reason=result.reason,
        )
        return RESERVE_STATUS[result.outcome], response.model_dump(exclude_none=True)

    status_code, content = store.run(
        _scope("reserve", tenant_id),
        key,
        body.model_dump(),
        lambda: body.reservation_id or str(uuid4()),
        handle,
    )
    return JSONResponse(status_code=status_code, content=content)


@router.post("/reservations/{reservation_id}/commit", tags=["reservations"])
def commit(
    reservation_id: str,
    key: str = Depends(require_key),
    tenant_id: Optional[str] = Depends(tenant_header),
    ledger: StockLedger = Depends(get_ledger),
    store: IdempotencyStore = Depends(get_idempotency),
) -> JSONResponse:
    def handle(resource_id: str):
        result = ledger.commit(resource_id)
        return COMMIT_STATUS[result], ReservationStatusResponse(reservation_id=resource_id, state=result.value).model_dump()

    status_code, content = store.run(
        _scope("commit", tenant_id), key, {"reservation_id": reservation_id}, lambda: reservation_id, handle
    )
    return JSONResponse(status_code=status_code, content=content)


@router.post("/reservations/{reservation_id}/rollback", tags=["reservations"])
def rollback(
    reservation_id: str,
    key: str = Depends(require_key),
    tenant_id: Optional[str] = Depends(tenant_header),
    ledger: StockLedger = Depends(get_ledger),
    store: IdempotencyStore = Depends(get_idempotency),
) -> JSONResponse:
    def handle(resource_id: str):
        result = ledger.rollback(resource_id)
        return ROLLBACK_STATUS[result], ReservationStatusResponse(reservation_id=resource_id, state=result.value).model_dump()

    status_code, content = store.run(
        _scope("rollback", tenant_id), key, {"reservation_id": reservation_id}, lambda: reservation_id, handle
    )
    return JSONResponse(status_code=status_code, content=content)


@router.get("/reservations/{reservation_id}", response_model=ReservationResponse, tags=["reservations"])
def get_reservation(reservation_id: str, ledger: StockLedger = Depends(get_ledger)) -> ReservationResponse:
    view = ledger.get_reservation(reservation_id)
    if view is None:
        raise ServiceError(ErrorKind.NOT_FOUND, "Reservation not found")
    return _reservation_response(view)


def _reservation_response(view) -> ReservationResponse:
    return ReservationResponse(
        reservation_id=view.reservation_id,
        checkout_id=view.checkout_id,
        lines=view.lines,
        state=view.state.value,
        created_at=view.created_at,
        expires_at=view.expires_at,
        terminal_at=view.terminal_at,
    )


# ----------------------------------------------------------------------- stock


@router.get("/stock/{sku_id}", response_model=StockResponse, tags=["stock"])
def get_stock(sku_id: str, ledger: StockLedger = Depends(get_ledger)) -> StockResponse:
    level = ledger.query(sku_id)
    return StockResponse(sku_id=level.sku_id, available=level.available, reserved=level.reserved)


@router.post("/stock/{sku_id}/receipts", tags=["stock"])
def receive_stock(
    sku_id: str,
    body: StockReceiptRequest,
    key: str = Depends(require_key),
    tenant_id: Optional[str] = Depends(tenant_header),
    ledger: StockLedger = Depends(get_ledger),
    store: IdempotencyStore = Depends(get_idempotency),
) -> JSONResponse:
    """Inbound warehouse movement."""

    def handle(resource_id: str):
        level = ledger.receive_stock(resource_id, body.qty)
        return status.HTTP_200_OK, StockResponse(
            sku_id=level.sku_id, available=level.available, reserved=level.reserved
        ).model_dump()

    status_code, content = store.run(
        _scope("receive", tenant_id), key, {"sku_id": sku_id, **body.model_dump()}, lambda: sku_id, handle
    )
    return JSONResponse(status_code=status_code, content=content)


@router.post("/stock/{sku_id}/removals", tags=["stock"])
def remove_stock(
    sku_id: str,
    body: StockRemovalRequest,
    key: str = Depends(require_key),
    tenant_id: Optional[str] = Depends(tenant_header),
    ledger: StockLedger = Depends(get_ledger),
    store: IdempotencyStore = Depends(get_idempotency),
) -> JSONResponse:
    """Write-off of damaged or lost units."""

    def handle(resource_id: str):
        level = ledger.remove_stock(resource_id, body.qty)
        return status.HTTP_200_OK, StockResponse(
            sku_id=level.sku_id, available=level.available, reserved=level.reserved
        ).model_dump()

    status_code, content = store.run(
        _scope("remove", tenant_id), key, {"sku_id": sku_id, **body.model_dump()}, lambda: sku_id, handle
    )
    return JSONResponse(status_code=status_code, content=content)


@router.put("/stock/{sku_id}", tags=["stock"])
def set_stock(
    sku_id: str,
    body: StockCountRequest,
    key: str = Depends(require_key),
    tenant_id: Optional[str] = Depends(tenant_header),
    ledger: StockLedger = Depends(get_ledger),
    store: IdempotencyStore = Depends(get_idempotency),
) -> JSONResponse:
    def handle(resource_id: str):
        level = ledger.set_stock(resource_id, body.available)
        return status.HTTP_200_OK, StockResponse(
            sku_id=level.sku_id, available=level.available, reserved=level.reserved
        ).model_dump()

    status_code, content = store.run(
        _scope("set", tenant_id), key, {"sku_id": sku_id, **body.model_dump()}, lambda: sku_id, handle
    )
    return JSONResponse(status_code=status_code, content=content)


@router.get("/stock/{sku_id}/availability", response_model=AvailabilityResponse, tags=["stock"])
def check_availability(
    sku_id: str, qty: int = Query(default=1, gt=0), ledger: StockLedger = Depends(get_ledger)
) -> AvailabilityResponse:
    return AvailabilityResponse(sku_id=sku_id, qty=qty, available=ledger.check_availability(sku_id, qty))


@router.get("/stock/{sku_id}/reservations", response_model=List[ReservationResponse], tags=["stock"])
def list_reservations(
    sku_id: str,
    state: Optional[ReservationState] = Query(default=None),
    ledger: StockLedger = Depends(get_ledger),
) -> List[ReservationResponse]:
    return [_reservation_response(view) for view in ledger.list_reservations(sku_id, state)]


@router.get("/stock/{sku_id}/alerts", response_model=List[StockAlertResponse], tags=["stock"])
def get_alerts(sku_id: str, ledger: StockLedger = Depends(get_ledger)) -> List[StockAlertResponse]:
    return [
        StockAlertResponse(
            sku_id=alert.sku_id,
            alert_type=alert.alert_type.value,
            current_stock=alert.current_stock,
            created_at=alert.created_at,
        )
        for alert in ledger.get_alerts(sku_id)
    ]


# ------------------------------------------------------------------- checkouts


@router.post("/checkouts", tags=["checkouts"])
async def start_checkout(
    body: StartCheckoutRequest,
    key: str = Depends(require_key),
    tenant_id: Optional[str] = Depends(tenant_header),
    coordinator: CheckoutCoordinator = Depends(get_coordinator),
    store: IdempotencyStore = Depends(get_idempotency),
    admission: Optional[TokenBucket] = Depends(get_admission),
) -> JSONResponse:
    """Start a checkout; the saga runs in the background (202)."""
    if admission is not None and not await admission.try_acquire():
        logger.warning(f"Checkout admission rejected for user {body.user_id}")
        raise ServiceError(ErrorKind.UNAVAILABLE, "Too many checkouts in flight, please retry", code="OVERLOADED")

    def handle(checkout_id: str):
        checkout = coordinator.start_checkout(
            user_id=body.user_id,
            payment_method=body.payment_method,
            cart_snapshot=[line.model_dump() for line in body.cart_snapshot] if body.cart_snapshot is not None else None,
            ttl_secs=body.ttl_secs,
            shipping_address=body.shipping_address,
            tenant_id=tenant_id,
            checkout_id=checkout_id,
        )
        return status.HTTP_202_ACCEPTED, CheckoutResponse.from_checkout(checkout).model_dump()

    status_code, content = await run_in_threadpool(
        store.run, _scope("checkout", tenant_id), key, body.model_dump(), lambda: str(uuid4()), handle
    )
    return JSONResponse(status_code=status_code, content=content)


@router.get("/checkouts/{checkout_id}", response_model=CheckoutResponse, tags=["checkouts"])
def get_checkout(checkout_id: str, coordinator: CheckoutCoordinator = Depends(get_coordinator)) -> CheckoutResponse:
    return CheckoutResponse.from_checkout(coordinator.get_checkout(checkout_id))


@router.post("/checkouts/{checkout_id}/cancel", tags=["checkouts"])
def cancel_checkout(
    checkout_id: str,
    key: str = Depends(require_key),
    tenant_id: Optional[str] = Depends(tenant_header),
    coordinator: CheckoutCoordinator = Depends(get_coordinator),
    store: IdempotencyStore = Depends(get_idempotency),
) -> JSONResponse:
    def handle(resource_id: str):
        checkout = coordinator.cancel_checkout(resource_id)
        return status.HTTP_200_OK, CheckoutResponse.from_checkout(checkout).model_dump()

    status_code, content = store.run(
        _scope("cancel", tenant_id), key, {"checkout_id": checkout_id}, lambda: checkout_id, handle
    )
    return JSONResponse(status_code=status_code, content=content)


@router.get("/health", tags=["health"])
def health(request: Request) -> dict:
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": request.app.state.settings.service_name,
        "version": "1.0.0",
    }
