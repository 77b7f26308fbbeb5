"""
app.py - Reservation Service (Stock Ledger + Checkout Saga)

PURPOSE:
    Hosts the stock ledger, the checkout saga coordinator and their background
    workers behind one FastAPI application.

RESPONSIBILITIES:
    - Reserve / commit / roll back stock against expiring reservations
    - Run checkout sagas (reserve -> charge -> create order -> commit)
    - Expire lapsed reservations (Expiry Reaper, lease-held)
    - Publish outbox events to Kafka (Outbox Publisher, lease-held)
    - Purge finished checkouts past retention (Checkout Sweeper, lease-held)

API ENDPOINTS:
    POST /reservations                     - Reserve (Idempotency-Key)
    POST /reservations/{id}/commit         - Commit (Idempotency-Key)
    POST /reservations/{id}/rollback       - Rollback (Idempotency-Key)
    GET  /reservations/{id}                - Reservation lookup
    GET  /stock/{sku_id}                   - Stock query
    POST /stock/{sku_id}/receipts          - Inbound stock (Idempotency-Key)
    POST /checkouts                        - Start checkout (Idempotency-Key)
    GET  /checkouts/{id}                   - Checkout state
    POST /checkouts/{id}/cancel            - Cancel checkout (Idempotency-Key)
    GET  /health                           - Health check

KAFKA EVENTS:
    PUBLISHED (via Outbox Pattern):
        - reservation.held / committed / released / expired
        - order.created / order.failed

ERRORS:
    Every error response is {"code", "message"}; internal exception text never
    reaches a caller.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, List, Optional

import redis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from services.checkout_service.admission import TokenBucket
from services.checkout_service.peers import (
    CartClient,
    HttpCartClient,
    HttpOrderClient,
    HttpPaymentClient,
    OrderClient,
    PaymentClient,
)
from services.checkout_service.saga_handler import CheckoutCoordinator, CheckoutSweeper
from services.gateway.config import Settings
from services.gateway.idempotency import IdempotencyStore
from services.gateway.routes import router
from services.inventory_service.ledger import StockLedger
from services.inventory_service.reaper import ExpiryReaper
from services.inventory_service.seed_data import seed_stock
from services.outbox_service.publisher import EventProducer, OutboxPublisher
from services.outbox_service.repository import OutboxRepository
from shared.database import create_db_engine, create_session_factory, init_db
from shared.errors import ErrorKind, ServiceError
from shared.kafka_client import BaseKafkaProducer
from shared.lease import RedisLease
from shared.topic_initializer import create_topics
from shared.worker import PeriodicWorker

logger = logging.getLogger(__name__)


@dataclass
class Peers:
    payment: PaymentClient
    orders: OrderClient
    cart: CartClient


def build_peers(settings: Settings) -> Peers:
    return Peers(
        payment=HttpPaymentClient(settings.payment_service_url, settings.payment_timeout),
        orders=HttpOrderClient(settings.order_service_url, settings.order_timeout),
        cart=HttpCartClient(settings.cart_service_url, settings.cart_timeout),
    )


def _start_workers(app: FastAPI) -> List[PeriodicWorker]:
    settings: Settings = app.state.settings
    redis_client = redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        db=settings.redis_db,
        decode_responses=True,
    )

    def lease(name: str) -> RedisLease:
        return RedisLease(redis_client, f"{settings.service_name}:{name}", ttl_ms=settings.lease_ttl_ms)

    workers: List[PeriodicWorker] = [
        ExpiryReaper(
            app.state.ledger,
            poll_interval=settings.reaper_poll_interval,
            batch_size=settings.reaper_batch_size,
            lease=lease("expiry-reaper"),
        ),
        CheckoutSweeper(
            app.state.coordinator,
            retention_ms=settings.checkout_retention_secs * 1000,
            poll_interval=settings.sweeper_poll_interval,
            lease=lease("checkout-sweeper"),
        ),
    ]

    producer: Optional[EventProducer] = app.state.producer
    if producer is None and settings.kafka_enabled:
        create_topics(
            settings.kafka_bootstrap_servers,
            num_partitions=settings.kafka_num_partitions,
            replication_factor=settings.kafka_replication_factor,
        )
        producer = BaseKafkaProducer(settings.kafka_bootstrap_servers, client_id=f"{settings.service_name}-producer")
        app.state.producer = producer
        logger.info("Kafka producer initialized")
    if producer is not None:
        workers.append(
            OutboxPublisher(
                app.state.session_factory,
                producer,
                poll_interval=settings.outbox_poll_interval,
                batch_size=settings.outbox_batch_size,
                lease=lease("outbox-publisher"),
            )
        )
    else:
        logger.warning("Kafka disabled, outbox entries stay undispatched")

    for worker in workers:
        worker.start()
    return workers


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage app lifecycle."""
    settings: Settings = app.state.settings
    logger.info(f"Starting {settings.service_name}...")

    init_db(app.state.engine)
    db = app.state.session_factory()
    try:
        OutboxRepository(db, partitions=settings.outbox_partitions).ensure_cursors()
        db.commit()
    finally:
        db.close()

    if settings.seed_stock:
        seed_stock(app.state.ledger, settings.seed_stock)

    workers: List[PeriodicWorker] = _start_workers(app) if app.state.start_workers else []
    app.state.workers = workers
    app.state.coordinator.resume_pending()

    yield

    logger.info(f"Shutting down {settings.service_name}...")
    for worker in workers:
        worker.stop()
    app.state.coordinator.shutdown(wait=False)
    if isinstance(app.state.producer, BaseKafkaProducer):
        app.state.producer.flush()


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = sorted({".".join(str(part) for part in error["loc"][1:]) or "request" for error in exc.errors()})
        return JSONResponse(
            status_code=422,
            content={"code": ErrorKind.INVALID.value, "message": f"Invalid request: {', '.join(fields)}"},
        )

    @app.exception_handler(OperationalError)
    async def store_error_handler(request: Request, exc: OperationalError):
        logger.error(f"Store unavailable: {exc.orig}")
        return JSONResponse(
            status_code=503,
            content={"code": ErrorKind.UNAVAILABLE.value, "message": "Service temporarily unavailable, please retry"},
        )

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={"code": ErrorKind.INTERNAL.value, "message": "Internal error"},
        )


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    producer: Optional[EventProducer] = None,
    peers: Optional[Peers] = None,
    start_workers: bool = True,
    clock: Optional[Callable[[], int]] = None,
    executor=None,
) -> FastAPI:
    settings = settings or Settings()
    engine = engine or create_db_engine(settings.sqlalchemy_url)
    session_factory = create_session_factory(engine)
    peers = peers or build_peers(settings)

    clock_kwargs = {"clock": clock} if clock else {}
    ledger = StockLedger(
        session_factory,
        outbox_partitions=settings.outbox_partitions,
        low_stock_threshold=settings.low_stock_threshold,
        **clock_kwargs,
    )
    coordinator = CheckoutCoordinator(
        session_factory,
        ledger,
        payment=peers.payment,
        orders=peers.orders,
        cart=peers.cart,
        policy=settings.saga_policy(),
        executor=executor or ThreadPoolExecutor(max_workers=settings.saga_workers, thread_name_prefix="checkout-saga"),
        outbox_partitions=settings.outbox_partitions,
        **clock_kwargs,
    )

    app = FastAPI(title="Reservation Service", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.producer = producer
    app.state.ledger = ledger
    app.state.coordinator = coordinator
    app.state.admission = TokenBucket(settings.admission_rate, settings.admission_burst)
    app.state.idempotency = IdempotencyStore(
        session_factory, claim_ttl_ms=settings.idempotency_claim_ttl_secs * 1000, **clock_kwargs
    )
    app.state.start_workers = start_workers
    app.state.workers = []

    register_error_handlers(app)
    app.include_router(router)
    return app
