from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from services.checkout_service.saga_handler import SagaPolicy, StepPolicy
from shared.database import build_database_url
from shared.retry import Backoff


class Settings(BaseSettings):
    """Application settings, read from the environment or ``.env``."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    service_name: str = Field(default="reservation-service")
    port: int = Field(default=8000)
    log_level: str = Field(default="INFO")

    # Database
    postgres_user: str = Field(default="postgres")
    postgres_password: str = Field(default="postgres")
    postgres_host: str = Field(default="localhost")
    postgres_port: str = Field(default="5432")
    postgres_db: str = Field(default="stock_reservation")
    database_url: Optional[str] = Field(default=None)

    # Kafka
    kafka_enabled: bool = Field(default=True)
    kafka_bootstrap_servers: str = Field(default="localhost:9092")
    kafka_num_partitions: int = Field(default=3, gt=0)
    kafka_replication_factor: int = Field(default=3, gt=0)

    # Redis (worker leases)
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_db: int = Field(default=0)
    lease_ttl_ms: int = Field(default=5000, gt=0)

    # Background workers
    outbox_partitions: int = Field(default=8, gt=0)
    outbox_poll_interval: float = Field(default=1.0, gt=0)
    outbox_batch_size: int = Field(default=500, gt=0)
    reaper_poll_interval: float = Field(default=1.0, gt=0)
    reaper_batch_size: int = Field(default=100, gt=0)
    sweeper_poll_interval: float = Field(default=60.0, gt=0)
    checkout_retention_secs: int = Field(default=7 * 24 * 3600, gt=0)
    low_stock_threshold: int = Field(default=5, ge=0)

    # Peers
    payment_service_url: str = Field(default="http://localhost:8003")
    order_service_url: str = Field(default="http://localhost:8002")
    cart_service_url: str = Field(default="http://localhost:8001")
    payment_timeout: float = Field(default=10.0, gt=0)
    payment_budget: float = Field(default=30.0, gt=0)
    order_timeout: float = Field(default=5.0, gt=0)
    order_budget: float = Field(default=15.0, gt=0)
    cart_timeout: float = Field(default=3.0, gt=0)
    cart_budget: float = Field(default=10.0, gt=0)

    # Checkout saga
    payment_latency_p99: float = Field(default=10.0, gt=0)
    reservation_safety_margin: float = Field(default=30.0, ge=0)
    saga_workers: int = Field(default=8, gt=0)
    admission_rate: float = Field(default=50.0, gt=0)
    admission_burst: float = Field(default=100.0, gt=0)

    # Idempotency claims without a response are abandoned after this long
    idempotency_claim_ttl_secs: int = Field(default=300, gt=0)

    # "SKU-1=10,SKU-2=5" seeds empty SKUs at startup
    seed_stock: str = Field(default="")

    @property
    def sqlalchemy_url(self) -> str:
        return build_database_url(
            self.postgres_user,
            self.postgres_password,
            self.postgres_host,
            self.postgres_port,
            self.postgres_db,
            override=self.database_url,
        )

    def saga_policy(self) -> SagaPolicy:
        return SagaPolicy(
            payment=StepPolicy(rpc_timeout=self.payment_timeout, budget=self.payment_budget),
            order=StepPolicy(rpc_timeout=self.order_timeout, budget=self.order_budget),
            cart=StepPolicy(rpc_timeout=self.cart_timeout, budget=self.cart_budget),
            backoff=Backoff(),
            payment_latency_p99=self.payment_latency_p99,
            safety_margin=self.reservation_safety_margin,
        )
