import logging
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

# Every table lives on this metadata so one session can write stock counters,
# reservations, checkouts and outbox rows in the same transaction.
Base = declarative_base()


def build_database_url(
    user: str,
    password: str,
    host: str,
    port: str,
    db: str,
    override: Optional[str] = None,
) -> str:
    """Return the SQLAlchemy URL, preferring an explicit override."""
    if override:
        return override
    return f"postgresql://{user}:{password}@{host}:{port}/{db}"


def _enable_sqlite_immediate_transactions(engine: Engine) -> None:
    """Make pysqlite take the write lock at BEGIN instead of at the first write."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA busy_timeout = 10000")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for Postgres (production) or SQLite (local runs, tests)."""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )
        _enable_sqlite_immediate_transactions(engine)
        return engine
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables registered on Base."""
    # Importing the model modules registers their tables.
    from services.checkout_service import models as _checkout_models  # noqa: F401
    from services.gateway import idempotency as _idempotency_models  # noqa: F401
    from services.inventory_service import models as _inventory_models  # noqa: F401
    from services.outbox_service import models as _outbox_models  # noqa: F401

    logger.info("Initializing database...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized")


def check_database(engine: Engine) -> None:
    """Round-trip a trivial query; raises OperationalError if the store is down."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
