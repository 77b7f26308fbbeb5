"""
main.py - Reservation Service entry point

USAGE:
    python -m services.gateway.main

EXIT CODES:
    0    normal shutdown
    64   configuration error
    69   store unavailable at startup
    70   internal fatal error
    130  interrupted by signal
"""

import logging
import sys

import uvicorn
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from services.gateway.app import create_app
from services.gateway.config import Settings
from shared.database import check_database, create_db_engine
from shared.logging_config import setup_logging

EXIT_OK = 0
EXIT_CONFIG = 64
EXIT_UNAVAILABLE = 69
EXIT_INTERNAL = 70
EXIT_SIGNALLED = 130

logger = logging.getLogger(__name__)


def main() -> int:
    try:
        settings = Settings()
    except ValidationError as e:
        setup_logging("reservation-service")
        logger.error(f"Invalid configuration: {e.error_count()} error(s) in {[err['loc'] for err in e.errors()]}")
        return EXIT_CONFIG

    setup_logging(settings.service_name, settings.log_level)

    try:
        engine = create_db_engine(settings.sqlalchemy_url)
        check_database(engine)
    except OperationalError as e:
        logger.error(f"Database unavailable at startup: {e.orig}")
        return EXIT_UNAVAILABLE

    try:
        app = create_app(settings, engine=engine)
        uvicorn.run(app, host="0.0.0.0", port=settings.port, log_config=None)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return EXIT_SIGNALLED
    except SystemExit as e:
        # uvicorn exits non-zero when the lifespan startup fails.
        if e.code not in (None, 0):
            logger.error(f"Server startup failed (exit {e.code})")
            return EXIT_INTERNAL
    except Exception:
        logger.exception("Fatal error")
        return EXIT_INTERNAL

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
