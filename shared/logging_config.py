"""
logging_config.py - Centralized JSON Logging Configuration

PURPOSE:
    Structured JSON logging for the reservation service, its background workers
    and the checkout saga. Every record carries the service name; saga and ledger
    code attach correlation keys through ``extra=``.

JSON LOG FIELDS:
    - timestamp: ISO 8601, UTC
    - level, logger, message
    - service_name: injected by ServiceFilter
    - checkout_id / reservation_id / event_type / tenant_id: when supplied via extra
    - exception: stack trace for logger.exception(...)

USAGE:
    from shared.logging_config import setup_logging
    setup_logging("reservation-service", level="INFO")

    logger = logging.getLogger(__name__)
    logger.info("Reservation held", extra={"reservation_id": rid})
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict

CONTEXT_FIELDS = ("correlation_id", "checkout_id", "reservation_id", "event_type", "tenant_id")


class JsonFormatter(logging.Formatter):
    """Custom formatter that outputs JSON logs with correlation context."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "service_name"):
            log_data["service_name"] = record.service_name
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ServiceFilter(logging.Filter):
    """Stamp every record with the owning service name."""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        return True


def setup_logging(service_name: str, level: str = "INFO") -> None:
    """Setup JSON logging for a service."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    # Handler-level so records propagated from child loggers are stamped too.
    handler.addFilter(ServiceFilter(service_name))

    logger = logging.getLogger()
    logger.setLevel(level)
    logger.addHandler(handler)
