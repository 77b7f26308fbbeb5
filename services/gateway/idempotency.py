"""
idempotency.py - Idempotency-Key handling for mutating endpoints

Every mutating request carries an ``Idempotency-Key`` header. The first request
with a key claims a row mapping the key to a resource id (a fresh UUID4 unless
the caller named one) and stores the response once the handler returns. A
repeat with the same body gets the stored response back; a repeat with a
different body is a CONFLICT.

Retryable failures (UNAVAILABLE, TIMEOUT, unexpected errors) drop the claim so
the client can retry with the same key. Business answers, including errors
such as OUT_OF_STOCK or CHECKOUT_IN_PROGRESS, are stored like successes.

A claim that never got a response (the process died mid-request) is taken over
by the next retry once it is older than ``claim_ttl_ms``. The retry keeps the
claimed resource id, so the handler sees the same reservation or checkout id.
"""

import hashlib
import json
import logging
from typing import Callable, Optional, Tuple

from sqlalchemy import JSON, BigInteger, Column, Integer, String
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from shared.clock import utc_now_ms
from shared.database import Base
from shared.errors import ErrorKind, ServiceError

logger = logging.getLogger(__name__)

StoredResponse = Tuple[int, dict]


class IdempotencyKey(Base):
    """First response recorded for one (scope, key)."""

    __tablename__ = "idempotency_keys"

    scope = Column(String(128), primary_key=True)
    key = Column(String(255), primary_key=True)
    fingerprint = Column(String(64), nullable=False)
    resource_id = Column(String(64), nullable=False)
    status_code = Column(Integer, nullable=True)  # NULL while the first request runs
    response = Column(JSON, nullable=True)
    created_at = Column(BigInteger, nullable=False)


def fingerprint_of(body: dict) -> str:
    return hashlib.sha256(json.dumps(body, sort_keys=True, default=str).encode("utf-8")).hexdigest()


class IdempotencyRepository:
    """Repository for idempotency keys."""

    def __init__(self, db: Session, clock: Callable[[], int] = utc_now_ms):
        """Initialize with database session."""
        self.db = db
        self.clock = clock

    def get(self, scope: str, key: str) -> Optional[IdempotencyKey]:
        return self.db.get(IdempotencyKey, (scope, key))

    def claim(self, scope: str, key: str, fingerprint: str, resource_id: str) -> IdempotencyKey:
        """Insert a claim; raises IntegrityError when the key is already taken."""
        record = IdempotencyKey(
            scope=scope,
            key=key,
            fingerprint=fingerprint,
            resource_id=resource_id,
            created_at=self.clock(),
        )
        self.db.add(record)
        self.db.flush()
        return record

    def complete(self, scope: str, key: str, status_code: int, response: dict) -> None:
        record = self.get(scope, key)
        if record:
            record.status_code = status_code
            record.response = response
            self.db.flush()

    def take_over(self, record: IdempotencyKey, stale_before: int) -> bool:
        """Re-claim an unfinished claim older than ``stale_before``; False if someone else did."""
        updated = (
            self.db.query(IdempotencyKey)
            .filter(
                IdempotencyKey.scope == record.scope,
                IdempotencyKey.key == record.key,
                IdempotencyKey.status_code.is_(None),
                IdempotencyKey.created_at == record.created_at,
                IdempotencyKey.created_at < stale_before,
            )
            .update({IdempotencyKey.created_at: self.clock()}, synchronize_session=False)
        )
        return bool(updated)

    def release(self, scope: str, key: str) -> None:
        self.db.query(IdempotencyKey).filter(
            IdempotencyKey.scope == scope,
            IdempotencyKey.key == key,
        ).delete(synchronize_session=False)


class IdempotencyStore:
    """Runs a handler at most once per (scope, key) and replays its response."""

    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], int] = utc_now_ms,
        claim_ttl_ms: int = 300_000,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.claim_ttl_ms = claim_ttl_ms

    def _claim(self, scope: str, key: str, fingerprint: str, resource_id: str) -> Tuple[bool, IdempotencyKey]:
        db = self.session_factory()
        try:
            repo = IdempotencyRepository(db, clock=self.clock)
            try:
                record = repo.claim(scope, key, fingerprint, resource_id)
                db.commit()
                return True, record
            except IntegrityError:
                db.rollback()
                existing = repo.get(scope, key)
                if existing is None:
                    raise ServiceError(ErrorKind.UNAVAILABLE, "Please retry the request", code="IDEMPOTENCY_RACE")
                return False, existing
        finally:
            db.close()

    def _take_over(self, record: IdempotencyKey) -> bool:
        db = self.session_factory()
        try:
            taken = IdempotencyRepository(db, clock=self.clock).take_over(record, self.clock() - self.claim_ttl_ms)
            db.commit()
            return taken
        finally:
            db.close()

    def _finish(self, scope: str, key: str, result: Optional[StoredResponse]) -> None:
        db = self.session_factory()
        try:
            repo = IdempotencyRepository(db, clock=self.clock)
            if result is None:
                repo.release(scope, key)
            else:
                repo.complete(scope, key, *result)
            db.commit()
        finally:
            db.close()

    def run(
        self,
        scope: str,
        key: str,
        body: dict,
        new_resource_id: Callable[[], str],
        handler: Callable[[str], StoredResponse],
    ) -> StoredResponse:
        fingerprint = fingerprint_of(body)
        claimed, record = self._claim(scope, key, fingerprint, new_resource_id())
        if not claimed:
            if record.fingerprint != fingerprint:
                raise ServiceError(
                    ErrorKind.CONFLICT,
                    "Idempotency-Key was already used with a different request",
                    code="IDEMPOTENCY_KEY_REUSED",
                )
            if record.status_code is None and not self._take_over(record):
                raise ServiceError(
                    ErrorKind.CONFLICT,
                    "A request with this Idempotency-Key is still in progress",
                    code="REQUEST_IN_PROGRESS",
                )
            if record.status_code is None:
                logger.warning(f"Taking over abandoned claim for {scope} key {key}")
            else:
                logger.info(f"Replaying stored response for {scope} key {key}")
                return record.status_code, record.response

        try:
            result = handler(record.resource_id)
        except ServiceError as e:
            if e.kind.retryable or e.kind is ErrorKind.INTERNAL:
                self._finish(scope, key, None)
                raise
            result = (e.status_code, e.to_dict())
        except Exception:
            self._finish(scope, key, None)
            raise

        self._finish(scope, key, result)
        return result
