"""
errors.py - Error kinds shared by the ledger, the checkout saga and the façade

Every failure that crosses a component boundary is classified into one ErrorKind.
The kind decides whether a caller may retry and which HTTP status the façade
answers with. ``code`` is a stable machine string, ``message`` is safe to show a
user; neither ever carries exception text from a store or a peer.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INVALID = "INVALID"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    UNAVAILABLE = "UNAVAILABLE"
    TIMEOUT = "TIMEOUT"
    INTERNAL = "INTERNAL"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.UNAVAILABLE, ErrorKind.TIMEOUT)


HTTP_STATUS = {
    ErrorKind.INVALID: 422,
    ErrorKind.OUT_OF_STOCK: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAVAILABLE: 503,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.INTERNAL: 500,
}


class ServiceError(Exception):
    """Error surfaced to API callers as ``{code, message}``."""

    def __init__(self, kind: ErrorKind, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.code = code or kind.value
        self.message = message

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class PeerError(Exception):
    """Failure reported by (or while reaching) a payment, order or cart peer."""

    def __init__(self, kind: ErrorKind, code: str, detail: str = ""):
        super().__init__(f"{code}: {detail}" if detail else code)
        self.kind = kind
        self.code = code
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.kind.retryable
