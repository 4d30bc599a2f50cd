# Overview: Typed service errors carrying an HTTP status and a reason code.

"""
Service Error Taxonomy

WHY: Domain services never build HTTP responses. They raise a ServiceError
that carries the status and reason code; the route layer (and the write
pipeline in decorators.idempotent_write) is the only place translating it
into a response body.

REASON CODES:
- VALIDATION_ERROR: malformed or out-of-range input (400)
- BUSINESS_RULE: generic rule violation (400/409)
- NOT_FOUND: entity missing or outside the caller's store (404)
- INTERNAL_ERROR: unexpected failure (500, generic message)
- domain specific codes (INSUFFICIENT_STOCK, ALREADY_RECEIVED, ...)
"""

from __future__ import annotations


class ServiceError(Exception):
    """Base class for errors raised by domain services."""

    status = 400
    reason_code = "BUSINESS_RULE"

    def __init__(self, message: str, *, status: int | None = None, reason_code: str | None = None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status
        if reason_code is not None:
            self.reason_code = reason_code

    def to_body(self) -> dict:
        return {"error": self.message, "reason_code": self.reason_code}


class NotFoundError(ServiceError):
    status = 404
    reason_code = "NOT_FOUND"


class StockServiceError(ServiceError):
    """Raised when a stock movement violates a quantity invariant."""


class PurchaseServiceError(ServiceError):
    """Raised for purchase order lifecycle and AP settlement rule violations."""
