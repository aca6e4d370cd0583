# Overview: Typed failures returned to callers of the inventory commands.

"""
Error kinds

- Business rejections (AlreadyAppliedError, InvalidTransitionError) are not
  server faults. A caller shell should answer them with a 4xx-class status.
- Caller-input errors (NotFoundError, PartialLineItemError, ValidationError,
  InvalidDeltaError) mean the command payload or referenced rows are wrong.
- ConcurrencyConflictError is retryable: resubmit the same command.
- Anything else (storage unavailable, programming errors) propagates as-is.
"""

from __future__ import annotations


class InventoryError(Exception):
    """Base class for every typed inventory failure."""

    code = "INVENTORY_ERROR"
    retryable = False

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **({"details": self.details} if self.details else {}),
        }


class NotFoundError(InventoryError):
    """Raised when a document or product does not exist."""

    code = "NOT_FOUND"


class InvalidTransitionError(InventoryError):
    """Raised when a status edge is not permitted by the document's state machine."""

    code = "INVALID_TRANSITION"


class AlreadyAppliedError(InventoryError):
    """Raised when a document's stock effect has already been committed."""

    code = "ALREADY_APPLIED"

    def __init__(self, message: str, applied_at=None, **details):
        super().__init__(message, **details)
        self.applied_at = applied_at


class PartialLineItemError(InventoryError):
    """Raised when one or more line items reference unknown products."""

    code = "PARTIAL_LINE_ITEM_FAILURE"

    def __init__(self, message: str, missing_product_ids=(), **details):
        super().__init__(message, missing_product_ids=list(missing_product_ids), **details)
        self.missing_product_ids = list(missing_product_ids)


class ConcurrencyConflictError(InventoryError):
    """Raised when a lock or optimistic-version conflict survives every retry."""

    code = "CONCURRENCY_CONFLICT"
    retryable = True


class InvalidDeltaError(InventoryError):
    """Raised when a change would drive quantity on hand below zero."""

    code = "INVALID_DELTA"


class ValidationError(InventoryError):
    """Raised when a command payload is malformed."""

    code = "VALIDATION_ERROR"


class ImmutableRecordError(InventoryError):
    """Raised when code tries to update or delete an append-only row."""

    code = "IMMUTABLE_RECORD"
