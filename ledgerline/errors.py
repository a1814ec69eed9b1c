"""
Error taxonomy.

Every error carries a machine-readable kind, a human-readable message and
whether the caller may retry. The tool dispatcher converts these into
failure results; anything else is reported as an internal error.
"""

from datetime import datetime
from typing import Optional

from ledgerline.models.enums import ErrorKind


class LedgerlineError(Exception):
    """Base class for all errors surfaced to callers."""

    kind: ErrorKind = ErrorKind.INTERNAL
    retriable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def details(self) -> dict:
        return {}


class DraftValidationError(LedgerlineError):
    """A single record has a bad field. Rejects the record, never the batch."""

    kind = ErrorKind.VALIDATION

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}")

    def details(self) -> dict:
        return {"field": self.field}


class RequestValidationError(LedgerlineError):
    """The invocation itself is malformed (unknown operation, bad parameters)."""

    kind = ErrorKind.VALIDATION


class CapabilityUnavailableError(LedgerlineError):
    """An optional capability (AI, OCR) is down, disabled or out of quota."""

    kind = ErrorKind.CAPABILITY_UNAVAILABLE
    retriable = True

    def __init__(self, capability: str, message: str):
        self.capability = capability
        super().__init__(f"[{capability}] {message}")

    def details(self) -> dict:
        return {"capability": self.capability}


class OperationTimeoutError(LedgerlineError):
    """An operation exceeded its time budget. Safe to retry."""

    kind = ErrorKind.TIMEOUT
    retriable = True

    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds:g}s")


class QuotaExceededError(LedgerlineError):
    """A tenant exhausted a quota window. Caller must back off until reset_at."""

    kind = ErrorKind.QUOTA_EXCEEDED
    retriable = True

    def __init__(self, tenant_id: str, capability: str, reset_at: datetime, limit: Optional[int] = None):
        self.tenant_id = tenant_id
        self.capability = capability
        self.reset_at = reset_at
        self.limit = limit
        super().__init__(
            f"Quota exceeded for '{capability}'. Resets at {reset_at.isoformat()}"
        )

    def details(self) -> dict:
        return {"capability": self.capability, "reset_at": self.reset_at.isoformat(), "limit": self.limit}


class NotFoundError(LedgerlineError):
    kind = ErrorKind.NOT_FOUND


class StorageError(LedgerlineError):
    """Storage unreachable or a write failed. No partial state is left behind."""

    kind = ErrorKind.STORAGE_UNAVAILABLE
    retriable = True


class InvalidJobTransitionError(LedgerlineError):
    """A job state change would move backwards or leave a terminal state."""


class JobCancelledError(LedgerlineError):
    """Raised inside a job handler at a checkpoint after cancellation was requested."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"cancelled: {reason}")


class QueueFullError(LedgerlineError):
    """The tenant already has the maximum number of pending jobs."""

    kind = ErrorKind.QUOTA_EXCEEDED
    retriable = True

    def __init__(self, tenant_id: str, limit: int):
        self.tenant_id = tenant_id
        self.limit = limit
        super().__init__(f"tenant has {limit} pending jobs; wait for some to finish")

    def details(self) -> dict:
        return {"capability": "jobs", "limit": self.limit}
