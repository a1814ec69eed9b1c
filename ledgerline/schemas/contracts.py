"""
Tool invocation contracts.

ToolInvocation is the single input shape; each operation validates its
`parameters` against one of the params models below. ToolResult is the
single output shape, success or failure.
"""

import base64
import binascii
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ledgerline.models.enums import (
    ErrorKind,
    HeavyOperation,
    InsightPeriod,
    ReviewStatus,
    Sensitivity,
    TxDirection,
)
from ledgerline.pipeline.date_parser import to_statement_local
from ledgerline.schemas.alerts import TenantProfile
from ledgerline.schemas.reconciliation import LedgerEntry
from ledgerline.schemas.transactions import TransactionDraft, new_id


# ── Envelope ─────────────────────────────────────────────────

class ToolInvocation(BaseModel):
    # Kept as a string so unknown operations become a validation failure result
    operation: str
    tenant_id: str = Field(min_length=1, max_length=128)
    parameters: dict[str, Any] = {}


class ToolResult(BaseModel):
    success: bool
    data: Optional[Any] = None
    confidence: Optional[float] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    retriable: bool = False
    details: dict[str, Any] = {}

    @classmethod
    def ok(cls, data: Any, confidence: Optional[float] = None) -> "ToolResult":
        return cls(success=True, data=data, confidence=confidence)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str, retriable: bool, details: Optional[dict] = None) -> "ToolResult":
        return cls(success=False, error_kind=kind, message=message, retriable=retriable, details=details or {})


# ── Shared inputs ────────────────────────────────────────────

class InlineTransaction(BaseModel):
    """A transaction supplied directly by the caller instead of loaded from storage."""
    id: str = Field(default_factory=new_id)
    timestamp: datetime
    amount: Decimal = Field(ge=0)
    direction: TxDirection
    counterparty_name: Optional[str] = None
    counterparty_phone: Optional[str] = None
    account_number: Optional[str] = None
    reference: Optional[str] = None
    category: Optional[str] = None
    raw_text: str = ""
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    @field_validator("timestamp")
    @classmethod
    def _statement_local(cls, value: datetime) -> datetime:
        return to_statement_local(value)

    def to_draft(self, tenant_id: str) -> TransactionDraft:
        return TransactionDraft(tenant_id=tenant_id, review_status=ReviewStatus.UNREVIEWED, **self.model_dump())


# ── Operation parameters ─────────────────────────────────────

class ExtractParams(BaseModel):
    text: Optional[str] = None
    image_base64: Optional[str] = None
    learn: bool = True

    @model_validator(mode="after")
    def _needs_input(self):
        if not (self.text and self.text.strip()) and not self.image_base64:
            raise ValueError("either text or image_base64 is required")
        return self

    @field_validator("image_base64")
    @classmethod
    def _valid_base64(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            try:
                base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError(f"image_base64 is not valid base64: {e}") from e
        return value

    def image_bytes(self) -> Optional[bytes]:
        return base64.b64decode(self.image_base64) if self.image_base64 else None

    def line_count(self) -> int:
        return len([line for line in (self.text or "").splitlines() if line.strip()])


class CategorizeParams(BaseModel):
    transaction_ids: Optional[list[str]] = None
    transactions: Optional[list[InlineTransaction]] = None
    learn: bool = True

    @model_validator(mode="after")
    def _needs_input(self):
        if self.transaction_ids is None and self.transactions is None:
            raise ValueError("either transaction_ids or transactions is required")
        return self


class ConfirmCategoryParams(BaseModel):
    transaction_id: str
    category: str = Field(min_length=1, max_length=64)


class DetectAnomaliesParams(BaseModel):
    as_of: Optional[datetime] = None
    sensitivity: Sensitivity = Sensitivity.MEDIUM
    profile: Optional[TenantProfile] = None
    transactions: Optional[list[InlineTransaction]] = None

    @field_validator("as_of")
    @classmethod
    def _statement_local(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_statement_local(value)

    def record_count(self) -> int:
        return len(self.transactions or [])


class ReconcileParams(BaseModel):
    period_start: date
    period_end: date
    ledger_entries: list[LedgerEntry]
    transactions: Optional[list[InlineTransaction]] = None

    @model_validator(mode="after")
    def _ordered_period(self):
        if self.period_end < self.period_start:
            raise ValueError("period_end is before period_start")
        return self

    def record_count(self) -> int:
        return max(len(self.ledger_entries), len(self.transactions or []))


class MultiPeriodAnalyticsParams(BaseModel):
    periods: list[InsightPeriod] = Field(default=[InsightPeriod.WEEK, InsightPeriod.MONTH], min_length=1)
    as_of: Optional[datetime] = None

    @field_validator("as_of")
    @classmethod
    def _statement_local(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_statement_local(value)


class SubmitHeavyJobParams(BaseModel):
    operation: HeavyOperation
    payload: dict[str, Any] = {}


class JobStatusParams(BaseModel):
    job_id: str


class CancelJobParams(BaseModel):
    job_id: str
    reason: str = "cancelled by caller"


# Payload model for each heavy operation
HEAVY_PAYLOADS: dict[HeavyOperation, type[BaseModel]] = {
    HeavyOperation.BULK_EXTRACT: ExtractParams,
    HeavyOperation.MULTI_PERIOD_ANALYTICS: MultiPeriodAnalyticsParams,
    HeavyOperation.DETECT_ANOMALIES: DetectAnomaliesParams,
    HeavyOperation.RECONCILE: ReconcileParams,
}
