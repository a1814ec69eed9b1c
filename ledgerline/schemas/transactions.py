"""
Pydantic transaction schemas: drafts, extraction and normalization results,
learned category patterns.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from ledgerline.models.enums import (
    AiStatus,
    ExtractionMethod,
    ReviewStatus,
    TxDirection,
    is_inflow,
)


def new_id() -> str:
    return uuid.uuid4().hex


class TransactionDraft(BaseModel):
    """
    A transaction produced by extraction.
    After normalization amount, direction and timestamp are guaranteed present.
    """
    id: str = Field(default_factory=new_id)
    tenant_id: str
    reference: Optional[str] = None
    timestamp: Optional[datetime] = None
    amount: Optional[Decimal] = None
    direction: Optional[TxDirection] = None
    counterparty_name: Optional[str] = None
    counterparty_phone: Optional[str] = None
    account_number: Optional[str] = None
    transaction_cost: Optional[Decimal] = None
    balance_after: Optional[Decimal] = None
    raw_text: str = ""
    confidence: float = 0.0
    extraction_method: ExtractionMethod = ExtractionMethod.RULE_BASED
    category: Optional[str] = None
    category_confidence: Optional[float] = None
    review_status: ReviewStatus = ReviewStatus.UNREVIEWED

    model_config = {"from_attributes": True}

    @property
    def is_inflow(self) -> bool:
        return self.direction is not None and is_inflow(self.direction)

    @property
    def signed_amount(self) -> Decimal:
        """Amount with outflows negative."""
        amount = self.amount or Decimal("0")
        return amount if self.is_inflow else -amount

    def descriptive_text(self) -> str:
        """Text the categorizer looks at: counterparty plus paybill account."""
        parts = [self.counterparty_name or "", self.account_number or ""]
        return " ".join(p for p in parts if p).strip()


class SkippedLine(BaseModel):
    """A line that produced no draft, kept for diagnostics."""
    line_number: int
    text: str
    reason: str


class ExtractionResult(BaseModel):
    drafts: list[TransactionDraft] = []
    skipped: list[SkippedLine] = []
    ai_status: AiStatus = AiStatus.DISABLED
    ai_detail: Optional[str] = None
    quota_reset_at: Optional[datetime] = None

    @property
    def mean_confidence(self) -> float:
        if not self.drafts:
            return 0.0
        return sum(d.confidence for d in self.drafts) / len(self.drafts)


class RejectedDraft(BaseModel):
    draft: TransactionDraft
    field: str
    message: str


class NormalizationResult(BaseModel):
    accepted: list[TransactionDraft] = []
    rejected: list[RejectedDraft] = []


class CategoryPattern(BaseModel):
    """One row of the tenant-scoped online-learning table."""
    tenant_id: str
    keyword: str
    category: str
    weight: float
    hit_count: int = 0
    last_reinforced_at: datetime

    @property
    def id(self) -> str:
        return pattern_id(self.tenant_id, self.keyword, self.category)


def pattern_id(tenant_id: str, keyword: str, category: str) -> str:
    return f"{tenant_id}:{keyword}:{category}"


class CategoryAssignment(BaseModel):
    transaction_id: str
    category: str
    confidence: float
    matched_keywords: list[str] = []
    learned: bool = False


class IngestionResult(BaseModel):
    """Outcome of one extract call: extraction, validation, categorization, persistence."""
    accepted: list[TransactionDraft] = []
    rejected: list[RejectedDraft] = []
    skipped: list[SkippedLine] = []
    ai_status: AiStatus = AiStatus.DISABLED
    ai_detail: Optional[str] = None
    quota_reset_at: Optional[datetime] = None
    mean_confidence: float = 0.0
    needs_review: int = 0
    total_inflow: Decimal = Decimal("0.00")
    total_outflow: Decimal = Decimal("0.00")
