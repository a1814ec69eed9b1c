"""
Reconciliation schemas. Unmatched items are a normal outcome, not an error.
"""

from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class LedgerEntry(BaseModel):
    """An entry from the business's own books. Amount may be signed."""
    id: str
    date: date
    amount: Decimal
    description: Optional[str] = None
    reference: Optional[str] = None


class MatchedPair(BaseModel):
    transaction_id: str
    ledger_entry_id: str
    score: float
    date_delta_days: int
    name_similarity: float


class ReconciliationSummary(BaseModel):
    matched: int = 0
    unmatched_transactions: int = 0
    unmatched_entries: int = 0
    transaction_count: int = 0
    entry_count: int = 0
    match_rate: float = 0.0


class ReconciliationResult(BaseModel):
    tenant_id: str
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    matched: list[MatchedPair] = []
    unmatched_transaction_ids: list[str] = []
    unmatched_entry_ids: list[str] = []
    summary: ReconciliationSummary = ReconciliationSummary()
