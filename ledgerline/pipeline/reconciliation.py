"""
Greedy best-match reconciliation of transactions against ledger entries.

Candidate pair: |entry amount| == draft amount exactly, and |date delta| <= tolerance.
    score = 0.5 + 0.3 * (1 - delta / (tolerance + 1)) + 0.2 * name_similarity
Pairs are taken in descending score (ties: smaller delta, then input order);
each side is consumed at most once. Everything not paired is reported unmatched.

match_transactions() is a pure function of its inputs.
"""

import re
from datetime import date, datetime, timedelta
from typing import Optional

import structlog
from pydantic import BaseModel
from rapidfuzz import fuzz

from ledgerline.config import settings
from ledgerline.models.enums import RecordKind
from ledgerline.observability.metrics import reconciliation_match_rate
from ledgerline.schemas.reconciliation import (
    LedgerEntry,
    MatchedPair,
    ReconciliationResult,
    ReconciliationSummary,
)
from ledgerline.schemas.transactions import TransactionDraft
from ledgerline.storage.base import RecordQuery, Storage

logger = structlog.get_logger(__name__)

AMOUNT_WEIGHT = 0.5
DATE_WEIGHT = 0.3
NAME_WEIGHT = 0.2


class ReconciliationConfig(BaseModel):
    date_tolerance_days: int = 1

    @classmethod
    def from_settings(cls) -> "ReconciliationConfig":
        return cls(date_tolerance_days=settings.RECON_DATE_TOLERANCE_DAYS)


def _normalize_name(text: Optional[str]) -> str:
    if not text:
        return ""
    s = re.sub(r"[^a-z0-9 ]", " ", text.lower())
    s = re.sub(r"\b(ltd|limited|co|company|enterprises?|mpesa|m-pesa)\b", " ", s)
    return re.sub(r"\s+", " ", s).strip()


def name_similarity(draft: TransactionDraft, entry: LedgerEntry) -> float:
    if draft.reference and entry.reference and draft.reference.upper() == entry.reference.strip().upper():
        return 1.0
    a = _normalize_name(draft.counterparty_name)
    b = _normalize_name(entry.description)
    if not a or not b:
        return 0.0
    return fuzz.token_sort_ratio(a, b) / 100.0


def _score(delta_days: int, similarity: float, tolerance: int) -> float:
    return AMOUNT_WEIGHT + DATE_WEIGHT * (1 - delta_days / (tolerance + 1)) + NAME_WEIGHT * similarity


def match_transactions(
    transactions: list[TransactionDraft],
    entries: list[LedgerEntry],
    config: Optional[ReconciliationConfig] = None,
    tenant_id: str = "",
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
) -> ReconciliationResult:
    config = config or ReconciliationConfig()
    tolerance = config.date_tolerance_days

    candidates = []
    for ti, draft in enumerate(transactions):
        if draft.amount is None or draft.timestamp is None:
            continue
        draft_day = draft.timestamp.date()
        for ei, entry in enumerate(entries):
            if abs(entry.amount) != draft.amount:
                continue
            delta = abs((entry.date - draft_day).days)
            if delta > tolerance:
                continue
            similarity = name_similarity(draft, entry)
            candidates.append((_score(delta, similarity, tolerance), delta, ti, ei, similarity))

    # Highest score first; ties to the smaller date delta, then input order
    candidates.sort(key=lambda c: (-c[0], c[1], c[2], c[3]))

    used_tx: set[int] = set()
    used_entries: set[int] = set()
    matched = []
    for score, delta, ti, ei, similarity in candidates:
        if ti in used_tx or ei in used_entries:
            continue
        used_tx.add(ti)
        used_entries.add(ei)
        matched.append(MatchedPair(
            transaction_id=transactions[ti].id,
            ledger_entry_id=entries[ei].id,
            score=round(score, 4),
            date_delta_days=delta,
            name_similarity=round(similarity, 4),
        ))

    unmatched_tx = [t.id for i, t in enumerate(transactions) if i not in used_tx]
    unmatched_entries = [e.id for i, e in enumerate(entries) if i not in used_entries]

    summary = ReconciliationSummary(
        matched=len(matched),
        unmatched_transactions=len(unmatched_tx),
        unmatched_entries=len(unmatched_entries),
        transaction_count=len(transactions),
        entry_count=len(entries),
        match_rate=round(len(matched) / len(entries), 4) if entries else 0.0,
    )
    return ReconciliationResult(
        tenant_id=tenant_id,
        period_start=period_start,
        period_end=period_end,
        matched=matched,
        unmatched_transaction_ids=unmatched_tx,
        unmatched_entry_ids=unmatched_entries,
        summary=summary,
    )


class ReconciliationService:
    """Loads the period's drafts and runs the matcher."""

    def __init__(self, storage: Storage, config: Optional[ReconciliationConfig] = None):
        self.storage = storage
        self.config = config or ReconciliationConfig.from_settings()

    async def run(
        self,
        tenant_id: str,
        entries: list[LedgerEntry],
        period_start: date,
        period_end: date,
        transactions: Optional[list[TransactionDraft]] = None,
    ) -> ReconciliationResult:
        if transactions is None:
            transactions = await self.storage.query(tenant_id, RecordQuery(
                kind=RecordKind.TRANSACTION,
                start=datetime.combine(period_start, datetime.min.time()),
                end=datetime.combine(period_end + timedelta(days=1), datetime.min.time()),
            ))

        result = match_transactions(
            transactions, entries, self.config,
            tenant_id=tenant_id, period_start=period_start, period_end=period_end,
        )
        if entries:
            reconciliation_match_rate.observe(result.summary.match_rate)
        logger.info(
            "reconciliation_complete",
            tenant_id=tenant_id,
            matched=result.summary.matched,
            unmatched_transactions=result.summary.unmatched_transactions,
            unmatched_entries=result.summary.unmatched_entries,
        )
        return result
