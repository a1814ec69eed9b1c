"""
Normalizer/Validator: field cleanup and per-draft rejection.

A bad draft is rejected with the offending field; it never fails the batch.
"""

import asyncio
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel

from ledgerline.config import settings
from ledgerline.errors import DraftValidationError
from ledgerline.observability.metrics import drafts_rejected_total
from ledgerline.pipeline.amount_parser import quantize
from ledgerline.schemas.transactions import NormalizationResult, RejectedDraft, TransactionDraft

logger = structlog.get_logger(__name__)

_NAME_DISALLOWED = re.compile(r"[^\w\s\-'.&]")
_WHITESPACE = re.compile(r"\s+")


class NormalizerConfig(BaseModel):
    default_country_code: str = "254"
    min_transaction_date: date = date(2007, 3, 6)
    max_future_skew_hours: int = 24

    @classmethod
    def from_settings(cls) -> "NormalizerConfig":
        return cls(
            default_country_code=settings.DEFAULT_COUNTRY_CODE,
            min_transaction_date=settings.MIN_TRANSACTION_DATE,
            max_future_skew_hours=settings.MAX_FUTURE_SKEW_HOURS,
        )


def normalize_phone(raw: Optional[str], country_code: str = "254") -> Optional[str]:
    """
    Canonicalize to E.164 (+<cc><9 digits>).
    Accepts 2547XXXXXXXX, 07XXXXXXXX, 7XXXXXXXX and other +international numbers.
    Masked (07****123) and unrecognizable input yields None.
    """
    if not raw:
        return None
    s = raw.strip()
    if "*" in s:
        return None
    s = re.sub(r"[\s\-().]", "", s)

    if s.startswith("+"):
        digits = s[1:]
        if not digits.isdigit():
            return None
        if digits.startswith(country_code):
            local = digits[len(country_code):]
            return f"+{country_code}{local}" if len(local) == 9 else None
        return f"+{digits}" if 8 <= len(digits) <= 15 else None

    if not s.isdigit():
        return None
    if s.startswith(country_code) and len(s) == len(country_code) + 9:
        return f"+{s}"
    if s.startswith("0") and len(s) == 10:
        return f"+{country_code}{s[1:]}"
    if len(s) == 9 and s[0] in "17":
        return f"+{country_code}{s}"
    return None


def clean_counterparty(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    name = _NAME_DISALLOWED.sub("", raw)
    name = _WHITESPACE.sub(" ", name).strip()
    return name.upper() or None


class Normalizer:
    """Cleans fields and rejects structurally invalid drafts."""

    def __init__(
        self,
        config: Optional[NormalizerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or NormalizerConfig.from_settings()
        self.clock = clock or datetime.now

    def _now_for(self, timestamp: datetime) -> datetime:
        now = self.clock()
        if timestamp.tzinfo is not None and now.tzinfo is None:
            return now.replace(tzinfo=timezone.utc)
        if timestamp.tzinfo is None and now.tzinfo is not None:
            return now.replace(tzinfo=None)
        return now

    def normalize(self, draft: TransactionDraft) -> TransactionDraft:
        """Return a cleaned copy of the draft. Raises DraftValidationError."""
        amount = draft.amount
        if amount is None:
            raise DraftValidationError("amount", "missing")
        if not amount.is_finite():
            raise DraftValidationError("amount", f"not numeric: {amount}")
        if amount < 0:
            raise DraftValidationError("amount", f"negative: {amount}")

        if draft.direction is None:
            raise DraftValidationError("direction", "missing")

        timestamp = draft.timestamp
        if timestamp is None:
            raise DraftValidationError("timestamp", "missing")
        floor = datetime.combine(self.config.min_transaction_date, time(0, 0), tzinfo=timestamp.tzinfo)
        if timestamp < floor:
            raise DraftValidationError("timestamp", f"before {self.config.min_transaction_date.isoformat()}")
        now = self._now_for(timestamp)
        if timestamp > now + timedelta(hours=self.config.max_future_skew_hours):
            raise DraftValidationError("timestamp", f"more than {self.config.max_future_skew_hours}h in the future")
        if timestamp > now:
            timestamp = now

        return draft.model_copy(update={
            "amount": quantize(amount),
            "timestamp": timestamp,
            "counterparty_name": clean_counterparty(draft.counterparty_name),
            "counterparty_phone": normalize_phone(draft.counterparty_phone, self.config.default_country_code),
            "account_number": (draft.account_number or "").strip() or None,
            "reference": (draft.reference or "").strip().upper() or None,
            "transaction_cost": quantize(draft.transaction_cost) if draft.transaction_cost is not None else None,
            "balance_after": quantize(draft.balance_after) if draft.balance_after is not None else None,
            "raw_text": draft.raw_text.strip(),
            "confidence": max(0.0, min(1.0, draft.confidence)),
        })

    def normalize_batch(
        self,
        drafts: list[TransactionDraft],
        seen: Optional[dict[tuple, str]] = None,
    ) -> NormalizationResult:
        """
        Normalize every draft independently.
        `seen` carries the duplicate index across chunks of the same batch.
        """
        result = NormalizationResult()
        seen = {} if seen is None else seen

        for draft in drafts:
            try:
                clean = self.normalize(draft)
                key = (clean.amount, clean.timestamp.date(), clean.counterparty_name, clean.raw_text)
                if key in seen:
                    raise DraftValidationError("raw_text", f"duplicate of {seen[key]}")
                seen[key] = clean.id
                result.accepted.append(clean)
            except DraftValidationError as e:
                drafts_rejected_total.labels(field=e.field).inc()
                result.rejected.append(RejectedDraft(draft=draft, field=e.field, message=e.message))

        if result.rejected:
            logger.info(
                "drafts_rejected",
                accepted=len(result.accepted),
                rejected=len(result.rejected),
                fields=sorted({r.field for r in result.rejected}),
            )
        return result

    async def normalize_chunked(
        self,
        drafts: list[TransactionDraft],
        chunk_size: int,
        yield_seconds: float = 0.0,
        checkpoint: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> NormalizationResult:
        """normalize_batch in fixed-size chunks, yielding the loop between chunks."""
        combined = NormalizationResult()
        seen: dict[tuple, str] = {}
        for start in range(0, len(drafts), max(chunk_size, 1)):
            if checkpoint is not None:
                await checkpoint()
            part = self.normalize_batch(drafts[start:start + chunk_size], seen)
            combined.accepted.extend(part.accepted)
            combined.rejected.extend(part.rejected)
            await asyncio.sleep(yield_seconds)
        return combined
