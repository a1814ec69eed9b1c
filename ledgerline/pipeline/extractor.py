"""
Extractor: optional AI pass plus the rule-based parser, merged.

1. Rule-based parser always runs.
2. AI runs only if configured and the tenant's `ai` quota allows it, bounded by a timeout.
3. An AI draft and a rule draft describing the same event are merged; the AI draft
   wins and becomes `hybrid`, inheriting empty fields from the rule draft.
4. Output is stably ordered by timestamp, drafts without one last.

Extraction never fails because AI is unavailable; the reason is reported in ai_status.
"""

import asyncio
import re
from typing import Any, Optional

import structlog
from pydantic import BaseModel

from ledgerline.config import settings
from ledgerline.engines.base import AiCapability, CapabilityError
from ledgerline.models.enums import AiStatus, ExtractionMethod, TxDirection
from ledgerline.observability.metrics import (
    capability_calls_total,
    drafts_extracted_total,
    extraction_confidence,
    lines_skipped_total,
)
from ledgerline.pipeline.amount_parser import to_decimal
from ledgerline.pipeline.date_parser import combine_date_time
from ledgerline.pipeline.line_parser import parse_statement
from ledgerline.quota.manager import QuotaManager
from ledgerline.schemas.transactions import ExtractionResult, SkippedLine, TransactionDraft

logger = structlog.get_logger(__name__)

SKIP_AI_CANDIDATE_INVALID = "ai_candidate_invalid"

# Loose spellings a model may return for the closed direction set
DIRECTION_ALIASES = {
    "receive": TxDirection.RECEIVED,
    "send": TxDirection.SENT,
    "pay bill": TxDirection.PAYBILL,
    "paybill_payment": TxDirection.PAYBILL,
    "till": TxDirection.BUY_GOODS,
    "buy goods": TxDirection.BUY_GOODS,
    "buygoods": TxDirection.BUY_GOODS,
    "withdraw": TxDirection.WITHDRAWAL,
}


class ExtractorConfig(BaseModel):
    ai_timeout_seconds: float = 15.0

    @classmethod
    def from_settings(cls) -> "ExtractorConfig":
        return cls(ai_timeout_seconds=settings.AI_CALL_TIMEOUT_SECONDS)


def _tokens(name: Optional[str]) -> set[str]:
    return set(re.findall(r"[a-z0-9]+", (name or "").lower()))


def _phone_digits(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    digits = re.sub(r"\D", "", phone)
    return digits[-9:] if len(digits) >= 9 else None


def counterparties_overlap(a: TransactionDraft, b: TransactionDraft) -> bool:
    """Either side empty, name tokens intersect, or phones equal."""
    name_a, name_b = _tokens(a.counterparty_name), _tokens(b.counterparty_name)
    phone_a, phone_b = _phone_digits(a.counterparty_phone), _phone_digits(b.counterparty_phone)
    if phone_a and phone_b and phone_a == phone_b:
        return True
    if not name_a or not name_b:
        return True
    return bool(name_a & name_b)


def same_event(a: TransactionDraft, b: TransactionDraft) -> bool:
    if a.amount is None or a.amount != b.amount:
        return False
    day_a = a.timestamp.date() if a.timestamp else None
    day_b = b.timestamp.date() if b.timestamp else None
    if day_a != day_b:
        return False
    if a.reference and b.reference and a.reference != b.reference:
        return False
    return counterparties_overlap(a, b)


def merge_drafts(ai_draft: TransactionDraft, rule_draft: TransactionDraft) -> TransactionDraft:
    """AI wins; empty AI fields inherit the rule-based values."""
    inherited = {}
    for field in (
        "counterparty_name", "counterparty_phone", "reference", "account_number",
        "transaction_cost", "balance_after", "timestamp", "raw_text",
    ):
        if not getattr(ai_draft, field) and getattr(rule_draft, field):
            inherited[field] = getattr(rule_draft, field)
    return ai_draft.model_copy(update={**inherited, "extraction_method": ExtractionMethod.HYBRID})


def _parse_direction(raw: Any) -> Optional[TxDirection]:
    if not isinstance(raw, str):
        return None
    value = raw.strip().lower()
    try:
        return TxDirection(value.replace(" ", "_"))
    except ValueError:
        return DIRECTION_ALIASES.get(value)


def candidate_to_draft(candidate: dict[str, Any], tenant_id: str) -> Optional[TransactionDraft]:
    """Build a draft from an AI candidate. None when the candidate is unusable."""
    direction = _parse_direction(candidate.get("type"))
    amount = to_decimal(candidate.get("amount"))
    if direction is None or amount is None or not amount.is_finite() or amount < 0:
        return None

    raw_date = candidate.get("date")
    raw_time = candidate.get("time")
    timestamp = combine_date_time(str(raw_date), str(raw_time) if raw_time else None) if raw_date else None

    try:
        confidence = float(candidate.get("confidence", 1.0))
    except (TypeError, ValueError):
        confidence = 1.0

    def text(key: str) -> Optional[str]:
        value = candidate.get(key)
        return str(value).strip() or None if value is not None else None

    return TransactionDraft(
        tenant_id=tenant_id,
        reference=text("reference"),
        timestamp=timestamp,
        amount=amount,
        direction=direction,
        counterparty_name=text("counterparty"),
        counterparty_phone=text("counterparty_phone"),
        account_number=text("account_number"),
        transaction_cost=to_decimal(candidate.get("transaction_cost")),
        balance_after=to_decimal(candidate.get("balance_after")),
        raw_text=text("raw_text") or "",
        confidence=max(0.0, min(1.0, confidence)),
        extraction_method=ExtractionMethod.AI,
    )


def order_drafts(drafts: list[TransactionDraft]) -> list[TransactionDraft]:
    """Stable order by timestamp; drafts without a timestamp go last."""
    return sorted(drafts, key=lambda d: (d.timestamp is None, d.timestamp or 0))


class Extractor:
    """Turns raw statement text into ordered drafts with confidence."""

    def __init__(
        self,
        ai: Optional[AiCapability] = None,
        quota: Optional[QuotaManager] = None,
        config: Optional[ExtractorConfig] = None,
    ):
        self.ai = ai
        self.quota = quota
        self.config = config or ExtractorConfig.from_settings()

    async def _run_ai(self, text: str, tenant_id: str, result: ExtractionResult) -> list[dict[str, Any]]:
        """Call the AI capability if allowed. Records the outcome on result."""
        if self.ai is None:
            result.ai_status = AiStatus.DISABLED
            return []

        if self.quota is not None:
            decision = await self.quota.check_and_increment(tenant_id, self.ai.capability)
            if not decision.allowed:
                result.ai_status = AiStatus.QUOTA_EXHAUSTED
                result.quota_reset_at = decision.reset_at
                result.ai_detail = f"ai quota exhausted until {decision.reset_at.isoformat()}"
                capability_calls_total.labels(capability="ai", outcome=result.ai_status.value).inc()
                return []

        try:
            candidates = await asyncio.wait_for(
                self.ai.extract(text), timeout=self.config.ai_timeout_seconds
            )
            result.ai_status = AiStatus.USED
        except asyncio.TimeoutError:
            result.ai_status = AiStatus.TIMEOUT
            result.ai_detail = f"ai call exceeded {self.config.ai_timeout_seconds:g}s"
            candidates = []
        except CapabilityError as e:
            result.ai_status = AiStatus.FAILED
            result.ai_detail = str(e)
            candidates = []
        except Exception as e:
            # Optional capability: any engine fault degrades to rule-based only.
            logger.exception("ai_engine_error", tenant_id=tenant_id)
            result.ai_status = AiStatus.FAILED
            result.ai_detail = f"{type(e).__name__}: {e}"
            candidates = []

        capability_calls_total.labels(capability="ai", outcome=result.ai_status.value).inc()
        if result.ai_status != AiStatus.USED:
            logger.warning("ai_fallback", tenant_id=tenant_id, status=result.ai_status.value, detail=result.ai_detail)
        return candidates

    async def extract(self, text: str, tenant_id: str) -> ExtractionResult:
        result = ExtractionResult()

        rule_drafts, skipped = parse_statement(text, tenant_id)
        result.skipped.extend(skipped)

        candidates = await self._run_ai(text, tenant_id, result)
        ai_drafts = []
        for index, candidate in enumerate(candidates, start=1):
            draft = candidate_to_draft(candidate, tenant_id) if isinstance(candidate, dict) else None
            if draft is None:
                result.skipped.append(SkippedLine(
                    line_number=index,
                    text=str(candidate.get("raw_text") if isinstance(candidate, dict) else candidate)[:500],
                    reason=SKIP_AI_CANDIDATE_INVALID,
                ))
                continue
            ai_drafts.append(draft)

        merged: list[TransactionDraft] = []
        unused_rule = list(rule_drafts)
        for ai_draft in ai_drafts:
            match = next((r for r in unused_rule if same_event(ai_draft, r)), None)
            if match is not None:
                unused_rule.remove(match)
                merged.append(merge_drafts(ai_draft, match))
            else:
                merged.append(ai_draft)
        merged.extend(unused_rule)

        result.drafts = order_drafts(merged)

        for draft in result.drafts:
            drafts_extracted_total.labels(method=draft.extraction_method.value).inc()
            extraction_confidence.labels(method=draft.extraction_method.value).observe(draft.confidence)
        for skip in result.skipped:
            lines_skipped_total.labels(reason=skip.reason).inc()

        logger.info(
            "extraction_complete",
            tenant_id=tenant_id,
            drafts=len(result.drafts),
            skipped=len(result.skipped),
            ai_status=result.ai_status.value,
            mean_confidence=round(result.mean_confidence, 3),
        )
        return result
