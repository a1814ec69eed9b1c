"""
Tests for the extractor: rule-based parsing with an optional AI pass.
"""

import asyncio
from datetime import datetime
from decimal import Decimal

from ledgerline.engines.stub_engine import StubAiEngine
from ledgerline.models.enums import AiStatus, ExtractionMethod, TxDirection
from ledgerline.pipeline.extractor import (
    SKIP_AI_CANDIDATE_INVALID,
    Extractor,
    ExtractorConfig,
    candidate_to_draft,
    same_event,
)
from ledgerline.quota.manager import QuotaManager

JOHN_CANDIDATE = {
    "type": "received",
    "amount": "500.00",
    "date": "15/1/25",
    "time": "3:04 PM",
    "counterparty": "John Doe",
    "confidence": 0.9,
}


def _summary(result):
    return [(d.amount, d.timestamp, d.direction, d.counterparty_name) for d in result.drafts]


class TestRuleOnly:
    """Without an AI capability the rule parser alone runs."""

    def test_ai_disabled(self, tenant_id, statement_text):
        result = asyncio.run(Extractor().extract(statement_text, tenant_id))
        assert result.ai_status == AiStatus.DISABLED
        assert len(result.drafts) == 4
        assert len(result.skipped) == 1
        assert all(d.extraction_method == ExtractionMethod.RULE_BASED for d in result.drafts)

    def test_ordered_by_timestamp(self, tenant_id, messages):
        text = "\n".join([messages["airtime"], messages["received"], messages["sent"]])
        result = asyncio.run(Extractor().extract(text, tenant_id))
        stamps = [d.timestamp for d in result.drafts]
        assert stamps == sorted(stamps)

    def test_idempotent(self, tenant_id, statement_text):
        extractor = Extractor()
        first = asyncio.run(extractor.extract(statement_text, tenant_id))
        second = asyncio.run(extractor.extract(statement_text, tenant_id))
        assert _summary(first) == _summary(second)


class TestAiFallback:
    """AI problems never fail extraction."""

    def test_failing_engine_falls_back(self, tenant_id, statement_text):
        rule_only = asyncio.run(Extractor().extract(statement_text, tenant_id))
        result = asyncio.run(Extractor(ai=StubAiEngine(fail=True)).extract(statement_text, tenant_id))
        assert result.ai_status == AiStatus.FAILED
        assert "STUB_FAILURE" in result.ai_detail
        assert _summary(result) == _summary(rule_only)

    def test_timeout_falls_back(self, tenant_id, statement_text):
        extractor = Extractor(
            ai=StubAiEngine(candidates=[JOHN_CANDIDATE], delay=1.0),
            config=ExtractorConfig(ai_timeout_seconds=0.05),
        )
        result = asyncio.run(extractor.extract(statement_text, tenant_id))
        assert result.ai_status == AiStatus.TIMEOUT
        assert len(result.drafts) == 4

    def test_quota_exhausted_skips_engine(self, tenant_id, messages):
        engine = StubAiEngine(candidates=[JOHN_CANDIDATE])
        extractor = Extractor(ai=engine, quota=QuotaManager(limits={"ai": {"day": 1}}))

        first = asyncio.run(extractor.extract(messages["received"], tenant_id))
        second = asyncio.run(extractor.extract(messages["received"], tenant_id))

        assert first.ai_status == AiStatus.USED
        assert second.ai_status == AiStatus.QUOTA_EXHAUSTED
        assert second.quota_reset_at is not None
        assert engine.calls == 1
        assert len(second.drafts) == 1


class TestMerge:
    """AI and rule drafts describing the same event are merged."""

    def test_hybrid_inherits_missing_fields(self, tenant_id, messages):
        extractor = Extractor(ai=StubAiEngine(candidates=[JOHN_CANDIDATE]))
        result = asyncio.run(extractor.extract(messages["received"], tenant_id))

        assert result.ai_status == AiStatus.USED
        assert len(result.drafts) == 1
        draft = result.drafts[0]
        assert draft.extraction_method == ExtractionMethod.HYBRID
        assert draft.counterparty_name == "John Doe"
        assert draft.reference == "QAB1CD2EF3"
        assert draft.balance_after == Decimal("1500.00")
        assert draft.confidence == 0.9

    def test_unmatched_ai_draft_kept(self, tenant_id, messages):
        extra = dict(JOHN_CANDIDATE, amount="75.00", counterparty="MARY A")
        extractor = Extractor(ai=StubAiEngine(candidates=[JOHN_CANDIDATE, extra]))
        result = asyncio.run(extractor.extract(messages["received"], tenant_id))
        methods = sorted(d.extraction_method.value for d in result.drafts)
        assert methods == ["ai", "hybrid"]

    def test_invalid_candidate_reported(self, tenant_id, messages):
        bad = {"type": "teleport", "amount": "5", "raw_text": "???"}
        extractor = Extractor(ai=StubAiEngine(candidates=[bad]))
        result = asyncio.run(extractor.extract(messages["received"], tenant_id))
        assert [s.reason for s in result.skipped] == [SKIP_AI_CANDIDATE_INVALID]
        assert len(result.drafts) == 1

    def test_non_finite_amount_skipped(self, tenant_id, messages):
        bad = dict(JOHN_CANDIDATE, amount=float("nan"))
        extractor = Extractor(ai=StubAiEngine(candidates=[bad]))
        result = asyncio.run(extractor.extract(messages["received"], tenant_id))
        assert [s.reason for s in result.skipped] == [SKIP_AI_CANDIDATE_INVALID]
        assert result.ai_status == AiStatus.USED
        assert len(result.drafts) == 1


class TestCandidates:

    def test_candidate_to_draft(self, tenant_id):
        draft = candidate_to_draft(dict(JOHN_CANDIDATE, type="Buy Goods", amount=350), tenant_id)
        assert draft.direction == TxDirection.BUY_GOODS
        assert draft.amount == Decimal("350.00")
        assert draft.timestamp == datetime(2025, 1, 15, 15, 4)

    def test_negative_amount_rejected(self, tenant_id):
        assert candidate_to_draft(dict(JOHN_CANDIDATE, amount="-5"), tenant_id) is None

    def test_infinite_amount_rejected(self, tenant_id):
        assert candidate_to_draft(dict(JOHN_CANDIDATE, amount=float("inf")), tenant_id) is None

    def test_missing_time_is_midnight(self, tenant_id):
        candidate = {k: v for k, v in JOHN_CANDIDATE.items() if k != "time"}
        assert candidate_to_draft(candidate, tenant_id).timestamp == datetime(2025, 1, 15, 0, 0)

    def test_same_event_needs_matching_reference(self, make_draft):
        a = make_draft(reference="QAB1CD2EF3")
        b = make_draft(reference="QAB1CD2EF9")
        assert not same_event(a, b)
        assert same_event(a, make_draft(reference=None))
