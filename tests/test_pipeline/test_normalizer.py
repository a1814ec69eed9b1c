"""
Tests for field normalization and per-draft validation.
"""

import asyncio
from datetime import datetime
from decimal import Decimal

import pytest

from ledgerline.errors import DraftValidationError
from ledgerline.pipeline.normalizer import Normalizer, clean_counterparty, normalize_phone

NOW = datetime(2025, 2, 1, 12, 0)


@pytest.fixture
def normalizer():
    return Normalizer(clock=lambda: NOW)


class TestNormalizePhone:

    @pytest.mark.parametrize("raw", ["0712345678", "254712345678", "+254712345678", "712345678", "0712 345 678"])
    def test_local_forms(self, raw):
        assert normalize_phone(raw) == "+254712345678"

    def test_foreign_number_kept(self):
        assert normalize_phone("+447911123456") == "+447911123456"

    def test_masked_number(self):
        assert normalize_phone("07******678") is None

    def test_garbage(self):
        assert normalize_phone("12345") is None
        assert normalize_phone(None) is None


class TestCleanCounterparty:

    def test_upper_and_collapse(self):
        assert clean_counterparty("  mama   mboga!! ") == "MAMA MBOGA"

    def test_empty(self):
        assert clean_counterparty("  ") is None


class TestNormalize:
    """Single-draft validation."""

    def test_cleans_fields(self, normalizer, make_draft):
        draft = make_draft(
            amount="10.5",
            counterparty_name="john  doe",
            counterparty_phone="0712345678",
            reference=" qab1cd2ef3 ",
        )
        clean = normalizer.normalize(draft)
        assert clean.amount == Decimal("10.50")
        assert clean.counterparty_name == "JOHN DOE"
        assert clean.counterparty_phone == "+254712345678"
        assert clean.reference == "QAB1CD2EF3"
        assert clean.id == draft.id

    def test_original_untouched(self, normalizer, make_draft):
        draft = make_draft(counterparty_name="john")
        normalizer.normalize(draft)
        assert draft.counterparty_name == "john"

    @pytest.mark.parametrize("changes,field", [
        ({"amount": None}, "amount"),
        ({"amount": "-5.00"}, "amount"),
        ({"direction": None}, "direction"),
        ({"timestamp": None}, "timestamp"),
        ({"timestamp": datetime(2001, 1, 1)}, "timestamp"),
        ({"timestamp": datetime(2025, 2, 3, 12, 0)}, "timestamp"),
    ])
    def test_rejections(self, normalizer, make_draft, changes, field):
        with pytest.raises(DraftValidationError) as exc:
            normalizer.normalize(make_draft(**changes))
        assert exc.value.field == field

    def test_small_future_skew_clamped(self, normalizer, make_draft):
        clean = normalizer.normalize(make_draft(timestamp=datetime(2025, 2, 1, 18, 0)))
        assert clean.timestamp == NOW


class TestNormalizeBatch:
    """A bad draft is rejected on its own; the batch carries on."""

    def test_mixed_batch(self, normalizer, make_draft):
        good = make_draft()
        bad = make_draft(amount=None, raw_text="no amount")
        result = normalizer.normalize_batch([good, bad])
        assert [d.id for d in result.accepted] == [good.id]
        assert len(result.rejected) == 1
        assert result.rejected[0].field == "amount"
        assert result.rejected[0].draft.id == bad.id

    def test_duplicate_in_batch(self, normalizer, make_draft):
        first = make_draft(raw_text="same message")
        second = make_draft(raw_text="same message")
        result = normalizer.normalize_batch([first, second])
        assert len(result.accepted) == 1
        assert result.rejected[0].field == "raw_text"
        assert result.rejected[0].message == f"raw_text: duplicate of {first.id}"

    def test_chunked_matches_batch(self, normalizer, make_draft):
        drafts = [make_draft(amount=f"{10 + i}.00") for i in range(5)]
        drafts.append(make_draft(amount="10.00"))  # duplicate of the first, in a later chunk
        calls = []

        async def checkpoint():
            calls.append(1)

        result = asyncio.run(normalizer.normalize_chunked(drafts, chunk_size=2, checkpoint=checkpoint))
        assert len(result.accepted) == 5
        assert len(result.rejected) == 1
        assert len(calls) == 3
