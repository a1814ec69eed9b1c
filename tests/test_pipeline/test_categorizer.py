"""
Tests for keyword categorization and online learning.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from ledgerline.errors import NotFoundError
from ledgerline.models.enums import RecordKind, ReviewStatus, TxDirection
from ledgerline.pipeline.categorizer import UNCATEGORIZED, Categorizer, keyword_fragments, tokenize
from ledgerline.storage.base import RecordQuery

FIXED = datetime(2025, 2, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def categorizer(storage):
    return Categorizer(storage, clock=lambda: FIXED)


def _patterns(storage, tenant_id):
    return asyncio.run(storage.query(tenant_id, RecordQuery(kind=RecordKind.PATTERN)))


class TestTokens:

    def test_unigrams_bigrams_and_phrase(self):
        assert tokenize("Kenya Power Ltd") == {
            "kenya", "power", "ltd", "kenya power", "power ltd", "kenya power ltd",
        }

    def test_fragments_skip_numeric_account(self, make_draft):
        draft = make_draft(counterparty_name="KPLC PREPAID", account_number="37194212345")
        assert keyword_fragments(draft) == ["kplc prepaid"]

    def test_fragments_keep_word_account(self, make_draft):
        draft = make_draft(counterparty_name="EQUITY PAYBILL", account_number="SHOPRENT")
        assert keyword_fragments(draft) == ["equity paybill", "shoprent"]


class TestStaticScoring:
    """Built-in keywords, restricted to the matching flow."""

    def test_two_keywords(self, categorizer, make_draft):
        draft = make_draft(counterparty_name="KPLC PREPAID", direction=TxDirection.PAYBILL)
        assignment = categorizer.score(draft, [])
        assert assignment.category == "utilities_electricity"
        assert assignment.confidence == pytest.approx(0.8)
        assert sorted(assignment.matched_keywords) == ["kplc", "prepaid"]

    def test_single_keyword_just_clears_threshold(self, categorizer, make_draft):
        draft = make_draft(counterparty_name="CUSTOMER JOHN", direction=TxDirection.RECEIVED)
        assignment = categorizer.score(draft, [])
        assert assignment.category == "income_sales"
        assert assignment.confidence == pytest.approx(0.6667, abs=1e-4)

    def test_wrong_flow_ignored(self, categorizer, make_draft):
        # "customer" is an income keyword; an outflow to it is not a sale
        draft = make_draft(counterparty_name="CUSTOMER JOHN", direction=TxDirection.SENT)
        assert categorizer.score(draft, []).category == UNCATEGORIZED

    def test_airtime_direction_is_a_keyword(self, categorizer, make_draft):
        draft = make_draft(counterparty_name=None, direction=TxDirection.AIRTIME)
        assert categorizer.score(draft, []).category == "communication"

    def test_no_match(self, categorizer, make_draft):
        assignment = categorizer.score(make_draft(counterparty_name="JOHN DOE"), [])
        assert assignment.category == UNCATEGORIZED
        assert assignment.confidence == 0.0


class TestLearning:
    """Confirmations and confident results reinforce tenant patterns."""

    def test_confirm_teaches_new_counterparty(self, categorizer, storage, tenant_id, make_draft):
        stored = make_draft(counterparty_name="MAMA OKOTH")
        asyncio.run(storage.save(tenant_id, [stored]))
        later = make_draft(counterparty_name="MAMA OKOTH", raw_text="another payment")

        before = asyncio.run(categorizer.categorize(tenant_id, [later], learn=False))
        assert before.assignments[0].category == UNCATEGORIZED

        updated = asyncio.run(categorizer.confirm(tenant_id, stored.id, "inventory"))
        assert updated.category == "inventory"
        assert updated.review_status == ReviewStatus.CORRECTED

        after = asyncio.run(categorizer.categorize(tenant_id, [later], learn=False))
        assert after.assignments[0].category == "inventory"
        assert after.assignments[0].confidence == pytest.approx(0.6667, abs=1e-4)

    def test_confirm_matching_category_is_confirmed(self, categorizer, storage, tenant_id, make_draft):
        stored = make_draft(category="inventory")
        asyncio.run(storage.save(tenant_id, [stored]))
        updated = asyncio.run(categorizer.confirm(tenant_id, stored.id, "inventory"))
        assert updated.review_status == ReviewStatus.CONFIRMED

    def test_confirm_unknown_transaction(self, categorizer, tenant_id):
        with pytest.raises(NotFoundError):
            asyncio.run(categorizer.confirm(tenant_id, "missing", "inventory"))

    def test_confident_result_observed(self, categorizer, storage, tenant_id, make_draft):
        draft = make_draft(counterparty_name="KPLC PREPAID", direction=TxDirection.PAYBILL)
        result = asyncio.run(categorizer.categorize(tenant_id, [draft]))
        assert result.patterns_updated == 1
        assert result.assignments[0].learned
        [pattern] = _patterns(storage, tenant_id)
        assert (pattern.keyword, pattern.category, pattern.weight) == (
            "kplc prepaid", "utilities_electricity", 1.0,
        )

    def test_learn_false_leaves_state(self, categorizer, storage, tenant_id, make_draft):
        draft = make_draft(counterparty_name="KPLC PREPAID", direction=TxDirection.PAYBILL)
        result = asyncio.run(categorizer.categorize(tenant_id, [draft], learn=False))
        assert result.patterns_updated == 0
        assert _patterns(storage, tenant_id) == []

    def test_concurrent_confirms_all_counted(self, categorizer, storage, tenant_id, make_draft):
        stored = make_draft(counterparty_name="MAMA OKOTH")
        asyncio.run(storage.save(tenant_id, [stored]))

        async def confirm_many():
            await asyncio.gather(*[
                categorizer.confirm(tenant_id, stored.id, "inventory") for _ in range(5)
            ])

        asyncio.run(confirm_many())
        [pattern] = _patterns(storage, tenant_id)
        assert pattern.weight == 5.0
        assert pattern.hit_count == 5

    def test_patterns_are_tenant_scoped(self, categorizer, storage, tenant_id, make_draft):
        stored = make_draft(counterparty_name="MAMA OKOTH")
        asyncio.run(storage.save(tenant_id, [stored]))
        asyncio.run(categorizer.confirm(tenant_id, stored.id, "inventory"))

        other = make_draft(counterparty_name="MAMA OKOTH", tenant_id="tenant-b")
        result = asyncio.run(categorizer.categorize("tenant-b", [other], learn=False))
        assert result.assignments[0].category == UNCATEGORIZED
