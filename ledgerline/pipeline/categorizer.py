"""
Categorizer: static keyword heuristics plus a tenant-scoped learned-pattern table.

Scoring:
    score(category) = sum of weights of matching patterns
    confidence      = score / (score + CATEGORY_PRIOR_WEIGHT)
Below CATEGORY_MIN_CONFIDENCE the draft is `uncategorized`.
Ties: longest matching keyword, then most recently reinforced pattern.

Static patterns are tied to a flow (income on inflows, expenses on outflows);
learned patterns apply to any flow. Learned state only changes under the
tenant's lock.
"""

import asyncio
import re
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from pydantic import BaseModel

from ledgerline.config import settings
from ledgerline.errors import NotFoundError
from ledgerline.models.enums import RecordKind, ReviewStatus, TxDirection
from ledgerline.observability.metrics import categorizations_total
from ledgerline.schemas.transactions import (
    CategoryAssignment,
    CategoryPattern,
    TransactionDraft,
    pattern_id,
)
from ledgerline.storage.base import RecordQuery, Storage

logger = structlog.get_logger(__name__)

UNCATEGORIZED = "uncategorized"
INFLOW = "inflow"
OUTFLOW = "outflow"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

# category -> (flow, keywords). Keywords are lower-case words or short phrases.
STATIC_CATEGORIES: dict[str, tuple[str, list[str]]] = {
    "income_sales": (INFLOW, ["customer", "client", "payment", "order", "invoice", "sale", "sales"]),
    "income_services": (INFLOW, ["consultation", "service", "repair", "maintenance", "professional"]),
    "income_rental": (INFLOW, ["rent", "lease", "tenant"]),
    "income_loans": (INFLOW, ["fuliza", "mshwari", "kcb mpesa", "loan"]),
    "utilities_electricity": (OUTFLOW, ["kplc", "kenya power", "electricity", "prepaid", "tokens"]),
    "utilities_water": (OUTFLOW, ["nairobi water", "water", "sewerage"]),
    "utilities_internet": (OUTFLOW, ["zuku", "telkom", "faiba", "internet", "wifi", "home fibre"]),
    "utilities_gas": (OUTFLOW, ["gas", "lpg", "meko", "k-gas"]),
    "communication": (OUTFLOW, ["airtime", "bundles", "safaricom"]),
    "inventory": (OUTFLOW, ["wholesaler", "wholesale", "supplier", "suppliers", "stock", "distributors", "crates"]),
    "transport": (OUTFLOW, ["matatu", "fuel", "petrol", "diesel", "uber", "bolt", "transport", "sacco"]),
    "rent": (OUTFLOW, ["landlord", "rent", "caretaker"]),
    "staff_costs": (OUTFLOW, ["salary", "wage", "wages", "payroll", "nssf", "nhif", "sha"]),
    "tax": (OUTFLOW, ["kra", "tax", "vat", "paye", "itax"]),
    "marketing": (OUTFLOW, ["advertise", "advertising", "promotion", "flyer", "billboard", "radio", "facebook"]),
    "banking_finance": (OUTFLOW, ["loan", "interest", "bank", "equity", "kcb", "co-op", "fuliza", "mshwari"]),
}

# Directions whose name is itself a useful keyword
_DIRECTION_TOKENS = {TxDirection.AIRTIME: "airtime", TxDirection.FULIZA: "fuliza"}


class CategorizerConfig(BaseModel):
    min_confidence: float = 0.6
    prior_weight: float = 0.5
    static_weight: float = 1.0
    learned_initial_weight: float = 1.0
    confirm_step: float = 1.0
    observe_step: float = 0.1

    @classmethod
    def from_settings(cls) -> "CategorizerConfig":
        return cls(
            min_confidence=settings.CATEGORY_MIN_CONFIDENCE,
            prior_weight=settings.CATEGORY_PRIOR_WEIGHT,
            static_weight=settings.STATIC_KEYWORD_WEIGHT,
            learned_initial_weight=settings.LEARNED_INITIAL_WEIGHT,
            confirm_step=settings.CONFIRM_REINFORCE_STEP,
            observe_step=settings.OBSERVE_REINFORCE_STEP,
        )


class CategorizationResult(BaseModel):
    drafts: list[TransactionDraft] = []
    assignments: list[CategoryAssignment] = []
    patterns_updated: int = 0


def normalize_phrase(text: Optional[str]) -> str:
    """Lower-case alphanumeric words joined by single spaces."""
    return " ".join(re.findall(r"[a-z0-9]+(?:-[a-z0-9]+)*", (text or "").lower()))


def tokenize(text: str) -> set[str]:
    """Unigrams, bigrams and the whole phrase."""
    phrase = normalize_phrase(text)
    words = phrase.split()
    tokens = set(words)
    tokens.update(f"{a} {b}" for a, b in zip(words, words[1:]))
    if phrase:
        tokens.add(phrase)
    return tokens


def descriptive_tokens(draft: TransactionDraft) -> set[str]:
    tokens = tokenize(draft.descriptive_text())
    if draft.direction in _DIRECTION_TOKENS:
        tokens.add(_DIRECTION_TOKENS[draft.direction])
    return tokens


def keyword_fragments(draft: TransactionDraft) -> list[str]:
    """
    Fragments a confirmation reinforces: the whole counterparty phrase, and the
    account reference when it is a word rather than a bare number.
    """
    fragments = []
    name = normalize_phrase(draft.counterparty_name)
    if name:
        fragments.append(name)
    account = normalize_phrase(draft.account_number)
    if account and re.search(r"[a-z]", account) and account not in fragments:
        fragments.append(account)
    return fragments


class _Score:
    __slots__ = ("total", "longest", "latest", "keywords")

    def __init__(self):
        self.total = 0.0
        self.longest = 0
        self.latest = _EPOCH
        self.keywords: list[str] = []

    def add(self, keyword: str, weight: float, reinforced_at: datetime) -> None:
        self.total += weight
        self.longest = max(self.longest, len(keyword))
        self.latest = max(self.latest, reinforced_at)
        self.keywords.append(keyword)

    def rank(self) -> tuple:
        return (self.total, self.longest, self.latest)


class Categorizer:
    """Assigns business categories and learns from confirmations."""

    def __init__(
        self,
        storage: Storage,
        config: Optional[CategorizerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.config = config or CategorizerConfig.from_settings()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, tenant_id: str) -> asyncio.Lock:
        return self._locks.setdefault(tenant_id, asyncio.Lock())

    async def load_patterns(self, tenant_id: str) -> list[CategoryPattern]:
        return await self.storage.query(tenant_id, RecordQuery(kind=RecordKind.PATTERN))

    def score(self, draft: TransactionDraft, learned: list[CategoryPattern]) -> CategoryAssignment:
        """Pure scoring of one draft against static and learned patterns."""
        tokens = descriptive_tokens(draft)
        flow = INFLOW if draft.is_inflow else OUTFLOW
        scores: dict[str, _Score] = {}

        for category, (category_flow, keywords) in STATIC_CATEGORIES.items():
            if category_flow != flow:
                continue
            for keyword in keywords:
                if keyword in tokens:
                    scores.setdefault(category, _Score()).add(keyword, self.config.static_weight, _EPOCH)

        for pattern in learned:
            if pattern.keyword in tokens:
                scores.setdefault(pattern.category, _Score()).add(
                    pattern.keyword, pattern.weight, pattern.last_reinforced_at
                )

        if not scores:
            return CategoryAssignment(transaction_id=draft.id, category=UNCATEGORIZED, confidence=0.0)

        category, best = max(scores.items(), key=lambda item: item[1].rank())
        confidence = best.total / (best.total + self.config.prior_weight)
        if confidence < self.config.min_confidence:
            return CategoryAssignment(
                transaction_id=draft.id,
                category=UNCATEGORIZED,
                confidence=round(confidence, 4),
                matched_keywords=best.keywords,
            )
        return CategoryAssignment(
            transaction_id=draft.id,
            category=category,
            confidence=round(confidence, 4),
            matched_keywords=best.keywords,
        )

    async def _reinforce(
        self,
        tenant_id: str,
        updates: dict[tuple[str, str], float],
        initial_weight: Optional[float],
    ) -> int:
        """
        Apply weight increments to (keyword, category) patterns under the tenant lock.
        New patterns start at initial_weight when given, else at the increment itself.
        """
        if not updates:
            return 0
        now = self.clock()
        async with self._lock(tenant_id):
            ids = [pattern_id(tenant_id, kw, cat) for kw, cat in updates]
            existing = {
                p.id: p for p in await self.storage.query(
                    tenant_id, RecordQuery(kind=RecordKind.PATTERN, ids=ids)
                )
            }
            changed = []
            for (keyword, category), step in updates.items():
                current = existing.get(pattern_id(tenant_id, keyword, category))
                if current is None:
                    changed.append(CategoryPattern(
                        tenant_id=tenant_id,
                        keyword=keyword,
                        category=category,
                        weight=initial_weight if initial_weight is not None else step,
                        hit_count=1,
                        last_reinforced_at=now,
                    ))
                else:
                    changed.append(current.model_copy(update={
                        "weight": current.weight + step,
                        "hit_count": current.hit_count + 1,
                        "last_reinforced_at": now,
                    }))
            await self.storage.save(tenant_id, changed)
        return len(changed)

    async def categorize(
        self,
        tenant_id: str,
        drafts: list[TransactionDraft],
        learn: bool = True,
    ) -> CategorizationResult:
        """Categorize drafts. With learn=True, confident results reinforce the counterparty phrase."""
        learned = await self.load_patterns(tenant_id)
        result = CategorizationResult()
        observations: dict[tuple[str, str], float] = {}

        for draft in drafts:
            assignment = self.score(draft, learned)
            phrase = normalize_phrase(draft.counterparty_name)
            if learn and assignment.category != UNCATEGORIZED and phrase:
                observations[(phrase, assignment.category)] = self.config.observe_step
                assignment.learned = True

            result.assignments.append(assignment)
            result.drafts.append(draft.model_copy(update={
                "category": assignment.category,
                "category_confidence": assignment.confidence,
            }))
            categorizations_total.labels(
                outcome="uncategorized" if assignment.category == UNCATEGORIZED else "categorized"
            ).inc()

        if learn:
            result.patterns_updated = await self._reinforce(
                tenant_id, observations, initial_weight=self.config.learned_initial_weight
            )

        logger.info(
            "categorization_complete",
            tenant_id=tenant_id,
            drafts=len(drafts),
            uncategorized=sum(1 for a in result.assignments if a.category == UNCATEGORIZED),
            patterns_updated=result.patterns_updated,
        )
        return result

    async def confirm(self, tenant_id: str, transaction_id: str, category: str) -> TransactionDraft:
        """
        Record a human/downstream confirmation or correction.
        Reinforces (or creates) a pattern per keyword fragment and updates the stored draft.
        """
        found = await self.storage.query(
            tenant_id, RecordQuery(kind=RecordKind.TRANSACTION, ids=[transaction_id])
        )
        if not found:
            raise NotFoundError(f"transaction {transaction_id} not found")
        draft = found[0]

        updates = {(fragment, category): self.config.confirm_step for fragment in keyword_fragments(draft)}
        await self._reinforce(tenant_id, updates, initial_weight=None)

        status = ReviewStatus.CONFIRMED if draft.category == category else ReviewStatus.CORRECTED
        updated = draft.model_copy(update={
            "category": category,
            "category_confidence": 1.0,
            "review_status": status,
        })
        await self.storage.save(tenant_id, [updated])

        logger.info(
            "category_confirmed",
            tenant_id=tenant_id,
            transaction_id=transaction_id,
            category=category,
            review_status=status.value,
            fragments=len(updates),
        )
        return updated
