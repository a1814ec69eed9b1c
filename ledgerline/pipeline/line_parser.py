"""
Rule-based parser for mobile-money confirmation messages.

Strategy:
1. Split raw statement text into candidate messages (newlines, receipt-code boundaries)
2. Try the strict grammar of known message shapes in order
3. Fall back to a loose keyword grammar (direction keyword + first amount)
4. Read balance, transaction cost and receipt code from anywhere in the message
5. Confidence = fixed increment per present field (date, amount, counterparty, reference)

Lines that yield nothing are returned as SkippedLine with a reason, never dropped.
"""

import re
from typing import Optional, Union

import structlog

from ledgerline.config import settings
from ledgerline.models.enums import ExtractionMethod, TxDirection
from ledgerline.pipeline.amount_parser import parse_amount_kes
from ledgerline.pipeline.date_parser import combine_date_time
from ledgerline.schemas.transactions import SkippedLine, TransactionDraft

logger = structlog.get_logger(__name__)

SKIP_NO_MATCHING_FORMAT = "no_matching_format"
SKIP_INVALID_AMOUNT = "invalid_amount"

# ── Grammar building blocks ──────────────────────────────────
AMT = r"(?:Kshs?|KES)\.?\s?(?P<amount>\d[\d,]*(?:\.\d{1,2})?)"
PHONE = r"(?P<phone>(?:\+?254|0)[\d*]{9})"
DATE = r"(?P<date>\d{1,2}/\d{1,2}/\d{2,4})"
TIME = r"(?:\s+at\s+(?P<time>\d{1,2}:\d{2}\s*(?:[AaPp][Mm])?))?"
PARTY = r"(?P<party>[^\n]+?)"
MSG_END = r"(?:\.?\s+New\b|\.?\s*$)"

# Ordered: first match wins. (shape name, direction, pattern)
STRICT_SHAPES = [
    ("received", TxDirection.RECEIVED,
     rf"received\s+{AMT}\s+from\s+{PARTY}(?:\s+{PHONE})?\s+on\s+{DATE}{TIME}"),
    ("paybill_account", TxDirection.PAYBILL,
     rf"{AMT}\s+sent\s+to\s+{PARTY}\s+for\s+account\s+(?P<account>[\w\-]+)\s+on\s+{DATE}{TIME}"),
    ("sent", TxDirection.SENT,
     rf"{AMT}\s+sent\s+to\s+{PARTY}(?:\s+{PHONE})?\s+on\s+{DATE}{TIME}"),
    ("paybill", TxDirection.PAYBILL,
     rf"{AMT}\s+paid\s+to\s+{PARTY}\.?\s+Account\s+(?:number|no\.?)\s+(?P<account>[\w\-]+)\s+on\s+{DATE}{TIME}"),
    ("buy_goods_till", TxDirection.BUY_GOODS,
     rf"{AMT}\s+paid\s+to\s+{PARTY}\s+-\s+(?P<account>\d+)\s+on\s+{DATE}{TIME}"),
    ("buy_goods", TxDirection.BUY_GOODS,
     rf"{AMT}\s+paid\s+to\s+{PARTY}\.?\s+on\s+{DATE}{TIME}"),
    ("withdrawal", TxDirection.WITHDRAWAL,
     rf"withdrawn\s+{AMT}\s+from\s+(?:agent\s+)?{PARTY}\s+on\s+{DATE}{TIME}"),
    ("withdrawal_agent_first", TxDirection.WITHDRAWAL,
     rf"on\s+{DATE}{TIME}\s*Withdraw\s+{AMT}\s+from\s+{PARTY}{MSG_END}"),
    ("airtime", TxDirection.AIRTIME,
     rf"bought\s+{AMT}\s+of\s+airtime(?:\s+for\s+{PHONE})?\s+on\s+{DATE}{TIME}"),
    ("deposit", TxDirection.DEPOSIT,
     rf"on\s+{DATE}{TIME}\s*Give\s+{AMT}\s+cash\s+to\s+{PARTY}{MSG_END}"),
]

_COMPILED_SHAPES = [
    (name, direction, re.compile(pattern, re.IGNORECASE))
    for name, direction, pattern in STRICT_SHAPES
]

# Keyword -> direction for the loose grammar, checked in order
LOOSE_KEYWORDS = [
    ("fuliza", TxDirection.FULIZA),
    ("airtime", TxDirection.AIRTIME),
    ("withdraw", TxDirection.WITHDRAWAL),
    ("received", TxDirection.RECEIVED),
    ("give", TxDirection.DEPOSIT),
    ("deposit", TxDirection.DEPOSIT),
    ("paybill", TxDirection.PAYBILL),
    ("account", TxDirection.PAYBILL),
    ("till", TxDirection.BUY_GOODS),
    ("buy goods", TxDirection.BUY_GOODS),
    ("paid to", TxDirection.BUY_GOODS),
    ("sent", TxDirection.SENT),
]

RE_REFERENCE = re.compile(r"\b(?P<reference>[A-Z0-9]{10})\s+Confirmed")
RE_BALANCE = re.compile(
    r"balance\s+(?:is|was)\s+(?:Kshs?|KES)\.?\s?(?P<balance>\d[\d,]*(?:\.\d{1,2})?)",
    re.IGNORECASE,
)
RE_COST = re.compile(
    r"Transaction\s+cost,?\s+(?:Kshs?|KES)\.?\s?(?P<cost>\d[\d,]*(?:\.\d{1,2})?)",
    re.IGNORECASE,
)
RE_ANY_AMOUNT = re.compile(r"(?:Kshs?|KES)\.?\s?(?P<amount>\S+)", re.IGNORECASE)
RE_ANY_DATE = re.compile(r"(?P<date>\d{1,2}/\d{1,2}/\d{2,4}|\d{4}-\d{2}-\d{2})")
RE_ANY_TIME = re.compile(r"(?P<time>\d{1,2}:\d{2}\s*(?:[AaPp][Mm])?)")
RE_ANY_PHONE = re.compile(PHONE)
RE_LOOSE_PARTY = re.compile(
    r"\b(?:from|to)\s+(?P<party>[A-Z][A-Z0-9 .'&\-]*?[A-Z0-9])(?=\s+(?:on\b|\+?\d)|[.,]|$)"
)
RE_MESSAGE_BOUNDARY = re.compile(r"(?<=\S)\s+(?=[A-Z0-9]{10}\s+Confirmed)")


def split_messages(text: str) -> list[tuple[int, str]]:
    """
    Split raw statement text into (line_number, message) pairs.
    Several messages pasted on one line are split at receipt-code boundaries.
    """
    messages = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        for part in RE_MESSAGE_BOUNDARY.split(line):
            part = part.strip()
            if part:
                messages.append((line_number, part))
    return messages


def _clean_party(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    party = raw.strip().rstrip(".,;:-").strip()
    return party or None


def score_fields(draft: TransactionDraft, increment: Optional[float] = None) -> float:
    """Fixed increment per present field of (date, amount, counterparty, reference)."""
    step = settings.RULE_FIELD_INCREMENT if increment is None else increment
    present = sum([
        draft.timestamp is not None,
        draft.amount is not None,
        bool(draft.counterparty_name or draft.counterparty_phone),
        bool(draft.reference),
    ])
    return min(1.0, present * step)


def _read_extras(message: str) -> dict:
    extras = {}
    m = RE_REFERENCE.search(message)
    if m:
        extras["reference"] = m.group("reference")
    m = RE_BALANCE.search(message)
    if m:
        extras["balance_after"] = parse_amount_kes(m.group("balance")).amount
    m = RE_COST.search(message)
    if m:
        extras["transaction_cost"] = parse_amount_kes(m.group("cost")).amount
    return extras


def _match_strict(message: str) -> Optional[tuple[str, TxDirection, dict]]:
    for name, direction, pattern in _COMPILED_SHAPES:
        m = pattern.search(message)
        if m:
            return name, direction, m.groupdict()
    return None


def _match_loose(message: str) -> Optional[tuple[TxDirection, dict]]:
    lowered = message.lower()
    direction = next((d for kw, d in LOOSE_KEYWORDS if kw in lowered), None)
    if direction is None:
        return None

    fields: dict = {}
    m = RE_ANY_AMOUNT.search(message)
    fields["amount"] = m.group("amount") if m else None
    m = RE_ANY_DATE.search(message)
    fields["date"] = m.group("date") if m else None
    m = RE_ANY_TIME.search(message)
    fields["time"] = m.group("time") if m else None
    m = RE_LOOSE_PARTY.search(message)
    fields["party"] = m.group("party") if m else None
    m = RE_ANY_PHONE.search(message)
    fields["phone"] = m.group("phone") if m else None
    return direction, fields


def parse_line(
    message: str,
    tenant_id: str,
    line_number: int = 1,
) -> Union[TransactionDraft, SkippedLine]:
    """Parse one message into a rule-based draft, or explain why it was skipped."""
    shape = None
    strict = _match_strict(message)
    if strict:
        shape, direction, fields = strict
    else:
        loose = _match_loose(message)
        if loose is None:
            return SkippedLine(line_number=line_number, text=message, reason=SKIP_NO_MATCHING_FORMAT)
        direction, fields = loose
        shape = "loose"

    amount = parse_amount_kes(fields["amount"]).amount if fields.get("amount") else None
    if amount is None:
        return SkippedLine(line_number=line_number, text=message, reason=SKIP_INVALID_AMOUNT)

    draft = TransactionDraft(
        tenant_id=tenant_id,
        timestamp=combine_date_time(fields.get("date"), fields.get("time")),
        amount=amount,
        direction=direction,
        counterparty_name=_clean_party(fields.get("party")),
        counterparty_phone=fields.get("phone"),
        account_number=fields.get("account"),
        raw_text=message,
        extraction_method=ExtractionMethod.RULE_BASED,
        **_read_extras(message),
    )
    draft.confidence = score_fields(draft)

    logger.debug(
        "line_parsed",
        line_number=line_number,
        shape=shape,
        direction=direction.value,
        confidence=draft.confidence,
    )
    return draft


def parse_statement(text: str, tenant_id: str) -> tuple[list[TransactionDraft], list[SkippedLine]]:
    """Parse every message in a statement. Order follows the input."""
    drafts: list[TransactionDraft] = []
    skipped: list[SkippedLine] = []
    for line_number, message in split_messages(text):
        parsed = parse_line(message, tenant_id, line_number)
        if isinstance(parsed, SkippedLine):
            skipped.append(parsed)
        else:
            drafts.append(parsed)
    return drafts, skipped
