"""
Kenyan shilling amount parser.

Handles the amount conventions seen in mobile-money messages and ledger exports:
- Ksh1,234.50 / Ksh 1,234.50 / Kshs.1,234.50
- KES 1234 / KES1,234.00
- 1,234.50 / 1234
- -1,234.50 / (1,234.50) -> negative (ledger exports only)
"""

import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from pydantic import BaseModel

CENTS = Decimal("0.01")

_CURRENCY_PREFIX = re.compile(r"^(?:KSHS?|KES)\.?\s*", re.IGNORECASE)


class AmountParseResult(BaseModel):
    amount: Optional[Decimal] = None
    raw_text: str
    is_negative: bool = False
    has_currency: bool = False
    confidence: float = 0.0


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_amount_kes(raw: str) -> AmountParseResult:
    """
    Parse a monetary amount in shillings.
    Returns amount=None when the text is not a number.
    """
    s = raw.strip()
    if not s or s in ("-", "--"):
        return AmountParseResult(amount=None, raw_text=raw)

    is_negative = False

    if s.startswith("(") and s.endswith(")"):
        s = s[1:-1].strip()
        is_negative = True

    if s.startswith("-") or s.startswith(chr(8722)):
        s = s[1:].strip()
        is_negative = True

    has_currency = bool(_CURRENCY_PREFIX.match(s))
    s = _CURRENCY_PREFIX.sub("", s)

    # Messages end sentences right after the amount: "Ksh500.00."
    s = s.rstrip(".")
    s = s.replace(",", "").replace(" ", "")

    if not re.fullmatch(r"\d+(?:\.\d+)?", s):
        return AmountParseResult(amount=None, raw_text=raw, has_currency=has_currency)

    try:
        amount = quantize(Decimal(s))
    except (InvalidOperation, ValueError):
        return AmountParseResult(amount=None, raw_text=raw, has_currency=has_currency)

    if is_negative:
        amount = -amount

    confidence = 0.95 if has_currency else 0.85
    if abs(amount) > Decimal("10000000"):
        confidence = 0.5  # above any single-transaction wallet limit
    if amount == 0:
        confidence = 0.8

    return AmountParseResult(
        amount=amount,
        raw_text=raw,
        is_negative=is_negative,
        has_currency=has_currency,
        confidence=confidence,
    )


def to_decimal(value) -> Optional[Decimal]:
    """Coerce a str/int/float/Decimal into a 2dp Decimal, or None if not numeric."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (Decimal, int, float)):
        try:
            d = Decimal(str(value))
        except InvalidOperation:
            return None
        return quantize(d) if d.is_finite() else None
    return parse_amount_kes(str(value)).amount
