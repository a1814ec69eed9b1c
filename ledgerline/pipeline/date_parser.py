"""
Day-first date and time parser for mobile-money statements.

Strategy:
1. Try unambiguous formats first (named month, ISO)
2. For numeric formats: assume dd/mm (East African default)
3. Two-digit years: yy > 50 -> 19yy, otherwise 20yy
"""

import re
from datetime import date, datetime, time
from typing import Optional

from dateutil import parser as dateutil_parser
from dateutil import tz
from pydantic import BaseModel

from ledgerline.config import settings


class DateParseResult(BaseModel):
    parsed_date: Optional[date] = None
    raw_text: str
    format_detected: str
    confidence: float
    is_ambiguous: bool = False


# Ordered by specificity (try most specific first)
DATE_FORMATS = [
    (r'(\d{1,2})(?:st|nd|rd|th)?\s+(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)\w*,?\s+(\d{4})', 'DD_MON_YYYY', False),
    (r'(\d{1,2})(?:st|nd|rd|th)?\s+(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)\w*,?\s+(\d{2})\b', 'DD_MON_YY', False),
    (r'(\d{4})-(\d{2})-(\d{2})', 'YYYY-MM-DD', False),
    (r'(\d{1,2})[/\-\.](\d{1,2})[/\-\.](\d{4})', 'D/M/YYYY', True),
    (r'(\d{1,2})[/\-\.](\d{1,2})[/\-\.](\d{2})\b', 'D/M/YY', True),
]

TIME_PATTERN = re.compile(
    r'(?P<hour>\d{1,2}):(?P<minute>\d{2})(?::(?P<second>\d{2}))?\s*(?P<meridiem>[AaPp]\.?[Mm]\.?)?'
)


def expand_two_digit_year(yy: int) -> int:
    return 1900 + yy if yy > 50 else 2000 + yy


def parse_date_ke(raw: str) -> DateParseResult:
    """Parse a date string with day-first priority."""
    raw_clean = raw.strip()

    for pattern, format_name, potentially_ambiguous in DATE_FORMATS:
        m = re.match(pattern, raw_clean, re.IGNORECASE)
        if not m:
            continue

        try:
            parsed = _parse_by_format(m, format_name)
        except (ValueError, OverflowError):
            continue

        is_ambiguous = False
        if potentially_ambiguous:
            day_val, month_val = int(m.group(1)), int(m.group(2))
            is_ambiguous = day_val <= 12 and month_val <= 12 and day_val != month_val

        # Numeric day-first is the convention for these statements,
        # ambiguity only lowers confidence slightly.
        confidence = 0.95 if not is_ambiguous else 0.85

        return DateParseResult(
            parsed_date=parsed,
            raw_text=raw,
            format_detected=format_name,
            confidence=confidence,
            is_ambiguous=is_ambiguous,
        )

    return DateParseResult(
        parsed_date=None,
        raw_text=raw,
        format_detected="UNKNOWN",
        confidence=0.0,
    )


def _parse_by_format(match, format_name: str) -> Optional[date]:
    """Parse date from regex match based on detected format."""

    if format_name == 'YYYY-MM-DD':
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    if format_name == 'D/M/YYYY':
        return date(int(match.group(3)), int(match.group(2)), int(match.group(1)))

    if format_name == 'D/M/YY':
        year = expand_two_digit_year(int(match.group(3)))
        return date(year, int(match.group(2)), int(match.group(1)))

    if format_name == 'DD_MON_YY':
        parsed = dateutil_parser.parse(f"{match.group(1)} {match.group(2)} 2000", dayfirst=True).date()
        return parsed.replace(year=expand_two_digit_year(int(match.group(3))))

    if format_name == 'DD_MON_YYYY':
        return dateutil_parser.parse(match.group(0), dayfirst=True).date()

    return None


def parse_time(raw: Optional[str]) -> Optional[time]:
    """Parse '2:30 PM', '2:30PM' or '14:30'. Returns None when absent or invalid."""
    if not raw:
        return None
    m = TIME_PATTERN.search(raw)
    if not m:
        return None

    hour = int(m.group("hour"))
    minute = int(m.group("minute"))
    second = int(m.group("second") or 0)
    meridiem = (m.group("meridiem") or "").replace(".", "").upper()

    if meridiem:
        if not 1 <= hour <= 12:
            return None
        if meridiem == "PM" and hour != 12:
            hour += 12
        elif meridiem == "AM" and hour == 12:
            hour = 0

    try:
        return time(hour, minute, second)
    except ValueError:
        return None


def combine_date_time(raw_date: Optional[str], raw_time: Optional[str] = None) -> Optional[datetime]:
    """Build a naive statement-local datetime. Midnight when the time is missing."""
    if not raw_date:
        return None
    result = parse_date_ke(raw_date)
    if result.parsed_date is None:
        return None
    return datetime.combine(result.parsed_date, parse_time(raw_time) or time(0, 0))


def to_statement_local(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive statement-local time. Naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(tz.gettz(settings.STATEMENT_TIMEZONE)).replace(tzinfo=None)
