"""
Free-text expense parser.

Turns messages like "Coffee $5.50", "Lunch $15 12/25" or
"yesterday 20 Groceries run" into a transaction draft. This is a first-match
regex heuristic, not a grammar: when a number could be both an amount and part
of a date, the amount patterns win because they are tried first.
"""

import re
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

AMOUNT_PATTERNS = (
    re.compile(r"\$?\s*(\d+\.?\d*)"),                         # $5.50, 5.50, $5
    re.compile(r"(\d+\.?\d*)\s*(USD|EUR|GBP|INR)", re.IGNORECASE),  # 15 USD
)

DATE_PATTERNS = (
    re.compile(r"(\d{1,2})[/\-](\d{1,2})[/\-](\d{2,4})"),  # 12/25/2024
    re.compile(r"(\d{1,2})[/\-](\d{1,2})"),                # 12/25, current year
)

DAY_KEYWORDS = re.compile(r"(today|yesterday)", re.IGNORECASE)

UNKNOWN_VENDOR = "Unknown"


@dataclass
class ParsedTransaction:
    amount: Optional[Decimal]
    date: date
    vendor: str = ""
    note: str = ""
    is_valid: bool = False


def _extract_amount(text: str) -> Optional[Decimal]:
    for pattern in AMOUNT_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            amount = Decimal(match.group(1))
        except InvalidOperation:
            continue
        if amount > 0:
            return amount
    return None


def _extract_date(text: str, today: date) -> date:
    lowered = text.lower()
    if "today" in lowered:
        return today
    if "yesterday" in lowered:
        return today - timedelta(days=1)

    for pattern in DATE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        groups = match.groups()
        month, day = int(groups[0]), int(groups[1])
        if len(groups) > 2:
            year = int(groups[2])
            if year < 100:
                year += 2000
        else:
            year = today.year
        try:
            return date(year, month, day)
        except ValueError:
            # not a calendar date, e.g. 13/45
            continue

    return today


def _split_vendor_note(text: str):
    remainder = text
    for pattern in DATE_PATTERNS:
        remainder = pattern.sub("", remainder)
    remainder = DAY_KEYWORDS.sub("", remainder)
    # currency-code form first so "15 USD" goes as a whole
    for pattern in reversed(AMOUNT_PATTERNS):
        remainder = pattern.sub("", remainder)

    words = remainder.split()
    if not words:
        return UNKNOWN_VENDOR, ""
    return words[0], " ".join(words[1:])


def parse_message(text: str, today: Optional[date] = None) -> ParsedTransaction:
    """
    Parse an expense statement.

    Args:
        text: Raw message body
        today: Reference date for "today"/"yesterday" and defaults (local date if omitted)

    Returns:
        ParsedTransaction; is_valid is False when no positive amount was found,
        in which case vendor and note are left empty.
    """
    today = today or date.today()
    text = (text or "").strip()

    amount = _extract_amount(text)
    if amount is None:
        return ParsedTransaction(amount=None, date=today)

    vendor, note = _split_vendor_note(text)
    return ParsedTransaction(
        amount=amount,
        date=_extract_date(text, today),
        vendor=vendor,
        note=note,
        is_valid=True,
    )
