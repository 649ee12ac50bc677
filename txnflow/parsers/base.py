"""Base parser: shared interface, row validation, and dedup key utilities."""

from __future__ import annotations

import hashlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import MAX_EMAX, MIN_EMIN, Context, Decimal, DecimalException
from pathlib import Path

# Accepted after ISO-8601 fails.
_DATE_FORMATS = ("%m/%d/%Y", "%m-%d-%Y", "%Y/%m/%d")

# Python treats \x1f as whitespace, so normalize_description() can never
# leave one inside a description.
KEY_DELIMITER = "\x1f"

# Accepted non-zero amounts: 10**-12 <= |amount| < 10**16, at most 64
# significant digits. Anything else is treated as an invalid amount.
MAX_AMOUNT_ADJUSTED = 15
MIN_AMOUNT_ADJUSTED = -12
MAX_AMOUNT_DIGITS = 64


@dataclass
class RawRow:
    """One externally supplied row, all fields still text."""
    date: str
    amount: str
    description: str | None = None
    category_label: str | None = None


@dataclass
class CandidateRow:
    """A row that passed validation."""
    date: str              # YYYY-MM-DD
    description: str
    amount: Decimal
    category_label: str | None = None


class BaseParser(ABC):
    """Abstract base for file parsers.

    Attributes:
        skipped_count: Number of rows skipped during parsing (blank lines,
            rows without any recognised field). Check this after parse().
    """

    def __init__(self):
        self.skipped_count: int = 0

    @abstractmethod
    def parse(self, file_path: Path) -> list[RawRow]:
        """Parse a file and return its raw rows."""

    @abstractmethod
    def detect(self, file_path: Path) -> bool:
        """Return True if this parser can handle the given file."""


def normalize_description(desc: str | None) -> str:
    """Trim, lower-case, and collapse whitespace runs to a single space."""
    return re.sub(r"\s+", " ", (desc or "").strip().lower()).strip()


def parse_date(value: str | None) -> str | None:
    """Return the calendar day of ``value`` as YYYY-MM-DD, or None.

    ISO-8601 dates and datetimes are tried first; aware datetimes are
    converted to UTC before the day is taken. Then MM/DD/YYYY, MM-DD-YYYY
    and YYYY/MM/DD.
    """
    text = (value or "").strip()
    if not text:
        return None
    iso = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        return calendar_day(datetime.fromisoformat(iso))
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def parse_amount(value: str | None) -> Decimal | None:
    """Parse a signed decimal amount.

    Returns None for anything that is not a finite number inside the
    accepted range (see MAX_AMOUNT_ADJUSTED and friends).
    """
    text = (value or "").strip().replace(",", "")
    if not text:
        return None
    try:
        amount = Decimal(text)
    except DecimalException:
        return None
    if not amount.is_finite():
        return None
    if amount.is_zero():
        return amount
    if len(amount.as_tuple().digits) > MAX_AMOUNT_DIGITS:
        return None
    if not MIN_AMOUNT_ADJUSTED <= amount.adjusted() <= MAX_AMOUNT_ADJUSTED:
        return None
    return amount


def validate_row(row: RawRow) -> CandidateRow | None:
    """Validate one raw row. Returns None when date or amount is invalid."""
    day = parse_date(row.date)
    if day is None:
        return None
    amount = parse_amount(row.amount)
    if amount is None:
        return None
    label = (row.category_label or "").strip() or None
    return CandidateRow(
        date=day,
        description=row.description or "",
        amount=amount,
        category_label=label,
    )


def to_decimal(amount: Decimal | int | float | str) -> Decimal:
    """Coerce an amount to Decimal. Floats go through str() so 0.1 stays 0.1."""
    if isinstance(amount, Decimal):
        return amount
    if isinstance(amount, float):
        return Decimal(str(amount))
    return Decimal(amount)


def canonical_amount(amount: Decimal | int | float | str) -> str:
    """Render an amount in fixed-point notation with trailing zeros stripped.

    5, 5.0 and 5.00 all become "5"; 4.50 becomes "4.5"; 1E+3 becomes "1000".
    """
    value = to_decimal(amount)
    if value.is_zero():
        return "0"
    # Precision wide enough for every digit, so normalize() never rounds
    exact = Context(
        prec=len(value.as_tuple().digits), Emax=MAX_EMAX, Emin=MIN_EMIN,
    )
    return format(value.normalize(exact), "f")


def calendar_day(value: date | datetime | str) -> str:
    """Return YYYY-MM-DD for a date, datetime, or parseable date string."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    day = parse_date(value)
    if day is None:
        raise ValueError(f"Not a valid date: {value!r}")
    return day


def compute_duplicate_key(
    description: str | None,
    day: date | datetime | str,
    amount: Decimal | int | float | str,
) -> str:
    """Canonical dedup key: normalized description, calendar day, amount."""
    return KEY_DELIMITER.join(
        (normalize_description(description), calendar_day(day), canonical_amount(amount))
    )


def compute_file_hash(file_path: Path) -> str:
    """SHA256 of entire file contents."""
    h = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()
