"""
Base utilities for raw record parsing.

Store payloads arrive as loosely typed dicts with several aliases for the
same logical field and numbers stored as text. This module provides:
- Numeric coercion (leading numeric prefix, like a browser's parseFloat)
- Date parsing
- Mobile number normalization
- Ordered alias resolution
"""
from __future__ import annotations
import math
import re
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional
from loguru import logger

# Leading numeric prefix: "12.5kg" -> 12.5, "  -3e2x" -> -300
_NUMERIC_PREFIX = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")

_EMPTY_MARKERS = ("", "null", "none", "undefined")


def is_blank(value: Any) -> bool:
    """True for None and for strings that are empty after stripping."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in _EMPTY_MARKERS
    return False


def to_number(value: Any, default: float = 0.0) -> float:
    """
    Coerce a raw value to float.

    Handles:
    - int / float / Decimal (NUMERIC columns come back as Decimal)
    - Strings with a leading numeric prefix ("500", "500.00", "12abc")
    - Empty, non-numeric and non-finite values (return ``default``)
    """
    if value is None or isinstance(value, bool):
        return default

    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return number if math.isfinite(number) else default

    match = _NUMERIC_PREFIX.match(str(value))
    if not match:
        return default

    number = float(match.group(1))
    return number if math.isfinite(number) else default


def to_quantity(value: Any) -> float:
    """Quantities default to 1 when missing, non-numeric or zero."""
    quantity = to_number(value, default=1.0)
    return quantity if quantity > 0 else 1.0


def has_value(payload: Mapping[str, Any], key: str) -> bool:
    """True when ``key`` holds a non-blank value. Zero counts as present."""
    return key in payload and not is_blank(payload[key])


def first_present(
    sources: Iterable[Optional[Mapping[str, Any]]],
    keys: Iterable[str],
) -> Any:
    """
    Resolve a logical field through an ordered alias list.

    Each source mapping is tried in order and, within it, each key in order.
    The first non-blank value wins. Returns None when nothing matches.
    """
    keys = tuple(keys)
    for source in sources:
        if not source:
            continue
        for key in keys:
            value = source.get(key)
            if not is_blank(value):
                return value
    return None


def first_number(payload: Mapping[str, Any], keys: Iterable[str]) -> Optional[float]:
    """First key that is present (zero included) coerced to float, else None."""
    for key in keys:
        if has_value(payload, key):
            return to_number(payload[key])
    return None


def normalize_mobile(value: Any) -> str:
    """
    Normalize a mobile number into a merge key.

    Whitespace is trimmed and, when the value contains digits, only the
    digits are kept. Returns an empty string for unusable values.
    """
    if is_blank(value):
        return ""
    text = str(value).strip()
    digits = re.sub(r"\D", "", text)
    return digits or text


def looks_like_phone(term: str, min_digits: int = 6) -> bool:
    """True when a search term is mostly a phone number (digits, spaces, +, -)."""
    if not term:
        return False
    stripped = term.strip()
    if not re.fullmatch(r"[\d\s+\-()]+", stripped):
        return False
    return len(re.sub(r"\D", "", stripped)) >= min_digits


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_record_date(value: Any) -> Optional[datetime]:
    """
    Parse a stored date or timestamp.

    Stores return either native date/datetime values or strings in one of:
    - ISO 8601 (2024-04-01, 2024-04-01T10:15:00Z, with offsets)
    - DD/MM/YYYY
    - DD-MM-YYYY
    - DD-MMM-YYYY (e.g., "01-Apr-2024")

    Aware values are converted to naive UTC so that every date compares.
    Returns None for empty or unparseable values.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return _naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    s = str(value).strip()
    if s.lower() in _EMPTY_MARKERS:
        return None

    try:
        return _naive_utc(datetime.fromisoformat(s.replace("Z", "+00:00")))
    except ValueError:
        pass

    formats = [
        "%d/%m/%Y",    # 01/04/2024
        "%d-%m-%Y",    # 01-04-2024
        "%d-%b-%Y",    # 01-Apr-2024
        "%Y%m%d",      # 20240401
    ]

    for fmt in formats:
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue

    logger.warning(f"Could not parse date: {s}")
    return None


def parse_bool(value: Any) -> bool:
    """Parse a stored flag ("Yes", "true", 1, ...)."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float, Decimal)):
        return value != 0
    return str(value).strip().lower() in ("yes", "true", "1", "y", "t")


def clean_text(value: Any) -> str:
    """Stringify and strip a raw value. Blank values become an empty string."""
    if is_blank(value):
        return ""
    return str(value).strip()
