"""Parsers for raw store payloads."""
from .base import (
    clean_text,
    first_number,
    first_present,
    has_value,
    is_blank,
    looks_like_phone,
    normalize_mobile,
    parse_bool,
    parse_record_date,
    to_number,
    to_quantity,
)
from .records import (
    UNKNOWN_CUSTOMER,
    RecordError,
    customer_row,
    normalize_record,
    normalize_records,
)

__all__ = [
    "clean_text",
    "first_number",
    "first_present",
    "has_value",
    "is_blank",
    "looks_like_phone",
    "normalize_mobile",
    "parse_bool",
    "parse_record_date",
    "to_number",
    "to_quantity",
    "UNKNOWN_CUSTOMER",
    "RecordError",
    "customer_row",
    "normalize_record",
    "normalize_records",
]
