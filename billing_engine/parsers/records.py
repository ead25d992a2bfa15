"""
Record normalizer.

Maps store-native payloads (orders, contact-lens prescriptions and eye
prescriptions) onto the ``SourceRecord`` variants. Every logical field is
resolved through an explicit alias list, customer row first.
"""
from __future__ import annotations
from typing import Any, Mapping, Optional
from loguru import logger
from ..models import (
    ContactLensRecord,
    OrderRecord,
    PrescriptionRecord,
    SourceRecord,
    SourceType,
)
from .base import clean_text, first_present, normalize_mobile, parse_record_date

UNKNOWN_CUSTOMER = "Unknown Customer"

MOBILE_KEYS = ("mobile_no", "mobile", "phone_landline", "phone")
NAME_KEYS = ("name", "customer_name")
CONTACT_KEYS = ("email", "address", "city", "state", "pin_code")

# Reference number aliases looked up on the record itself
REFERENCE_KEYS = {
    SourceType.ORDER: ("order_no", "bill_no"),
    SourceType.CONTACT_LENS: ("prescription_no",),
    SourceType.PRESCRIPTION: ("prescription_no", "reference_no"),
}

DATE_KEYS = {
    SourceType.ORDER: ("order_date", "created_at"),
    SourceType.CONTACT_LENS: ("created_at", "date"),
    SourceType.PRESCRIPTION: ("date", "created_at"),
}

_RECORD_CLASSES = {
    SourceType.ORDER: OrderRecord,
    SourceType.CONTACT_LENS: ContactLensRecord,
    SourceType.PRESCRIPTION: PrescriptionRecord,
}


class RecordError(ValueError):
    """Raised when a raw payload cannot be normalized."""
    pass


def customer_row(raw: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    """Related customer row embedded as ``prescriptions`` (list or object)."""
    related = raw.get("prescriptions")
    if isinstance(related, list):
        related = related[0] if related else None
    return related if isinstance(related, Mapping) else None


def _resolve_reference(
    source_type: SourceType,
    raw: Mapping[str, Any],
    customer: Optional[Mapping[str, Any]],
    record_id: str,
) -> str:
    value = first_present([raw], REFERENCE_KEYS[source_type])
    if value is None and source_type == SourceType.CONTACT_LENS:
        # booked against a prescription: its number, then the CL's own reference
        value = first_present([customer], ("prescription_no",))
        if value is None:
            value = first_present([raw], ("reference_no",))
    if value is None:
        return f"ID-{record_id}"
    return clean_text(value)


def normalize_record(source_type: SourceType | str, raw: Mapping[str, Any]) -> SourceRecord:
    """
    Convert one raw payload into its ``SourceRecord`` variant.

    Raises:
        RecordError: If the payload is not a mapping or has no ``id``.
    """
    source_type = SourceType(source_type)
    if not isinstance(raw, Mapping):
        raise RecordError(f"{source_type.value} payload is not an object: {type(raw).__name__}")

    record_id = clean_text(raw.get("id"))
    if not record_id:
        raise RecordError(f"{source_type.value} payload has no id")

    customer = customer_row(raw)
    lookup = [customer, raw]

    mobile = normalize_mobile(first_present(lookup, MOBILE_KEYS))
    name = clean_text(first_present(lookup, NAME_KEYS)) or UNKNOWN_CUSTOMER

    contact = {}
    for key in CONTACT_KEYS:
        value = first_present(lookup, (key,))
        if value is not None:
            contact[key] = clean_text(value)

    date_value = first_present([raw], DATE_KEYS[source_type])

    record = _RECORD_CLASSES[source_type](
        id=record_id,
        name=name,
        mobile=mobile,
        reference_no=_resolve_reference(source_type, raw, customer, record_id),
        date=parse_record_date(date_value),
        mergeable=bool(mobile),
        contact=contact,
        raw_payload=dict(raw),
    )
    if not record.mergeable:
        logger.debug(f"{source_type.value} {record_id} has no usable mobile; excluded from merge")
    return record


def normalize_records(source_type: SourceType | str, rows: list) -> list[SourceRecord]:
    """Normalize a batch, skipping malformed rows with a warning."""
    records = []
    for row in rows or []:
        try:
            records.append(normalize_record(source_type, row))
        except (RecordError, ValueError, TypeError) as e:
            logger.warning(f"Skipping malformed {SourceType(source_type).value} record: {e}")
    return records
