"""
Data models for the billing engine.

Pydantic models for source records, merged customers, billing lines and
payment snapshots, plus the read-side PostgreSQL schema the store queries.
"""
from pathlib import Path

from .entities import (
    JOB_TYPE_TAGS,
    ContactLensRecord,
    CustomerIdentity,
    DisplayEntry,
    OrderRecord,
    PaymentSnapshot,
    PrescriptionRecord,
    Provenance,
    PurchaseLineItem,
    SourceRecord,
    SourceRef,
    SourceType,
    UserAction,
)

# Path to schema file
SCHEMA_FILE = Path(__file__).parent / "schema.sql"


def get_schema_sql() -> str:
    """Get the full schema SQL."""
    return SCHEMA_FILE.read_text(encoding="utf-8")


__all__ = [
    "JOB_TYPE_TAGS",
    "ContactLensRecord",
    "CustomerIdentity",
    "DisplayEntry",
    "OrderRecord",
    "PaymentSnapshot",
    "PrescriptionRecord",
    "Provenance",
    "PurchaseLineItem",
    "SourceRecord",
    "SourceRef",
    "SourceType",
    "UserAction",
    "SCHEMA_FILE",
    "get_schema_sql",
]
