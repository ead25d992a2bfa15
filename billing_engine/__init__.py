"""
Billing Engine - Customer identity resolution and purchase aggregation.

Reads an optical store's three record stores (eyewear orders, contact-lens
prescriptions and eye prescriptions), merges the records that belong to one
customer and turns their purchases into billing-ready line items with
reconciled payment figures.

Key Features:
- Concurrent search across all stores with partial results on failure
- Customer merge keyed by normalized mobile number
- Uniform billing lines from order, contact-lens and prescription items
- Payment reconciliation across legacy and current payment layouts
- Provenance tracking so stored figures are not silently recomputed

Usage:
    # Search customers
    python -m billing_engine --search sharma

    # Purchase history for a mobile number
    python -m billing_engine --history 9876543210

    # Run against a JSON fixture file
    python -m billing_engine --fixtures records.json --prefill 9876543210
"""

__version__ = "1.0.0"

from .config import EngineConfig
from .engine import (
    BillingDraft,
    BillingEngine,
    HistoryFailure,
    RecordDetails,
    RecordNotFound,
    SearchFailure,
    format_for_display,
)
from .store import InMemoryRecordStore, PostgresRecordStore, RecordStore, StoreError

__all__ = [
    "EngineConfig",
    "BillingDraft",
    "BillingEngine",
    "HistoryFailure",
    "RecordDetails",
    "RecordNotFound",
    "SearchFailure",
    "format_for_display",
    "InMemoryRecordStore",
    "PostgresRecordStore",
    "RecordStore",
    "StoreError",
    "__version__",
]
