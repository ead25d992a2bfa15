"""
Record store contract.

The engine reads through this interface only. A store returns raw payloads
(plain dicts) with their children embedded:
- orders: ``order_items``, ``order_payments`` and the customer row as ``prescriptions``
- contact-lens prescriptions: ``contact_lens_items``, ``payment`` and ``prescriptions``
- eye prescriptions: the prescription row itself
"""
from __future__ import annotations
from typing import Any, Optional, Protocol, runtime_checkable

RawRecord = dict[str, Any]


class StoreError(Exception):
    """Raised when the underlying data source cannot answer a query."""
    pass


@runtime_checkable
class RecordStore(Protocol):
    """Read-only access to the three record stores."""

    def find_orders_by_text(self, term: str) -> list[RawRecord]: ...

    def find_contact_lens_by_text(self, term: str) -> list[RawRecord]: ...

    def find_prescriptions_by_text(self, term: str) -> list[RawRecord]: ...

    def find_orders_by_mobile(self, mobile: str) -> list[RawRecord]: ...

    def find_contact_lens_by_mobile(self, mobile: str) -> list[RawRecord]: ...

    def find_prescriptions_by_mobile(self, mobile: str) -> list[RawRecord]: ...

    def get_order(self, record_id: str) -> Optional[RawRecord]: ...

    def get_contact_lens(self, record_id: str) -> Optional[RawRecord]: ...

    def get_prescription(self, record_id: str) -> Optional[RawRecord]: ...

    def ping(self) -> dict[str, Any]: ...
