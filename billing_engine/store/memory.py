"""
In-memory record store.

Serves raw payloads from plain lists (or a JSON fixture file) with the same
matching rules as the PostgreSQL store. Used by the CLI ``--fixtures``
option and by the test suite.
"""
from __future__ import annotations
import copy
import json
from pathlib import Path
from typing import Any, Iterable, Optional
from loguru import logger
from ..parsers.base import normalize_mobile
from .base import RawRecord, StoreError

ENTITIES = ("orders", "contact_lens", "prescriptions")

TEXT_FIELDS = {
    "orders": ("order_no", "bill_no"),
    "contact_lens": ("reference_no",),
    "prescriptions": ("prescription_no", "reference_no"),
}
CUSTOMER_TEXT_FIELDS = ("name", "mobile_no", "phone_landline", "prescription_no")
PHONE_FIELDS = ("mobile_no", "phone_landline")


def _customer(row: RawRecord, entity: str) -> dict:
    if entity == "prescriptions":
        return row
    related = row.get("prescriptions")
    if isinstance(related, list):
        related = related[0] if related else None
    return related if isinstance(related, dict) else {}


class InMemoryRecordStore:
    """
    Record store over in-memory lists of raw payloads.

    ``fail_on`` names entities (``orders``, ``contact_lens``,
    ``prescriptions``) whose queries raise ``StoreError``.
    """

    def __init__(
        self,
        orders: Optional[Iterable[RawRecord]] = None,
        contact_lens: Optional[Iterable[RawRecord]] = None,
        prescriptions: Optional[Iterable[RawRecord]] = None,
        search_limit: int = 20,
        cl_search_limit: int = 50,
        fail_on: Iterable[str] = (),
    ):
        self._rows = {
            "orders": list(orders or []),
            "contact_lens": list(contact_lens or []),
            "prescriptions": list(prescriptions or []),
        }
        self._limits = {
            "orders": search_limit,
            "contact_lens": cl_search_limit,
            "prescriptions": search_limit,
        }
        self.fail_on = set(fail_on)
        self.calls: list[tuple[str, str]] = []

    @classmethod
    def from_json(cls, path: str | Path, **kwargs) -> "InMemoryRecordStore":
        """Load a fixture file with ``orders``, ``contact_lens`` and ``prescriptions`` lists."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        unknown = set(data) - set(ENTITIES)
        if unknown:
            logger.warning(f"Ignoring unknown fixture keys: {sorted(unknown)}")
        return cls(
            orders=data.get("orders"),
            contact_lens=data.get("contact_lens"),
            prescriptions=data.get("prescriptions"),
            **kwargs,
        )

    def _check(self, entity: str, operation: str):
        self.calls.append((entity, operation))
        if entity in self.fail_on:
            raise StoreError(f"{entity} store unavailable")

    def _by_text(self, entity: str, term: str) -> list[RawRecord]:
        self._check(entity, "text")
        needle = term.strip().lower()
        matches = []
        for row in self._rows[entity]:
            customer = _customer(row, entity)
            values = [row.get(key) for key in TEXT_FIELDS[entity]]
            values += [customer.get(key) for key in CUSTOMER_TEXT_FIELDS]
            if any(value is not None and needle in str(value).lower() for value in values):
                matches.append(copy.deepcopy(row))
            if len(matches) >= self._limits[entity]:
                break
        return matches

    def _by_mobile(self, entity: str, mobile: str) -> list[RawRecord]:
        self._check(entity, "mobile")
        key = normalize_mobile(mobile)
        matches = []
        for row in self._rows[entity]:
            customer = _customer(row, entity)
            phones = [customer.get(field) for field in PHONE_FIELDS]
            phones += [row.get(field) for field in PHONE_FIELDS]
            if key and any(normalize_mobile(phone) == key for phone in phones):
                matches.append(copy.deepcopy(row))
        return matches

    def _get(self, entity: str, record_id: str) -> Optional[RawRecord]:
        self._check(entity, "get")
        for row in self._rows[entity]:
            if str(row.get("id")) == str(record_id):
                return copy.deepcopy(row)
        return None

    def find_orders_by_text(self, term: str) -> list[RawRecord]:
        return self._by_text("orders", term)

    def find_contact_lens_by_text(self, term: str) -> list[RawRecord]:
        return self._by_text("contact_lens", term)

    def find_prescriptions_by_text(self, term: str) -> list[RawRecord]:
        return self._by_text("prescriptions", term)

    def find_orders_by_mobile(self, mobile: str) -> list[RawRecord]:
        return self._by_mobile("orders", mobile)

    def find_contact_lens_by_mobile(self, mobile: str) -> list[RawRecord]:
        return self._by_mobile("contact_lens", mobile)

    def find_prescriptions_by_mobile(self, mobile: str) -> list[RawRecord]:
        return self._by_mobile("prescriptions", mobile)

    def get_order(self, record_id: str) -> Optional[RawRecord]:
        return self._get("orders", record_id)

    def get_contact_lens(self, record_id: str) -> Optional[RawRecord]:
        return self._get("contact_lens", record_id)

    def get_prescription(self, record_id: str) -> Optional[RawRecord]:
        return self._get("prescriptions", record_id)

    def ping(self) -> dict[str, Any]:
        return {
            "connected": True,
            "schema": "memory",
            "orders": len(self._rows["orders"]),
            "contact_lens_prescriptions": len(self._rows["contact_lens"]),
            "prescriptions": len(self._rows["prescriptions"]),
        }
