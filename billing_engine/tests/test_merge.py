"""
Tests for customer identity merging.
"""
import pytest
from datetime import datetime
from billing_engine.merge import merge_into, merge_records, order_for_merge, sort_identities
from billing_engine.models import SourceType
from billing_engine.parsers.records import normalize_record, normalize_records


def _order(id, mobile, order_no, order_date=None, name="Customer"):
    return normalize_record("order", {
        "id": id, "order_no": order_no, "order_date": order_date,
        "prescriptions": {"name": name, "mobile_no": mobile},
    })


def _contact_lens(id, mobile, ref, created_at=None, name="Customer"):
    return normalize_record("contact_lens", {
        "id": id, "reference_no": ref, "created_at": created_at,
        "prescriptions": {"name": name, "mobile_no": mobile},
    })


def _prescription(id, mobile, ref, date=None, name="Customer", **extra):
    return normalize_record("prescription", {
        "id": id, "prescription_no": ref, "date": date, "name": name, "mobile_no": mobile, **extra,
    })


class TestMergeRecords:
    """Tests for grouping records by mobile."""

    def test_three_records_two_customers(self):
        """Order and contact lens share a mobile; the prescription does not."""
        records = order_for_merge([
            _order("o1", "9000000001", "B1", "2024-05-01"),
            _contact_lens("c1", "9000000001", "CL1", "2024-04-01"),
            _prescription("p1", "9000000002", "RX1", "2024-03-01"),
        ])
        identities = merge_records(records)

        assert len(identities) == 2
        first = identities[0]
        assert first.primary_mobile == "9000000001"
        assert len(first.sources) == 2
        assert "Order" in first.job_type_label
        assert "CL" in first.job_type_label
        assert identities[1].job_type_label == "P"

    def test_merge_order_prescriptions_first(self):
        records = order_for_merge([
            _order("o1", "9000000001", "B1"),
            _prescription("p1", "9000000001", "RX1"),
            _contact_lens("c1", "9000000001", "CL1"),
        ])
        assert [record.source_type for record in records] == [
            SourceType.PRESCRIPTION, SourceType.CONTACT_LENS, SourceType.ORDER,
        ]
        identity = merge_records(records)[0]
        assert identity.job_type_label == "P, CL, Order"
        assert identity.merged_reference_no == "RX1 | CL1 | B1"
        assert identity.primary_record_id == "p1"

    def test_same_reference_is_merged_once(self):
        record = _order("o1", "9000000001", "B1")
        identities = merge_records([record, record])
        assert len(identities[0].sources) == 1

    def test_distinct_reference_numbers_only(self):
        identity = merge_records([
            _prescription("p1", "9000000001", "RX1"),
            _contact_lens("c1", "9000000001", "RX1"),
        ])[0]
        assert len(identity.sources) == 2
        assert identity.merged_reference_no == "RX1"

    def test_latest_date_is_max(self):
        identity = merge_records([
            _prescription("p1", "9000000001", "RX1", "2024-03-01"),
            _contact_lens("c1", "9000000001", "CL1", None),
            _order("o1", "9000000001", "B1", "2024-01-01"),
        ])[0]
        assert identity.latest_date == datetime(2024, 3, 1)

    def test_records_without_mobile_are_excluded(self):
        identities = merge_records([
            _prescription("p1", "", "RX1"),
            _order("o1", "9000000001", "B1"),
        ])
        assert [identity.primary_mobile for identity in identities] == ["9000000001"]

    def test_placeholder_name_is_replaced(self):
        identity = merge_records([
            normalize_record("prescription", {"id": "p1", "prescription_no": "RX1", "mobile_no": "9000000001"}),
            _order("o1", "9000000001", "B1", name="Meera Nair"),
        ])[0]
        assert identity.name == "Meera Nair"

    def test_first_real_name_is_kept(self):
        identity = merge_records([
            _prescription("p1", "9000000001", "RX1", name="Meera Nair"),
            _order("o1", "9000000001", "B1", name="M. Nair"),
        ])[0]
        assert identity.name == "Meera Nair"

    def test_contact_fields_fill_only_when_empty(self):
        identity = merge_records([
            _prescription("p1", "9000000001", "RX1", email="first@example.com"),
            normalize_record("order", {
                "id": "o1", "order_no": "B1",
                "prescriptions": {"mobile_no": "9000000001", "email": "second@example.com", "city": "Pune"},
            }),
        ])[0]
        assert identity.contact == {"email": "first@example.com", "city": "Pune"}

    def test_item_count_accumulates(self):
        identity = merge_records(normalize_records("order", [
            {"id": "o1", "order_no": "B1", "mobile_no": "9000000001", "order_items": [{"id": 1}, {"id": 2}]},
            {"id": "o2", "order_no": "B2", "mobile_no": "9000000001", "order_items": [{"id": 3}]},
        ]))[0]
        assert identity.item_count == 3

    def test_identity_is_frozen(self):
        identity = merge_records([_order("o1", "9000000001", "B1")])[0]
        with pytest.raises(Exception):
            identity.name = "Changed"


class TestMergeInto:
    """Tests for single-record merges."""

    def test_idempotent(self):
        record = _contact_lens("c1", "9000000001", "CL1", "2024-04-01")
        identity = merge_into(None, record)
        again = merge_into(identity, record)
        assert again == identity
        assert len(again.sources) == 1

    def test_adds_new_source(self):
        identity = merge_into(None, _prescription("p1", "9000000001", "RX1"))
        identity = merge_into(identity, _order("o1", "9000000001", "B1"))
        assert [ref.key for ref in identity.sources] == [
            (SourceType.PRESCRIPTION, "RX1"), (SourceType.ORDER, "B1"),
        ]

    def test_mismatched_mobile_raises(self):
        identity = merge_into(None, _order("o1", "9000000001", "B1"))
        with pytest.raises(ValueError):
            merge_into(identity, _order("o2", "9000000002", "B2"))


class TestSortIdentities:
    """Tests for result ordering."""

    def test_newest_first(self):
        identities = merge_records([
            _order("o1", "9000000001", "B1", "2024-01-01"),
            _order("o2", "9000000002", "B2", "2024-06-01"),
        ])
        assert [identity.primary_mobile for identity in identities] == ["9000000002", "9000000001"]

    def test_ties_keep_insertion_order(self):
        identities = merge_records([
            _order("o1", "9000000003", "B1", "2024-01-01"),
            _order("o2", "9000000001", "B2", "2024-01-01"),
            _order("o3", "9000000002", "B3", "2024-01-01"),
        ])
        assert [identity.primary_mobile for identity in identities] == [
            "9000000003", "9000000001", "9000000002",
        ]

    def test_undated_last(self):
        identities = merge_records([
            _order("o1", "9000000001", "B1", None),
            _order("o2", "9000000002", "B2", "2020-01-01"),
        ])
        assert identities[-1].primary_mobile == "9000000001"

    def test_sort_is_stable_for_presorted_input(self):
        identities = merge_records([
            _order("o1", "9000000001", "B1", "2024-01-01"),
            _order("o2", "9000000002", "B2", "2024-01-01"),
        ])
        assert sort_identities(identities) == identities
