"""
Tests for the engine's public operations.

Note: Database tests require a reachable PostgreSQL with the optical store
schema and are marked ``integration``.
"""
import pytest
from datetime import datetime
from pathlib import Path
from unittest.mock import Mock, patch
from billing_engine.config import EngineConfig
from billing_engine.engine import (
    SEARCH_FAILED_MESSAGE,
    BillingEngine,
    HistoryFailure,
    RecordNotFound,
    SearchFailure,
    format_for_display,
    main,
)
from billing_engine.models import CustomerIdentity, Provenance, SourceRef, SourceType
from billing_engine.store import InMemoryRecordStore, StoreError

RECORDS_FILE = Path(__file__).parent / "fixtures" / "records.json"


class TestSearch:
    """Tests for customer search."""

    def test_merges_all_sources(self, engine):
        identities = engine.search("Ravi")
        assert len(identities) == 1
        identity = identities[0]
        assert identity.primary_mobile == "9876543210"
        assert identity.job_type_label == "P, CL, Order"
        assert identity.merged_reference_no == "RX-1001 | ORD-2001"
        assert identity.latest_date == datetime(2024, 5, 20)
        assert identity.item_count == 4
        assert identity.contact == {
            "email": "ravi@example.com", "city": "Pune", "address": "12 MG Road",
        }

    def test_phone_search(self, engine):
        identities = engine.search("9876543210")
        assert len(identities) == 1
        assert len(identities[0].sources) == 3

    def test_empty_term_makes_no_store_call(self, engine, store):
        assert engine.search("") == []
        assert engine.search("   ") == []
        assert engine.search(None) == []
        assert store.calls == []

    def test_partial_results_when_some_stores_fail(self, config):
        store = InMemoryRecordStore.from_json(RECORDS_FILE, fail_on=["orders", "contact_lens"])
        identities = BillingEngine(store=store, config=config).search("Ravi")
        assert len(identities) == 1
        assert identities[0].job_type_label == "P"

    def test_all_stores_failing_raises(self, config):
        store = InMemoryRecordStore(fail_on=["orders", "contact_lens", "prescriptions"])
        with pytest.raises(SearchFailure) as exc_info:
            BillingEngine(store=store, config=config).search("Ravi")
        assert str(exc_info.value) == SEARCH_FAILED_MESSAGE

    def test_no_matches(self, engine):
        assert engine.search("Nobody") == []

    def test_results_are_truncated(self, config):
        prescriptions = [
            {"id": f"p{i}", "prescription_no": f"RX{i}", "name": "Same Name", "mobile_no": f"900000000{i}"}
            for i in range(5)
        ]
        config.max_results = 2
        store = InMemoryRecordStore(prescriptions=prescriptions)
        identities = BillingEngine(store=store, config=config).search("Same")
        assert [identity.primary_mobile for identity in identities] == ["9000000000", "9000000001"]

    def test_deterministic(self, engine):
        assert engine.search("Ravi") == engine.search("Ravi")


class TestPurchaseHistory:
    """Tests for purchase history."""

    def test_newest_first(self, engine):
        lines = engine.get_purchase_history("9876543210")
        assert [line.id for line in lines] == [
            "order_ord-1_oi-1",
            "order_ord-1_oi-2",
            "cl_cl-1_cli-1",
            "cl_cl-1_cli-2",
            "rx_rx-1",
        ]

    def test_mobile_is_normalized(self, engine):
        assert len(engine.get_purchase_history(" 98765 43210 ")) == 5

    def test_diagnostic_prescriptions_and_bad_items_skipped(self, engine):
        lines = engine.get_purchase_history("9123456780")
        assert [line.item_name for line in lines] == ["Titan Eye+ Classic"]
        assert lines[0].item_code == "FRA-oi-3"

    @pytest.mark.parametrize("mobile", ["", "   ", None, "n/a"])
    def test_invalid_mobile_raises_without_store_call(self, engine, store, mobile):
        with pytest.raises(HistoryFailure):
            engine.get_purchase_history(mobile)
        assert store.calls == []

    def test_unknown_mobile(self, engine):
        assert engine.get_purchase_history("9999999999") == []

    def test_store_failure_gives_empty_history(self, config):
        store = InMemoryRecordStore(fail_on=["orders", "contact_lens", "prescriptions"])
        assert BillingEngine(store=store, config=config).get_purchase_history("9876543210") == []


class TestPrefillBilling:
    """Tests for billing pre-population."""

    def test_caps_lines_and_loads_payment(self, engine):
        draft = engine.prefill_billing("9876543210")
        assert draft.mobile == "9876543210"
        assert draft.history_count == 5
        assert [line.id for line in draft.lines] == [
            "order_ord-1_oi-1", "order_ord-1_oi-2", "cl_cl-1_cli-1",
        ]

        payment = draft.payment
        assert payment.provenance == Provenance.DATABASE_VALUES
        assert payment.estimate == 18500
        assert payment.discount_amount == 1400
        assert payment.advance_total == 7500
        assert payment.advance_cash == 5500
        assert payment.payment_total == 17100
        assert payment.balance == 9800

    def test_recompute_does_not_touch_loaded_payment(self, engine):
        draft = engine.prefill_billing("9876543210")
        before = draft.payment
        assert draft.session.recompute() == before

    def test_custom_cap(self, engine):
        engine.config.prefill_max_items = 1
        draft = engine.prefill_billing("9876543210")
        assert len(draft.lines) == 1
        assert draft.payment.estimate == 16500

    def test_invalid_mobile(self, engine):
        with pytest.raises(HistoryFailure):
            engine.prefill_billing("")


class TestRecordDetails:
    """Tests for single record lookup."""

    def test_order_details(self, engine):
        details = engine.get_record_details("ord-1", "order")
        assert details.record.reference_no == "ORD-2001"
        assert len(details.lines) == 2
        assert details.payment.balance == 8300

    def test_contact_lens_details(self, engine):
        details = engine.get_record_details("cl-1", SourceType.CONTACT_LENS)
        assert details.payment.payment_total == 1800

    def test_not_found(self, engine):
        with pytest.raises(RecordNotFound):
            engine.get_record_details("missing", "prescription")

    def test_unknown_source_type(self, engine):
        with pytest.raises(ValueError):
            engine.get_record_details("ord-1", "invoice")

    def test_store_error_propagates(self, config):
        store = InMemoryRecordStore(fail_on=["orders"])
        with pytest.raises(StoreError):
            BillingEngine(store=store, config=config).get_record_details("ord-1", "order")


class TestFormatForDisplay:
    """Tests for search result formatting."""

    def test_merged_customer(self, engine):
        entry = format_for_display(engine.search("Ravi")[0])
        assert entry.label == "Ravi Sharma (RX-1001 | ORD-2001)"
        assert entry.sub_label == "9876543210 • P, CL, Order • 20/05/2024 • Items: 4"
        assert entry.source_type == SourceType.CONTACT_LENS

    def test_source_type_priority(self):
        identity = CustomerIdentity(
            primary_mobile="9000000001",
            name="Meera",
            sources=(
                SourceRef(source_type=SourceType.PRESCRIPTION, reference_no="RX1", record_id="p1"),
                SourceRef(source_type=SourceType.ORDER, reference_no="B1", record_id="o1"),
            ),
            job_type_label="P, Order",
            merged_reference_no="RX1 | B1",
            primary_record_id="p1",
        )
        entry = format_for_display(identity)
        assert entry.source_type == SourceType.ORDER
        assert entry.sub_label == "9000000001 • P, Order • Items: 0"

    def test_engine_method_matches_function(self, engine):
        identity = engine.search("Ravi")[0]
        assert engine.format_for_display(identity) == format_for_display(identity)


class TestConnection:
    """Tests for connection checks."""

    def test_in_memory(self, engine):
        result = engine.test_connection()
        assert result["status"] == "connected"
        assert result["orders"] == 3

    def test_error(self, config):
        store = Mock()
        store.ping.side_effect = StoreError("connection refused")
        result = BillingEngine(store=store, config=config).test_connection()
        assert result == {"status": "error", "error": "connection refused"}

    @patch("billing_engine.engine.PostgresRecordStore")
    def test_default_store_is_postgres(self, mock_store, config):
        engine = BillingEngine(config=config)
        mock_store.assert_called_once_with(config)
        assert engine.store is mock_store.return_value


class TestCli:
    """Tests for the command line entry point."""

    def test_search(self, capsys):
        assert main(["--fixtures", str(RECORDS_FILE), "--search", "Ravi"]) == 0
        out = capsys.readouterr().out
        assert "Ravi Sharma (RX-1001 | ORD-2001)" in out

    def test_prefill(self, capsys):
        assert main(["--fixtures", str(RECORDS_FILE), "--prefill", "9876543210"]) == 0
        out = capsys.readouterr().out
        assert "DATABASE_VALUES" in out

    def test_details(self, capsys):
        assert main(["--fixtures", str(RECORDS_FILE), "--details", "ord-1", "--source", "order"]) == 0
        assert "ORD-2001" in capsys.readouterr().out

    def test_invalid_mobile_exit_code(self):
        assert main(["--fixtures", str(RECORDS_FILE), "--history", "abc"]) == 1

    def test_details_requires_source(self):
        with pytest.raises(SystemExit):
            main(["--fixtures", str(RECORDS_FILE), "--details", "ord-1"])


class TestPostgresIntegration:
    """Integration tests (require a running PostgreSQL)."""

    @pytest.fixture
    def pg_engine(self):
        return BillingEngine(config=EngineConfig.from_env())

    @pytest.mark.integration
    def test_connection(self, pg_engine):
        assert pg_engine.test_connection()["status"] == "connected"

    @pytest.mark.integration
    def test_search_runs(self, pg_engine):
        assert isinstance(pg_engine.search("a"), list)
