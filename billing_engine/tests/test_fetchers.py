"""
Tests for source fetchers and the concurrent fan-out.
"""
import time
from unittest.mock import Mock
from billing_engine.fetchers import (
    ContactLensFetcher,
    FetchOutcome,
    OrderFetcher,
    PrescriptionFetcher,
    build_fetchers,
    fan_out,
)
from billing_engine.models import SourceType
from billing_engine.store import InMemoryRecordStore


class TestSourceFetcher:
    """Tests for single-store fetchers."""

    def test_text_search(self, store):
        outcome = OrderFetcher(store).search("Ravi")
        assert not outcome.failed
        assert [record.id for record in outcome.records] == ["ord-1"]
        assert store.calls == [("orders", "text")]

    def test_phone_term_also_queries_by_mobile(self, store):
        outcome = ContactLensFetcher(store).search("9876543210")
        assert store.calls == [("contact_lens", "text"), ("contact_lens", "mobile")]
        assert [record.id for record in outcome.records] == ["cl-1"]

    def test_duplicates_across_queries_keep_first(self):
        store = Mock()
        store.find_orders_by_text.return_value = [{"id": "o1", "order_no": "FIRST"}]
        store.find_orders_by_mobile.return_value = [
            {"id": "o1", "order_no": "SECOND"},
            {"id": "o2", "order_no": "OTHER"},
        ]
        outcome = OrderFetcher(store).search("9000000001")
        assert [(record.id, record.reference_no) for record in outcome.records] == [
            ("o1", "FIRST"), ("o2", "OTHER"),
        ]

    def test_history_uses_mobile_query_only(self, store):
        outcome = PrescriptionFetcher(store).history(" 98765 43210 ")
        assert store.calls == [("prescriptions", "mobile")]
        assert [record.id for record in outcome.records] == ["rx-1"]

    def test_store_error_is_reported_not_raised(self):
        store = InMemoryRecordStore(fail_on=["orders"])
        outcome = OrderFetcher(store).search("Ravi")
        assert outcome.failed
        assert outcome.records == []
        assert "unavailable" in outcome.error

    def test_any_exception_is_contained(self):
        store = Mock()
        store.find_prescriptions_by_text.side_effect = TimeoutError("statement timeout")
        outcome = PrescriptionFetcher(store).search("Ravi")
        assert outcome.failed
        assert outcome.source_type == SourceType.PRESCRIPTION

    def test_malformed_rows_are_skipped(self, store):
        outcome = OrderFetcher(store).history("9876543210")
        assert [record.id for record in outcome.records] == ["ord-1"]

    def test_empty_term_makes_no_call(self, store):
        outcome = OrderFetcher(store).search("   ")
        assert outcome.records == []
        assert store.calls == []


class TestFanOut:
    """Tests for concurrent fetching."""

    def test_outcomes_in_fetcher_order(self, store):
        outcomes = fan_out(build_fetchers(store), lambda fetcher: fetcher.search("Ravi"))
        assert [outcome.source_type for outcome in outcomes] == [
            SourceType.PRESCRIPTION, SourceType.CONTACT_LENS, SourceType.ORDER,
        ]
        assert all(not outcome.failed for outcome in outcomes)

    def test_slow_fetcher_times_out(self):
        fast = Mock(source_type=SourceType.ORDER)
        slow = Mock(source_type=SourceType.CONTACT_LENS)

        def call(fetcher):
            if fetcher is slow:
                time.sleep(0.5)
            return FetchOutcome(fetcher.source_type)

        outcomes = fan_out([fast, slow], call, timeout=0.1)
        assert not outcomes[0].failed
        assert outcomes[1].failed
        assert outcomes[1].error == "timed out"
