"""
Main orchestration for the billing engine.

Provides:
- Customer search: fan out to the three stores, merge by mobile
- Purchase history: billing lines for one mobile, newest first
- Billing pre-population: capped history lines with reconciled payments
- Record details: one record with its lines and payment snapshot
"""
from __future__ import annotations
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional
from loguru import logger

from .config import EngineConfig
from .fetchers import FetchOutcome, SourceFetcher, build_fetchers, fan_out
from .lines import expand_record, expand_records
from .merge import merge_records, order_for_merge
from .models import (
    CustomerIdentity,
    DisplayEntry,
    PaymentSnapshot,
    PurchaseLineItem,
    SourceRecord,
    SourceType,
)
from .parsers import normalize_mobile, normalize_record
from .payments import PaymentSession, combine_snapshots, reconcile_record
from .store import InMemoryRecordStore, PostgresRecordStore, RecordStore, StoreError

SEARCH_FAILED_MESSAGE = "Search failed. Please try again."

# Display priority when an identity spans several sources
DISPLAY_PRIORITY = (SourceType.CONTACT_LENS, SourceType.ORDER, SourceType.PRESCRIPTION)


class SearchFailure(Exception):
    """Raised when every record store failed to answer a search."""
    pass


class HistoryFailure(Exception):
    """Raised when a history lookup is given an empty or invalid mobile number."""
    pass


class RecordNotFound(LookupError):
    """Raised when a record id does not exist in its store."""
    pass


@dataclass
class RecordDetails:
    """A single source record with its billing lines and payment snapshot."""
    record: SourceRecord
    lines: list[PurchaseLineItem]
    payment: PaymentSnapshot


@dataclass
class BillingDraft:
    """Pre-populated billing view for one customer."""
    mobile: str
    lines: list[PurchaseLineItem]
    history_count: int
    session: PaymentSession = field(default_factory=PaymentSession)

    @property
    def payment(self) -> PaymentSnapshot:
        return self.session.snapshot


def sort_lines(lines: Iterable[PurchaseLineItem]) -> list[PurchaseLineItem]:
    """Newest first, ties in input order, undated lines last."""
    return sorted(
        lines,
        key=lambda line: (line.date is not None, line.date or datetime.min),
        reverse=True,
    )


def format_for_display(identity: CustomerIdentity) -> DisplayEntry:
    """Label and sub-label for one search result."""
    date_text = identity.latest_date.strftime("%d/%m/%Y") if identity.latest_date else ""
    sub_label = " • ".join(part for part in [
        identity.primary_mobile,
        identity.job_type_label,
        date_text,
        f"Items: {identity.item_count}",
    ] if part)

    source_types = identity.source_types
    source_type = next(
        (candidate for candidate in DISPLAY_PRIORITY if candidate in source_types),
        SourceType.PRESCRIPTION,
    )
    return DisplayEntry(
        label=f"{identity.name} ({identity.merged_reference_no})",
        sub_label=sub_label,
        source_type=source_type,
    )


class BillingEngine:
    """
    Customer identity resolution and purchase aggregation.

    Reads orders, contact-lens prescriptions and eye prescriptions through a
    ``RecordStore`` and turns them into merged customers and billing lines.

    Usage:
        engine = BillingEngine()

        # Find customers
        for identity in engine.search("sharma"):
            print(engine.format_for_display(identity).label)

        # Billing lines for a customer
        lines = engine.get_purchase_history("9876543210")
    """

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or EngineConfig.from_env()
        self.store = store if store is not None else PostgresRecordStore(self.config)
        self.fetchers = build_fetchers(self.store)

    def _fetch(self, call: Callable[[SourceFetcher], FetchOutcome]) -> list[FetchOutcome]:
        return fan_out(self.fetchers, call, self.config.fetch_timeout)

    def test_connection(self) -> dict:
        """Test connection to the record store."""
        try:
            return {"status": "connected", **self.store.ping()}
        except StoreError as e:
            logger.error(f"Connection test failed: {e}")
            return {"status": "error", "error": str(e)}

    def search(self, term: str) -> list[CustomerIdentity]:
        """
        Search all three stores and merge the hits by customer.

        Args:
            term: Name, phone number or reference number fragment

        Returns:
            Merged customers, most recent activity first

        Raises:
            SearchFailure: If every store failed
        """
        term = (term or "").strip()
        if not term:
            return []

        outcomes = self._fetch(lambda fetcher: fetcher.search(term))
        if all(outcome.failed for outcome in outcomes):
            logger.error(f"Search '{term}' failed on every store")
            raise SearchFailure(SEARCH_FAILED_MESSAGE)

        failed = [outcome.source_type.value for outcome in outcomes if outcome.failed]
        if failed:
            logger.warning(f"Search '{term}' returned partial results; failed: {', '.join(failed)}")

        records = order_for_merge(record for outcome in outcomes for record in outcome.records)
        identities = merge_records(records)
        logger.info(f"Search '{term}': {len(records)} records, {len(identities)} customers")
        return identities[: self.config.max_results]

    def _history_records(self, mobile: str) -> tuple[str, list[SourceRecord]]:
        normalized = normalize_mobile(mobile)
        if not normalized or not any(ch.isdigit() for ch in normalized):
            raise HistoryFailure(f"Invalid mobile number: {mobile!r}")

        outcomes = self._fetch(lambda fetcher: fetcher.history(normalized))
        if all(outcome.failed for outcome in outcomes):
            logger.error(f"History for {normalized} failed on every store")
        records = order_for_merge(record for outcome in outcomes for record in outcome.records)
        return normalized, records

    @staticmethod
    def _history_lines(records: list[SourceRecord]) -> list[PurchaseLineItem]:
        seen = set()
        lines = []
        for line in expand_records(records):
            if line.id in seen:
                continue
            seen.add(line.id)
            lines.append(line)
        return sort_lines(lines)

    def get_purchase_history(self, mobile: str) -> list[PurchaseLineItem]:
        """
        Billing lines for every purchase made under a mobile number.

        Raises:
            HistoryFailure: If the mobile number is empty or has no digits
        """
        normalized, records = self._history_records(mobile)
        lines = self._history_lines(records)
        logger.info(f"History {normalized}: {len(records)} records, {len(lines)} lines")
        return lines

    def prefill_billing(self, mobile: str) -> BillingDraft:
        """
        Pre-populate a bill from the most recent purchases.

        Keeps the newest ``prefill_max_items`` lines and loads the payment
        figures of the records behind them into a ``PaymentSession``.
        """
        normalized, records = self._history_records(mobile)
        lines = self._history_lines(records)
        selected = lines[: self.config.prefill_max_items]

        keys = {(line.type, line.record_id) for line in selected}
        snapshots = [
            reconcile_record(record, lines)
            for record in records
            if (record.source_type, record.id) in keys
        ]

        session = PaymentSession()
        session.load(selected, combine_snapshots(snapshots))
        logger.info(
            f"Prefill {normalized}: {len(selected)} of {len(lines)} lines from {len(snapshots)} records"
        )
        return BillingDraft(
            mobile=normalized,
            lines=selected,
            history_count=len(lines),
            session=session,
        )

    def get_record_details(self, record_id: str, source_type: SourceType | str) -> RecordDetails:
        """
        Load one record with its lines and reconciled payment.

        Raises:
            ValueError: If the source type is unknown
            RecordNotFound: If no record has this id
            StoreError: If the store cannot be read
        """
        source_type = SourceType(source_type)
        getter = {
            SourceType.ORDER: self.store.get_order,
            SourceType.CONTACT_LENS: self.store.get_contact_lens,
            SourceType.PRESCRIPTION: self.store.get_prescription,
        }[source_type]

        raw = getter(record_id)
        if raw is None:
            raise RecordNotFound(f"No {source_type.value} record with id {record_id}")

        record = normalize_record(source_type, raw)
        lines = expand_record(record)
        return RecordDetails(record=record, lines=lines, payment=reconcile_record(record, lines))

    def format_for_display(self, identity: CustomerIdentity) -> DisplayEntry:
        return format_for_display(identity)


def _print_lines(lines: list[PurchaseLineItem]):
    for line in lines:
        date_text = line.date.strftime("%d/%m/%Y") if line.date else "-"
        print(
            f"{date_text}  {line.reference_no:<14} {line.item_code:<10} {line.item_name}"
            f"  qty={line.quantity:g} rate={line.rate:.2f} disc={line.discount_amount:.2f}"
            f" amount={line.amount:.2f}"
        )


def _print_payment(payment: PaymentSnapshot):
    print(f"\n=== Payment ({payment.provenance.value}) ===")
    for name, value in payment.model_dump(exclude={"provenance"}).items():
        print(f"  {name}: {value:.2f}")


def _configure_logging(config: EngineConfig, verbose: bool):
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else config.log_level)
    if config.log_file:
        logger.add(config.log_file, level="DEBUG", rotation="10 MB")


def main(argv: Optional[list[str]] = None) -> int:
    """Command line entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Billing engine - search customers and aggregate purchases"
    )
    action = parser.add_mutually_exclusive_group(required=True)
    action.add_argument("--search", metavar="TERM", help="Search customers by name, phone or reference")
    action.add_argument("--history", metavar="MOBILE", help="Purchase history for a mobile number")
    action.add_argument("--prefill", metavar="MOBILE", help="Pre-populate a bill for a mobile number")
    action.add_argument("--details", metavar="ID", help="Show one record (requires --source)")
    action.add_argument("--test-connection", action="store_true", help="Test store connection and exit")
    parser.add_argument(
        "--source",
        choices=[source_type.value for source_type in SourceType],
        help="Source type for --details",
    )
    parser.add_argument(
        "--fixtures",
        metavar="FILE",
        help="Read records from a JSON fixture file instead of PostgreSQL",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args(argv)
    if args.details and not args.source:
        parser.error("--details requires --source")

    config = EngineConfig.from_env()
    _configure_logging(config, args.verbose)

    store = None
    if args.fixtures:
        store = InMemoryRecordStore.from_json(
            args.fixtures,
            search_limit=config.search_limit,
            cl_search_limit=config.cl_search_limit,
        )
    else:
        errors = config.validate()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            return 1

    engine = BillingEngine(store=store, config=config)

    try:
        if args.test_connection:
            result = engine.test_connection()
            print(f"Connection test: {result}")
            return 0 if result["status"] == "connected" else 1

        if args.search is not None:
            identities = engine.search(args.search)
            print(f"\n=== {len(identities)} customers ===")
            for identity in identities:
                entry = engine.format_for_display(identity)
                print(f"[{entry.source_type.value}] {entry.label}\n    {entry.sub_label}")
            return 0

        if args.history is not None:
            lines = engine.get_purchase_history(args.history)
            print(f"\n=== {len(lines)} lines ===")
            _print_lines(lines)
            return 0

        if args.prefill is not None:
            draft = engine.prefill_billing(args.prefill)
            print(f"\n=== {len(draft.lines)} of {draft.history_count} lines ===")
            _print_lines(draft.lines)
            _print_payment(draft.payment)
            return 0

        details = engine.get_record_details(args.details, args.source)
        record = details.record
        print(f"\n=== {record.source_type.value} {record.reference_no} ===")
        print(f"{record.name}  {record.mobile or '-'}")
        _print_lines(details.lines)
        _print_payment(details.payment)
        return 0

    except (SearchFailure, HistoryFailure, RecordNotFound) as e:
        logger.error(str(e))
        return 1
    except StoreError as e:
        logger.error(f"Store error: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Command failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
