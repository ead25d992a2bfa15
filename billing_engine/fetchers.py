"""
Source fetchers.

One fetcher per record store. A fetcher never raises to its caller: store
errors are logged and reported as a failed, empty ``FetchOutcome`` so that
one unavailable store cannot sink a whole search.
"""
from __future__ import annotations
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Callable, Optional
from loguru import logger
from .models import SourceRecord, SourceType
from .parsers import looks_like_phone, normalize_mobile, normalize_records
from .store import RawRecord, RecordStore


@dataclass
class FetchOutcome:
    """Records returned by one fetcher, or the reason it failed."""
    source_type: SourceType
    records: list[SourceRecord] = field(default_factory=list)
    failed: bool = False
    error: Optional[str] = None

    @classmethod
    def failure(cls, source_type: SourceType, error: str) -> "FetchOutcome":
        return cls(source_type=source_type, records=[], failed=True, error=error)


class SourceFetcher:
    """
    Base fetcher.

    Subclasses bind a source type to the matching pair of store queries.
    ``search`` runs the text query and, for phone-like terms, the mobile
    query too; ``history`` runs the mobile query only. Rows from both
    queries are deduplicated by id, first occurrence wins.
    """

    source_type: SourceType

    def __init__(self, store: RecordStore):
        self.store = store

    def _find_by_text(self, term: str) -> list[RawRecord]:
        raise NotImplementedError

    def _find_by_mobile(self, mobile: str) -> list[RawRecord]:
        raise NotImplementedError

    def search(self, term: str) -> FetchOutcome:
        term = (term or "").strip()
        if not term:
            return FetchOutcome(self.source_type)

        def query() -> list[RawRecord]:
            rows = list(self._find_by_text(term) or [])
            if looks_like_phone(term):
                rows.extend(self._find_by_mobile(normalize_mobile(term)) or [])
            return rows

        return self._run(query, f"search '{term}'")

    def history(self, mobile: str) -> FetchOutcome:
        mobile = normalize_mobile(mobile)
        if not mobile:
            return FetchOutcome(self.source_type)
        return self._run(lambda: list(self._find_by_mobile(mobile) or []), f"history {mobile}")

    def _run(self, query: Callable[[], list[RawRecord]], description: str) -> FetchOutcome:
        name = self.source_type.value
        try:
            rows = query()
        except Exception as e:
            logger.error(f"{name} fetch failed ({description}): {e}")
            return FetchOutcome.failure(self.source_type, str(e))

        records = self._dedupe(normalize_records(self.source_type, rows))
        logger.debug(f"{name} fetch ({description}): {len(rows)} rows, {len(records)} records")
        return FetchOutcome(self.source_type, records)

    @staticmethod
    def _dedupe(records: list[SourceRecord]) -> list[SourceRecord]:
        seen = set()
        unique = []
        for record in records:
            if record.id in seen:
                continue
            seen.add(record.id)
            unique.append(record)
        return unique


class OrderFetcher(SourceFetcher):
    source_type = SourceType.ORDER

    def _find_by_text(self, term: str) -> list[RawRecord]:
        return self.store.find_orders_by_text(term)

    def _find_by_mobile(self, mobile: str) -> list[RawRecord]:
        return self.store.find_orders_by_mobile(mobile)


class ContactLensFetcher(SourceFetcher):
    source_type = SourceType.CONTACT_LENS

    def _find_by_text(self, term: str) -> list[RawRecord]:
        return self.store.find_contact_lens_by_text(term)

    def _find_by_mobile(self, mobile: str) -> list[RawRecord]:
        return self.store.find_contact_lens_by_mobile(mobile)


class PrescriptionFetcher(SourceFetcher):
    source_type = SourceType.PRESCRIPTION

    def _find_by_text(self, term: str) -> list[RawRecord]:
        return self.store.find_prescriptions_by_text(term)

    def _find_by_mobile(self, mobile: str) -> list[RawRecord]:
        return self.store.find_prescriptions_by_mobile(mobile)


def build_fetchers(store: RecordStore) -> list[SourceFetcher]:
    """Fetchers in merge order: prescriptions, contact lenses, orders."""
    return [PrescriptionFetcher(store), ContactLensFetcher(store), OrderFetcher(store)]


def fan_out(
    fetchers: list[SourceFetcher],
    call: Callable[[SourceFetcher], FetchOutcome],
    timeout: Optional[float] = None,
) -> list[FetchOutcome]:
    """
    Run ``call`` for every fetcher concurrently and join the outcomes.

    Outcomes come back in fetcher order. With a ``timeout`` (seconds, shared
    by all fetchers), a fetcher still running at the deadline is reported as
    failed and its thread is abandoned.
    """
    deadline = time.monotonic() + timeout if timeout else None
    executor = ThreadPoolExecutor(max_workers=max(1, len(fetchers)), thread_name_prefix="fetch")
    try:
        futures = [(fetcher, executor.submit(call, fetcher)) for fetcher in fetchers]

        outcomes = []
        for fetcher, future in futures:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                outcomes.append(future.result(timeout=remaining))
            except FuturesTimeout:
                logger.error(f"{fetcher.source_type.value} fetch timed out after {timeout}s")
                outcomes.append(FetchOutcome.failure(fetcher.source_type, "timed out"))
        return outcomes
    finally:
        executor.shutdown(wait=deadline is None)
