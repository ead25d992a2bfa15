"""
Identity resolver.

Groups source records that belong to the same customer, keyed by
normalized mobile number, into ``CustomerIdentity`` entries.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional
from loguru import logger
from .models import CustomerIdentity, SourceRecord, SourceRef, SourceType
from .parsers import UNKNOWN_CUSTOMER

# Merge order across sources
MERGE_ORDER = (SourceType.PRESCRIPTION, SourceType.CONTACT_LENS, SourceType.ORDER)


@dataclass
class _IdentityDraft:
    primary_mobile: str
    name: str
    primary_record_id: str
    sources: list[SourceRef] = field(default_factory=list)
    contact: dict[str, str] = field(default_factory=dict)
    latest_date: Optional[datetime] = None
    item_count: int = 0

    @classmethod
    def start(cls, record: SourceRecord) -> "_IdentityDraft":
        draft = cls(
            primary_mobile=record.mobile,
            name=record.name,
            primary_record_id=record.id,
        )
        draft.add(record)
        return draft

    @classmethod
    def from_identity(cls, identity: CustomerIdentity) -> "_IdentityDraft":
        return cls(
            primary_mobile=identity.primary_mobile,
            name=identity.name,
            primary_record_id=identity.primary_record_id,
            sources=list(identity.sources),
            contact=dict(identity.contact),
            latest_date=identity.latest_date,
            item_count=identity.item_count,
        )

    def has_source(self, ref: SourceRef) -> bool:
        return any(existing.key == ref.key for existing in self.sources)

    def add(self, record: SourceRecord) -> bool:
        """Fold one record in. Returns False when the source is already present."""
        ref = SourceRef(
            source_type=record.source_type,
            reference_no=record.reference_no,
            record_id=record.id,
            date=record.date,
        )
        if self.has_source(ref):
            return False

        self.sources.append(ref)
        if self.name == UNKNOWN_CUSTOMER and record.name != UNKNOWN_CUSTOMER:
            self.name = record.name
        for key, value in record.contact.items():
            if value and not self.contact.get(key):
                self.contact[key] = value
        if record.date is not None and (self.latest_date is None or record.date > self.latest_date):
            self.latest_date = record.date
        self.item_count += len(record.child_items())
        return True

    def freeze(self) -> CustomerIdentity:
        tags = []
        references = []
        for ref in self.sources:
            if ref.source_type.tag not in tags:
                tags.append(ref.source_type.tag)
            if ref.reference_no not in references:
                references.append(ref.reference_no)

        return CustomerIdentity(
            primary_mobile=self.primary_mobile,
            name=self.name,
            sources=tuple(self.sources),
            job_type_label=", ".join(tags),
            latest_date=self.latest_date,
            merged_reference_no=" | ".join(references),
            primary_record_id=self.primary_record_id,
            contact=dict(self.contact),
            item_count=self.item_count,
        )


def merge_into(identity: Optional[CustomerIdentity], record: SourceRecord) -> CustomerIdentity:
    """
    Merge a single record into an identity (or start a new one).

    Merging a record whose ``(source_type, reference_no)`` is already among
    the identity's sources returns an equal identity.
    """
    if identity is None:
        return _IdentityDraft.start(record).freeze()
    if identity.primary_mobile != record.mobile:
        raise ValueError(
            f"Record mobile {record.mobile!r} does not match identity {identity.primary_mobile!r}"
        )
    draft = _IdentityDraft.from_identity(identity)
    draft.add(record)
    return draft.freeze()


def order_for_merge(records: Iterable[SourceRecord]) -> list[SourceRecord]:
    """Stable reorder: prescriptions, then contact lenses, then orders."""
    rank = {source_type: i for i, source_type in enumerate(MERGE_ORDER)}
    return sorted(records, key=lambda record: rank[record.source_type])


def sort_identities(identities: list[CustomerIdentity]) -> list[CustomerIdentity]:
    """Newest first. Ties keep their input order; undated identities go last."""
    return sorted(
        identities,
        key=lambda identity: (
            identity.latest_date is not None,
            identity.latest_date or datetime.min,
        ),
        reverse=True,
    )


def merge_records(records: Iterable[SourceRecord]) -> list[CustomerIdentity]:
    """
    Merge records into customer identities.

    Records are processed in the order given (callers pass prescriptions,
    contact lenses, then orders). Records without a usable mobile are left
    out. The result is sorted by latest activity, newest first.
    """
    drafts: dict[str, _IdentityDraft] = {}
    skipped = 0
    duplicates = 0

    for record in records:
        if not record.mergeable or not record.mobile:
            skipped += 1
            continue
        draft = drafts.get(record.mobile)
        if draft is None:
            drafts[record.mobile] = _IdentityDraft.start(record)
        elif not draft.add(record):
            duplicates += 1

    if skipped or duplicates:
        logger.debug(f"Merge skipped {skipped} records without mobile, {duplicates} duplicate sources")

    return sort_identities([draft.freeze() for draft in drafts.values()])
