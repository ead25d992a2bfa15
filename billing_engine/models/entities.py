from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union
from pydantic import BaseModel, ConfigDict, Field


class SourceType(str, Enum):
    ORDER = "order"
    CONTACT_LENS = "contact_lens"
    PRESCRIPTION = "prescription"

    @property
    def tag(self) -> str:
        """Short job-type tag shown next to a customer (``Order``, ``CL``, ``P``)."""
        return JOB_TYPE_TAGS[self]


JOB_TYPE_TAGS = {
    SourceType.ORDER: "Order",
    SourceType.CONTACT_LENS: "CL",
    SourceType.PRESCRIPTION: "P",
}


class Provenance(str, Enum):
    INITIAL = "INITIAL"
    DATABASE_VALUES = "DATABASE_VALUES"
    USER_INPUT = "USER_INPUT"


class UserAction(str, Enum):
    ADD_ITEM = "add_item"
    REMOVE_ITEM = "remove_item"
    EDIT_RATE = "edit_rate"
    EDIT_DISCOUNT = "edit_discount"
    APPLY_DISCOUNT = "apply_discount"
    EDIT_PAYMENT = "edit_payment"


def _first_mapping(value: Any) -> dict | None:
    # payment sub-records come back either as an object or a one-row list
    if isinstance(value, list):
        value = value[0] if value else None
    return value if isinstance(value, dict) else None


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


class _SourceRecordBase(BaseModel):
    id: str
    name: str
    mobile: str = ""                 # normalized; empty when unusable
    reference_no: str
    date: datetime | None = None
    mergeable: bool = True
    contact: dict[str, str] = Field(default_factory=dict)
    raw_payload: dict[str, Any] = Field(default_factory=dict)

    def child_items(self) -> list:
        return []

    def payment(self) -> dict | None:
        return None


class OrderRecord(_SourceRecordBase):
    source_type: Literal[SourceType.ORDER] = SourceType.ORDER

    def child_items(self) -> list:
        return _as_list(self.raw_payload.get("order_items"))

    def payment(self) -> dict | None:
        return _first_mapping(self.raw_payload.get("order_payments"))


class ContactLensRecord(_SourceRecordBase):
    source_type: Literal[SourceType.CONTACT_LENS] = SourceType.CONTACT_LENS

    def child_items(self) -> list:
        return _as_list(self.raw_payload.get("contact_lens_items"))

    def payment(self) -> dict | None:
        payment = _first_mapping(self.raw_payload.get("payment"))
        if payment is None:
            payment = _first_mapping(self.raw_payload.get("contact_lens_payments"))
        return payment


class PrescriptionRecord(_SourceRecordBase):
    source_type: Literal[SourceType.PRESCRIPTION] = SourceType.PRESCRIPTION

    def child_items(self) -> list:
        return _as_list(self.raw_payload.get("items"))


SourceRecord = Annotated[
    Union[OrderRecord, ContactLensRecord, PrescriptionRecord],
    Field(discriminator="source_type"),
]


class SourceRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    source_type: SourceType
    reference_no: str
    record_id: str
    date: datetime | None = None

    @property
    def key(self) -> tuple[SourceType, str]:
        return (self.source_type, self.reference_no)


class CustomerIdentity(BaseModel):
    """A customer merged across all three stores, keyed by mobile number."""

    model_config = ConfigDict(frozen=True)

    primary_mobile: str
    name: str
    sources: tuple[SourceRef, ...]
    job_type_label: str
    latest_date: datetime | None = None
    merged_reference_no: str
    primary_record_id: str
    contact: dict[str, str] = Field(default_factory=dict)
    item_count: int = 0

    @property
    def source_types(self) -> list[SourceType]:
        seen: list[SourceType] = []
        for ref in self.sources:
            if ref.source_type not in seen:
                seen.append(ref.source_type)
        return seen


class PurchaseLineItem(BaseModel):
    id: str
    type: SourceType
    reference_no: str
    record_id: str
    item_name: str
    item_code: str
    quantity: float = 1.0
    rate: float = 0.0
    amount: float = Field(default=0.0, ge=0)
    discount_percent: float = 0.0
    discount_amount: float = 0.0
    tax_percent: float = 0.0
    date: datetime | None = None
    source_specific_details: dict[str, Any] = Field(default_factory=dict)


class PaymentSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    estimate: float = 0.0
    discount_amount: float = 0.0
    advance_total: float = 0.0
    advance_cash: float = 0.0
    advance_card_upi: float = 0.0
    advance_other: float = 0.0       # other / cheque
    payment_total: float = 0.0       # amount payable after discount
    total_paid: float = 0.0          # "Payment" display aggregate
    balance: float = 0.0
    provenance: Provenance = Provenance.INITIAL


class DisplayEntry(BaseModel):
    label: str
    sub_label: str
    source_type: SourceType
