"""
Payment reconciler.

Resolves the estimate, discount, advance and balance of a record from
payment payloads written by several generations of the store application,
and owns the provenance state machine that decides when those figures may
be recomputed.

Resolution order per field:
- advance: combined ``advance`` (> 0), then the ``advance_cash`` /
  ``advance_card_upi`` / ``advance_other`` triad when any is present, then a
  line-level ``advance``
- estimate: ``estimate``, ``payment_estimate``, then the sum of quantity * rate
- discount: ``discount_amount``, then ``discount_percent`` of the estimate
- payment total: ``payment_total``, ``final_amount``, then estimate - discount
- balance: the stored ``balance`` verbatim, else payment total - advance
"""
from __future__ import annotations
from typing import Any, Iterable, Mapping, Optional
from loguru import logger
from .models import PaymentSnapshot, Provenance, PurchaseLineItem, SourceRecord, UserAction
from .parsers import first_number, has_value, to_number

ADVANCE_TRIAD = ("advance_cash", "advance_card_upi", "advance_other")
NEWER_ADVANCE_FIELDS = ("cash_advance", "card_upi_advance", "cheque_advance")
TOTAL_PAID_FIELDS = ("advance",) + NEWER_ADVANCE_FIELDS + ADVANCE_TRIAD

ADVANCE_BREAKDOWN = {
    "advance_cash": ("advance_cash", "cash_advance"),
    "advance_card_upi": ("advance_card_upi", "card_upi_advance"),
    "advance_other": ("advance_other", "cheque_advance"),
}

# Allowed provenance transitions, by trigger
TRANSITIONS = {
    "load": {
        Provenance.INITIAL: Provenance.DATABASE_VALUES,
        Provenance.DATABASE_VALUES: Provenance.DATABASE_VALUES,
        Provenance.USER_INPUT: Provenance.DATABASE_VALUES,
    },
    "user_edit": {
        Provenance.INITIAL: Provenance.USER_INPUT,
        Provenance.DATABASE_VALUES: Provenance.USER_INPUT,
        Provenance.USER_INPUT: Provenance.USER_INPUT,
    },
}


def compute_balance(payment_total: float, advance_total: float) -> float:
    """Outstanding amount, never negative."""
    return max(0.0, payment_total - advance_total)


def resolve_advance(payment: Mapping[str, Any], lines: Iterable[PurchaseLineItem] = ()) -> float:
    advance = to_number(payment.get("advance"))
    if advance > 0:
        return advance
    if any(has_value(payment, key) for key in ADVANCE_TRIAD):
        return sum(to_number(payment.get(key)) for key in ADVANCE_TRIAD)
    for line in lines:
        line_advance = to_number(line.source_specific_details.get("advance"))
        if line_advance > 0:
            return line_advance
    return 0.0


def resolve_estimate(payment: Mapping[str, Any], lines: Iterable[PurchaseLineItem] = ()) -> float:
    estimate = first_number(payment, ("estimate", "payment_estimate"))
    if estimate is not None:
        return estimate
    return sum(line.quantity * line.rate for line in lines)


def resolve_discount(payment: Mapping[str, Any], estimate: float) -> float:
    amount = to_number(payment.get("discount_amount"))
    if amount > 0:
        return amount
    percent = to_number(payment.get("discount_percent"))
    if percent > 0:
        return round(estimate * percent / 100, 2)
    return amount


def resolve_total_paid(payment: Mapping[str, Any], record_id: str = "") -> float:
    """
    Sum every advance field the payload carries.

    Payloads that populate both the ``advance_*`` triad and the newer
    ``*_advance`` fields are summed as observed and logged, since the two
    sets may describe the same money.
    """
    legacy = any(to_number(payment.get(key)) for key in ADVANCE_TRIAD)
    newer = any(to_number(payment.get(key)) for key in NEWER_ADVANCE_FIELDS)
    if legacy and newer:
        logger.warning(
            f"Payment {record_id or '?'} has both advance_* and *_advance fields; total paid may double count"
        )
    return sum(to_number(payment.get(key)) for key in TOTAL_PAID_FIELDS)


def resolve_payment_total(payment: Mapping[str, Any], estimate: float, discount: float) -> float:
    for key in ("payment_total", "final_amount"):
        value = to_number(payment.get(key))
        if value > 0:
            return value
    return max(0.0, estimate - discount)


def resolve_balance(payment: Mapping[str, Any], payment_total: float, advance_total: float) -> float:
    if has_value(payment, "balance"):
        return to_number(payment.get("balance"))
    return compute_balance(payment_total, advance_total)


def reconcile_payment(
    payment: Optional[Mapping[str, Any]],
    lines: Iterable[PurchaseLineItem] = (),
    record_id: str = "",
) -> PaymentSnapshot:
    """Build a snapshot from one payment payload (or from the lines alone)."""
    payment = payment or {}
    lines = list(lines)

    estimate = resolve_estimate(payment, lines)
    discount = resolve_discount(payment, estimate)
    advance_total = resolve_advance(payment, lines)
    payment_total = resolve_payment_total(payment, estimate, discount)

    breakdown = {
        field: to_number(first_number(payment, aliases))
        for field, aliases in ADVANCE_BREAKDOWN.items()
    }

    return PaymentSnapshot(
        estimate=estimate,
        discount_amount=discount,
        advance_total=advance_total,
        payment_total=payment_total,
        total_paid=resolve_total_paid(payment, record_id),
        balance=resolve_balance(payment, payment_total, advance_total),
        **breakdown,
    )


def reconcile_record(record: SourceRecord, lines: Iterable[PurchaseLineItem] = ()) -> PaymentSnapshot:
    """Snapshot for a source record, using only the lines that belong to it."""
    own_lines = [line for line in lines if line.record_id == record.id]
    return reconcile_payment(record.payment(), own_lines, record.id)


def combine_snapshots(
    snapshots: Iterable[PaymentSnapshot],
    provenance: Provenance = Provenance.INITIAL,
) -> PaymentSnapshot:
    """Sum several records' snapshots into one."""
    totals = {field: 0.0 for field in PaymentSnapshot.model_fields if field != "provenance"}
    for snapshot in snapshots:
        for field in totals:
            totals[field] += getattr(snapshot, field)
    return PaymentSnapshot(provenance=provenance, **totals)


def recalculate_from_lines(
    lines: Iterable[PurchaseLineItem],
    current: PaymentSnapshot,
    provenance: Provenance,
) -> PaymentSnapshot:
    """
    Recompute totals from line items, keeping the recorded advances.

    estimate = subtotal + tax, payment total = max(0, subtotal - discount) + tax.
    """
    subtotal = 0.0
    tax = 0.0
    discount = 0.0
    for line in lines:
        base = line.quantity * line.rate
        subtotal += base
        tax += base * line.tax_percent / 100
        discount += line.discount_amount

    payment_total = max(0.0, subtotal - discount) + tax
    return current.model_copy(update={
        "estimate": round(subtotal + tax, 2),
        "discount_amount": round(discount, 2),
        "payment_total": round(payment_total, 2),
        "balance": round(compute_balance(payment_total, current.advance_total), 2),
        "provenance": provenance,
    })


class PaymentSession:
    """
    Live payment figures for a billing draft.

    Provenance governs recomputation:
    - ``INITIAL``: nothing loaded yet; recompute recalculates from lines
    - ``DATABASE_VALUES``: figures came from the store; incidental
      recompute leaves them untouched
    - ``USER_INPUT``: the user edited items or payment; every change
      recalculates from lines

    Usage:
        session = PaymentSession()
        session.load(lines, snapshot)            # -> DATABASE_VALUES
        session.recompute()                      # no change
        session.apply(UserAction.EDIT_RATE, line_id=lines[0].id, rate=450)
    """

    def __init__(
        self,
        lines: Optional[Iterable[PurchaseLineItem]] = None,
        snapshot: Optional[PaymentSnapshot] = None,
    ):
        self.lines: list[PurchaseLineItem] = list(lines or [])
        self.snapshot = (snapshot or PaymentSnapshot()).model_copy(
            update={"provenance": Provenance.INITIAL}
        )

    @property
    def provenance(self) -> Provenance:
        return self.snapshot.provenance

    def _transition(self, trigger: str) -> Provenance:
        target = TRANSITIONS[trigger][self.provenance]
        if target != self.provenance:
            logger.debug(f"Payment provenance {self.provenance.value} -> {target.value} ({trigger})")
        return target

    def load(self, lines: Iterable[PurchaseLineItem], snapshot: PaymentSnapshot) -> PaymentSnapshot:
        """Replace lines and figures with values read from the store."""
        self.lines = list(lines)
        self.snapshot = snapshot.model_copy(update={"provenance": self._transition("load")})
        return self.snapshot

    def recompute(self) -> PaymentSnapshot:
        """Incidental recompute (re-render, unrelated field edit)."""
        if self.provenance == Provenance.DATABASE_VALUES:
            return self.snapshot
        self.snapshot = recalculate_from_lines(self.lines, self.snapshot, self.provenance)
        return self.snapshot

    def apply(self, action: UserAction | str, **changes: Any) -> PaymentSnapshot:
        """
        Apply an explicit user action and recalculate from lines.

        Supported actions and their keyword arguments:
        - ``add_item``: ``line``
        - ``remove_item``: ``line_id``
        - ``edit_rate``: ``line_id``, ``rate``
        - ``edit_discount``: ``line_id``, ``discount_amount`` or ``discount_percent``
        - ``apply_discount``: ``discount_percent`` applied to every line
        - ``edit_payment``: any of ``advance_cash``, ``advance_card_upi``, ``advance_other``
        """
        action = UserAction(action)
        handler = {
            UserAction.ADD_ITEM: self._add_item,
            UserAction.REMOVE_ITEM: self._remove_item,
            UserAction.EDIT_RATE: self._edit_rate,
            UserAction.EDIT_DISCOUNT: self._edit_discount,
            UserAction.APPLY_DISCOUNT: self._apply_discount,
            UserAction.EDIT_PAYMENT: self._edit_payment,
        }[action]
        handler(**changes)

        provenance = self._transition("user_edit")
        self.snapshot = recalculate_from_lines(self.lines, self.snapshot, provenance)
        return self.snapshot

    def _line_index(self, line_id: str) -> int:
        for index, line in enumerate(self.lines):
            if line.id == line_id:
                return index
        raise KeyError(f"No line with id {line_id}")

    def _add_item(self, line: PurchaseLineItem):
        self.lines.append(line)

    def _remove_item(self, line_id: str):
        del self.lines[self._line_index(line_id)]

    def _edit_rate(self, line_id: str, rate: float):
        index = self._line_index(line_id)
        line = self.lines[index]
        rate = to_number(rate)
        discount = line.discount_amount
        if line.discount_percent > 0:
            discount = round(line.quantity * rate * line.discount_percent / 100, 2)
        self.lines[index] = line.model_copy(update={
            "rate": rate,
            "discount_amount": discount,
            "amount": max(0.0, line.quantity * rate - discount),
        })

    def _edit_discount(
        self,
        line_id: str,
        discount_amount: Optional[float] = None,
        discount_percent: Optional[float] = None,
    ):
        index = self._line_index(line_id)
        self.lines[index] = self._discounted(self.lines[index], discount_amount, discount_percent)

    def _apply_discount(self, discount_percent: float):
        self.lines = [self._discounted(line, None, discount_percent) for line in self.lines]

    @staticmethod
    def _discounted(
        line: PurchaseLineItem,
        discount_amount: Optional[float],
        discount_percent: Optional[float],
    ) -> PurchaseLineItem:
        gross = line.quantity * line.rate
        if discount_amount is not None:
            amount = to_number(discount_amount)
            percent = line.discount_percent
        else:
            percent = to_number(discount_percent)
            amount = round(gross * percent / 100, 2)
        return line.model_copy(update={
            "discount_amount": amount,
            "discount_percent": percent,
            "amount": max(0.0, gross - amount),
        })

    def _edit_payment(self, **advances: Any):
        unknown = set(advances) - set(ADVANCE_TRIAD)
        if unknown:
            raise ValueError(f"Unknown payment fields: {sorted(unknown)}")
        update = {key: to_number(value) for key, value in advances.items()}
        merged = {key: update.get(key, getattr(self.snapshot, key)) for key in ADVANCE_TRIAD}
        advance_total = sum(merged.values())
        self.snapshot = self.snapshot.model_copy(update={
            **merged,
            "advance_total": advance_total,
            "total_paid": advance_total,
        })
