"""
Line expander.

Flattens the child rows of each source record into billing-ready
``PurchaseLineItem`` rows. A malformed child row is skipped with a warning;
the rest of its record still expands.
"""
from __future__ import annotations
from typing import Any, Iterable, Mapping, Optional
from loguru import logger
from .models import (
    ContactLensRecord,
    OrderRecord,
    PrescriptionRecord,
    PurchaseLineItem,
    SourceRecord,
)
from .parsers import clean_text, first_number, parse_bool, to_number, to_quantity

EYE_SIDES = {
    "right": "RE", "r": "RE", "re": "RE", "od": "RE",
    "left": "LE", "l": "LE", "le": "LE", "os": "LE",
}

PRESCRIPTION_FIELDS = (
    "re_sphere", "re_cylinder", "re_axis", "re_add", "re_va",
    "le_sphere", "le_cylinder", "le_axis", "le_add", "le_va",
    "pd_od", "pd_os", "remarks",
)


def eye_side_marker(value: Any) -> str:
    """Map a stored eye side (``Right``, ``os``, ...) to ``RE`` / ``LE``, else ''."""
    return EYE_SIDES.get(clean_text(value).lower(), "")


def resolve_discount(item: Mapping[str, Any], quantity: float, rate: float) -> tuple[float, float]:
    """
    Resolve (discount_percent, discount_amount) for one item.

    A non-zero explicit amount wins and the percent is kept as stored, not
    back-derived. Otherwise the amount is derived from the percent against
    ``quantity * rate``.
    """
    percent = to_number(item.get("discount_percent"))
    amount = to_number(item.get("discount_amount"))
    if amount > 0:
        return percent, amount
    if percent > 0:
        return percent, round(quantity * rate * percent / 100, 2)
    return percent, 0.0


def _join(parts: Iterable[Optional[str]], sep: str = " ") -> str:
    return sep.join(part for part in parts if part)


def _labelled(item: Mapping[str, Any], fields: Iterable[tuple[str, str]]) -> list[str]:
    details = []
    for key, label in fields:
        value = clean_text(item.get(key))
        if value:
            details.append(f"{label}: {value}")
    return details


def format_order_item_details(item: Mapping[str, Any]) -> str:
    """Frame or lens details as ``Label: value`` pairs joined by `` | ``."""
    item_type = clean_text(item.get("item_type")).lower()
    details = []
    if item_type == "frame":
        details = _labelled(item, (
            ("brand_name", "Brand"), ("material", "Material"), ("color", "Color"), ("size", "Size"),
        ))
    elif item_type == "lens":
        details = _labelled(item, (("lens_type", "Type"), ("coating", "Coating"), ("index", "Index")))
        rx = _join(clean_text(item.get(key)) for key in ("sph", "cyl", "axis"))
        if rx:
            details.append(f"Rx: {rx}")
        details += _labelled(item, (("add", "Add"), ("pd", "PD")))
    return " | ".join(details)


def format_contact_lens_details(item: Mapping[str, Any]) -> str:
    details = []
    side = eye_side_marker(item.get("eye_side"))
    if side:
        details.append(f"Eye: {side}")
    details += _labelled(item, (
        ("brand", "Brand"),
        ("material", "Material"),
        ("base_curve", "BC"),
        ("diameter", "DIA"),
        ("power", "Power"),
        ("cylinder", "Cyl"),
        ("axis", "Axis"),
        ("add_power", "Add"),
        ("dispose", "Disposal"),
        ("replacement_schedule", "Replace"),
        ("solution_brand", "Solution"),
    ))
    return " | ".join(details)


def format_prescription_details(rx: Mapping[str, Any]) -> str:
    details = []
    for side, label in (("re", "RE:"), ("le", "LE:")):
        if any(clean_text(rx.get(f"{side}_{key}")) for key in ("sphere", "cylinder", "axis")):
            details.append(_join([label] + _labelled(rx, (
                (f"{side}_sphere", "Sph"),
                (f"{side}_cylinder", "Cyl"),
                (f"{side}_axis", "Axis"),
                (f"{side}_add", "Add"),
                (f"{side}_va", "VA"),
            ))))
    pd_od = clean_text(rx.get("pd_od"))
    pd_os = clean_text(rx.get("pd_os"))
    if pd_od or pd_os:
        details.append(f"PD: OD {pd_od or '-'} / OS {pd_os or '-'}")
    return " | ".join(details)


def _item_advance(item: Mapping[str, Any]) -> dict[str, float]:
    advance = first_number(item, ("advance",))
    return {"advance": advance} if advance is not None else {}


def _order_line(record: OrderRecord, item: Mapping[str, Any], index: int) -> PurchaseLineItem:
    item_id = clean_text(item.get("id")) or str(index)
    quantity = to_quantity(item.get("qty", item.get("quantity")))
    rate = to_number(item.get("rate"))
    discount_percent, discount_amount = resolve_discount(item, quantity, rate)

    amount = to_number(item.get("amount"))
    if amount <= 0:
        amount = quantity * rate

    brand = clean_text(item.get("brand_name"))
    lens_type = clean_text(item.get("lens_type"))
    item_name = _join([
        clean_text(item.get("item_name")) or "Unnamed Item",
        brand and f"({brand})",
        lens_type and f"[{lens_type}]",
    ])

    item_type = clean_text(item.get("item_type"))
    item_code = clean_text(item.get("item_code"))
    if not item_code:
        prefix = item_type.upper()[:3] or "ITM"
        item_code = f"{prefix}-{clean_text(item.get('id')) or 'UNK'}"

    payload = record.raw_payload
    return PurchaseLineItem(
        id=f"order_{record.id}_{item_id}",
        type=record.source_type,
        reference_no=record.reference_no,
        record_id=record.id,
        item_name=item_name,
        item_code=item_code,
        quantity=quantity,
        rate=rate,
        amount=max(0.0, amount),
        discount_percent=discount_percent,
        discount_amount=discount_amount,
        tax_percent=to_number(item.get("tax_percent")),
        date=record.date,
        source_specific_details={
            "item_type": item_type or "other",
            "brand_name": brand,
            "lens_type": lens_type,
            "coating": clean_text(item.get("coating")),
            "index": clean_text(item.get("index")),
            "status": clean_text(payload.get("status")),
            "delivery_date": clean_text(payload.get("delivery_date")),
            "remarks": clean_text(payload.get("remarks")),
            "item_details": format_order_item_details(item),
            **_item_advance(item),
        },
    )


def _contact_lens_line(record: ContactLensRecord, item: Mapping[str, Any], index: int) -> PurchaseLineItem:
    item_id = clean_text(item.get("id")) or f"item_{index}"
    quantity = to_quantity(item.get("quantity", item.get("qty")))
    rate = to_number(item.get("rate"))
    discount_percent, discount_amount = resolve_discount(item, quantity, rate)

    final_amount = first_number(item, ("final_amount",))
    if final_amount is not None:
        amount = final_amount
    else:
        gross = to_number(item.get("amount"))
        if gross <= 0:
            gross = quantity * rate
        amount = gross - discount_amount

    side = eye_side_marker(item.get("eye_side"))
    brand = clean_text(item.get("brand"))
    power = clean_text(item.get("power"))
    if power:
        cylinder = clean_text(item.get("cylinder"))
        axis = clean_text(item.get("axis"))
        add_power = clean_text(item.get("add_power"))
        power = (
            f"({power}"
            + (f"/{cylinder}" if cylinder else "")
            + (f"x{axis}" if axis else "")
            + (f" Add {add_power}" if add_power else "")
            + ")"
        )
    item_name = _join([
        brand or "Contact Lens",
        clean_text(item.get("material")),
        power,
        side and f"[{side}]",
    ])

    item_code = clean_text(item.get("item_code")) or clean_text(item.get("lens_code"))
    if not item_code:
        item_code = f"CL-{brand[:3].upper()}" if brand else "CL-LENS"

    return PurchaseLineItem(
        id=f"cl_{record.id}_{item_id}",
        type=record.source_type,
        reference_no=record.reference_no,
        record_id=record.id,
        item_name=item_name,
        item_code=item_code,
        quantity=quantity,
        rate=rate,
        amount=max(0.0, amount),
        discount_percent=discount_percent,
        discount_amount=discount_amount,
        tax_percent=to_number(item.get("tax_percent")),
        date=record.date,
        source_specific_details={
            "eye_side": side,
            "brand": brand,
            "material": clean_text(item.get("material")),
            "power": clean_text(item.get("power")),
            "base_curve": clean_text(item.get("base_curve")),
            "diameter": clean_text(item.get("diameter")),
            "disposal": clean_text(item.get("dispose")),
            "item_details": format_contact_lens_details(item),
            **_item_advance(item),
        },
    )


def _prescription_details(record: PrescriptionRecord) -> dict[str, Any]:
    payload = record.raw_payload
    return {
        "doctor_name": clean_text(payload.get("doctor_name")),
        "vision_type": clean_text(payload.get("vision_type")),
        "item_details": format_prescription_details(payload),
        "prescription": {key: payload.get(key) for key in PRESCRIPTION_FIELDS},
    }


def _examination_line(record: PrescriptionRecord) -> PurchaseLineItem:
    payload = record.raw_payload
    vision_type = clean_text(payload.get("vision_type"))
    doctor = clean_text(payload.get("doctor_name"))
    return PurchaseLineItem(
        id=f"rx_{record.id}",
        type=record.source_type,
        reference_no=record.reference_no,
        record_id=record.id,
        item_name=_join([vision_type or "Eye Examination", doctor and f"(Dr. {doctor})"]),
        item_code=f"RX-{vision_type[:3].upper()}" if vision_type else "RX-EXAM",
        quantity=1.0,
        rate=0.0,
        amount=0.0,
        date=record.date,
        source_specific_details=_prescription_details(record),
    )


_ITEM_BUILDERS = {
    OrderRecord: _order_line,
    ContactLensRecord: _contact_lens_line,
}


def is_billable_prescription(record: PrescriptionRecord) -> bool:
    """Prescriptions reach the billing feed only with items or the billable flag."""
    return bool(record.child_items()) or parse_bool(record.raw_payload.get("is_billable"))


def expand_record(record: SourceRecord) -> list[PurchaseLineItem]:
    """
    Expand one record into its billing lines.

    A prescription yields at most one examination line. Its items only
    decide whether it is billable.
    """
    if isinstance(record, PrescriptionRecord):
        return [_examination_line(record)] if is_billable_prescription(record) else []

    items = record.child_items()
    if not items:
        logger.debug(f"{record.source_type.value} {record.id} has no items")
        return []

    build = _ITEM_BUILDERS[type(record)]
    lines = []
    for index, item in enumerate(items):
        if not isinstance(item, Mapping):
            logger.warning(f"Skipping malformed item {index} of {record.source_type.value} {record.id}")
            continue
        try:
            lines.append(build(record, item, index))
        except (ValueError, TypeError) as e:
            logger.warning(
                f"Skipping malformed item {index} of {record.source_type.value} {record.id}: {e}"
            )
    return lines


def expand_records(records: Iterable[SourceRecord]) -> list[PurchaseLineItem]:
    lines = []
    for record in records:
        lines.extend(expand_record(record))
    return lines
