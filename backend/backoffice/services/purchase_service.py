# Overview: Purchase order engine; lifecycle state machine, landed cost, receipt into the stock ledger.

"""
Purchase Order Service

LIFECYCLE (forward only):
    DRAFT    -> ORDERED | RECEIVED | CANCELLED
    ORDERED  -> SHIPPED | RECEIVED | CANCELLED
    SHIPPED  -> RECEIVED | CANCELLED
    RECEIVED -> (terminal, financially final)
    CANCELLED-> (terminal, no resurrection)

RECEIPT: entering RECEIVED is the single moment that
- posts one IN movement per received line (ref_type="PO", ref_id=po.id)
- moves product cost_base to the weighted average of landed cost
- freezes total_cost_base on received quantities
all in the same transaction as the status flip. Receiving twice is
rejected with ALREADY_RECEIVED so a retried request can never inflate stock.

COSTS:
- unit_cost_base = round_half_up(unit_cost_purchase * exchange_rate)
- total_cost_base = round_half_up(sum(unit_cost_purchase * qty) * exchange_rate)
- shipping_cost + other_cost (store currency) are allocated across lines
  by line value (unit_cost_base * qty) into landed_cost_per_unit

EXCHANGE RATE LOCK:
- store-currency POs are locked at 1 from creation
- a foreign-currency PO is locked when created or edited with an explicit
  exchange_rate, unless lock_exchange_rate=false marks it as an estimate
- an estimated rate is finalized after receipt (finalize_exchange_rate),
  which rebooks line, total and landed costs at the final rate
- AP payments are refused until the rate is locked

EDITING by status:
- DRAFT / ORDERED: everything
- SHIPPED: shipping_cost, other_cost, other_cost_note, due_date, note,
  tracking_info, expected_at
- RECEIVED: due_date, note; shipping_cost / other_cost only through
  apply_extra_cost while the PO is not fully paid
- CANCELLED: nothing
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from decimal import Decimal

from ..extensions import db
from ..models import Product, PurchaseOrder, PurchaseOrderItem
from ..money import convert_to_base, quantize_rate, rate_to_str, round_half_up
from ..validation import (
    MAX_NOTE_LENGTH,
    ModelValidationPolicy,
    ValidationError,
    enforce_rules_purchase_order,
    parse_amount,
    parse_decimal,
    parse_int,
    parse_optional_text,
    parse_positive_int,
    validate_payload,
)
from . import cache_service, idempotency_service
from .concurrency import locked_row, run_with_retry
from .document_service import next_document_number
from .errors import NotFoundError, PurchaseServiceError
from .inventory_service import MOVEMENT_IN, append_movement, get_balance
from .purchase_ap_service import PAYMENT_PAID, compute_outstanding, compute_outstanding_bulk
from .store_service import CurrencyConfig, get_currency_config, require_supported_currency
from backoffice.time_utils import parse_date_key, to_date_key, to_utc_z, utcnow


STATUS_DRAFT = "DRAFT"
STATUS_ORDERED = "ORDERED"
STATUS_SHIPPED = "SHIPPED"
STATUS_RECEIVED = "RECEIVED"
STATUS_CANCELLED = "CANCELLED"

PO_STATUSES = {STATUS_DRAFT, STATUS_ORDERED, STATUS_SHIPPED, STATUS_RECEIVED, STATUS_CANCELLED}

PO_TRANSITIONS = {
    STATUS_DRAFT: {STATUS_ORDERED, STATUS_RECEIVED, STATUS_CANCELLED},
    STATUS_ORDERED: {STATUS_SHIPPED, STATUS_RECEIVED, STATUS_CANCELLED},
    STATUS_SHIPPED: {STATUS_RECEIVED, STATUS_CANCELLED},
    STATUS_RECEIVED: set(),
    STATUS_CANCELLED: set(),
}

HEADER_FIELDS = {
    "supplier_name",
    "supplier_contact",
    "purchase_currency",
    "exchange_rate",
    "shipping_cost",
    "other_cost",
    "other_cost_note",
    "note",
    "tracking_info",
    "due_date",
    "expected_at",
}

COST_FIELDS = {"shipping_cost", "other_cost", "other_cost_note"}

RATE_LOCK_FIELD = "lock_exchange_rate"

EDITABLE_FIELDS = {
    STATUS_DRAFT: HEADER_FIELDS | {"items", RATE_LOCK_FIELD},
    STATUS_ORDERED: HEADER_FIELDS | {"items", RATE_LOCK_FIELD},
    STATUS_SHIPPED: COST_FIELDS | {"due_date", "note", "tracking_info", "expected_at"},
    STATUS_RECEIVED: {"due_date", "note"},
    STATUS_CANCELLED: set(),
}

PO_HEADER_POLICY = ModelValidationPolicy(
    writable_fields=HEADER_FIELDS,
    required_on_create={"purchase_currency"},
)

PO_DOCUMENT_TYPE = "PO"
PO_PREFIX = "PO"
MAX_PO_LINES = 200

PENDING_RATE_DEFAULT_LIMIT = 50
PENDING_RATE_MIN_LIMIT = 10
PENDING_RATE_MAX_LIMIT = 200


@dataclass(frozen=True)
class PurchaseLineInput:
    product_id: int
    qty_ordered: int
    unit_cost_purchase: int


@dataclass
class PurchaseOrderResult:
    purchase_order: PurchaseOrder
    before: dict | None
    after: dict
    body: dict


# -- Serialization ---------------------------------------------------------


def serialize_purchase_order(po: PurchaseOrder, *, include_items: bool = True, outstanding=None) -> dict:
    data = po.to_dict()
    if include_items:
        data["items"] = [item.to_dict() for item in po.items]
    if po.status == STATUS_RECEIVED:
        summary = outstanding or compute_outstanding(po)
        data["ap"] = summary.to_dict()
        data["payments"] = [p.to_dict() for p in po.payments]
    else:
        data["ap"] = None
    return data


# -- Payload parsing -------------------------------------------------------


def parse_line_items(raw_items) -> list[PurchaseLineInput]:
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("items must be a non-empty list")
    if len(raw_items) > MAX_PO_LINES:
        raise ValidationError(f"A purchase order can have at most {MAX_PO_LINES} lines")

    lines = []
    for index, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        for field in ("product_id", "qty_ordered", "unit_cost_purchase"):
            if raw.get(field) is None:
                raise ValidationError(f"items[{index}].{field} is required")
        lines.append(PurchaseLineInput(
            product_id=parse_positive_int(raw["product_id"], f"items[{index}].product_id"),
            qty_ordered=parse_positive_int(raw["qty_ordered"], f"items[{index}].qty_ordered"),
            unit_cost_purchase=parse_amount(raw["unit_cost_purchase"], f"items[{index}].unit_cost_purchase"),
        ))
    return lines


def _parse_header(payload: dict, *, partial: bool) -> dict:
    patch = validate_payload(model=PurchaseOrder, payload=payload, policy=PO_HEADER_POLICY, partial=partial)
    enforce_rules_purchase_order(patch)
    return patch


def _resolve_exchange_rate(currency_config: CurrencyConfig, currency: str, raw_rate) -> Decimal:
    """Base currency always books at 1; foreign currency needs an explicit rate."""
    if currency == currency_config.base:
        if raw_rate is not None and Decimal(raw_rate) != 1:
            raise PurchaseServiceError(
                f"exchange_rate must be 1 for store currency {currency_config.base}",
                reason_code="VALIDATION_ERROR",
            )
        return Decimal(1)
    if raw_rate is None:
        raise PurchaseServiceError(
            f"exchange_rate is required for purchase currency {currency}",
            reason_code="VALIDATION_ERROR",
        )
    return quantize_rate(raw_rate)


def _parse_lock_flag(payload: dict) -> bool:
    value = payload.get(RATE_LOCK_FIELD, True)
    if not isinstance(value, bool):
        raise ValidationError(f"{RATE_LOCK_FIELD} must be a boolean")
    return value


def _apply_rate_lock(po: PurchaseOrder, currency_config: CurrencyConfig, *, lock: bool, user_id: int) -> None:
    """Store-currency POs are always locked; foreign ones follow `lock`."""
    if po.purchase_currency == currency_config.base or lock:
        po.exchange_rate_locked_at = utcnow()
        po.exchange_rate_locked_by = user_id
    else:
        po.exchange_rate_locked_at = None
        po.exchange_rate_locked_by = None
    po.exchange_rate_lock_note = None


# -- Cost math -------------------------------------------------------------


def allocate_landed_costs(items: list[PurchaseOrderItem], extra_cost: int, *, qty_attr: str = "qty_ordered") -> None:
    """
    Spread extra_cost across lines by line value and set landed_cost_per_unit.

    The last line with quantity absorbs the rounding remainder so the
    allocated shares always sum to extra_cost. When every line is free the
    cost is spread by quantity instead.
    """
    active = [item for item in items if getattr(item, qty_attr) > 0]
    for item in items:
        item.landed_cost_per_unit = item.unit_cost_base
    if not active or extra_cost <= 0:
        return

    weights = [item.unit_cost_base * getattr(item, qty_attr) for item in active]
    if sum(weights) <= 0:
        weights = [getattr(item, qty_attr) for item in active]
    total_weight = sum(weights)

    remaining = extra_cost
    for index, (item, weight) in enumerate(zip(active, weights)):
        if index == len(active) - 1:
            share = remaining
        else:
            share = round_half_up(Decimal(extra_cost) * weight / total_weight)
            remaining -= share
        qty = getattr(item, qty_attr)
        item.landed_cost_per_unit = item.unit_cost_base + round_half_up(Decimal(share) / qty)


def weighted_average_cost(prev_on_hand: int, prev_cost: int, qty_in: int, unit_cost: int) -> int:
    """New cost_base after receiving qty_in at unit_cost."""
    if prev_on_hand <= 0:
        return unit_cost
    total_qty = prev_on_hand + qty_in
    return round_half_up(Decimal(prev_on_hand * prev_cost + qty_in * unit_cost) / total_qty)


def total_cost_purchase(po: PurchaseOrder, *, qty_attr: str = "qty_ordered") -> int:
    return sum(item.unit_cost_purchase * getattr(item, qty_attr) for item in po.items)


def _recompute_totals(po: PurchaseOrder, *, qty_attr: str = "qty_ordered") -> None:
    # Converted once on the invoice total, not per line
    po.total_cost_base = convert_to_base(total_cost_purchase(po, qty_attr=qty_attr), Decimal(po.exchange_rate))
    allocate_landed_costs(po.items, (po.shipping_cost or 0) + (po.other_cost or 0), qty_attr=qty_attr)


def _build_items(store_id: int, lines: list[PurchaseLineInput], rate: Decimal) -> list[PurchaseOrderItem]:
    product_ids = {line.product_id for line in lines}
    found = {
        p.id: p
        for p in db.session.query(Product).filter(Product.store_id == store_id, Product.id.in_(product_ids)).all()
    }
    missing = sorted(product_ids - set(found))
    if missing:
        raise NotFoundError(f"Products not found: {', '.join(str(m) for m in missing)}")
    inactive = sorted(pid for pid, p in found.items() if not p.is_active)
    if inactive:
        raise PurchaseServiceError(
            f"Products are inactive: {', '.join(str(i) for i in inactive)}",
            reason_code="PRODUCT_INACTIVE",
        )

    return [
        PurchaseOrderItem(
            product_id=line.product_id,
            qty_ordered=line.qty_ordered,
            qty_received=0,
            unit_cost_purchase=line.unit_cost_purchase,
            unit_cost_base=convert_to_base(line.unit_cost_purchase, rate),
        )
        for line in lines
    ]


# -- Receipt ---------------------------------------------------------------


def _parse_received_items(po: PurchaseOrder, raw) -> dict[int, int]:
    """item_id -> received qty. Omitted lines default to their ordered qty."""
    received = {item.id: item.qty_ordered for item in po.items}
    if raw is None:
        return received
    if not isinstance(raw, list):
        raise ValidationError("received_items must be a list")

    by_id = {item.id: item for item in po.items}
    by_product = {}
    for item in po.items:
        by_product.setdefault(item.product_id, item)

    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ValidationError(f"received_items[{index}] must be an object")
        if entry.get("item_id") is not None:
            item = by_id.get(parse_int(entry["item_id"], f"received_items[{index}].item_id"))
        elif entry.get("product_id") is not None:
            item = by_product.get(parse_int(entry["product_id"], f"received_items[{index}].product_id"))
        else:
            raise ValidationError(f"received_items[{index}] needs item_id or product_id")
        if item is None:
            raise ValidationError(f"received_items[{index}] does not match a line on this purchase order")
        qty = parse_int(entry.get("qty_received"), f"received_items[{index}].qty_received")
        if qty < 0:
            raise ValidationError(f"received_items[{index}].qty_received must be >= 0")
        received[item.id] = qty

    if not any(qty > 0 for qty in received.values()):
        raise ValidationError("At least one line must be received")
    return received


def _receive(po: PurchaseOrder, *, user_id: int, received_items=None) -> None:
    """Post IN movements, update WAC and freeze costs. Caller holds the PO lock."""
    received = _parse_received_items(po, received_items)
    for item in po.items:
        item.qty_received = received[item.id]

    _recompute_totals(po, qty_attr="qty_received")

    for item in po.items:
        if item.qty_received <= 0:
            continue
        product = locked_row(Product, id=item.product_id, store_id=po.store_id)
        if not product:
            raise NotFoundError(f"Product {item.product_id} not found")
        prev = get_balance(po.store_id, product.id)
        product.cost_base = weighted_average_cost(
            prev.on_hand, product.cost_base or 0, item.qty_received, item.landed_cost_per_unit,
        )
        append_movement(
            store_id=po.store_id,
            product_id=product.id,
            movement_type=MOVEMENT_IN,
            qty_base=item.qty_received,
            note=f"Received {po.po_number}",
            actor_user_id=user_id,
            ref_type="PO",
            ref_id=po.id,
        )

    now = utcnow()
    po.status = STATUS_RECEIVED
    po.received_at = now
    if po.ordered_at is None:
        po.ordered_at = now


def check_transition(current: str, target: str) -> None:
    """Raise unless current -> target is a legal forward transition."""
    if target not in PO_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(sorted(PO_STATUSES))}")
    if current == STATUS_RECEIVED and target == STATUS_RECEIVED:
        raise PurchaseServiceError(
            "Purchase order has already been received",
            status=409,
            reason_code="ALREADY_RECEIVED",
        )
    if current == STATUS_CANCELLED and target == STATUS_CANCELLED:
        raise PurchaseServiceError(
            "Purchase order is already cancelled",
            status=409,
            reason_code="PO_ALREADY_CANCELLED",
        )
    if target not in PO_TRANSITIONS.get(current, set()):
        raise PurchaseServiceError(
            f"Cannot change status from {current} to {target}",
            reason_code="INVALID_STATUS_TRANSITION",
        )


# -- Commands --------------------------------------------------------------


def create_purchase_order(
    *,
    store_id: int,
    user_id: int,
    payload: dict,
    idempotency_record_id: int | None = None,
) -> PurchaseOrderResult:
    """
    Create a purchase order in DRAFT (or straight to RECEIVED with
    receive_immediately=true).
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    header = _parse_header(payload, partial=False)
    lines = parse_line_items(payload.get("items"))
    receive_immediately = payload.get("receive_immediately") is True
    lock_rate = _parse_lock_flag(payload)

    currency_config = get_currency_config(store_id)
    currency = require_supported_currency(currency_config, header["purchase_currency"])
    rate = _resolve_exchange_rate(currency_config, currency, header.get("exchange_rate"))

    def _op() -> PurchaseOrderResult:
        po = PurchaseOrder(
            store_id=store_id,
            po_number=next_document_number(store_id=store_id, document_type=PO_DOCUMENT_TYPE, prefix=PO_PREFIX),
            status=STATUS_DRAFT,
            supplier_name=header.get("supplier_name"),
            supplier_contact=header.get("supplier_contact"),
            purchase_currency=currency,
            exchange_rate=rate,
            exchange_rate_initial=rate,
            shipping_cost=header.get("shipping_cost") or 0,
            other_cost=header.get("other_cost") or 0,
            other_cost_note=header.get("other_cost_note"),
            note=header.get("note"),
            tracking_info=header.get("tracking_info"),
            due_date=header.get("due_date"),
            expected_at=header.get("expected_at"),
            created_by=user_id,
            updated_by=user_id,
        )
        _apply_rate_lock(po, currency_config, lock=lock_rate, user_id=user_id)
        po.items = _build_items(store_id, lines, rate)
        _recompute_totals(po)
        db.session.add(po)
        db.session.flush()

        if receive_immediately:
            _receive(po, user_id=user_id)

        after = serialize_purchase_order(po)
        body = {"ok": True, "purchase_order": after}
        idempotency_service.complete_in_transaction(idempotency_record_id, 201, body)
        db.session.commit()
        return PurchaseOrderResult(purchase_order=po, before=None, after=after, body=body)

    result = run_with_retry(_op)
    cache_service.invalidate_store(store_id)
    return result


def update_status(
    *,
    po_id: int,
    store_id: int,
    user_id: int,
    target_status: str,
    payload: dict | None = None,
    idempotency_record_id: int | None = None,
) -> PurchaseOrderResult:
    """
    Move a PO along its lifecycle.

    payload may carry tracking_info (SHIPPED) or received_items
    (RECEIVED: [{item_id|product_id, qty_received}]).
    """
    payload = payload or {}
    if not isinstance(target_status, str) or not target_status.strip():
        raise ValidationError("status is required")
    target = target_status.strip().upper()

    def _op() -> PurchaseOrderResult:
        po = locked_row(PurchaseOrder, id=po_id, store_id=store_id)
        if not po:
            raise NotFoundError("Purchase order not found")
        check_transition(po.status, target)
        before = serialize_purchase_order(po)

        now = utcnow()
        if target == STATUS_ORDERED:
            po.status = STATUS_ORDERED
            po.ordered_at = now
        elif target == STATUS_SHIPPED:
            po.status = STATUS_SHIPPED
            po.shipped_at = now
            tracking = payload.get("tracking_info")
            if tracking is not None:
                po.tracking_info = str(tracking).strip()[:240] or None
        elif target == STATUS_RECEIVED:
            _receive(po, user_id=user_id, received_items=payload.get("received_items"))
        elif target == STATUS_CANCELLED:
            po.status = STATUS_CANCELLED
            po.cancelled_at = now
        po.updated_by = user_id
        db.session.flush()

        after = serialize_purchase_order(po)
        body = {"ok": True, "purchase_order": after}
        idempotency_service.complete_in_transaction(idempotency_record_id, 200, body)
        db.session.commit()
        return PurchaseOrderResult(purchase_order=po, before=before, after=after, body=body)

    result = run_with_retry(_op)
    cache_service.invalidate_store(store_id)
    return result


def update_purchase_order(
    *,
    po_id: int,
    store_id: int,
    user_id: int,
    payload: dict,
    idempotency_record_id: int | None = None,
) -> PurchaseOrderResult:
    """Edit a PO within what its current status allows (PO_NOT_EDITABLE otherwise)."""
    if not isinstance(payload, dict) or not payload:
        raise ValidationError("Nothing to update")
    unknown = sorted(set(payload) - HEADER_FIELDS - {"items", RATE_LOCK_FIELD})
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(unknown)}")

    header = _parse_header(payload, partial=True)
    lines = parse_line_items(payload["items"]) if "items" in payload else None
    lock_rate = _parse_lock_flag(payload)
    currency_config = get_currency_config(store_id)

    def _op() -> PurchaseOrderResult:
        po = locked_row(PurchaseOrder, id=po_id, store_id=store_id)
        if not po:
            raise NotFoundError("Purchase order not found")

        allowed = EDITABLE_FIELDS[po.status]
        blocked = sorted(set(payload) - allowed)
        if blocked:
            raise PurchaseServiceError(
                f"Cannot edit {', '.join(blocked)} while purchase order is {po.status}",
                reason_code="PO_NOT_EDITABLE",
            )
        before = serialize_purchase_order(po)

        rate_changed = "purchase_currency" in header or "exchange_rate" in header
        if rate_changed or RATE_LOCK_FIELD in payload:
            currency = require_supported_currency(
                currency_config, header.get("purchase_currency") or po.purchase_currency,
            )
            raw_rate = header.get("exchange_rate")
            if raw_rate is None and currency == po.purchase_currency:
                raw_rate = po.exchange_rate
            rate = _resolve_exchange_rate(currency_config, currency, raw_rate)
            po.purchase_currency = currency
            po.exchange_rate = rate
            po.exchange_rate_initial = rate
            _apply_rate_lock(po, currency_config, lock=lock_rate, user_id=user_id)

        for field, value in header.items():
            if field in ("purchase_currency", "exchange_rate"):
                continue
            if field in ("shipping_cost", "other_cost"):
                value = value or 0
            setattr(po, field, value)

        if lines is not None:
            po.items = _build_items(store_id, lines, Decimal(po.exchange_rate))
        elif rate_changed:
            for item in po.items:
                item.unit_cost_base = convert_to_base(item.unit_cost_purchase, Decimal(po.exchange_rate))

        if po.status != STATUS_RECEIVED:
            _recompute_totals(po)

        po.updated_by = user_id
        db.session.flush()

        after = serialize_purchase_order(po)
        body = {"ok": True, "purchase_order": after}
        idempotency_service.complete_in_transaction(idempotency_record_id, 200, body)
        db.session.commit()
        return PurchaseOrderResult(purchase_order=po, before=before, after=after, body=body)

    result = run_with_retry(_op)
    cache_service.invalidate_store(store_id)
    return result


def _require_received(po: PurchaseOrder, action: str) -> None:
    if po.status != STATUS_RECEIVED:
        raise PurchaseServiceError(
            f"Only RECEIVED purchase orders can {action} (status is {po.status})",
            reason_code="PO_NOT_RECEIVED",
        )


def finalize_exchange_rate(
    *,
    po_id: int,
    store_id: int,
    user_id: int,
    payload: dict,
    idempotency_record_id: int | None = None,
) -> PurchaseOrderResult:
    """
    Lock the final exchange rate of a received foreign-currency PO.

    Line, total and landed costs are rebooked at the final rate on the
    received quantities. Product cost_base keeps the value it got at
    receipt.

    Raises:
        PurchaseServiceError: PO_NOT_RECEIVED, RATE_LOCK_NOT_REQUIRED,
            RATE_ALREADY_LOCKED
    """
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    if payload.get("exchange_rate") is None:
        raise ValidationError("exchange_rate is required")
    rate = parse_decimal(payload.get("exchange_rate"), "exchange_rate")
    if rate <= 0:
        raise ValidationError("exchange_rate must be > 0")
    rate = quantize_rate(rate)
    note = parse_optional_text(payload.get("note"), "note", max_length=MAX_NOTE_LENGTH)
    currency_config = get_currency_config(store_id)

    def _op() -> PurchaseOrderResult:
        po = locked_row(PurchaseOrder, id=po_id, store_id=store_id)
        if not po:
            raise NotFoundError("Purchase order not found")
        _require_received(po, "lock an exchange rate")
        if po.purchase_currency == currency_config.base:
            raise PurchaseServiceError(
                f"Purchase order is in store currency {currency_config.base}; no rate to lock",
                reason_code="RATE_LOCK_NOT_REQUIRED",
            )
        if po.is_rate_locked:
            raise PurchaseServiceError(
                "Exchange rate is already locked",
                status=409,
                reason_code="RATE_ALREADY_LOCKED",
            )
        before = serialize_purchase_order(po)

        po.exchange_rate = rate
        for item in po.items:
            item.unit_cost_base = convert_to_base(item.unit_cost_purchase, rate)
        _recompute_totals(po, qty_attr="qty_received")

        po.exchange_rate_locked_at = utcnow()
        po.exchange_rate_locked_by = user_id
        po.exchange_rate_lock_note = note
        po.updated_by = user_id
        db.session.flush()

        after = serialize_purchase_order(po)
        body = {"ok": True, "purchase_order": after}
        idempotency_service.complete_in_transaction(idempotency_record_id, 200, body)
        db.session.commit()
        return PurchaseOrderResult(purchase_order=po, before=before, after=after, body=body)

    result = run_with_retry(_op)
    cache_service.invalidate_store(store_id)
    return result


def _parse_extra_cost_payload(payload: dict) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    unknown = sorted(set(payload) - COST_FIELDS)
    if unknown:
        raise ValidationError(f"Field not allowed: {', '.join(unknown)}")
    if "shipping_cost" not in payload and "other_cost" not in payload:
        raise ValidationError("shipping_cost or other_cost is required")

    parsed = {}
    for field in ("shipping_cost", "other_cost"):
        if field in payload:
            parsed[field] = parse_amount(payload[field], field)
    if "other_cost_note" in payload:
        parsed["other_cost_note"] = parse_optional_text(payload["other_cost_note"], "other_cost_note", max_length=MAX_NOTE_LENGTH)
    return parsed


def apply_extra_cost(
    *,
    po_id: int,
    store_id: int,
    user_id: int,
    payload: dict,
    idempotency_record_id: int | None = None,
) -> PurchaseOrderResult:
    """
    Change shipping / other cost of a received PO and reallocate landed cost.

    Refused once the PO is fully paid (PO_ALREADY_PAID), and when the new
    grand total would fall below what has already been paid
    (EXTRA_COST_BELOW_PAID).
    """
    data = _parse_extra_cost_payload(payload)

    def _op() -> PurchaseOrderResult:
        po = locked_row(PurchaseOrder, id=po_id, store_id=store_id)
        if not po:
            raise NotFoundError("Purchase order not found")
        _require_received(po, "take extra costs")

        outstanding = compute_outstanding(po)
        if outstanding.payment_status == PAYMENT_PAID:
            raise PurchaseServiceError(
                "Purchase order is fully paid; extra costs can no longer change",
                status=409,
                reason_code="PO_ALREADY_PAID",
            )

        shipping_cost = data.get("shipping_cost", po.shipping_cost or 0)
        other_cost = data.get("other_cost", po.other_cost or 0)
        next_grand_total = (po.total_cost_base or 0) + shipping_cost + other_cost
        if next_grand_total < outstanding.total_paid_base:
            raise PurchaseServiceError(
                f"New grand total {next_grand_total} is below the {outstanding.total_paid_base} already paid",
                reason_code="EXTRA_COST_BELOW_PAID",
            )
        before = serialize_purchase_order(po, outstanding=outstanding)

        po.shipping_cost = shipping_cost
        po.other_cost = other_cost
        if "other_cost_note" in data:
            po.other_cost_note = data["other_cost_note"]
        allocate_landed_costs(po.items, shipping_cost + other_cost, qty_attr="qty_received")
        po.updated_by = user_id
        db.session.flush()

        after = serialize_purchase_order(po)
        body = {"ok": True, "purchase_order": after}
        idempotency_service.complete_in_transaction(idempotency_record_id, 200, body)
        db.session.commit()
        return PurchaseOrderResult(purchase_order=po, before=before, after=after, body=body)

    result = run_with_retry(_op)
    cache_service.invalidate_store(store_id)
    return result


# -- Queries ---------------------------------------------------------------


def get_purchase_order(store_id: int, po_id: int) -> PurchaseOrder:
    po = db.session.query(PurchaseOrder).filter_by(id=po_id, store_id=store_id).first()
    if not po:
        raise NotFoundError("Purchase order not found")
    return po


def list_purchase_orders(
    store_id: int,
    *,
    status: str | None = None,
    supplier: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[dict], int]:
    query = db.session.query(PurchaseOrder).filter(PurchaseOrder.store_id == store_id)
    if status:
        status = status.strip().upper()
        if status not in PO_STATUSES:
            raise ValidationError(f"Invalid status. Must be one of: {', '.join(sorted(PO_STATUSES))}")
        query = query.filter(PurchaseOrder.status == status)
    if supplier:
        query = query.filter(PurchaseOrder.supplier_name.ilike(f"%{supplier.strip()}%"))

    total = query.count()
    pos = (
        query.order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc())
        .limit(limit)
        .offset(offset)
        .all()
    )
    received = [po for po in pos if po.status == STATUS_RECEIVED]
    summaries = compute_outstanding_bulk(received)
    items = [
        serialize_purchase_order(po, include_items=False, outstanding=summaries.get(po.id))
        for po in pos
    ]
    return items, total


def _parse_received_bound(value: str | None, field: str) -> datetime | None:
    try:
        day = parse_date_key(value)
    except ValueError as exc:
        raise ValidationError(f"{field}: {exc}") from exc
    if day is None:
        return None
    return datetime.combine(day, time.min)


def list_pending_rate_queue(
    store_id: int,
    *,
    supplier: str | None = None,
    received_from: str | None = None,
    received_to: str | None = None,
    limit: int | None = None,
) -> list[dict]:
    """Received foreign-currency POs still booked at an estimated rate, oldest receipt first."""
    currency_config = get_currency_config(store_id)
    if limit is None:
        limit = PENDING_RATE_DEFAULT_LIMIT
    limit = max(PENDING_RATE_MIN_LIMIT, min(PENDING_RATE_MAX_LIMIT, limit))

    query = db.session.query(PurchaseOrder).filter(
        PurchaseOrder.store_id == store_id,
        PurchaseOrder.status == STATUS_RECEIVED,
        PurchaseOrder.purchase_currency != currency_config.base,
        PurchaseOrder.exchange_rate_locked_at.is_(None),
    )
    if supplier:
        query = query.filter(PurchaseOrder.supplier_name.ilike(f"%{supplier.strip()}%"))
    start = _parse_received_bound(received_from, "received_from")
    if start is not None:
        query = query.filter(PurchaseOrder.received_at >= start)
    end = _parse_received_bound(received_to, "received_to")
    if end is not None:
        query = query.filter(PurchaseOrder.received_at < end + timedelta(days=1))
    if start is not None and end is not None and start > end:
        raise ValidationError("received_from must be on or before received_to")

    pos = query.order_by(PurchaseOrder.received_at.asc(), PurchaseOrder.id.asc()).limit(limit).all()
    summaries = compute_outstanding_bulk(pos)
    rows = []
    for po in pos:
        rows.append({
            "id": po.id,
            "po_number": po.po_number,
            "supplier_name": po.supplier_name,
            "purchase_currency": po.purchase_currency,
            "exchange_rate": rate_to_str(po.exchange_rate),
            "received_at": to_utc_z(po.received_at),
            "due_date": to_date_key(po.due_date),
            "total_cost_purchase": total_cost_purchase(po, qty_attr="qty_received"),
            "grand_total_base": summaries[po.id].grand_total_base,
            "item_count": len(po.items),
        })
    return rows
