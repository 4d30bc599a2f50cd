# Overview: Accounts payable for received purchase orders; payments, FX delta, due aging, statements.

"""
AP Settlement & Aging

WHY: A received purchase order is a debt to the supplier. This service
records payments against it (possibly in another currency than the PO)
and derives everything else from those payment rows: outstanding balance,
payment status, realized FX delta. Nothing is kept as a running total.

AMOUNTS (all *_base values are integers in store base currency):
- grand_total_base = total_cost_base + shipping_cost + other_cost
- per payment:
    amount_base  = amount * fx_rate_used        (what the cash cost us)
    settled_base = the same amount at the booked PO rate when paying in the
                   PO's foreign purchase currency, amount_base otherwise
    fx_delta     = amount_base - settled_base   (positive = FX loss)
- total_paid_base  = sum(amount_base) net of reversals
- booked_paid_base = sum(settled_base) net of reversals
- outstanding_base = grand_total_base - total_paid_base

BOOKED COST of purchase-currency payments is converted cumulatively:
settled_base = round((paid_so_far + amount) * rate) - settled_so_far, so
paying the whole invoice in its own currency at the booked rate lands
exactly on total_cost_base whatever the split.

RATE POLICY (caller-supplied rates are checked, not blindly trusted):
- a foreign-currency PO must have a locked rate (RATE_NOT_LOCKED)
- store currency: rate is always 1
- PO purchase currency without a rate: the booked PO rate is used
- PO purchase currency with a rate: must be within FX_RATE_TOLERANCE_PCT
  of the booked rate (FX_RATE_OUT_OF_RANGE otherwise); a rate equal to
  the booked one is recorded as BOOKED
- any other supported currency: rate is required and recorded as CALLER
The source (BASE, BOOKED, CALLER) is stored on every payment row.

DUE STATUS (given due_date and today):
- NO_DUE_DATE if unset
- OVERDUE if due date < today
- DUE_SOON if due within AP_DUE_SOON_DAYS
- NOT_DUE otherwise

SUPPLIER KEY: trimmed, lower-cased supplier name; blank names group under
"__unspecified_supplier__".
"""

from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from flask import current_app
from sqlalchemy import case, func

from ..extensions import db
from ..models import PurchaseOrder, PurchaseOrderPayment
from ..money import convert_to_base, quantize_rate
from ..validation import (
    MAX_NOTE_LENGTH,
    ValidationError,
    parse_amount,
    parse_decimal,
    parse_optional_text,
)
from . import cache_service, idempotency_service
from .concurrency import locked_row, run_with_retry
from .errors import NotFoundError, PurchaseServiceError
from .store_service import get_currency_config, require_supported_currency
from backoffice.time_utils import parse_date_key, parse_iso_datetime, to_date_key, to_utc_z, utcnow, utctoday


ENTRY_PAYMENT = "PAYMENT"
ENTRY_REVERSAL = "REVERSAL"

RATE_SOURCE_BASE = "BASE"
RATE_SOURCE_BOOKED = "BOOKED"
RATE_SOURCE_CALLER = "CALLER"

PAYMENT_UNPAID = "UNPAID"
PAYMENT_PARTIAL = "PARTIAL"
PAYMENT_PAID = "PAID"

DUE_OVERDUE = "OVERDUE"
DUE_SOON = "DUE_SOON"
DUE_NOT_DUE = "NOT_DUE"
DUE_NONE = "NO_DUE_DATE"
DUE_STATUSES = {DUE_OVERDUE, DUE_SOON, DUE_NOT_DUE, DUE_NONE}

PAYMENT_FILTERS = {"ALL", PAYMENT_UNPAID, PAYMENT_PARTIAL}
DUE_FILTERS = {"ALL"} | DUE_STATUSES

AGING_BUCKETS = ("0_30", "31_60", "61_PLUS")

UNSPECIFIED_SUPPLIER_KEY = "__unspecified_supplier__"
UNSPECIFIED_SUPPLIER_NAME = "Unspecified supplier"

STATEMENT_DEFAULT_LIMIT = 500
STATEMENT_MAX_LIMIT = 1000

STATEMENT_CSV_COLUMNS = [
    "supplier_name",
    "po_number",
    "payment_status",
    "due_status",
    "days_until_due",
    "due_date",
    "received_at",
    "purchase_currency",
    "grand_total_base",
    "total_paid_base",
    "outstanding_base",
    "fx_delta_base",
    "age_days",
    "store_currency",
]


@dataclass(frozen=True)
class OutstandingSummary:
    grand_total_base: int
    total_paid_base: int = 0
    booked_paid_base: int = 0
    fx_delta_base: int = 0

    @property
    def outstanding_base(self) -> int:
        return self.grand_total_base - self.total_paid_base

    @property
    def payment_status(self) -> str:
        return payment_status_for(self.grand_total_base, self.total_paid_base)

    def to_dict(self) -> dict:
        return {
            "grand_total_base": self.grand_total_base,
            "total_paid_base": self.total_paid_base,
            "booked_paid_base": self.booked_paid_base,
            "outstanding_base": self.outstanding_base,
            "fx_delta_base": self.fx_delta_base,
            "payment_status": self.payment_status,
        }


@dataclass
class PaymentResult:
    purchase_order: PurchaseOrder
    payment: PurchaseOrderPayment
    before: OutstandingSummary
    after: OutstandingSummary
    body: dict


@dataclass(frozen=True)
class StatementFilters:
    payment_status: str = "ALL"
    due_filter: str = "ALL"
    due_from: date | None = None
    due_to: date | None = None
    q: str | None = None
    limit: int = STATEMENT_DEFAULT_LIMIT


# -- Pure helpers ----------------------------------------------------------


def payment_status_for(grand_total_base: int, total_paid_base: int) -> str:
    if total_paid_base >= grand_total_base:
        return PAYMENT_PAID
    if total_paid_base <= 0:
        return PAYMENT_UNPAID
    return PAYMENT_PARTIAL


def supplier_key(name: str | None) -> str:
    normalized = (name or "").strip().lower()
    return normalized or UNSPECIFIED_SUPPLIER_KEY


def supplier_display_name(name: str | None) -> str:
    normalized = (name or "").strip()
    return normalized or UNSPECIFIED_SUPPLIER_NAME


def classify_due(due_date: date | None, today: date, horizon_days: int) -> tuple[str, int | None]:
    """Return (due_status, days_until_due)."""
    if due_date is None:
        return DUE_NONE, None
    days_until_due = (due_date - today).days
    if days_until_due < 0:
        return DUE_OVERDUE, days_until_due
    if days_until_due <= horizon_days:
        return DUE_SOON, days_until_due
    return DUE_NOT_DUE, days_until_due


def compute_age_days(po: PurchaseOrder, today: date) -> int:
    """Days since the PO's reference date: due date, else receipt, else creation."""
    if po.due_date is not None:
        anchor = po.due_date
    elif po.received_at is not None:
        anchor = po.received_at.date()
    else:
        anchor = po.created_at.date()
    return max(0, (today - anchor).days)


def aging_bucket(age_days: int) -> str:
    if age_days <= 30:
        return "0_30"
    if age_days <= 60:
        return "31_60"
    return "61_PLUS"


def resolve_payment_rate(
    *,
    po: PurchaseOrder,
    currency: str,
    base_currency: str,
    fx_rate_used: Decimal | None,
    tolerance_pct: int,
) -> tuple[Decimal, str]:
    """Return (rate, source) for a payment, applying the rate policy."""
    if currency == base_currency:
        if fx_rate_used is not None and fx_rate_used != 1:
            raise PurchaseServiceError(
                f"fx_rate_used must be 1 for store currency {base_currency}",
                reason_code="VALIDATION_ERROR",
            )
        return Decimal(1), RATE_SOURCE_BASE

    if fx_rate_used is not None and fx_rate_used <= 0:
        raise PurchaseServiceError("fx_rate_used must be > 0", reason_code="VALIDATION_ERROR")

    if currency == po.purchase_currency:
        booked = Decimal(po.exchange_rate)
        if fx_rate_used is None or quantize_rate(fx_rate_used) == quantize_rate(booked):
            return quantize_rate(booked), RATE_SOURCE_BOOKED
        deviation_pct = abs(fx_rate_used - booked) / booked * 100
        if deviation_pct > tolerance_pct:
            raise PurchaseServiceError(
                f"fx_rate_used {fx_rate_used} deviates more than {tolerance_pct}% from booked rate {booked}",
                reason_code="FX_RATE_OUT_OF_RANGE",
            )
        return quantize_rate(fx_rate_used), RATE_SOURCE_CALLER

    if fx_rate_used is None:
        raise PurchaseServiceError(
            f"fx_rate_used is required when paying in {currency}",
            reason_code="VALIDATION_ERROR",
        )
    return quantize_rate(fx_rate_used), RATE_SOURCE_CALLER


# -- Outstanding (ledger aggregation) --------------------------------------


def _payment_sums(po_ids: list[int]) -> dict[int, tuple[int, int, int]]:
    """po_id -> (settled_base, amount_base, fx_delta_base), reversals netted out."""
    if not po_ids:
        return {}
    sign = case((PurchaseOrderPayment.entry_type == ENTRY_REVERSAL, -1), else_=1)
    rows = (
        db.session.query(
            PurchaseOrderPayment.purchase_order_id,
            func.coalesce(func.sum(PurchaseOrderPayment.settled_base * sign), 0),
            func.coalesce(func.sum(PurchaseOrderPayment.amount_base * sign), 0),
            func.coalesce(func.sum(PurchaseOrderPayment.fx_delta_base * sign), 0),
        )
        .filter(PurchaseOrderPayment.purchase_order_id.in_(po_ids))
        .group_by(PurchaseOrderPayment.purchase_order_id)
        .all()
    )
    return {po_id: (int(settled), int(paid), int(fx)) for po_id, settled, paid, fx in rows}


def _summary_from_sums(po: PurchaseOrder, sums: tuple[int, int, int] | None) -> OutstandingSummary:
    settled, paid, fx = sums or (0, 0, 0)
    return OutstandingSummary(
        grand_total_base=po.grand_total_base,
        total_paid_base=paid,
        booked_paid_base=settled,
        fx_delta_base=fx,
    )


def _purchase_currency_paid(po: PurchaseOrder) -> tuple[int, int]:
    """(amount, settled_base) already paid in the PO's purchase currency, reversals netted out."""
    sign = case((PurchaseOrderPayment.entry_type == ENTRY_REVERSAL, -1), else_=1)
    amount, settled = (
        db.session.query(
            func.coalesce(func.sum(PurchaseOrderPayment.amount * sign), 0),
            func.coalesce(func.sum(PurchaseOrderPayment.settled_base * sign), 0),
        )
        .filter(
            PurchaseOrderPayment.purchase_order_id == po.id,
            PurchaseOrderPayment.currency == po.purchase_currency,
        )
        .one()
    )
    return int(amount), int(settled)


def compute_outstanding(po: PurchaseOrder) -> OutstandingSummary:
    """Recompute AP state for one PO from its payment rows."""
    return _summary_from_sums(po, _payment_sums([po.id]).get(po.id))


def compute_outstanding_bulk(pos: list[PurchaseOrder]) -> dict[int, OutstandingSummary]:
    sums = _payment_sums([po.id for po in pos])
    return {po.id: _summary_from_sums(po, sums.get(po.id)) for po in pos}


# -- Payments --------------------------------------------------------------


def parse_settle_payload(payload: dict) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    if payload.get("amount") is None:
        raise ValidationError("amount is required")

    parsed = {
        "amount": parse_amount(payload.get("amount"), "amount", allow_zero=False),
        "currency": None,
        "fx_rate_used": None,
        "paid_at": None,
        "reference": parse_optional_text(payload.get("reference"), "reference", max_length=120),
        "note": parse_optional_text(payload.get("note"), "note", max_length=MAX_NOTE_LENGTH),
    }
    currency = payload.get("currency")
    if currency is not None:
        if not isinstance(currency, str) or not currency.strip():
            raise ValidationError("currency must be a currency code")
        parsed["currency"] = currency.strip().upper()
    if payload.get("fx_rate_used") is not None:
        parsed["fx_rate_used"] = parse_decimal(payload.get("fx_rate_used"), "fx_rate_used")
    if payload.get("paid_at"):
        try:
            parsed["paid_at"] = parse_iso_datetime(str(payload.get("paid_at")))
        except ValueError:
            raise ValidationError("paid_at must be an ISO-8601 datetime")
    return parsed


def settle_payment(
    *,
    po_id: int,
    store_id: int,
    user_id: int,
    payload: dict,
    idempotency_record_id: int | None = None,
) -> PaymentResult:
    """
    Append a payment against a RECEIVED purchase order.

    Raises:
        NotFoundError: PO not in this store
        PurchaseServiceError: PO_NOT_RECEIVED, RATE_NOT_LOCKED, PO_ALREADY_PAID,
            UNSUPPORTED_CURRENCY, FX_RATE_OUT_OF_RANGE, OVERPAYMENT
    """
    data = parse_settle_payload(payload)
    currency_config = get_currency_config(store_id)
    tolerance_pct = current_app.config.get("FX_RATE_TOLERANCE_PCT", 25)

    def _op() -> PaymentResult:
        po = locked_row(PurchaseOrder, id=po_id, store_id=store_id)
        if not po:
            raise NotFoundError("Purchase order not found")
        if po.status != "RECEIVED":
            raise PurchaseServiceError(
                f"Only RECEIVED purchase orders can be settled (status is {po.status})",
                reason_code="PO_NOT_RECEIVED",
            )
        if po.purchase_currency != currency_config.base and not po.is_rate_locked:
            raise PurchaseServiceError(
                "Exchange rate must be locked before the purchase order can be settled",
                reason_code="RATE_NOT_LOCKED",
            )

        before = compute_outstanding(po)
        if before.outstanding_base <= 0:
            raise PurchaseServiceError(
                "Purchase order is already fully paid",
                status=409,
                reason_code="PO_ALREADY_PAID",
            )

        currency = require_supported_currency(currency_config, data["currency"] or po.purchase_currency)
        rate, source = resolve_payment_rate(
            po=po,
            currency=currency,
            base_currency=currency_config.base,
            fx_rate_used=data["fx_rate_used"],
            tolerance_pct=tolerance_pct,
        )

        if currency == po.purchase_currency and currency != currency_config.base:
            paid_amount, paid_settled = _purchase_currency_paid(po)
            settled_base = convert_to_base(paid_amount + data["amount"], Decimal(po.exchange_rate)) - paid_settled
            if source == RATE_SOURCE_BOOKED:
                amount_base = settled_base
            else:
                amount_base = convert_to_base(data["amount"], rate)
        else:
            amount_base = convert_to_base(data["amount"], rate)
            settled_base = amount_base

        if amount_base > before.outstanding_base:
            raise PurchaseServiceError(
                f"Payment converts to {amount_base} but only {before.outstanding_base} is outstanding",
                reason_code="OVERPAYMENT",
            )

        payment = PurchaseOrderPayment(
            purchase_order_id=po.id,
            store_id=store_id,
            entry_type=ENTRY_PAYMENT,
            amount=data["amount"],
            currency=currency,
            fx_rate_used=rate,
            fx_rate_source=source,
            amount_base=amount_base,
            settled_base=settled_base,
            fx_delta_base=amount_base - settled_base,
            reference=data["reference"],
            note=data["note"],
            paid_at=data["paid_at"] or utcnow(),
            created_by=user_id,
        )
        db.session.add(payment)
        db.session.flush()

        after = compute_outstanding(po)
        body = {
            "ok": True,
            "purchase_order_id": po.id,
            "po_number": po.po_number,
            "payment": payment.to_dict(),
            "outstanding": after.to_dict(),
        }
        idempotency_service.complete_in_transaction(idempotency_record_id, 200, body)
        db.session.commit()
        return PaymentResult(purchase_order=po, payment=payment, before=before, after=after, body=body)

    result = run_with_retry(_op)
    cache_service.invalidate_store(store_id)
    return result


def reverse_payment(
    *,
    po_id: int,
    payment_id: int,
    store_id: int,
    user_id: int,
    note: str | None = None,
    idempotency_record_id: int | None = None,
) -> PaymentResult:
    """
    Append a REVERSAL entry cancelling one PAYMENT.

    The original row is never modified. A payment can be reversed once
    (PAYMENT_ALREADY_REVERSED).
    """
    note = parse_optional_text(note, "note", max_length=MAX_NOTE_LENGTH)

    def _op() -> PaymentResult:
        po = locked_row(PurchaseOrder, id=po_id, store_id=store_id)
        if not po:
            raise NotFoundError("Purchase order not found")
        payment = (
            db.session.query(PurchaseOrderPayment)
            .filter_by(id=payment_id, purchase_order_id=po.id)
            .first()
        )
        if not payment:
            raise NotFoundError("Payment not found")
        if payment.entry_type != ENTRY_PAYMENT:
            raise PurchaseServiceError("Only PAYMENT entries can be reversed", reason_code="VALIDATION_ERROR")

        already = (
            db.session.query(PurchaseOrderPayment.id)
            .filter_by(reversed_payment_id=payment.id)
            .first()
        )
        if already:
            raise PurchaseServiceError(
                "Payment has already been reversed",
                status=409,
                reason_code="PAYMENT_ALREADY_REVERSED",
            )

        before = compute_outstanding(po)
        reversal = PurchaseOrderPayment(
            purchase_order_id=po.id,
            store_id=store_id,
            entry_type=ENTRY_REVERSAL,
            amount=payment.amount,
            currency=payment.currency,
            fx_rate_used=payment.fx_rate_used,
            fx_rate_source=payment.fx_rate_source,
            amount_base=payment.amount_base,
            settled_base=payment.settled_base,
            fx_delta_base=payment.fx_delta_base,
            reference=payment.reference,
            note=note,
            reversed_payment_id=payment.id,
            paid_at=utcnow(),
            created_by=user_id,
        )
        db.session.add(reversal)
        db.session.flush()

        after = compute_outstanding(po)
        body = {
            "ok": True,
            "purchase_order_id": po.id,
            "po_number": po.po_number,
            "payment": reversal.to_dict(),
            "outstanding": after.to_dict(),
        }
        idempotency_service.complete_in_transaction(idempotency_record_id, 200, body)
        db.session.commit()
        return PaymentResult(purchase_order=po, payment=reversal, before=before, after=after, body=body)

    result = run_with_retry(_op)
    cache_service.invalidate_store(store_id)
    return result


# -- Read side -------------------------------------------------------------


def _due_horizon_days() -> int:
    return current_app.config.get("AP_DUE_SOON_DAYS", 7)


def _outstanding_rows(store_id: int, today: date) -> list[dict]:
    """One row per RECEIVED PO that still has something outstanding."""
    pos = (
        db.session.query(PurchaseOrder)
        .filter(PurchaseOrder.store_id == store_id, PurchaseOrder.status == "RECEIVED")
        .all()
    )
    summaries = compute_outstanding_bulk(pos)
    horizon = _due_horizon_days()

    rows = []
    for po in pos:
        summary = summaries[po.id]
        if summary.outstanding_base <= 0:
            continue
        due_status, days_until_due = classify_due(po.due_date, today, horizon)
        age_days = compute_age_days(po, today)
        rows.append({
            "po_id": po.id,
            "po_number": po.po_number,
            "supplier_key": supplier_key(po.supplier_name),
            "supplier_name": supplier_display_name(po.supplier_name),
            "purchase_currency": po.purchase_currency,
            "payment_status": summary.payment_status,
            "due_date": to_date_key(po.due_date),
            "due_status": due_status,
            "days_until_due": days_until_due,
            "received_at": to_utc_z(po.received_at),
            "grand_total_base": summary.grand_total_base,
            "total_paid_base": summary.total_paid_base,
            "outstanding_base": summary.outstanding_base,
            "fx_delta_base": summary.fx_delta_base,
            "age_days": age_days,
            "aging_bucket": aging_bucket(age_days),
        })
    return rows


def _store_currency(store_id: int) -> str:
    return get_currency_config(store_id).base


def _build_supplier_summary(store_id: int, q: str | None, limit: int, today: date) -> dict:
    needle = (q or "").strip().lower()
    suppliers: dict[str, dict] = {}

    for row in _outstanding_rows(store_id, today):
        if needle and needle not in row["supplier_name"].lower():
            continue
        current = suppliers.setdefault(row["supplier_key"], {
            "supplier_key": row["supplier_key"],
            "supplier_name": row["supplier_name"],
            "po_count": 0,
            "unpaid_po_count": 0,
            "partial_po_count": 0,
            "total_outstanding_base": 0,
            "overdue_outstanding_base": 0,
            "due_soon_outstanding_base": 0,
            "fx_delta_base": 0,
        })
        current["po_count"] += 1
        if row["payment_status"] == PAYMENT_UNPAID:
            current["unpaid_po_count"] += 1
        elif row["payment_status"] == PAYMENT_PARTIAL:
            current["partial_po_count"] += 1
        current["total_outstanding_base"] += row["outstanding_base"]
        current["fx_delta_base"] += row["fx_delta_base"]
        if row["due_status"] == DUE_OVERDUE:
            current["overdue_outstanding_base"] += row["outstanding_base"]
        elif row["due_status"] == DUE_SOON:
            current["due_soon_outstanding_base"] += row["outstanding_base"]

    ordered = sorted(
        suppliers.values(),
        key=lambda s: (-s["total_outstanding_base"], s["supplier_key"]),
    )[:limit]

    return {
        "store_currency": _store_currency(store_id),
        "suppliers": ordered,
        "total_outstanding_base": sum(s["total_outstanding_base"] for s in ordered),
    }


def get_supplier_summary(
    store_id: int,
    *,
    q: str | None = None,
    limit: int = 100,
    today: date | None = None,
    use_cache: bool = True,
) -> dict:
    """Outstanding AP grouped by supplier, largest balance first."""
    limit = min(200, max(1, limit))
    today = today or utctoday()
    return cache_service.cached_read(
        store_id,
        "ap_supplier_summary",
        lambda: _build_supplier_summary(store_id, q, limit, today),
        (q or "").strip().lower(), limit, today.isoformat(),
        use_cache=use_cache,
    )


def parse_statement_filters(args) -> StatementFilters:
    """Build StatementFilters from query args; raises ValidationError."""
    payment_status = (args.get("payment_status") or "ALL").strip().upper()
    if payment_status not in PAYMENT_FILTERS:
        raise ValidationError(f"Invalid payment_status. Must be one of: {', '.join(sorted(PAYMENT_FILTERS))}")
    due_filter = (args.get("due_filter") or "ALL").strip().upper()
    if due_filter not in DUE_FILTERS:
        raise ValidationError(f"Invalid due_filter. Must be one of: {', '.join(sorted(DUE_FILTERS))}")

    try:
        due_from = parse_date_key(args.get("due_from"))
        due_to = parse_date_key(args.get("due_to"))
    except ValueError:
        raise ValidationError("Invalid date format (YYYY-MM-DD)")

    raw_limit = args.get("limit")
    try:
        limit = int(raw_limit) if raw_limit not in (None, "") else STATEMENT_DEFAULT_LIMIT
    except (TypeError, ValueError):
        raise ValidationError("limit must be an integer")

    q = (args.get("q") or "").strip() or None
    return StatementFilters(
        payment_status=payment_status,
        due_filter=due_filter,
        due_from=due_from,
        due_to=due_to,
        q=q,
        limit=min(STATEMENT_MAX_LIMIT, max(1, limit)),
    )


def _passes_statement_filters(row: dict, filters: StatementFilters) -> bool:
    if filters.payment_status != "ALL" and row["payment_status"] != filters.payment_status:
        return False
    if filters.due_filter != "ALL" and row["due_status"] != filters.due_filter:
        return False
    if filters.q and filters.q.lower() not in row["po_number"].lower():
        return False
    if filters.due_from or filters.due_to:
        if not row["due_date"]:
            return False
        if filters.due_from and row["due_date"] < filters.due_from.isoformat():
            return False
        if filters.due_to and row["due_date"] > filters.due_to.isoformat():
            return False
    return True


def get_supplier_statement(
    store_id: int,
    *,
    supplier: str,
    filters: StatementFilters | None = None,
    today: date | None = None,
) -> dict:
    """
    Outstanding POs of one supplier, soonest due first.

    POs without a due date sort last; ties break on po_number.
    """
    filters = filters or StatementFilters()
    today = today or utctoday()
    key = (supplier or "").strip().lower()
    if not key:
        raise ValidationError("supplier_key is required")

    rows = [
        row for row in _outstanding_rows(store_id, today)
        if row["supplier_key"] == key and _passes_statement_filters(row, filters)
    ]
    rows.sort(key=lambda r: (r["due_date"] or "9999-12-31", r["po_number"]))
    rows = rows[:filters.limit]

    summary = {
        "supplier_key": key,
        "supplier_name": rows[0]["supplier_name"] if rows else UNSPECIFIED_SUPPLIER_NAME,
        "po_count": len(rows),
        "unpaid_po_count": 0,
        "partial_po_count": 0,
        "total_outstanding_base": 0,
        "overdue_outstanding_base": 0,
        "due_soon_outstanding_base": 0,
        "not_due_outstanding_base": 0,
        "no_due_date_outstanding_base": 0,
        "fx_delta_base": 0,
        "aging": {bucket: 0 for bucket in AGING_BUCKETS},
    }
    due_fields = {
        DUE_OVERDUE: "overdue_outstanding_base",
        DUE_SOON: "due_soon_outstanding_base",
        DUE_NOT_DUE: "not_due_outstanding_base",
        DUE_NONE: "no_due_date_outstanding_base",
    }
    for row in rows:
        summary["total_outstanding_base"] += row["outstanding_base"]
        summary["fx_delta_base"] += row["fx_delta_base"]
        if row["payment_status"] == PAYMENT_UNPAID:
            summary["unpaid_po_count"] += 1
        elif row["payment_status"] == PAYMENT_PARTIAL:
            summary["partial_po_count"] += 1
        summary[due_fields[row["due_status"]]] += row["outstanding_base"]
        summary["aging"][row["aging_bucket"]] += row["outstanding_base"]

    return {
        "store_currency": _store_currency(store_id),
        "rows": rows,
        "summary": summary,
    }


def statement_to_csv(statement: dict) -> str:
    """Render a supplier statement with the fixed AP export column schema."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(STATEMENT_CSV_COLUMNS)
    store_currency = statement["store_currency"]
    for row in statement["rows"]:
        writer.writerow([
            row["supplier_name"],
            row["po_number"],
            row["payment_status"],
            row["due_status"],
            row["days_until_due"],
            row["due_date"],
            row["received_at"],
            row["purchase_currency"],
            row["grand_total_base"],
            row["total_paid_base"],
            row["outstanding_base"],
            row["fx_delta_base"],
            row["age_days"],
            store_currency,
        ])
    return buffer.getvalue().rstrip("\n")


def statement_csv_filename(supplier_name: str, today: date | None = None) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (supplier_name or "").strip().lower()).strip("-") or "supplier"
    return f"ap-statement-{slug}-{(today or utctoday()).isoformat()}.csv"


def _build_due_reminders(store_id: int, limit: int, today: date) -> dict:
    rows = [
        row for row in _outstanding_rows(store_id, today)
        if row["due_status"] in (DUE_OVERDUE, DUE_SOON)
    ]
    rows.sort(key=lambda r: (r["due_status"] != DUE_OVERDUE, r["days_until_due"], r["po_number"]))

    summary = {
        "overdue_count": 0,
        "due_soon_count": 0,
        "overdue_outstanding_base": 0,
        "due_soon_outstanding_base": 0,
    }
    for row in rows:
        if row["due_status"] == DUE_OVERDUE:
            summary["overdue_count"] += 1
            summary["overdue_outstanding_base"] += row["outstanding_base"]
        else:
            summary["due_soon_count"] += 1
            summary["due_soon_outstanding_base"] += row["outstanding_base"]

    summary["items"] = [
        {
            "po_id": row["po_id"],
            "po_number": row["po_number"],
            "supplier_name": row["supplier_name"],
            "payment_status": row["payment_status"],
            "due_date": row["due_date"],
            "due_status": row["due_status"],
            "days_until_due": row["days_until_due"],
            "outstanding_base": row["outstanding_base"],
        }
        for row in rows[:limit]
    ]
    return {"store_currency": _store_currency(store_id), "summary": summary}


def get_due_reminders(store_id: int, *, limit: int = 10, today: date | None = None, use_cache: bool = True) -> dict:
    """OVERDUE first, then DUE_SOON, each ordered by days until due."""
    limit = min(500, max(1, limit))
    today = today or utctoday()
    return cache_service.cached_read(
        store_id,
        "ap_due_reminders",
        lambda: _build_due_reminders(store_id, limit, today),
        limit, today.isoformat(),
        use_cache=use_cache,
    )


def _build_aging_summary(store_id: int, today: date) -> dict:
    buckets = {bucket: {"po_count": 0, "outstanding_base": 0} for bucket in AGING_BUCKETS}
    total = 0
    for row in _outstanding_rows(store_id, today):
        bucket = buckets[row["aging_bucket"]]
        bucket["po_count"] += 1
        bucket["outstanding_base"] += row["outstanding_base"]
        total += row["outstanding_base"]
    return {
        "store_currency": _store_currency(store_id),
        "as_of": today.isoformat(),
        "buckets": buckets,
        "total_outstanding_base": total,
    }


def get_aging_summary(store_id: int, *, today: date | None = None, use_cache: bool = True) -> dict:
    """Outstanding AP split into 0-30 / 31-60 / 61+ day age buckets."""
    today = today or utctoday()
    return cache_service.cached_read(
        store_id,
        "ap_aging",
        lambda: _build_aging_summary(store_id, today),
        today.isoformat(),
        use_cache=use_cache,
    )
