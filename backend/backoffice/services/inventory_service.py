# Overview: Movement ledger and stock balance reader; balances are aggregations, never stored.

"""
Movement Ledger & Stock Balance Reader

WHY: Stock on hand is derived from an append-only log of typed movements.
There is no mutable quantity column that could drift from history, so a
balance can always be re-derived and audited line by line.

BALANCE RULES (per product):
- on_hand   = IN + RETURN - OUT + ADJUST (ADJUST stored signed)
- reserved  = RESERVE - RELEASE
- available = on_hand - reserved

The same rules exist twice: fold_movements() is the pure reference fold,
and _balance_columns() is the SQL aggregation used by every reader. The
two must agree for any set of rows in any order.

WRITES: append_movement() only adds + flushes inside the caller's
transaction. Invariant checks (available >= 0 etc.) belong to the mutation
service, which runs them under a row lock in the same transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import case, func, or_

from ..extensions import db
from ..models import InventoryMovement, Product, ProductUnit, Store
from ..validation import MAX_NOTE_LENGTH
from .cache_service import cached_read
from .errors import StockServiceError
from backoffice.time_utils import utcnow


MOVEMENT_IN = "IN"
MOVEMENT_OUT = "OUT"
MOVEMENT_RESERVE = "RESERVE"
MOVEMENT_RELEASE = "RELEASE"
MOVEMENT_ADJUST = "ADJUST"
MOVEMENT_RETURN = "RETURN"

MOVEMENT_TYPES = {
    MOVEMENT_IN,
    MOVEMENT_OUT,
    MOVEMENT_RESERVE,
    MOVEMENT_RELEASE,
    MOVEMENT_ADJUST,
    MOVEMENT_RETURN,
}

ADJUST_INCREASE = "INCREASE"
ADJUST_DECREASE = "DECREASE"
ADJUST_MODES = {ADJUST_INCREASE, ADJUST_DECREASE}

REF_TYPES = {"MANUAL", "RETURN", "PO"}

STOCK_OUT = "OUT_OF_STOCK"
STOCK_LOW = "LOW_STOCK"
STOCK_OK = "OK"

MAX_MOVEMENT_PAGE_SIZE = 200


@dataclass(frozen=True)
class StockBalance:
    on_hand: int = 0
    reserved: int = 0

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved

    def to_dict(self) -> dict:
        return {"on_hand": self.on_hand, "reserved": self.reserved, "available": self.available}


def movement_effect(movement_type: str, qty_base: int) -> tuple[int, int]:
    """Return (on_hand_delta, reserved_delta) for one stored ledger row."""
    if movement_type in (MOVEMENT_IN, MOVEMENT_RETURN, MOVEMENT_ADJUST):
        return qty_base, 0
    if movement_type == MOVEMENT_OUT:
        return -qty_base, 0
    if movement_type == MOVEMENT_RESERVE:
        return 0, qty_base
    if movement_type == MOVEMENT_RELEASE:
        return 0, -qty_base
    raise ValueError(f"Unknown movement type: {movement_type}")


def fold_movements(rows: Iterable[tuple[str, int]]) -> StockBalance:
    """Pure fold of (type, stored qty_base) rows into a balance."""
    on_hand = 0
    reserved = 0
    for movement_type, qty_base in rows:
        d_on_hand, d_reserved = movement_effect(movement_type, qty_base)
        on_hand += d_on_hand
        reserved += d_reserved
    return StockBalance(on_hand=on_hand, reserved=reserved)


def _balance_columns():
    qty = InventoryMovement.qty_base
    kind = InventoryMovement.type
    on_hand = func.coalesce(
        func.sum(
            case(
                (kind.in_([MOVEMENT_IN, MOVEMENT_RETURN, MOVEMENT_ADJUST]), qty),
                (kind == MOVEMENT_OUT, -qty),
                else_=0,
            )
        ),
        0,
    )
    reserved = func.coalesce(
        func.sum(
            case(
                (kind == MOVEMENT_RESERVE, qty),
                (kind == MOVEMENT_RELEASE, -qty),
                else_=0,
            )
        ),
        0,
    )
    return on_hand.label("on_hand"), reserved.label("reserved")


def append_movement(
    *,
    store_id: int,
    product_id: int,
    movement_type: str,
    qty_base: int,
    adjust_mode: str | None = None,
    note: str | None = None,
    actor_user_id: int | None = None,
    ref_type: str = "MANUAL",
    ref_id: int | None = None,
    created_at: datetime | None = None,
) -> InventoryMovement:
    """
    Append one ledger row inside the caller's transaction (flush, no commit).

    qty_base is always a positive base-unit quantity; the type encodes the
    sign. For ADJUST, adjust_mode picks the direction and the stored value
    is signed accordingly.
    """
    if movement_type not in MOVEMENT_TYPES:
        raise StockServiceError(f"Invalid movement type: {movement_type}", reason_code="VALIDATION_ERROR")
    if not isinstance(qty_base, int) or isinstance(qty_base, bool) or qty_base <= 0:
        raise StockServiceError("qty_base must be a positive integer", reason_code="VALIDATION_ERROR")
    if ref_type not in REF_TYPES:
        raise StockServiceError(f"Invalid ref_type: {ref_type}", reason_code="VALIDATION_ERROR")
    if note is not None and len(note) > MAX_NOTE_LENGTH:
        raise StockServiceError(f"note exceeds max length {MAX_NOTE_LENGTH}", reason_code="VALIDATION_ERROR")

    stored_qty = qty_base
    if movement_type == MOVEMENT_ADJUST:
        if adjust_mode not in ADJUST_MODES:
            raise StockServiceError("adjust_mode must be INCREASE or DECREASE", reason_code="VALIDATION_ERROR")
        if not note:
            raise StockServiceError("note is required for ADJUST", reason_code="VALIDATION_ERROR")
        if adjust_mode == ADJUST_DECREASE:
            stored_qty = -qty_base

    movement = InventoryMovement(
        store_id=store_id,
        product_id=product_id,
        type=movement_type,
        qty_base=stored_qty,
        ref_type=ref_type,
        ref_id=ref_id,
        note=note,
        created_by=actor_user_id,
        created_at=created_at or utcnow(),
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def get_balance(store_id: int, product_id: int) -> StockBalance:
    """Aggregate one product's ledger. Always hits the database."""
    on_hand, reserved = _balance_columns()
    row = (
        db.session.query(on_hand, reserved)
        .filter(
            InventoryMovement.store_id == store_id,
            InventoryMovement.product_id == product_id,
        )
        .one()
    )
    return StockBalance(on_hand=int(row.on_hand), reserved=int(row.reserved))


def get_balances(store_id: int, product_ids: list[int] | None = None) -> dict[int, StockBalance]:
    """
    Bulk variant of get_balance keyed by product_id.

    Products without movements are absent from the result; callers should
    default to StockBalance().
    """
    on_hand, reserved = _balance_columns()
    query = (
        db.session.query(InventoryMovement.product_id, on_hand, reserved)
        .filter(InventoryMovement.store_id == store_id)
        .group_by(InventoryMovement.product_id)
    )
    if product_ids is not None:
        if not product_ids:
            return {}
        query = query.filter(InventoryMovement.product_id.in_(product_ids))

    return {
        row.product_id: StockBalance(on_hand=int(row.on_hand), reserved=int(row.reserved))
        for row in query.all()
    }


def resolve_unit_multiplier(product: Product, unit_id: int) -> int:
    """
    Return how many base units one `unit_id` is for this product.

    Raises StockServiceError(UNIT_NOT_CONVERTIBLE) if the product has no
    conversion for the unit.
    """
    if unit_id == product.base_unit_id:
        return 1
    conversion = (
        db.session.query(ProductUnit)
        .filter_by(product_id=product.id, unit_id=unit_id)
        .first()
    )
    if not conversion or conversion.multiplier_to_base <= 0:
        raise StockServiceError(
            "Unit is not configured for this product",
            reason_code="UNIT_NOT_CONVERTIBLE",
        )
    return conversion.multiplier_to_base


def _unit_options(product: Product) -> list[dict]:
    options = []
    if product.base_unit:
        options.append({
            "unit_id": product.base_unit_id,
            "code": product.base_unit.code,
            "name": product.base_unit.name,
            "multiplier_to_base": 1,
        })
    for conversion in product.unit_conversions:
        if conversion.unit_id == product.base_unit_id:
            continue
        options.append({
            "unit_id": conversion.unit_id,
            "code": conversion.unit.code if conversion.unit else None,
            "name": conversion.unit.name if conversion.unit else None,
            "multiplier_to_base": conversion.multiplier_to_base,
        })
    return options


def resolve_thresholds(product: Product, store: Store) -> tuple[int, int]:
    """(out_threshold, low_threshold), product overrides first."""
    out_threshold = (
        product.out_stock_threshold
        if product.out_stock_threshold is not None
        else store.out_stock_threshold
    )
    low_threshold = (
        product.low_stock_threshold
        if product.low_stock_threshold is not None
        else store.low_stock_threshold
    )
    return out_threshold, max(low_threshold, out_threshold)


def classify_stock_level(available: int, out_threshold: int, low_threshold: int) -> str:
    if available <= out_threshold:
        return STOCK_OUT
    if available <= low_threshold:
        return STOCK_LOW
    return STOCK_OK


def _stock_row(product: Product, balance: StockBalance, store: Store) -> dict:
    out_threshold, low_threshold = resolve_thresholds(product, store)
    return {
        "product_id": product.id,
        "sku": product.sku,
        "name": product.name,
        "is_active": product.is_active,
        "base_unit": product.base_unit.code if product.base_unit else None,
        "cost_base": product.cost_base,
        "price_base": product.price_base,
        **balance.to_dict(),
        "stock_level": classify_stock_level(balance.available, out_threshold, low_threshold),
        "unit_options": _unit_options(product),
    }


def list_stock_products(
    store_id: int,
    *,
    limit: int = 50,
    offset: int = 0,
    query: str | None = None,
    include_inactive: bool = False,
) -> tuple[list[dict], int]:
    """Page of products with their aggregated balances."""
    store = db.session.get(Store, store_id)
    base = db.session.query(Product).filter(Product.store_id == store_id)
    if not include_inactive:
        base = base.filter(Product.is_active.is_(True))
    if query:
        pattern = f"%{query.strip()}%"
        base = base.filter(or_(Product.sku.ilike(pattern), Product.name.ilike(pattern)))

    total = base.count()
    products = base.order_by(Product.name.asc(), Product.id.asc()).limit(limit).offset(offset).all()
    balances = get_balances(store_id, [p.id for p in products])

    items = [_stock_row(p, balances.get(p.id, StockBalance()), store) for p in products]
    return items, total


def get_low_stock_products(store_id: int) -> list[dict]:
    """Active products whose available quantity is at or below their low threshold."""
    store = db.session.get(Store, store_id)
    products = (
        db.session.query(Product)
        .filter(Product.store_id == store_id, Product.is_active.is_(True))
        .all()
    )
    balances = get_balances(store_id)

    rows = []
    for product in products:
        row = _stock_row(product, balances.get(product.id, StockBalance()), store)
        if row["stock_level"] != STOCK_OK:
            rows.append(row)

    rows.sort(key=lambda r: (r["stock_level"] != STOCK_OUT, r["available"], r["sku"]))
    return rows


def list_movements_page(
    store_id: int,
    *,
    page: int = 1,
    page_size: int = 50,
    movement_type: str | None = None,
    product_id: int | None = None,
    query: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> dict:
    """Newest-first page of ledger rows joined with product identity."""
    page = max(1, page)
    page_size = min(MAX_MOVEMENT_PAGE_SIZE, max(1, page_size))

    base = (
        db.session.query(InventoryMovement, Product.sku, Product.name)
        .join(Product, Product.id == InventoryMovement.product_id)
        .filter(InventoryMovement.store_id == store_id)
    )
    if movement_type:
        base = base.filter(InventoryMovement.type == movement_type)
    if product_id:
        base = base.filter(InventoryMovement.product_id == product_id)
    if query:
        pattern = f"%{query.strip()}%"
        base = base.filter(or_(Product.sku.ilike(pattern), Product.name.ilike(pattern)))
    if date_from:
        base = base.filter(InventoryMovement.created_at >= date_from)
    if date_to:
        base = base.filter(InventoryMovement.created_at <= date_to)

    total = base.count()
    rows = (
        base.order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc())
        .limit(page_size)
        .offset((page - 1) * page_size)
        .all()
    )

    items = []
    for movement, sku, name in rows:
        item = movement.to_dict()
        item["sku"] = sku
        item["product_name"] = name
        items.append(item)

    return {
        "items": items,
        "page": page,
        "page_size": page_size,
        "total": total,
        "page_count": (total + page_size - 1) // page_size,
    }


def _build_stock_overview(store_id: int) -> dict:
    store = db.session.get(Store, store_id)
    products = (
        db.session.query(Product)
        .filter(Product.store_id == store_id, Product.is_active.is_(True))
        .all()
    )
    balances = get_balances(store_id)

    overview = {
        "product_count": len(products),
        "out_of_stock_count": 0,
        "low_stock_count": 0,
        "total_on_hand": 0,
        "total_reserved": 0,
        "stock_value_base": 0,
    }
    for product in products:
        balance = balances.get(product.id, StockBalance())
        out_threshold, low_threshold = resolve_thresholds(product, store)
        level = classify_stock_level(balance.available, out_threshold, low_threshold)
        if level == STOCK_OUT:
            overview["out_of_stock_count"] += 1
        elif level == STOCK_LOW:
            overview["low_stock_count"] += 1
        overview["total_on_hand"] += balance.on_hand
        overview["total_reserved"] += balance.reserved
        overview["stock_value_base"] += max(balance.on_hand, 0) * (product.cost_base or 0)
    return overview


def get_stock_overview(store_id: int, *, use_cache: bool = True) -> dict:
    """Dashboard totals. use_cache=False is the ground-truth path."""
    return cached_read(store_id, "stock_overview", lambda: _build_stock_overview(store_id), use_cache=use_cache)
