# Overview: Stock mutation service; validates and appends ledger rows atomically.

"""
Stock Mutation Service

WHY: The only entry point for manual stock movements (IN, OUT, RESERVE,
RELEASE, ADJUST, RETURN). The balance check and the ledger append happen
in one transaction with the product row locked, so two concurrent OUTs
cannot both pass the check against the same stock.

ALGORITHM:
1. Lock the product row (store scoped, must be active)
2. Resolve qty_base = qty * multiplier_to_base of the chosen unit
3. Re-derive the balance from the ledger (never from cache)
4. Enforce quantity invariants for the movement type
5. Append the movement, mark the idempotency record SUCCEEDED with the
   exact response body, commit
6. Invalidate dashboard caches for the store

INVARIANTS:
- OUT / RESERVE require available >= qty_base      (INSUFFICIENT_STOCK)
- RELEASE requires reserved >= qty_base            (INSUFFICIENT_RESERVED)
- ADJUST DECREASE may not drive on_hand below zero (INSUFFICIENT_STOCK)
- A rejected request leaves the ledger untouched
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from ..extensions import db
from ..models import InventoryMovement, Product
from ..validation import (
    MAX_NOTE_LENGTH,
    ValidationError,
    parse_choice,
    parse_decimal,
    parse_optional_text,
    parse_positive_int,
)
from . import cache_service, idempotency_service, permission_service
from .concurrency import locked_row, run_with_retry
from .errors import NotFoundError, StockServiceError
from .inventory_service import (
    ADJUST_DECREASE,
    ADJUST_MODES,
    MOVEMENT_ADJUST,
    MOVEMENT_IN,
    MOVEMENT_OUT,
    MOVEMENT_RELEASE,
    MOVEMENT_RESERVE,
    MOVEMENT_RETURN,
    MOVEMENT_TYPES,
    StockBalance,
    append_movement,
    get_balance,
    resolve_unit_multiplier,
)


# Permission required per movement type
MOVEMENT_PERMISSIONS = {
    MOVEMENT_IN: "inventory.in",
    MOVEMENT_RETURN: "inventory.in",
    MOVEMENT_ADJUST: "inventory.adjust",
    MOVEMENT_OUT: "inventory.out",
    MOVEMENT_RESERVE: "inventory.out",
    MOVEMENT_RELEASE: "inventory.out",
}


@dataclass(frozen=True)
class StockMovementInput:
    product_id: int
    unit_id: int
    qty: Decimal
    movement_type: str
    adjust_mode: str | None = None
    note: str | None = None


@dataclass
class StockMutationResult:
    movement: InventoryMovement
    before: StockBalance
    after: StockBalance
    body: dict


def parse_stock_movement_payload(payload: dict) -> StockMovementInput:
    """Validate the POST /api/stock/movements body."""
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    for field in ("product_id", "unit_id", "qty", "type"):
        if payload.get(field) is None:
            raise ValidationError(f"{field} is required")

    movement_type = parse_choice(payload.get("type"), "type", MOVEMENT_TYPES)
    qty = parse_decimal(payload.get("qty"), "qty")
    if qty <= 0:
        raise ValidationError("qty must be > 0")

    adjust_mode = None
    if movement_type == MOVEMENT_ADJUST:
        adjust_mode = parse_choice(payload.get("adjust_mode"), "adjust_mode", ADJUST_MODES)

    note = parse_optional_text(payload.get("note"), "note", max_length=MAX_NOTE_LENGTH)
    if movement_type == MOVEMENT_ADJUST and not note:
        raise ValidationError("note is required for ADJUST")

    return StockMovementInput(
        product_id=parse_positive_int(payload.get("product_id"), "product_id"),
        unit_id=parse_positive_int(payload.get("unit_id"), "unit_id"),
        qty=qty,
        movement_type=movement_type,
        adjust_mode=adjust_mode,
        note=note,
    )


def to_base_quantity(qty: Decimal, multiplier_to_base: int) -> int:
    """qty in a sales/purchase unit -> positive integer base quantity."""
    qty_base = qty * multiplier_to_base
    if qty_base <= 0 or qty_base != qty_base.to_integral_value():
        raise StockServiceError(
            "qty x multiplier_to_base must be a whole number of base units greater than zero",
            reason_code="VALIDATION_ERROR",
        )
    return int(qty_base)


def check_movement_allowed(movement_type: str, qty_base: int, balance: StockBalance, adjust_mode: str | None = None) -> None:
    """Raise StockServiceError if the movement would break a quantity invariant."""
    if movement_type in (MOVEMENT_OUT, MOVEMENT_RESERVE) and balance.available < qty_base:
        raise StockServiceError(
            f"Insufficient stock: available {balance.available}, requested {qty_base}",
            reason_code="INSUFFICIENT_STOCK",
        )
    if movement_type == MOVEMENT_RELEASE and balance.reserved < qty_base:
        raise StockServiceError(
            f"Insufficient reserved stock: reserved {balance.reserved}, requested {qty_base}",
            reason_code="INSUFFICIENT_RESERVED",
        )
    if movement_type == MOVEMENT_ADJUST and adjust_mode == ADJUST_DECREASE and balance.on_hand < qty_base:
        raise StockServiceError(
            f"Adjustment would make on-hand negative: on hand {balance.on_hand}, decrease {qty_base}",
            reason_code="INSUFFICIENT_STOCK",
        )


def post_stock_movement(
    *,
    store_id: int,
    user_id: int,
    data: StockMovementInput,
    idempotency_record_id: int | None = None,
) -> StockMutationResult:
    """
    Validate and append one stock movement.

    Raises:
        PermissionDeniedError: user lacks the permission for this movement type
        NotFoundError: product not in this store
        StockServiceError: inactive product, unknown unit, invariant violation
    """
    permission_service.require_permission(user_id, MOVEMENT_PERMISSIONS[data.movement_type])

    def _op() -> StockMutationResult:
        product = locked_row(Product, id=data.product_id, store_id=store_id)
        if not product:
            raise NotFoundError("Product not found")
        if not product.is_active:
            raise StockServiceError("Product is inactive", reason_code="PRODUCT_INACTIVE")

        multiplier = resolve_unit_multiplier(product, data.unit_id)
        qty_base = to_base_quantity(data.qty, multiplier)

        before = get_balance(store_id, product.id)
        check_movement_allowed(data.movement_type, qty_base, before, data.adjust_mode)

        movement = append_movement(
            store_id=store_id,
            product_id=product.id,
            movement_type=data.movement_type,
            qty_base=qty_base,
            adjust_mode=data.adjust_mode,
            note=data.note,
            actor_user_id=user_id,
            ref_type="RETURN" if data.movement_type == MOVEMENT_RETURN else "MANUAL",
        )
        after = get_balance(store_id, product.id)

        body = {
            "ok": True,
            "movement_id": movement.id,
            "product_id": product.id,
            "type": movement.type,
            "qty_base": qty_base,
            "balance": after.to_dict(),
        }
        idempotency_service.complete_in_transaction(idempotency_record_id, 200, body)
        db.session.commit()
        return StockMutationResult(movement=movement, before=before, after=after, body=body)

    result = run_with_retry(_op)
    cache_service.invalidate_store(store_id)
    return result
