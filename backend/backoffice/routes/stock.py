# Overview: Flask API routes for stock balances and ledger movements; parses input and returns JSON responses.

"""
Stock Routes

SECURITY: All routes require authentication.
- Read operations require inventory.view
- POST /movements checks the permission for the movement type inside the
  service (IN/RETURN -> inventory.in, OUT/RESERVE/RELEASE -> inventory.out,
  ADJUST -> inventory.adjust)

Reads accept ?fresh=1 to bypass the dashboard cache.
"""

from flask import Blueprint, g, jsonify, request

from ..decorators import WriteResult, idempotent_write, require_auth, require_permission
from ..extensions import db
from ..models import Product
from ..services import inventory_service, stock_service
from ..validation import parse_choice
from backoffice.time_utils import parse_iso_datetime


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _wants_fresh() -> bool:
    return request.args.get("fresh", "").lower() in ("1", "true", "yes")


@stock_bp.get("/products")
@require_auth
@require_permission("inventory.view")
def list_products_route():
    """
    Page of products with on_hand / reserved / available and stock level.

    Query parameters: limit (1-200, default 50), offset, q, include_inactive
    """
    limit = request.args.get("limit", 50, type=int)
    offset = request.args.get("offset", 0, type=int)
    limit = min(200, max(1, limit))
    offset = max(0, offset)

    items, total = inventory_service.list_stock_products(
        g.store_id,
        limit=limit,
        offset=offset,
        query=request.args.get("q"),
        include_inactive=request.args.get("include_inactive", "").lower() in ("1", "true"),
    )
    return jsonify({"items": items, "count": total, "limit": limit, "offset": offset})


@stock_bp.get("/products/<int:product_id>/balance")
@require_auth
@require_permission("inventory.view")
def product_balance_route(product_id: int):
    """Ground-truth balance straight from the ledger (never cached)."""
    product = db.session.query(Product).filter_by(id=product_id, store_id=g.store_id).first()
    if not product:
        return jsonify({"error": "Product not found", "reason_code": "NOT_FOUND"}), 404

    balance = inventory_service.get_balance(g.store_id, product_id)
    return jsonify({"product_id": product_id, "sku": product.sku, **balance.to_dict()})


@stock_bp.get("/movements")
@require_auth
@require_permission("inventory.view")
def list_movements_route():
    """
    Paged ledger view, newest first.

    Query parameters: page, page_size (max 200), type, product_id, q,
    date_from, date_to (ISO-8601)
    """
    try:
        movement_type = request.args.get("type")
        if movement_type:
            movement_type = parse_choice(movement_type, "type", inventory_service.MOVEMENT_TYPES)
        date_from = date_to = None
        if request.args.get("date_from"):
            date_from = parse_iso_datetime(request.args["date_from"])
        if request.args.get("date_to"):
            date_to = parse_iso_datetime(request.args["date_to"])
    except ValueError as e:
        return jsonify({"error": str(e), "reason_code": "VALIDATION_ERROR"}), 400

    result = inventory_service.list_movements_page(
        g.store_id,
        page=request.args.get("page", 1, type=int),
        page_size=request.args.get("page_size", 50, type=int),
        movement_type=movement_type,
        product_id=request.args.get("product_id", type=int),
        query=request.args.get("q"),
        date_from=date_from,
        date_to=date_to,
    )
    return jsonify(result)


@stock_bp.get("/low-stock")
@require_auth
@require_permission("inventory.view")
def low_stock_route():
    items = inventory_service.get_low_stock_products(g.store_id)
    return jsonify({"items": items, "count": len(items)})


@stock_bp.get("/overview")
@require_auth
@require_permission("inventory.view")
def stock_overview_route():
    return jsonify(inventory_service.get_stock_overview(g.store_id, use_cache=not _wants_fresh()))


@stock_bp.post("/movements")
@require_auth
@idempotent_write("STOCK_MOVEMENT_CREATE", "inventory_movement")
def create_movement_route():
    """
    Append one stock movement.

    Body: {product_id, unit_id, qty, type, adjust_mode?, note?}
    Returns: {ok, movement_id, product_id, type, qty_base, balance}
    """
    data = stock_service.parse_stock_movement_payload(request.get_json(silent=True))
    result = stock_service.post_stock_movement(
        store_id=g.store_id,
        user_id=g.current_user.id,
        data=data,
        idempotency_record_id=g.idempotency_record_id,
    )
    return WriteResult(
        body=result.body,
        entity_id=result.movement.id,
        before=result.before.to_dict(),
        after=result.after.to_dict(),
        metadata={
            "product_id": data.product_id,
            "type": data.movement_type,
            "qty_base": result.body["qty_base"],
        },
    )
