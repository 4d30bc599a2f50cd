# Overview: Flask API routes for purchase orders and accounts payable; parses input and returns JSON responses.

"""
Purchase Order Routes

SECURITY: All routes require authentication.
- Read operations (PO list/detail, AP views, CSV export) require purchase.view
- Create requires purchase.create
- Status changes, edits, rate lock and extra cost require purchase.update
- Settle and payment reversal require purchase.settle

Every write goes through idempotent_write: send an Idempotency-Key header
to make retries safe.
"""

from flask import Blueprint, Response, g, jsonify, request

from ..decorators import WriteResult, idempotent_write, require_auth, require_permission
from ..services import purchase_ap_service, purchase_service
from ..services.errors import ServiceError
from ..validation import ValidationError
from backoffice.time_utils import utctoday


purchase_orders_bp = Blueprint("purchase_orders", __name__, url_prefix="/api/purchase-orders")


def _wants_fresh() -> bool:
    return request.args.get("fresh", "").lower() in ("1", "true", "yes")


def _json_payload() -> dict:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


# -- Purchase orders -------------------------------------------------------


@purchase_orders_bp.get("")
@require_auth
@require_permission("purchase.view")
def list_purchase_orders_route():
    """
    List purchase orders for the session's store.

    Query parameters:
    - status: DRAFT, ORDERED, SHIPPED, RECEIVED, CANCELLED
    - supplier: substring match on supplier name
    - limit: Maximum results (default: 50, max 200)
    - offset: Pagination offset (default: 0)
    """
    limit = min(200, max(1, request.args.get("limit", 50, type=int)))
    offset = max(0, request.args.get("offset", 0, type=int))
    try:
        items, total = purchase_service.list_purchase_orders(
            g.store_id,
            status=request.args.get("status"),
            supplier=request.args.get("supplier"),
            limit=limit,
            offset=offset,
        )
    except ValidationError as e:
        return jsonify({"error": str(e), "reason_code": "VALIDATION_ERROR"}), 400
    return jsonify({"items": items, "count": total, "limit": limit, "offset": offset})


@purchase_orders_bp.get("/<int:po_id>")
@require_auth
@require_permission("purchase.view")
def get_purchase_order_route(po_id: int):
    try:
        po = purchase_service.get_purchase_order(g.store_id, po_id)
    except ServiceError as e:
        return jsonify(e.to_body()), e.status
    return jsonify({"purchase_order": purchase_service.serialize_purchase_order(po)})


@purchase_orders_bp.post("")
@require_auth
@require_permission("purchase.create")
@idempotent_write("PURCHASE_ORDER_CREATE", "purchase_order")
def create_purchase_order_route():
    """
    Create a purchase order.

    Body:
    {
        supplier_name, supplier_contact?, purchase_currency, exchange_rate?,
        shipping_cost?, other_cost?, other_cost_note?, note?, due_date?,
        expected_at?, tracking_info?, receive_immediately?,
        items: [{product_id, qty_ordered, unit_cost_purchase}]
    }
    """
    result = purchase_service.create_purchase_order(
        store_id=g.store_id,
        user_id=g.current_user.id,
        payload=_json_payload(),
        idempotency_record_id=g.idempotency_record_id,
    )
    return WriteResult(
        body=result.body,
        status=201,
        entity_id=result.purchase_order.id,
        after=result.after,
        metadata={"po_number": result.purchase_order.po_number, "status": result.purchase_order.status},
    )


@purchase_orders_bp.patch("/<int:po_id>")
@require_auth
@require_permission("purchase.update")
@idempotent_write("PURCHASE_ORDER_STATUS_UPDATE", "purchase_order")
def update_status_route(po_id: int):
    """
    Change PO status.

    Body: {status, tracking_info?, received_items?: [{item_id|product_id, qty_received}]}
    """
    payload = _json_payload()
    result = purchase_service.update_status(
        po_id=po_id,
        store_id=g.store_id,
        user_id=g.current_user.id,
        target_status=payload.get("status"),
        payload=payload,
        idempotency_record_id=g.idempotency_record_id,
    )
    return WriteResult(
        body=result.body,
        entity_id=po_id,
        before=result.before,
        after=result.after,
        metadata={"from": result.before["status"], "to": result.after["status"]},
    )


@purchase_orders_bp.put("/<int:po_id>")
@require_auth
@require_permission("purchase.update")
@idempotent_write("PURCHASE_ORDER_UPDATE", "purchase_order")
def update_purchase_order_route(po_id: int):
    """Edit header fields and (DRAFT/ORDERED only) line items."""
    payload = _json_payload()
    result = purchase_service.update_purchase_order(
        po_id=po_id,
        store_id=g.store_id,
        user_id=g.current_user.id,
        payload=payload,
        idempotency_record_id=g.idempotency_record_id,
    )
    return WriteResult(
        body=result.body,
        entity_id=po_id,
        before=result.before,
        after=result.after,
        metadata={"fields": sorted(payload)},
    )


@purchase_orders_bp.get("/pending-rate")
@require_auth
@require_permission("purchase.view")
def pending_rate_queue_route():
    """
    Received foreign-currency POs still waiting for their final exchange rate.

    Query parameters: supplier, received_from, received_to (YYYY-MM-DD),
    limit (default 50, clamped to 10..200)
    """
    try:
        items = purchase_service.list_pending_rate_queue(
            g.store_id,
            supplier=request.args.get("supplier"),
            received_from=request.args.get("received_from"),
            received_to=request.args.get("received_to"),
            limit=request.args.get("limit", type=int),
        )
    except ValidationError as e:
        return jsonify({"error": str(e), "reason_code": "VALIDATION_ERROR"}), 400
    return jsonify({"items": items, "count": len(items)})


@purchase_orders_bp.post("/<int:po_id>/exchange-rate")
@require_auth
@require_permission("purchase.update")
@idempotent_write("PURCHASE_ORDER_RATE_LOCK", "purchase_order")
def finalize_exchange_rate_route(po_id: int):
    """
    Lock the final exchange rate of a received foreign-currency PO.

    Body: {exchange_rate, note?}
    """
    result = purchase_service.finalize_exchange_rate(
        po_id=po_id,
        store_id=g.store_id,
        user_id=g.current_user.id,
        payload=_json_payload(),
        idempotency_record_id=g.idempotency_record_id,
    )
    return WriteResult(
        body=result.body,
        entity_id=po_id,
        before=result.before,
        after=result.after,
        metadata={
            "previous_rate": result.before["exchange_rate"],
            "next_rate": result.after["exchange_rate"],
        },
    )


@purchase_orders_bp.post("/<int:po_id>/extra-cost")
@require_auth
@require_permission("purchase.update")
@idempotent_write("PURCHASE_ORDER_EXTRA_COST", "purchase_order")
def apply_extra_cost_route(po_id: int):
    """
    Change shipping / other cost after receipt.

    Body: {shipping_cost?, other_cost?, other_cost_note?}
    """
    result = purchase_service.apply_extra_cost(
        po_id=po_id,
        store_id=g.store_id,
        user_id=g.current_user.id,
        payload=_json_payload(),
        idempotency_record_id=g.idempotency_record_id,
    )
    return WriteResult(
        body=result.body,
        entity_id=po_id,
        before=result.before,
        after=result.after,
        metadata={
            "shipping_cost": result.after["shipping_cost"],
            "other_cost": result.after["other_cost"],
        },
    )

@purchase_orders_bp.post("/<int:po_id>/settle")
@require_auth
@require_permission("purchase.settle")
@idempotent_write("PURCHASE_ORDER_SETTLE", "purchase_order")
def settle_route(po_id: int):
    """
    Record a supplier payment.

    Body: {amount, currency?, fx_rate_used?, reference?, note?, paid_at?}
    """
    result = purchase_ap_service.settle_payment(
        po_id=po_id,
        store_id=g.store_id,
        user_id=g.current_user.id,
        payload=_json_payload(),
        idempotency_record_id=g.idempotency_record_id,
    )
    return WriteResult(
        body=result.body,
        entity_id=po_id,
        before=result.before.to_dict(),
        after=result.after.to_dict(),
        metadata={
            "payment_id": result.payment.id,
            "amount": result.payment.amount,
            "currency": result.payment.currency,
            "amount_base": result.payment.amount_base,
        },
    )


@purchase_orders_bp.post("/<int:po_id>/payments/<int:payment_id>/reverse")
@require_auth
@require_permission("purchase.settle")
@idempotent_write("PURCHASE_ORDER_PAYMENT_REVERSE", "purchase_order")
def reverse_payment_route(po_id: int, payment_id: int):
    payload = request.get_json(silent=True) or {}
    result = purchase_ap_service.reverse_payment(
        po_id=po_id,
        payment_id=payment_id,
        store_id=g.store_id,
        user_id=g.current_user.id,
        note=payload.get("note") if isinstance(payload, dict) else None,
        idempotency_record_id=g.idempotency_record_id,
    )
    return WriteResult(
        body=result.body,
        entity_id=po_id,
        before=result.before.to_dict(),
        after=result.after.to_dict(),
        metadata={"payment_id": payment_id, "reversal_id": result.payment.id},
    )


# -- Accounts payable ------------------------------------------------------


@purchase_orders_bp.get("/ap-by-supplier")
@require_auth
@require_permission("purchase.view")
def ap_by_supplier_route():
    """Outstanding AP grouped by supplier. Query: q, limit (max 200), fresh."""
    summary = purchase_ap_service.get_supplier_summary(
        g.store_id,
        q=request.args.get("q"),
        limit=request.args.get("limit", 100, type=int),
        use_cache=not _wants_fresh(),
    )
    return jsonify(summary)


@purchase_orders_bp.get("/ap-by-supplier/statement")
@require_auth
@require_permission("purchase.view")
def ap_statement_route():
    """
    Statement for one supplier.

    Query parameters: supplier_key (required), payment_status, due_filter,
    due_from, due_to (YYYY-MM-DD), q, limit
    """
    try:
        filters = purchase_ap_service.parse_statement_filters(request.args)
        statement = purchase_ap_service.get_supplier_statement(
            g.store_id,
            supplier=request.args.get("supplier_key"),
            filters=filters,
        )
    except ValidationError as e:
        return jsonify({"error": str(e), "reason_code": "VALIDATION_ERROR"}), 400
    return jsonify(statement)


@purchase_orders_bp.get("/ap-by-supplier/export-csv")
@require_auth
@require_permission("purchase.view")
def ap_statement_csv_route():
    """Same filters as /statement, rendered as a downloadable CSV."""
    try:
        filters = purchase_ap_service.parse_statement_filters(request.args)
        statement = purchase_ap_service.get_supplier_statement(
            g.store_id,
            supplier=request.args.get("supplier_key"),
            filters=filters,
        )
    except ValidationError as e:
        return jsonify({"error": str(e), "reason_code": "VALIDATION_ERROR"}), 400

    filename = purchase_ap_service.statement_csv_filename(statement["summary"]["supplier_name"], utctoday())
    return Response(
        purchase_ap_service.statement_to_csv(statement),
        mimetype="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-store",
        },
    )


@purchase_orders_bp.get("/ap-aging")
@require_auth
@require_permission("purchase.view")
def ap_aging_route():
    return jsonify(purchase_ap_service.get_aging_summary(g.store_id, use_cache=not _wants_fresh()))


@purchase_orders_bp.get("/ap-reminders")
@require_auth
@require_permission("purchase.view")
def ap_reminders_route():
    """Overdue and due-soon payables. Query: limit (default 10, max 500), fresh."""
    reminders = purchase_ap_service.get_due_reminders(
        g.store_id,
        limit=request.args.get("limit", 10, type=int),
        use_cache=not _wants_fresh(),
    )
    return jsonify(reminders)
