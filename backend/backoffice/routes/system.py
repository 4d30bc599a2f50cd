# backend/backoffice/routes/system.py
"""
System health and audit trail endpoints.
"""

import time

from flask import Blueprint, current_app, g, jsonify, request
from sqlalchemy import text

from ..decorators import require_auth, require_permission
from ..extensions import db
from ..services import audit_service
from backoffice.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    """
    Check database connectivity with a trivial round trip.

    Returns dict with status and latency.
    """
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        db.session.rollback()
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


@system_bp.get("/health")
def health():
    database = check_database_health()
    healthy = database["status"] == "healthy"
    return jsonify({
        "status": "ok" if healthy else "degraded",
        "checked_at": to_utc_z(utcnow()),
        "checks": {"database": database},
    }), 200 if healthy else 503


@system_bp.get("/audit-events")
@require_auth
@require_permission("audit.view")
def list_audit_events_route():
    """
    Recent audit events for the session's store.

    Query parameters: entity_type, entity_id, limit (default 100, max 500)
    """
    limit = min(500, max(1, request.args.get("limit", 100, type=int)))
    events = audit_service.list_audit_events(
        g.store_id,
        entity_type=request.args.get("entity_type"),
        entity_id=request.args.get("entity_id"),
        limit=limit,
    )
    return jsonify({"items": [e.to_dict() for e in events], "count": len(events)})
