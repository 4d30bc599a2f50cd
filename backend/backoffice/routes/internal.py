# Overview: Internal cron endpoints; guarded by CRON_SECRET instead of user sessions.

from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_cron_secret
from ..extensions import db
from ..services import maintenance_service
from ..validation import ValidationError, parse_positive_int


internal_bp = Blueprint("internal", __name__, url_prefix="/api/internal")


@internal_bp.route("/cron/idempotency-cleanup", methods=["GET", "POST"])
@require_cron_secret
def idempotency_cleanup_route():
    """
    Sweep the idempotency table.

    Optional overrides (query string or JSON body): retention_days,
    stale_processing_minutes. Defaults come from config.
    """
    payload = request.get_json(silent=True) if request.method == "POST" else None
    if not isinstance(payload, dict):
        payload = {}

    overrides = {}
    try:
        for name in ("retention_days", "stale_processing_minutes"):
            raw = payload.get(name, request.args.get(name))
            if raw is not None and raw != "":
                overrides[name] = parse_positive_int(raw, name)
    except ValidationError as e:
        return jsonify({"error": str(e), "reason_code": "VALIDATION_ERROR"}), 400

    try:
        result = maintenance_service.cleanup_idempotency(**overrides)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Idempotency cleanup failed")
        return jsonify({"error": "Internal server error", "reason_code": "INTERNAL_ERROR"}), 500

    return jsonify({"ok": True, **result})
