# Overview: Audit recorder; one immutable event per business mutation attempt.

"""
Audit Recorder

WHY: Every state-changing endpoint records who attempted what, on which
entity, and how it ended (SUCCESS/FAIL + reason code), with opaque
before/after snapshots for forensic diffs.

FIRE-AND-FORGET:
Audit rows are written in their own commit AFTER the business transaction
has committed or rolled back. safe_record_audit_event() logs and swallows
any failure, so auditing can never block, roll back or mask the outcome of
the operation it describes.
"""

from __future__ import annotations

import json

from flask import current_app, has_request_context, request

from ..extensions import db
from ..models import AuditEvent
from backoffice.time_utils import utcnow


SCOPE_STORE = "STORE"
SCOPE_SYSTEM = "SYSTEM"

RESULT_SUCCESS = "SUCCESS"
RESULT_FAIL = "FAIL"


def _to_json_text(value) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _first_forwarded_ip(raw: str | None) -> str | None:
    if not raw:
        return None
    first = raw.split(",")[0].strip()
    return first or None


def request_audit_context() -> dict:
    """Client metadata of the current request (empty outside a request)."""
    if not has_request_context():
        return {}
    headers = request.headers
    ip_address = (
        _first_forwarded_ip(headers.get("X-Forwarded-For"))
        or (headers.get("X-Real-IP") or "").strip()
        or request.remote_addr
    )
    user_agent = headers.get("User-Agent")
    request_id = headers.get("X-Request-Id") or headers.get("X-Correlation-Id")
    return {
        "ip_address": ip_address[:45] if ip_address else None,
        "user_agent": user_agent[:512] if user_agent else None,
        "request_id": request_id[:120] if request_id else None,
    }


def build_audit_values(
    *,
    action: str,
    entity_type: str,
    result: str,
    scope: str = SCOPE_STORE,
    store_id: int | None = None,
    actor_user_id: int | None = None,
    actor_name: str | None = None,
    entity_id=None,
    reason_code: str | None = None,
    metadata: dict | None = None,
    before=None,
    after=None,
) -> dict:
    """Normalize an audit event into column values (no DB access)."""
    if scope not in (SCOPE_STORE, SCOPE_SYSTEM):
        raise ValueError(f"Invalid audit scope: {scope}")
    if result not in (RESULT_SUCCESS, RESULT_FAIL):
        raise ValueError(f"Invalid audit result: {result}")
    if scope == SCOPE_STORE and store_id is None:
        raise ValueError("store_id is required for STORE scope audit events")

    values = {
        "scope": scope,
        "store_id": store_id,
        "actor_user_id": actor_user_id,
        "actor_name": actor_name,
        "action": action,
        "entity_type": entity_type,
        "entity_id": str(entity_id) if entity_id is not None else None,
        "result": result,
        "reason_code": reason_code,
        "event_metadata": _to_json_text(metadata),
        "before": _to_json_text(before),
        "after": _to_json_text(after),
        "occurred_at": utcnow(),
    }
    values.update(request_audit_context())
    return values


def record_audit_event(**kwargs) -> AuditEvent:
    """Insert and commit one audit event. Raises on failure."""
    event = AuditEvent(**build_audit_values(**kwargs))
    db.session.add(event)
    db.session.commit()
    return event


def safe_record_audit_event(**kwargs) -> AuditEvent | None:
    """record_audit_event that never raises. Returns None on failure."""
    try:
        return record_audit_event(**kwargs)
    except Exception:
        db.session.rollback()
        current_app.logger.exception(
            "Failed to record audit event %s (%s)",
            kwargs.get("action"), kwargs.get("result"),
        )
        return None


def list_audit_events(store_id: int, *, entity_type: str | None = None, entity_id=None, limit: int = 100) -> list[AuditEvent]:
    query = db.session.query(AuditEvent).filter(AuditEvent.store_id == store_id)
    if entity_type:
        query = query.filter(AuditEvent.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditEvent.entity_id == str(entity_id))
    return query.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).limit(limit).all()
