# Overview: Request, permission and write-pipeline decorators for API routes.

from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from functools import wraps

from flask import Response, current_app, g, jsonify, request

from .extensions import db
from .services import audit_service, idempotency_service, permission_service, session_service
from .services.errors import ServiceError
from .validation import ValidationError


INTERNAL_ERROR_BODY = {"error": "Internal server error", "reason_code": "INTERNAL_ERROR"}


def _is_authenticated() -> bool:
    return hasattr(g, 'current_user') and hasattr(g, 'store_id')


def json_response(body, status: int = 200, *, replayed: bool = False) -> Response:
    """
    Build a JSON response from serialize_body().

    Write endpoints respond through this so the live body and the cached
    idempotent replay are the same bytes.
    """
    response = Response(idempotency_service.serialize_body(body), status=status, mimetype="application/json")
    if replayed:
        response.headers["Idempotent-Replayed"] = "true"
    return response


def require_auth(f):
    """
    Require a bearer session and establish tenant context.

    Sets the following Flask g attributes:
    - g.current_user: The authenticated User object
    - g.store_id: The store the session was issued for
    - g.session_context: The full SessionContext object

    Returns 401 if the Authorization header is missing, the token is
    unknown, expired or revoked, or the user has been deactivated.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        auth_header = request.headers.get("Authorization")

        if not auth_header or not auth_header.startswith("Bearer "):
            return jsonify({"error": "Authentication required", "reason_code": "UNAUTHENTICATED"}), 401

        token = auth_header.split(" ", 1)[1]
        context = session_service.validate_session(token)

        if not context:
            return jsonify({"error": "Invalid or expired token", "reason_code": "UNAUTHENTICATED"}), 401

        g.current_user = context.user
        g.store_id = context.store_id
        g.session_context = context

        return f(*args, **kwargs)

    return decorated_function


def require_permission(permission_code: str):
    """Require a specific permission. Must be stacked under @require_auth."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not _is_authenticated():
                return jsonify({"error": "Authentication required", "reason_code": "UNAUTHENTICATED"}), 401

            try:
                permission_service.require_permission(g.current_user.id, permission_code)
            except permission_service.PermissionDeniedError as e:
                current_app.logger.info(
                    "Permission denied: user=%s permission=%s path=%s",
                    g.current_user.id, permission_code, request.path,
                )
                return jsonify(e.to_body()), 403

            return f(*args, **kwargs)

        return decorated_function
    return decorator


def require_cron_secret(f):
    """
    Guard internal cron endpoints with CRON_SECRET.

    Accepts "Authorization: Bearer <secret>" or "X-Cron-Secret: <secret>".
    503 when no secret is configured, 401 when the secret does not match.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        expected = current_app.config.get("CRON_SECRET")
        if not expected:
            return jsonify({"error": "Cron endpoints are disabled", "reason_code": "CRON_DISABLED"}), 503

        provided = request.headers.get("X-Cron-Secret")
        auth_header = request.headers.get("Authorization") or ""
        if auth_header.startswith("Bearer "):
            provided = auth_header.split(" ", 1)[1]

        if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            return jsonify({"error": "Invalid cron secret", "reason_code": "UNAUTHENTICATED"}), 401

        return f(*args, **kwargs)

    return decorated_function


@dataclass
class WriteResult:
    """What a write route hands back to idempotent_write."""
    body: dict
    status: int = 200
    entity_id: object = None
    before: object = None
    after: object = None
    metadata: dict = field(default_factory=dict)


def idempotent_write(action: str, entity_type: str):
    """
    Run a mutating route through the write pipeline.

    PIPELINE:
    1. Claim the Idempotency-Key (if sent). A replay returns the cached
       status and body verbatim, a conflicting or in-flight key returns 409
    2. Call the route with the claimed record id in g.idempotency_record_id.
       The service marks the record SUCCEEDED inside its own transaction
    3. On ServiceError / ValidationError / anything else: roll back, store
       the error response on the record (FAILED), audit FAIL
    4. On success: audit SUCCESS

    The route returns a WriteResult. Audit rows are written after the
    business transaction has ended and never change the response.
    Must be stacked under @require_auth.
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            user = g.current_user
            store_id = g.store_id
            audit_fields = {
                "action": action,
                "entity_type": entity_type,
                "store_id": store_id,
                "actor_user_id": user.id,
                "actor_name": user.username,
            }

            try:
                key = idempotency_service.extract_key(request.headers)
            except ValueError as e:
                return json_response({"error": str(e), "reason_code": "VALIDATION_ERROR"}, 400)

            record_id = None
            if key:
                claimed = idempotency_service.claim(
                    store_id=store_id,
                    action=action,
                    idempotency_key=key,
                    request_hash=idempotency_service.hash_request(request.get_data()),
                    user_id=user.id,
                )
                if claimed.outcome == idempotency_service.CLAIM_REPLAY:
                    return Response(
                        claimed.response_body or "",
                        status=claimed.response_status,
                        mimetype="application/json",
                        headers={"Idempotent-Replayed": "true"},
                    )
                if claimed.outcome == idempotency_service.CLAIM_CONFLICT:
                    return json_response({
                        "error": "Idempotency-Key was already used with a different request",
                        "reason_code": "IDEMPOTENCY_CONFLICT",
                    }, 409)
                if claimed.outcome == idempotency_service.CLAIM_PROCESSING:
                    return json_response({
                        "error": "A request with this Idempotency-Key is still processing",
                        "reason_code": "IDEMPOTENCY_PROCESSING",
                    }, 409)
                record_id = claimed.record_id

            g.idempotency_record_id = record_id

            try:
                result = f(*args, **kwargs)
            except ServiceError as e:
                db.session.rollback()
                body, status = e.to_body(), e.status
            except ValidationError as e:
                db.session.rollback()
                body, status = {"error": str(e), "reason_code": "VALIDATION_ERROR"}, 400
            except Exception:
                db.session.rollback()
                current_app.logger.exception("Unhandled error in %s", action)
                body, status = INTERNAL_ERROR_BODY, 500
            else:
                if record_id is not None:
                    # No-op when the service already completed the record in its transaction
                    idempotency_service.mark_succeeded(record_id, result.status, result.body)
                audit_service.safe_record_audit_event(
                    **audit_fields,
                    entity_id=result.entity_id,
                    result=audit_service.RESULT_SUCCESS,
                    metadata=result.metadata or None,
                    before=result.before,
                    after=result.after,
                )
                return json_response(result.body, result.status)

            idempotency_service.mark_failed_safe(record_id, status, body)
            audit_service.safe_record_audit_event(
                **audit_fields,
                entity_id=kwargs.get("po_id") or kwargs.get("product_id"),
                result=audit_service.RESULT_FAIL,
                reason_code=body["reason_code"],
                metadata={"status": status},
            )
            return json_response(body, status)

        return decorated_function
    return decorator
