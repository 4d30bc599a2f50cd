# Overview: Idempotency gate; claims keys, replays cached responses, sweeps stale rows.

"""
Idempotency Gate

WHY: Clients retry writes (timeouts, flaky networks). A retried write must
produce one effect and the same response, not a second stock movement or
a second payment.

CLAIM PROTOCOL (optimistic insert, inspect on conflict):
1. INSERT a PROCESSING row for (store_id, action, key) and commit at once
2. Unique violation means an earlier attempt exists. Inspect it:
   - different request_hash        -> conflict   (409, never applies either)
   - still PROCESSING              -> processing (409, in-flight duplicate)
   - terminal, same request_hash   -> replay     (exact cached response)

The insert is never preceded by a SELECT: select-then-insert leaves a
window where two concurrent requests both see "no row".

COMPLETION:
- Success is recorded inside the business transaction
  (complete_in_transaction), so the effect and its cached response commit
  or roll back together
- Failure is recorded after the business rollback (mark_failed); the
  *_safe variant never raises

SERIALIZATION: serialize_body() is the only way a response body becomes
text, both for the live response and for the cached copy, so replays are
byte-identical.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import IdempotencyRequest
from backoffice.time_utils import utcnow


STATUS_PROCESSING = "PROCESSING"
STATUS_SUCCEEDED = "SUCCEEDED"
STATUS_FAILED = "FAILED"

CLAIM_ACQUIRED = "acquired"
CLAIM_REPLAY = "replay"
CLAIM_PROCESSING = "processing"
CLAIM_CONFLICT = "conflict"

IDEMPOTENCY_HEADERS = ("Idempotency-Key", "X-Idempotency-Key")
MAX_KEY_LENGTH = 120

DEFAULT_RETENTION_DAYS = 14
DEFAULT_STALE_PROCESSING_MINUTES = 15

STALE_TIMEOUT_STATUS = 408
STALE_TIMEOUT_BODY = {"message": "idempotency request expired", "reason_code": "IDEMPOTENCY_TIMEOUT"}


@dataclass(frozen=True)
class ClaimResult:
    outcome: str
    record_id: int | None = None
    response_status: int | None = None
    response_body: str | None = None


def serialize_body(body) -> str:
    return json.dumps(body, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def hash_request(raw_body: bytes | None) -> str:
    return hashlib.sha256(raw_body or b"").hexdigest()


def extract_key(headers) -> str | None:
    """
    Read the idempotency key from request headers.

    Blank keys count as absent. Raises ValueError if the key is too long.
    """
    for name in IDEMPOTENCY_HEADERS:
        raw = headers.get(name)
        if raw is None:
            continue
        key = raw.strip()
        if not key:
            continue
        if len(key) > MAX_KEY_LENGTH:
            raise ValueError(f"Idempotency key exceeds {MAX_KEY_LENGTH} characters")
        return key
    return None


def _replay_status(record: IdempotencyRequest) -> int:
    if record.response_status is not None:
        return record.response_status
    return 500 if record.status == STATUS_FAILED else 200


def claim(
    *,
    store_id: int,
    action: str,
    idempotency_key: str,
    request_hash: str,
    user_id: int | None = None,
) -> ClaimResult:
    """
    Claim (store_id, action, key). Commits the PROCESSING row on success.

    Must be called with a clean session: a conflicting insert rolls the
    session back.
    """
    record = IdempotencyRequest(
        store_id=store_id,
        action=action,
        idempotency_key=idempotency_key,
        request_hash=request_hash,
        status=STATUS_PROCESSING,
        created_by=user_id,
        created_at=utcnow(),
    )
    db.session.add(record)
    try:
        db.session.commit()
        return ClaimResult(outcome=CLAIM_ACQUIRED, record_id=record.id)
    except IntegrityError:
        db.session.rollback()

    existing = (
        db.session.query(IdempotencyRequest)
        .filter_by(store_id=store_id, action=action, idempotency_key=idempotency_key)
        .first()
    )
    if existing is None:
        # Row was swept between our insert and this read; the caller may retry.
        return ClaimResult(outcome=CLAIM_PROCESSING)

    if existing.request_hash != request_hash:
        return ClaimResult(outcome=CLAIM_CONFLICT, record_id=existing.id)

    if existing.status == STATUS_PROCESSING:
        return ClaimResult(outcome=CLAIM_PROCESSING, record_id=existing.id)

    return ClaimResult(
        outcome=CLAIM_REPLAY,
        record_id=existing.id,
        response_status=_replay_status(existing),
        response_body=existing.response_body,
    )


def complete_in_transaction(record_id: int | None, response_status: int, body) -> str | None:
    """
    Mark the record SUCCEEDED inside the caller's business transaction.

    No-op when the request carried no idempotency key. Returns the
    serialized body that was stored.
    """
    if record_id is None:
        return None
    record = db.session.get(IdempotencyRequest, record_id)
    if record is None or record.status != STATUS_PROCESSING:
        return None
    serialized = serialize_body(body)
    record.status = STATUS_SUCCEEDED
    record.response_status = response_status
    record.response_body = serialized
    record.completed_at = utcnow()
    return serialized


def mark_succeeded(record_id: int, response_status: int, body) -> None:
    """Standalone success mark for writes that did not complete in-transaction."""
    if complete_in_transaction(record_id, response_status, body) is not None:
        db.session.commit()


def mark_failed(record_id: int, response_status: int, body) -> None:
    record = db.session.get(IdempotencyRequest, record_id)
    if record is None or record.status != STATUS_PROCESSING:
        return
    record.status = STATUS_FAILED
    record.response_status = response_status
    record.response_body = serialize_body(body)
    record.completed_at = utcnow()
    db.session.commit()


def mark_failed_safe(record_id: int | None, response_status: int, body) -> None:
    """mark_failed that logs instead of raising; the primary error must win."""
    if record_id is None:
        return
    try:
        mark_failed(record_id, response_status, body)
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to mark idempotency request %s as FAILED", record_id)


def cleanup_idempotency_requests(
    *,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    stale_processing_minutes: int = DEFAULT_STALE_PROCESSING_MINUTES,
) -> dict:
    """
    Sweep the idempotency table.

    1. PROCESSING rows older than stale_processing_minutes become FAILED
       with a 408 timeout response (writer crashed mid-request)
    2. Terminal rows created before the retention window are deleted
    """
    if retention_days < 1:
        raise ValueError("retention_days must be >= 1")
    if stale_processing_minutes < 1:
        raise ValueError("stale_processing_minutes must be >= 1")

    now = utcnow()
    stale_cutoff = now - timedelta(minutes=stale_processing_minutes)
    retention_cutoff = now - timedelta(days=retention_days)

    stale_marked = (
        db.session.query(IdempotencyRequest)
        .filter(
            IdempotencyRequest.status == STATUS_PROCESSING,
            IdempotencyRequest.created_at < stale_cutoff,
        )
        .update(
            {
                IdempotencyRequest.status: STATUS_FAILED,
                IdempotencyRequest.response_status: STALE_TIMEOUT_STATUS,
                IdempotencyRequest.response_body: serialize_body(STALE_TIMEOUT_BODY),
                IdempotencyRequest.completed_at: now,
            },
            synchronize_session=False,
        )
    )

    deleted = (
        db.session.query(IdempotencyRequest)
        .filter(
            IdempotencyRequest.status.in_([STATUS_SUCCEEDED, STATUS_FAILED]),
            IdempotencyRequest.created_at < retention_cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.session.commit()

    counts = dict(
        db.session.query(IdempotencyRequest.status, func.count(IdempotencyRequest.id))
        .group_by(IdempotencyRequest.status)
        .all()
    )

    return {
        "retention_days": retention_days,
        "stale_processing_minutes": stale_processing_minutes,
        "stale_marked": stale_marked,
        "deleted": deleted,
        "remaining": {
            "processing": counts.get(STATUS_PROCESSING, 0),
            "succeeded": counts.get(STATUS_SUCCEEDED, 0),
            "failed": counts.get(STATUS_FAILED, 0),
        },
    }
