from __future__ import annotations

from ..extensions import db
from backoffice.time_utils import to_utc_z, utcnow


class IdempotencyRequest(db.Model):
    """
    One row per (store, action, idempotency key).

    LIFECYCLE:
    1. PROCESSING: inserted by the claim. The unique constraint on
       (store_id, action, idempotency_key) is the concurrency signal
    2. SUCCEEDED / FAILED: terminal, response_status + response_body hold
       the exact serialized response replayed to retries

    Stale PROCESSING rows (writer crashed mid-request) are swept to FAILED
    and terminal rows are deleted after the retention window
    (see idempotency_service.cleanup_idempotency_requests).
    """
    __tablename__ = "idempotency_requests"
    __table_args__ = (
        db.UniqueConstraint("store_id", "action", "idempotency_key", name="uq_idempotency_store_action_key"),
        db.Index("ix_idempotency_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    action = db.Column(db.String(80), nullable=False)
    idempotency_key = db.Column(db.String(120), nullable=False)
    request_hash = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="PROCESSING")  # PROCESSING, SUCCEEDED, FAILED
    response_status = db.Column(db.Integer, nullable=True)
    response_body = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "action": self.action,
            "idempotency_key": self.idempotency_key,
            "status": self.status,
            "response_status": self.response_status,
            "created_at": to_utc_z(self.created_at),
            "completed_at": to_utc_z(self.completed_at),
        }
