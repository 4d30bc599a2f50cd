from __future__ import annotations

import json

from ..extensions import db
from backoffice.time_utils import to_utc_z, utcnow


def _load_json(raw):
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class AuditEvent(db.Model):
    """
    Immutable audit trail for business mutations.

    WHY: One row per attempt of every state-changing endpoint, including
    validation failures and internal errors, so operators can reconstruct
    who tried what and why it failed.

    DESIGN:
    - before/after/metadata are opaque JSON text; the schema is not coupled
      to any entity shape
    - Written outside the business transaction (see audit_service), so an
      audit failure can never roll back the mutation it describes
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("ix_audit_events_store_occurred", "store_id", "occurred_at"),
        db.Index("ix_audit_events_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(16), nullable=False, default="STORE")  # STORE, SYSTEM
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True, index=True)

    actor_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    actor_name = db.Column(db.String(120), nullable=True)

    action = db.Column(db.String(120), nullable=False)
    entity_type = db.Column(db.String(64), nullable=False)
    entity_id = db.Column(db.String(64), nullable=True)

    result = db.Column(db.String(16), nullable=False)  # SUCCESS, FAIL
    reason_code = db.Column(db.String(64), nullable=True)

    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
    request_id = db.Column(db.String(120), nullable=True)

    # "metadata" is reserved on declarative classes
    event_metadata = db.Column("metadata", db.Text, nullable=True)
    before = db.Column(db.Text, nullable=True)
    after = db.Column(db.Text, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope,
            "store_id": self.store_id,
            "actor_user_id": self.actor_user_id,
            "actor_name": self.actor_name,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "result": self.result,
            "reason_code": self.reason_code,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "request_id": self.request_id,
            "metadata": _load_json(self.event_metadata),
            "before": _load_json(self.before),
            "after": _load_json(self.after),
            "occurred_at": to_utc_z(self.occurred_at),
        }
