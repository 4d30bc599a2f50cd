from __future__ import annotations

from ..extensions import db


class DocumentSequence(db.Model):
    """
    Per-store, per-document-type number allocator.

    next_number is the number the NEXT document will receive.
    Allocation is an atomic UPDATE ... SET next_number = next_number + 1
    (see document_service.next_document_number).
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("store_id", "document_type", name="uq_document_sequences_store_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
