# Overview: Per-store document number allocation (PO numbers).

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""


def _read_allocated(store_id: int, document_type: str) -> int:
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(store_id=store_id, document_type=document_type)
        .scalar()
    )
    return current - 1


def next_document_number(
    *,
    store_id: int,
    document_type: str,
    prefix: str,
    pad: int = 4,
) -> str:
    """
    Allocate the next document number for a store/type inside the caller's
    transaction (never commits).

    The increment is a single UPDATE, so two writers serialize on the
    sequence row. First use inserts the row; if another writer inserted it
    concurrently the unique constraint fires and we fall back to the UPDATE
    inside a savepoint, leaving the caller's pending work intact.
    """
    if not store_id:
        raise DocumentSequenceError("store_id is required")
    if not document_type:
        raise DocumentSequenceError("document_type is required")

    bump = (
        update(DocumentSequence)
        .where(
            DocumentSequence.store_id == store_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )

    if db.session.execute(bump).rowcount:
        next_num = _read_allocated(store_id, document_type)
    else:
        try:
            with db.session.begin_nested():
                db.session.add(
                    DocumentSequence(store_id=store_id, document_type=document_type, next_number=2)
                )
            next_num = 1
        except IntegrityError:
            if not db.session.execute(bump).rowcount:
                raise DocumentSequenceError(f"Could not allocate {document_type} number")
            next_num = _read_allocated(store_id, document_type)

    return f"{prefix}-{store_id:03d}-{next_num:0{pad}d}"
