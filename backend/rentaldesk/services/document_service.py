# Overview: Service-layer operations for document numbering; atomic per-branch invoice sequences.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def next_document_number(
    *,
    branch_id: int,
    document_type: str,
) -> int:
    """
    Atomically allocate the next number for a branch/type.

    The conditional UPDATE takes the row lock; a first-time insert race is
    settled by the unique constraint inside a savepoint, so the caller's
    pending work is never rolled back.
    """
    if not branch_id:
        raise DocumentSequenceError("branch_id is required")
    if not document_type:
        raise DocumentSequenceError("document_type is required")

    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.branch_id == branch_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
    )

    def _current() -> int:
        current = (
            db.session.query(DocumentSequence.next_number)
            .filter_by(branch_id=branch_id, document_type=document_type)
            .scalar()
        )
        return current - 1

    result = db.session.execute(stmt)
    if result.rowcount:
        return _current()

    try:
        with db.session.begin_nested():
            db.session.add(DocumentSequence(branch_id=branch_id, document_type=document_type, next_number=2))
        return 1
    except IntegrityError:
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise
        return _current()


def next_invoice_number(*, branch_id: int, prefix: str, on: datetime, pad: int = 4) -> str:
    """
    Allocate an invoice number: <prefix>-<YYYYMMDD>-<NNNN>.

    Numbering restarts every day per branch.
    """
    day = on.strftime("%Y%m%d")
    number = next_document_number(branch_id=branch_id, document_type=f"INVOICE-{day}")
    return f"{prefix}-{day}-{number:0{pad}d}"
