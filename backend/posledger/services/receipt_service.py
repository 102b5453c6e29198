# Overview: Per-store receipt numbers of the form REC-YYYY-NNNNNN.

from __future__ import annotations

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ConcurrencyConflictError, ValidationError
from ..extensions import db
from ..models import ReceiptSequence
from ..time_utils import utcnow


def format_receipt_number(prefix: str, year: int, number: int) -> str:
    return f"{prefix}-{year:04d}-{number:06d}"


def _bump_sequence(store_id: int, year: int) -> int | None:
    """Take the next number from an existing counter row; None if the row is missing."""
    stmt = (
        update(ReceiptSequence)
        .where(ReceiptSequence.store_id == store_id, ReceiptSequence.year == year)
        .values(next_number=ReceiptSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    if not db.session.execute(stmt).rowcount:
        return None

    current = (
        db.session.query(ReceiptSequence.next_number)
        .filter_by(store_id=store_id, year=year)
        .scalar()
    )
    return current - 1


def next_receipt_number(*, store_id: int, year: int | None = None, prefix: str | None = None) -> str:
    """
    Allocate the next receipt number for a store.

    The counter row for (store_id, year) is bumped with a single UPDATE, so the
    database serializes concurrent allocations. The first allocation of a year
    inserts the row inside a savepoint; if another transaction inserted it
    first, the savepoint is rolled back and the UPDATE runs against the
    committed row. Runs inside the caller's transaction; a rolled-back sale
    gives its number back.
    """
    if not store_id:
        raise ValidationError("store_id is required")
    if year is None:
        year = utcnow().year
    if prefix is None:
        prefix = current_app.config.get("RECEIPT_PREFIX", "REC")

    number = _bump_sequence(store_id, year)
    if number is None:
        nested = db.session.begin_nested()
        try:
            db.session.add(ReceiptSequence(store_id=store_id, year=year, next_number=2))
            db.session.flush()
            nested.commit()
            number = 1
        except IntegrityError:
            nested.rollback()
            number = _bump_sequence(store_id, year)
            if number is None:
                raise ConcurrencyConflictError(
                    f"Receipt sequence for store {store_id} ({year}) could not be allocated",
                    {"store_id": store_id, "year": year},
                )

    return format_receipt_number(prefix, year, number)
