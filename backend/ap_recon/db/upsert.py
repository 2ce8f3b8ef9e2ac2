"""Idempotent write primitives backed by datastore uniqueness constraints.

Every natural key the engine cares about (match triple, open exception per
invoice+type, staleness per invoice, audit chain position) has a unique
constraint or index. Writers look the row up first, then insert inside a
SAVEPOINT; a unique violation on insert means a concurrent writer got there
first, so the existing row is fetched and used instead of failing the call.
"""
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, TypeVar
import uuid

from sqlalchemy import inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")


def find_one(db: Session, model: type[T], lookup: dict[str, Any]) -> T | None:
    stmt = select(model).where(
        *[getattr(model, column) == value for column, value in lookup.items()]
    )
    return db.execute(stmt).scalars().first()


def insert_or_get(
    db: Session,
    model: type[T],
    lookup: dict[str, Any],
    values: dict[str, Any] | None = None,
) -> tuple[T, bool]:
    """Return (row, created) for the row identified by ``lookup``.

    ``lookup`` must cover the columns of a unique constraint (or a partial
    unique index, in which case it must also carry the index predicate
    column, e.g. ``status="open"``). ``values`` are only applied on insert.
    """
    existing = find_one(db, model, lookup)
    if existing is not None:
        return existing, False

    row = model(**lookup, **(values or {}))
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except IntegrityError:
        existing = find_one(db, model, lookup)
        if existing is None:
            # Violation was not on the natural key; let the caller see it.
            raise
        logger.info(
            "Concurrent insert on %s %s; using existing row %s",
            model.__name__, lookup, getattr(existing, "id", None),
        )
        return existing, False
    return row, True


def upsert(
    db: Session,
    model: type[T],
    lookup: dict[str, Any],
    values: dict[str, Any],
) -> tuple[T, bool, dict[str, Any] | None]:
    """Insert or update in place the row identified by ``lookup``.

    Returns (row, created, previous) where ``previous`` is a snapshot of the
    row taken before ``values`` were applied (None when the row is new).
    The row keeps its primary key across updates.
    """
    row, created = insert_or_get(db, model, lookup, values)
    if created:
        return row, True, None

    previous = row_snapshot(row)
    for column, value in values.items():
        setattr(row, column, value)
    db.flush()
    return row, False, previous


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value


def row_snapshot(row: Any, exclude: tuple[str, ...] = ("created_at", "updated_at")) -> dict[str, Any]:
    """Plain-dict copy of a mapped row's column values, JSON friendly."""
    mapper = inspect(row).mapper
    return {
        attr.key: _jsonable(getattr(row, attr.key))
        for attr in mapper.column_attrs
        if attr.key not in exclude
    }
