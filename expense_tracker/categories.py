from __future__ import annotations

from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Connection

from expense_tracker.db import categories
from expense_tracker.errors import NotFound, ValidationError
from expense_tracker.ledger import UNSET, TransactionType

MAX_NAME_LENGTH = 100


def validate_category_name(value: str | None) -> str:
    name = (value or "").strip()
    if not name:
        raise ValidationError("name", "Category name required.")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError("name", "Category name is too long.")
    return name


def list_categories(
    conn: Connection,
    family_id: int,
    category_type: str | None = None,
    include_inactive: bool = False,
) -> list[dict]:
    conditions = [categories.c.family_id == family_id]
    if category_type is not None:
        conditions.append(categories.c.type == TransactionType.validate(category_type))
    if not include_inactive:
        conditions.append(categories.c.is_active.is_(True))
    rows = conn.execute(
        select(categories)
        .where(*conditions)
        .order_by(categories.c.type.asc(), categories.c.name.asc(), categories.c.id.asc())
    ).mappings().all()
    return [dict(row) for row in rows]


def get_category(
    conn: Connection, family_id: int, category_id: int, include_inactive: bool = False
) -> dict:
    conditions = [categories.c.id == category_id]
    if not include_inactive:
        conditions.append(categories.c.is_active.is_(True))
    row = conn.execute(select(categories).where(*conditions)).mappings().first()
    if not row or row["family_id"] != family_id:
        raise NotFound("category")
    return dict(row)


def create_category(
    conn: Connection,
    family_id: int,
    name: str,
    category_type: str,
    parent_id: int | None = None,
) -> dict:
    name = validate_category_name(name)
    category_type = TransactionType.validate(category_type)
    if parent_id is not None:
        _validate_parent(conn, family_id, parent_id, category_type)
    row = conn.execute(
        insert(categories)
        .values(
            family_id=family_id,
            name=name,
            type=category_type,
            parent_id=parent_id,
            is_active=True,
        )
        .returning(*categories.c)
    ).mappings().one()
    return dict(row)


def update_category(
    conn: Connection,
    family_id: int,
    category_id: int,
    name: Any = UNSET,
    parent_id: Any = UNSET,
    is_active: Any = UNSET,
) -> dict:
    existing = get_category(conn, family_id, category_id, include_inactive=True)
    values: dict[str, Any] = {}
    if name is not UNSET:
        values["name"] = validate_category_name(name)
    if parent_id is not UNSET:
        if parent_id is not None:
            if parent_id == category_id:
                raise ValidationError("parent_id", "Category cannot be its own parent.")
            _validate_parent(conn, family_id, parent_id, existing["type"])
            if category_id in _ancestor_ids(conn, parent_id):
                raise ValidationError("parent_id", "Category cannot be nested under its own descendant.")
        values["parent_id"] = parent_id
    if is_active is not UNSET:
        if is_active is None:
            raise ValidationError("is_active", "is_active must be true or false.")
        values["is_active"] = bool(is_active)
    if values:
        conn.execute(update(categories).where(categories.c.id == category_id).values(**values))
    return get_category(conn, family_id, category_id, include_inactive=True)


def deactivate_category(conn: Connection, family_id: int, category_id: int) -> None:
    get_category(conn, family_id, category_id)
    conn.execute(update(categories).where(categories.c.id == category_id).values(is_active=False))


def _validate_parent(conn: Connection, family_id: int, parent_id: int, category_type: str) -> dict:
    try:
        parent = get_category(conn, family_id, parent_id)
    except NotFound as exc:
        raise ValidationError("parent_id", "Parent category not found.") from exc
    if parent["type"] != category_type:
        raise ValidationError("parent_id", "Parent category must be the same type.")
    return parent


def _ancestor_ids(conn: Connection, category_id: int) -> set[int]:
    """Ids on the parent chain starting at ``category_id`` (inclusive)."""
    seen: set[int] = set()
    current: int | None = category_id
    while current is not None and current not in seen:
        seen.add(current)
        current = conn.execute(
            select(categories.c.parent_id).where(categories.c.id == current)
        ).scalar_one_or_none()
    return seen
