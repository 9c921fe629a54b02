from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import bcrypt
from sqlalchemy import insert, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from expense_tracker.currency_conversion import normalize_currency
from expense_tracker.db import families, users
from expense_tracker.errors import Conflict, NotFound, Unauthenticated, ValidationError


@dataclass(frozen=True)
class Identity:
    user_id: int
    family_id: int
    email: str
    name: str


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def signup(
    conn: Connection,
    email: str,
    password: str,
    name: str,
    family_name: str | None,
    base_currency: str,
    allowed_currencies: Iterable[str],
) -> Identity:
    """Create a family together with its first member."""
    email = (email or "").strip().lower()
    name = (name or "").strip()
    if not email or not password:
        raise ValidationError("email", "Email and password required.")
    if not name:
        raise ValidationError("name", "Name required.")
    base_currency = normalize_currency(base_currency, allowed_currencies, field_name="base_currency")

    family_id = conn.execute(
        insert(families)
        .values(name=(family_name or "").strip() or f"{name}'s family", base_currency=base_currency)
        .returning(families.c.id)
    ).scalar_one()
    try:
        user_id = conn.execute(
            insert(users)
            .values(
                family_id=family_id,
                email=email,
                name=name,
                hashed_password=hash_password(password),
                is_active=True,
            )
            .returning(users.c.id)
        ).scalar_one()
    except IntegrityError as exc:
        raise Conflict("Email already exists.") from exc
    return Identity(user_id=user_id, family_id=family_id, email=email, name=name)


def login(conn: Connection, email: str, password: str) -> Identity:
    email = (email or "").strip().lower()
    row = conn.execute(select(users).where(users.c.email == email)).mappings().first()
    if not row or not verify_password(password or "", row["hashed_password"]):
        raise Unauthenticated("Invalid email or password.")
    if not row["is_active"]:
        raise Unauthenticated("User account is inactive.")
    return Identity(
        user_id=row["id"], family_id=row["family_id"], email=row["email"], name=row["name"]
    )


def resolve_identity(conn: Connection, user_id: int) -> Identity:
    row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
    if not row:
        raise Unauthenticated("User not found.")
    if not row["is_active"]:
        raise Unauthenticated("User account is inactive.")
    return Identity(
        user_id=row["id"], family_id=row["family_id"], email=row["email"], name=row["name"]
    )


def family_base_currency(conn: Connection, family_id: int) -> str:
    base_currency = conn.execute(
        select(families.c.base_currency).where(families.c.id == family_id)
    ).scalar_one_or_none()
    if not base_currency:
        raise NotFound("family")
    return base_currency


def user_names(conn: Connection, user_ids: Iterable[int]) -> dict[int, str]:
    ids = list(set(user_ids))
    if not ids:
        return {}
    rows = conn.execute(select(users.c.id, users.c.name).where(users.c.id.in_(ids))).mappings().all()
    return {row["id"]: row["name"] for row in rows}
