from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from expense_tracker.currency_conversion import coerce_amount
from expense_tracker.db import transactions


@dataclass(frozen=True)
class CategorySummary:
    category_id: int
    total: Decimal
    count: int


@dataclass(frozen=True)
class TypeSummary:
    type: str
    total: Decimal
    count: int


def _period_conditions(family_id: int, start_date: date, end_date: date) -> list:
    if start_date > end_date:
        raise ValueError("start_date must be on or before end_date.")
    return [
        transactions.c.family_id == family_id,
        transactions.c.is_active.is_(True),
        transactions.c.transaction_date >= start_date,
        transactions.c.transaction_date <= end_date,
    ]


def summary_by_category(
    conn: Connection,
    family_id: int,
    txn_type: str,
    start_date: date,
    end_date: date,
) -> list[CategorySummary]:
    """Base-currency totals per category for one transaction type."""
    total_expr = func.coalesce(func.sum(transactions.c.amount_base), 0).label("total")
    count_expr = func.count(transactions.c.id).label("count")
    stmt = (
        select(transactions.c.category_id, total_expr, count_expr)
        .where(
            *_period_conditions(family_id, start_date, end_date),
            transactions.c.type == txn_type,
        )
        .group_by(transactions.c.category_id)
    )
    rows = conn.execute(stmt).mappings().all()
    summaries = [
        CategorySummary(
            category_id=row["category_id"],
            total=coerce_amount(row["total"]),
            count=int(row["count"]),
        )
        for row in rows
    ]
    return sorted(summaries, key=lambda item: (-item.total, item.category_id))


def summary_by_type(
    conn: Connection,
    family_id: int,
    start_date: date,
    end_date: date,
) -> list[TypeSummary]:
    total_expr = func.coalesce(func.sum(transactions.c.amount_base), 0).label("total")
    count_expr = func.count(transactions.c.id).label("count")
    stmt = (
        select(transactions.c.type, total_expr, count_expr)
        .where(*_period_conditions(family_id, start_date, end_date))
        .group_by(transactions.c.type)
        .order_by(transactions.c.type)
    )
    rows = conn.execute(stmt).mappings().all()
    return [
        TypeSummary(
            type=row["type"],
            total=coerce_amount(row["total"]),
            count=int(row["count"]),
        )
        for row in rows
    ]
