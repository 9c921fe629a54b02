from __future__ import annotations

import calendar
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.engine import Connection

from expense_tracker.accounts import account_balance, list_accounts
from expense_tracker.aggregation import CategorySummary, summary_by_category, summary_by_type
from expense_tracker.currency_conversion import (
    ReportingConverter,
    convert_amount,
    quantize_amount,
    quantize_percentage,
)
from expense_tracker.db import categories

ZERO = Decimal("0")
HUNDRED = Decimal("100")
UNKNOWN_CATEGORY = "Unknown"


def percentage(part: Decimal, whole: Decimal) -> Decimal:
    if whole == ZERO:
        return ZERO
    return quantize_percentage(part / whole * HUNDRED)


def average_per_transaction(total: Decimal, count: int) -> Decimal:
    if count == 0:
        return ZERO
    return quantize_amount(total / Decimal(count))


def savings_rate(total_income: Decimal, total_expenses: Decimal) -> Decimal:
    if total_income == ZERO:
        return ZERO
    return quantize_percentage((total_income - total_expenses) / total_income * HUNDRED)


def month_start(value: date) -> date:
    return value.replace(day=1)


def month_end(value: date) -> date:
    last_day = calendar.monthrange(value.year, value.month)[1]
    return value.replace(day=last_day)


def parse_month_value(value: str) -> date:
    try:
        parsed = datetime.strptime(value, "%Y-%m")
    except ValueError as exc:
        raise ValueError("Month must be in YYYY-MM format.") from exc
    return date(parsed.year, parsed.month, 1)


def category_names(conn: Connection, family_id: int, category_ids: Iterable[int]) -> dict[int, str]:
    ids = list(set(category_ids))
    if not ids:
        return {}
    rows = conn.execute(
        select(categories.c.id, categories.c.name).where(
            categories.c.family_id == family_id,
            categories.c.id.in_(ids),
        )
    ).mappings().all()
    return {row["id"]: row["name"] for row in rows}


def build_category_rows(
    summaries: list[CategorySummary], names: dict[int, str]
) -> tuple[list[dict], Decimal, int]:
    total_amount = sum((item.total for item in summaries), ZERO)
    total_transactions = sum(item.count for item in summaries)
    rows = [
        {
            "category_id": item.category_id,
            "category_name": names.get(item.category_id, UNKNOWN_CATEGORY),
            "total_amount": item.total,
            "transaction_count": item.count,
            "percentage": percentage(item.total, total_amount),
            "average_per_transaction": average_per_transaction(item.total, item.count),
        }
        for item in summaries
    ]
    return rows, total_amount, total_transactions


def spending_by_category(
    conn: Connection,
    family_id: int,
    base_currency: str,
    txn_type: str,
    start_date: date,
    end_date: date,
) -> dict:
    summaries = summary_by_category(conn, family_id, txn_type, start_date, end_date)
    names = category_names(conn, family_id, (item.category_id for item in summaries))
    rows, total_amount, total_transactions = build_category_rows(summaries, names)
    return {
        "report_type": "spending_by_category",
        "period": {"start_date": start_date, "end_date": end_date},
        "currency": base_currency,
        "transaction_type": txn_type,
        "spending_by_category": rows,
        "total_amount": total_amount,
        "total_transactions": total_transactions,
        "generated_at": datetime.now(timezone.utc),
    }


def monthly_summary(
    conn: Connection,
    family_id: int,
    base_currency: str,
    month: date,
    converter: ReportingConverter,
) -> dict:
    start_date = month_start(month)
    end_date = month_end(month)

    totals = {"income": (ZERO, 0), "expense": (ZERO, 0)}
    for item in summary_by_type(conn, family_id, start_date, end_date):
        totals[item.type] = (item.total, item.count)
    total_income, income_count = totals["income"]
    total_expenses, expense_count = totals["expense"]

    breakdowns: dict[str, dict[str, Decimal]] = {}
    for txn_type in ("income", "expense"):
        summaries = summary_by_category(conn, family_id, txn_type, start_date, end_date)
        names = category_names(conn, family_id, (item.category_id for item in summaries))
        breakdown: dict[str, Decimal] = {}
        for item in summaries:
            name = names.get(item.category_id, UNKNOWN_CATEGORY)
            breakdown[name] = breakdown.get(name, ZERO) + item.total
        breakdowns[txn_type] = breakdown

    balances: dict[str, Decimal] = {}
    total_balance = ZERO
    for account in list_accounts(conn, family_id):
        balance = account_balance(conn, account, base_currency, converter, end_date)
        in_base = convert_amount(balance, account["currency"], base_currency, converter, end_date)
        balances[account["name"]] = balances.get(account["name"], ZERO) + in_base
        total_balance += in_base

    return {
        "report_type": "monthly_summary",
        "month": start_date.strftime("%Y-%m"),
        "currency": base_currency,
        "summary": {
            "total_income": total_income,
            "total_expenses": total_expenses,
            "net_savings": total_income - total_expenses,
            "savings_rate": savings_rate(total_income, total_expenses),
        },
        "income_breakdown": breakdowns["income"],
        "expense_breakdown": breakdowns["expense"],
        "account_balances": {"accounts": balances, "total": total_balance},
        "transaction_counts": {
            "income_transactions": income_count,
            "expense_transactions": expense_count,
            "total_transactions": income_count + expense_count,
        },
        "generated_at": datetime.now(timezone.utc),
    }
