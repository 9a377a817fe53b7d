from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import extract, func, select, update
from sqlalchemy.engine import Engine

from spendcast.spending_forecast import MonthlyAggregate
from spendcast.tables import categories, metadata, transactions, users


@dataclass(frozen=True)
class CategoryRef:
    category_id: int
    category_name: Optional[str]
    category_color: Optional[str]


def shift_month_keep_day(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    day = min(value.day, last_day)
    return date(year, month, day)


def coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class TransactionStore:
    """Read-side queries over users, categories and transactions."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_all(self) -> None:
        metadata.create_all(self.engine)

    def user_exists(self, user_id: int) -> bool:
        with self.engine.begin() as conn:
            row = conn.execute(select(users.c.id).where(users.c.id == user_id)).first()
        return row is not None

    def get_user_currency(self, user_id: int) -> Optional[str]:
        with self.engine.begin() as conn:
            return conn.execute(
                select(users.c.currency).where(users.c.id == user_id)
            ).scalar_one_or_none()

    def set_user_currency(self, user_id: int, currency: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                update(users).where(users.c.id == user_id).values(currency=currency)
            )
        return result.rowcount > 0

    def monthly_expense_totals(
        self,
        user_id: int,
        since: date,
        category_id: Optional[int] = None,
    ) -> List[MonthlyAggregate]:
        """Expense sums per (year, month, currency) on or after ``since``, newest first."""
        year_expr = extract("year", transactions.c.transaction_date)
        month_expr = extract("month", transactions.c.transaction_date)
        total_expr = func.coalesce(func.sum(transactions.c.amount), 0)
        conditions = [
            transactions.c.user_id == user_id,
            transactions.c.type == "expense",
            transactions.c.transaction_date >= since,
        ]
        if category_id is not None:
            conditions.append(transactions.c.category_id == category_id)

        stmt = (
            select(
                year_expr.label("year"),
                month_expr.label("month"),
                transactions.c.currency,
                total_expr.label("total_amount"),
            )
            .where(*conditions)
            .group_by(year_expr, month_expr, transactions.c.currency)
            .order_by(year_expr.desc(), month_expr.desc())
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()

        return [
            MonthlyAggregate(
                year=int(row["year"]),
                month=int(row["month"]),
                currency=row["currency"],
                total_amount=coerce_decimal(row["total_amount"]),
            )
            for row in rows
        ]

    def top_expense_categories(
        self, user_id: int, since: date, limit: int = 5
    ) -> List[CategoryRef]:
        """Categories with the largest expense totals on or after ``since``."""
        total_expr = func.sum(transactions.c.amount)
        stmt = (
            select(
                transactions.c.category_id,
                categories.c.name,
                categories.c.color,
            )
            .select_from(
                transactions.outerjoin(
                    categories, transactions.c.category_id == categories.c.id
                )
            )
            .where(
                transactions.c.user_id == user_id,
                transactions.c.type == "expense",
                transactions.c.transaction_date >= since,
                transactions.c.category_id.isnot(None),
            )
            .group_by(transactions.c.category_id, categories.c.name, categories.c.color)
            .order_by(total_expr.desc(), transactions.c.category_id.asc())
            .limit(limit)
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).all()
        return [
            CategoryRef(category_id=row[0], category_name=row[1], category_color=row[2])
            for row in rows
        ]
