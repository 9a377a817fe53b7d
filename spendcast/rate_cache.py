from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine

from spendcast.tables import exchange_rates

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


@dataclass(frozen=True)
class CachedRate:
    from_currency: str
    to_currency: str
    rate: Decimal
    updated_at: datetime


class ExchangeRateCache:
    """Persisted exchange rates keyed by the ordered currency pair.

    Rows are written on every successful remote fetch and never removed, so a
    row of any age can still serve as a last-resort fallback.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(
        self,
        from_currency: str,
        to_currency: str,
        fresh_after: datetime | None = None,
    ) -> CachedRate | None:
        """Return the cached row for the pair.

        With ``fresh_after`` only a row updated strictly later than that
        instant is returned.
        """
        stmt = select(
            exchange_rates.c.from_currency,
            exchange_rates.c.to_currency,
            exchange_rates.c.rate,
            exchange_rates.c.updated_at,
        ).where(
            exchange_rates.c.from_currency == from_currency,
            exchange_rates.c.to_currency == to_currency,
        )
        if fresh_after is not None:
            stmt = stmt.where(exchange_rates.c.updated_at > fresh_after)
        with self.engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
        if not row:
            return None
        rate = row["rate"]
        return CachedRate(
            from_currency=row["from_currency"],
            to_currency=row["to_currency"],
            rate=rate if isinstance(rate, Decimal) else Decimal(str(rate)),
            updated_at=row["updated_at"],
        )

    def upsert(
        self,
        from_currency: str,
        to_currency: str,
        rate: Decimal,
        updated_at: datetime,
    ) -> None:
        values = {
            "from_currency": from_currency,
            "to_currency": to_currency,
            "rate": rate,
            "updated_at": updated_at,
        }
        dialect_insert = _UPSERT_INSERTS.get(self.engine.dialect.name)
        with self.engine.begin() as conn:
            if dialect_insert is not None:
                stmt = dialect_insert(exchange_rates).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[
                        exchange_rates.c.from_currency,
                        exchange_rates.c.to_currency,
                    ],
                    set_={"rate": rate, "updated_at": updated_at},
                )
                conn.execute(stmt)
                return

            existing = conn.execute(
                select(exchange_rates.c.id).where(
                    exchange_rates.c.from_currency == from_currency,
                    exchange_rates.c.to_currency == to_currency,
                )
            ).first()
            if existing:
                conn.execute(
                    update(exchange_rates)
                    .where(exchange_rates.c.id == existing[0])
                    .values(rate=rate, updated_at=updated_at)
                )
            else:
                conn.execute(insert(exchange_rates).values(**values))
