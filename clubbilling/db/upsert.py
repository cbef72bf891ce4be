"""Atomic increments and set-with-merge writes.

Both PostgreSQL and SQLite support ``INSERT ... ON CONFLICT DO UPDATE``; the
statement is built with the dialect of the session's bind.
"""

from typing import Any, Mapping

from sqlalchemy import Table
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _insert_for(db: AsyncSession, table: Table):
    dialect = db.get_bind().dialect.name
    try:
        return _INSERTS[dialect](table)
    except KeyError:
        raise NotImplementedError(f"upsert not supported for dialect {dialect}")


async def increment(
    db: AsyncSession,
    table: Table,
    key: Mapping[str, Any],
    increments: Mapping[str, int],
    values: Mapping[str, Any] | None = None,
) -> None:
    """Add signed ``increments`` to counter columns of the row at ``key``.

    A missing row is created with the increments as initial values. ``values``
    are plain columns set on both insert and update.
    """
    values = dict(values or {})
    stmt = _insert_for(db, table).values(**key, **values, **increments)
    set_ = {name: table.c[name] + stmt.excluded[name] for name in increments}
    set_.update({name: stmt.excluded[name] for name in values})
    stmt = stmt.on_conflict_do_update(index_elements=list(key), set_=set_)
    await db.execute(stmt)


async def merge_set(
    db: AsyncSession,
    table: Table,
    key: Mapping[str, Any],
    values: Mapping[str, Any],
) -> None:
    stmt = _insert_for(db, table).values(**key, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(key),
        set_={name: stmt.excluded[name] for name in values},
    )
    await db.execute(stmt)
