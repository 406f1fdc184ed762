"""
Async PostgreSQL record store (asyncpg).

Maps the generic ``AsyncRecordStore`` operations onto single SQL
statements: collection -> table, record -> row.  Identifiers are checked
against a strict pattern before being quoted into SQL; every value travels
as a bind parameter.

No retries here: a failed call surfaces as ``StoreUnavailable`` and the
caller decides what to do.
"""
from __future__ import annotations

import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable

import asyncpg

from dispatch_core.core.errors import StoreUnavailable
from dispatch_core.core.ports import Filter, Record
from dispatch_core.infra.db_async import db_conn
from dispatch_core.infra.logging_config import get_logger

logger = get_logger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")


def _ident(name: str) -> str:
    """Validate and quote a table/column name."""
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


def _build_where(filter: Filter, start: int = 1) -> tuple[str, list[Any]]:
    """
    Build a WHERE clause from an equality filter.

    list/tuple/set -> ``col = ANY($n)``, None -> ``col IS NULL``.
    Returns ("", []) for an empty filter.
    """
    clauses: list[str] = []
    params: list[Any] = []
    for field, value in filter.items():
        col = _ident(field)
        if value is None:
            clauses.append(f"{col} IS NULL")
        elif isinstance(value, (list, tuple, set, frozenset)):
            params.append(list(value))
            clauses.append(f"{col} = ANY(${start + len(params) - 1})")
        else:
            params.append(value)
            clauses.append(f"{col} = ${start + len(params) - 1}")
    if not clauses:
        return "", []
    return " WHERE " + " AND ".join(clauses), params


def _build_order(order: Iterable[str] | None) -> str:
    if not order:
        return ""
    parts = []
    for key in order:
        if key.startswith("-"):
            parts.append(f"{_ident(key[1:])} DESC NULLS LAST")
        else:
            parts.append(f"{_ident(key)} ASC NULLS LAST")
    return " ORDER BY " + ", ".join(parts)


def _affected(status: str) -> int:
    """asyncpg execute() returns e.g. "UPDATE 3" / "DELETE 0"."""
    try:
        return int(status.split()[-1]) if status else 0
    except ValueError:
        return 0


class AsyncPostgresRecordStore:
    """``AsyncRecordStore`` backed by the shared asyncpg pool."""

    @asynccontextmanager
    async def _guard(self, op: str, collection: str) -> AsyncIterator[None]:
        try:
            yield
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            logger.error(
                f"Record store {op} failed: collection={collection} error={exc.__class__.__name__}",
                exc_info=True,
            )
            raise StoreUnavailable() from exc

    async def find_one(self, collection: str, filter: Filter) -> Record | None:
        where, params = _build_where(filter)
        sql = f"SELECT * FROM {_ident(collection)}{where} LIMIT 1"
        async with self._guard("find_one", collection):
            async with db_conn() as conn:
                row = await conn.fetchrow(sql, *params)
        return dict(row) if row else None

    async def find_many(
        self,
        collection: str,
        filter: Filter,
        order: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[Record]:
        where, params = _build_where(filter)
        sql = f"SELECT * FROM {_ident(collection)}{where}{_build_order(order)}"
        if limit is not None:
            params.append(int(limit))
            sql += f" LIMIT ${len(params)}"
        async with self._guard("find_many", collection):
            async with db_conn() as conn:
                rows = await conn.fetch(sql, *params)
        return [dict(r) for r in rows]

    async def insert(self, collection: str, record: Record) -> Record:
        cols = [_ident(c) for c in record]
        placeholders = [f"${i}" for i in range(1, len(cols) + 1)]
        sql = (
            f"INSERT INTO {_ident(collection)} ({', '.join(cols)}) "
            f"VALUES ({', '.join(placeholders)}) RETURNING *"
        )
        async with self._guard("insert", collection):
            async with db_conn() as conn:
                row = await conn.fetchrow(sql, *record.values())
        return dict(row)

    async def update(self, collection: str, filter: Filter, patch: Record) -> int:
        if not patch:
            return 0
        assignments = [f"{_ident(c)} = ${i}" for i, c in enumerate(patch, start=1)]
        where, params = _build_where(filter, start=len(patch) + 1)
        sql = f"UPDATE {_ident(collection)} SET {', '.join(assignments)}{where}"
        async with self._guard("update", collection):
            async with db_conn() as conn:
                status = await conn.execute(sql, *patch.values(), *params)
        return _affected(status)

    async def delete(self, collection: str, filter: Filter) -> int:
        where, params = _build_where(filter)
        if not where:
            raise ValueError("Refusing to delete without a filter")
        sql = f"DELETE FROM {_ident(collection)}{where}"
        async with self._guard("delete", collection):
            async with db_conn() as conn:
                status = await conn.execute(sql, *params)
        return _affected(status)

    async def upsert(
        self,
        collection: str,
        record: Record,
        conflict_key: str,
        ignore_existing: bool = False,
    ) -> tuple[Record, bool]:
        if conflict_key not in record:
            raise ValueError(f"record has no conflict key {conflict_key!r}")

        table = _ident(collection)
        key = _ident(conflict_key)
        cols = [_ident(c) for c in record]
        placeholders = [f"${i}" for i in range(1, len(cols) + 1)]
        insert = f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join(placeholders)})"

        if ignore_existing:
            sql = f"{insert} ON CONFLICT ({key}) DO NOTHING RETURNING *"
        else:
            updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in cols if c != key)
            sql = (
                f"{insert} ON CONFLICT ({key}) DO UPDATE SET {updates} "
                f"RETURNING *, (xmax = 0) AS _inserted"
            )

        async with self._guard("upsert", collection):
            async with db_conn() as conn:
                row = await conn.fetchrow(sql, *record.values())
                if row is None:
                    # DO NOTHING hit an existing row: hand that row back
                    existing = await conn.fetchrow(
                        f"SELECT * FROM {table} WHERE {key} = $1", record[conflict_key],
                    )
                    return dict(existing), False

        result = dict(row)
        created = bool(result.pop("_inserted", True))
        return result, created
