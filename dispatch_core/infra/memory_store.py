"""
In-process record store (dev / tests).

Implements the ``AsyncRecordStore`` protocol over dicts.  Records are
deep-copied in and out so callers cannot mutate stored state by accident,
and every operation holds one ``asyncio.Lock`` so ``upsert`` keeps its
insert-if-absent guarantee under concurrent callers.
"""
from __future__ import annotations

import asyncio
import copy
from typing import Any, Iterable

from dispatch_core.core.ports import Filter, Record
from dispatch_core.infra.logging_config import get_logger

logger = get_logger(__name__)


def _matches(record: Record, filter: Filter) -> bool:
    for field, expected in filter.items():
        actual = record.get(field)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def _sorted(records: list[Record], order: Iterable[str]) -> list[Record]:
    # Apply keys last-to-first; sort is stable so earlier keys dominate
    for key in reversed(list(order)):
        descending = key.startswith("-")
        field = key.lstrip("-")
        records.sort(
            key=lambda r: (r.get(field) is None, r.get(field)) if not descending
            else (r.get(field) is not None, r.get(field)),
            reverse=descending,
        )
    return records


class InMemoryRecordStore:
    def __init__(self, seed: dict[str, list[Record]] | None = None) -> None:
        self._collections: dict[str, list[Record]] = {}
        self._lock = asyncio.Lock()
        for name, rows in (seed or {}).items():
            self._collections[name] = [copy.deepcopy(r) for r in rows]

    def _rows(self, collection: str) -> list[Record]:
        return self._collections.setdefault(collection, [])

    async def find_one(self, collection: str, filter: Filter) -> Record | None:
        async with self._lock:
            for row in self._rows(collection):
                if _matches(row, filter):
                    return copy.deepcopy(row)
        return None

    async def find_many(
        self,
        collection: str,
        filter: Filter,
        order: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[Record]:
        async with self._lock:
            rows = [copy.deepcopy(r) for r in self._rows(collection) if _matches(r, filter)]
        if order:
            rows = _sorted(rows, order)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def insert(self, collection: str, record: Record) -> Record:
        async with self._lock:
            stored = copy.deepcopy(record)
            self._rows(collection).append(stored)
            return copy.deepcopy(stored)

    async def update(self, collection: str, filter: Filter, patch: Record) -> int:
        count = 0
        async with self._lock:
            for row in self._rows(collection):
                if _matches(row, filter):
                    row.update(copy.deepcopy(patch))
                    count += 1
        return count

    async def delete(self, collection: str, filter: Filter) -> int:
        async with self._lock:
            rows = self._rows(collection)
            keep = [r for r in rows if not _matches(r, filter)]
            removed = len(rows) - len(keep)
            self._collections[collection] = keep
        return removed

    async def upsert(
        self,
        collection: str,
        record: Record,
        conflict_key: str,
        ignore_existing: bool = False,
    ) -> tuple[Record, bool]:
        if conflict_key not in record:
            raise ValueError(f"record has no conflict key {conflict_key!r}")

        async with self._lock:
            rows = self._rows(collection)
            for row in rows:
                if row.get(conflict_key) == record[conflict_key]:
                    if not ignore_existing:
                        row.update(copy.deepcopy(record))
                    return copy.deepcopy(row), False

            stored = copy.deepcopy(record)
            rows.append(stored)
            return copy.deepcopy(stored), True

    def count(self, collection: str) -> int:
        return len(self._collections.get(collection, []))
