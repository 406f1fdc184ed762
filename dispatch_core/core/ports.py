from __future__ import annotations
from datetime import datetime
from typing import Any, Iterable, Protocol


Record = dict[str, Any]
Filter = dict[str, Any]


# ============================================================================
# ASYNC PROTOCOLS
# ============================================================================

class AsyncRecordStore(Protocol):
    """
    Generic record store over named collections.

    Filters are field -> value equality maps; a list/tuple/set value means
    membership.  ``order`` lists field names, a ``-`` prefix sorts
    descending.  Every call is a single atomic row/table operation and
    failures surface as ``StoreUnavailable``.
    """

    async def find_one(self, collection: str, filter: Filter) -> Record | None: ...

    async def find_many(
        self,
        collection: str,
        filter: Filter,
        order: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[Record]: ...

    async def insert(self, collection: str, record: Record) -> Record: ...

    async def update(self, collection: str, filter: Filter, patch: Record) -> int: ...

    async def delete(self, collection: str, filter: Filter) -> int: ...

    async def upsert(
        self,
        collection: str,
        record: Record,
        conflict_key: str,
        ignore_existing: bool = False,
    ) -> tuple[Record, bool]:
        """
        Insert ``record`` or resolve the conflict on ``conflict_key``.

        ignore_existing=True  => insert-if-absent, existing row untouched
        ignore_existing=False => existing row updated with ``record``

        Returns (stored_record, created).
        """
        ...


class Clock(Protocol):
    def now(self) -> datetime:
        """Timezone-aware UTC wall-clock time."""
        ...

    def monotonic(self) -> float:
        """Monotonic seconds, for interval arithmetic."""
        ...
