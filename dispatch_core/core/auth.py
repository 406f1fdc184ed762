"""
Session authentication: opaque token -> Identity.

Tokens are server-generated identifiers, not self-describing, so the only
format check is "non-empty and long enough".  Resolution walks an ordered
list of named resolvers and stops at the first hit:

    1. sessions.session_id        primary key, technician/admin sessions
    2. sessions.token             legacy column name for the same table
    3. admin_sessions.session_id  role-bearing table used by the admin UI

Expiry is enforced on whichever row matched.  A successful lookup refreshes
``last_seen_at`` in the background; the caller never waits on that write.
"""
from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol, Sequence

from dispatch_core.core.domain import Identity, SubjectKind, parse_timestamp
from dispatch_core.core.errors import InvalidSession, SessionExpired, ValidationError
from dispatch_core.core.ports import AsyncRecordStore, Clock
from dispatch_core.infra.logging_config import get_logger, mask_token

logger = get_logger(__name__)

SESSIONS = "sessions"
ADMIN_SESSIONS = "admin_sessions"

_ADMIN_VALUES = {"administrator", "admin"}
_TECH_VALUES = {"technician", "tech", "pro"}


@dataclass(frozen=True)
class SessionRecord:
    subject_id: str
    subject_kind: SubjectKind
    expires_at: Optional[datetime]
    resolver: str

    def identity(self) -> Identity:
        return Identity(subject_id=self.subject_id, subject_kind=self.subject_kind)


class SessionResolver(Protocol):
    name: str

    async def resolve(self, token: str) -> Optional[SessionRecord]: ...

    async def touch(self, token: str, seen_at: datetime) -> None: ...


def _kind_from_value(value: Any, default: SubjectKind) -> SubjectKind:
    normalized = str(value or "").strip().lower()
    if normalized in _ADMIN_VALUES:
        return SubjectKind.ADMINISTRATOR
    if normalized in _TECH_VALUES:
        return SubjectKind.TECHNICIAN
    return default


class TableSessionResolver:
    """Look a token up by one column of one session collection."""

    def __init__(
        self,
        store: AsyncRecordStore,
        collection: str,
        key_field: str,
        *,
        subject_fields: Sequence[str] = ("subject_id",),
        kind_field: str = "subject_kind",
        default_kind: SubjectKind = SubjectKind.TECHNICIAN,
        name: str | None = None,
    ) -> None:
        self._store = store
        self.collection = collection
        self.key_field = key_field
        self.subject_fields = tuple(subject_fields)
        self.kind_field = kind_field
        self.default_kind = default_kind
        self.name = name or f"{collection}.{key_field}"

    async def resolve(self, token: str) -> Optional[SessionRecord]:
        row = await self._store.find_one(self.collection, {self.key_field: token})
        if row is None:
            return None

        subject_id = next((str(row[f]) for f in self.subject_fields if row.get(f)), None)
        if subject_id is None:
            logger.warning(f"Session row in {self.name} has no subject; ignoring token={mask_token(token)}")
            return None

        return SessionRecord(
            subject_id=subject_id,
            subject_kind=_kind_from_value(row.get(self.kind_field), self.default_kind),
            expires_at=parse_timestamp(row.get("expires_at")),
            resolver=self.name,
        )

    async def touch(self, token: str, seen_at: datetime) -> None:
        await self._store.update(self.collection, {self.key_field: token}, {"last_seen_at": seen_at})


def default_resolvers(store: AsyncRecordStore) -> list[TableSessionResolver]:
    """The fixed resolution order used in production."""
    return [
        TableSessionResolver(store, SESSIONS, "session_id"),
        TableSessionResolver(store, SESSIONS, "token"),
        TableSessionResolver(
            store,
            ADMIN_SESSIONS,
            "session_id",
            subject_fields=("subject_id", "admin_email"),
            kind_field="role",
            default_kind=SubjectKind.ADMINISTRATOR,
        ),
    ]


class SessionAuthenticator:
    """Resolve tokens against an ordered list of resolvers."""

    def __init__(
        self,
        resolvers: Sequence[SessionResolver],
        clock: Clock,
        min_token_length: int = 16,
    ) -> None:
        if not resolvers:
            raise ValueError("SessionAuthenticator needs at least one resolver")
        self._resolvers = list(resolvers)
        self._clock = clock
        self._min_token_length = min_token_length
        self._pending: set[asyncio.Task] = set()

    @property
    def resolver_names(self) -> list[str]:
        return [r.name for r in self._resolvers]

    async def authenticate(self, token: str | None) -> Identity:
        """
        Resolve ``token`` to an Identity.

        Raises:
            InvalidSession: empty/short token or no resolver matched
            SessionExpired: a resolver matched but ``now > expires_at``
            StoreUnavailable: a lookup failed (not treated as "absent")
        """
        token = (token or "").strip()
        if len(token) < self._min_token_length:
            raise InvalidSession()

        matched: SessionResolver | None = None
        record: SessionRecord | None = None
        for resolver in self._resolvers:
            record = await resolver.resolve(token)
            if record is not None:
                matched = resolver
                break

        if record is None or matched is None:
            logger.info(f"Unknown session token={mask_token(token)}")
            raise InvalidSession()

        now = self._clock.now()
        if record.expires_at is None or now > record.expires_at:
            logger.info(f"Expired session token={mask_token(token)} via {record.resolver}")
            raise SessionExpired("Session expired")

        self._schedule_touch(matched, token, now)
        return record.identity()

    def _schedule_touch(self, resolver: SessionResolver, token: str, seen_at: datetime) -> None:
        task = asyncio.create_task(self._touch(resolver, token, seen_at))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _touch(self, resolver: SessionResolver, token: str, seen_at: datetime) -> None:
        try:
            await resolver.touch(token, seen_at)
        except Exception:
            # last_seen_at is best-effort; the request already succeeded
            logger.warning(
                f"Failed to update last_seen_at via {resolver.name} token={mask_token(token)}",
                exc_info=True,
            )

    async def drain(self) -> None:
        """Wait for outstanding ``last_seen_at`` refreshes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class SessionIssuer:
    """Create session rows after a successful login."""

    def __init__(self, store: AsyncRecordStore, clock: Clock, ttl_seconds: int) -> None:
        self._store = store
        self._clock = clock
        self._ttl = timedelta(seconds=ttl_seconds)

    async def issue_session(self, subject_id: str, subject_kind: SubjectKind | str) -> dict[str, Any]:
        if not subject_id:
            raise ValidationError("subject_id is required")
        try:
            kind = SubjectKind(subject_kind)
        except ValueError:
            raise ValidationError(f"Unknown subject_kind {subject_kind!r}")

        now = self._clock.now()
        record = {
            "session_id": secrets.token_urlsafe(32),
            "subject_id": subject_id,
            "subject_kind": kind.value,
            "issued_at": now,
            "expires_at": now + self._ttl,
            "last_seen_at": now,
        }
        await self._store.insert(SESSIONS, record)
        logger.info(f"Session issued for {kind.value} {subject_id} token={mask_token(record['session_id'])}")
        return record
