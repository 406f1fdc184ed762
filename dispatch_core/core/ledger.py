"""
Payout ledger. One entry per completed job, with an approval workflow.

States::

    pending ──approve──▶ approved
       │                    │
       └──reject──▶ rejected│
       ▲                    │
       └──── override ──────┘   (administrative correction only)

Creation is insert-if-absent keyed on ``job_id``: any number of
completion signals for the same job leave exactly one entry.  The entry
holds the job total and the whole team's split; each participant's share
is also indexed in ``payout_shares`` so every technician on the job sees
what they are owed.  Forward transitions are compare-and-set on the
current state, so two admins racing on the same entry cannot both win.
Every transition is written to ``ledger_transitions`` and to the audit log.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from dispatch_core.core.domain import (
    Identity,
    Job,
    JobStatus,
    LedgerEntry,
    LedgerState,
)
from dispatch_core.core.errors import (
    ComputationMismatch,
    InvalidTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from dispatch_core.core.payout import (
    PayoutComputation,
    compute_job_payout,
    detect_mismatch,
    payout_participants,
)
from dispatch_core.core.ports import AsyncRecordStore, Clock
from dispatch_core.infra.audit_log import audit_event
from dispatch_core.infra.logging_config import get_logger, LogContext

logger = get_logger(__name__)

LEDGER = "payout_ledger"
SHARES = "payout_shares"
TRANSITIONS = "ledger_transitions"
ANOMALIES = "payout_anomalies"
JOBS = "jobs"

_FORWARD = {
    LedgerState.PENDING: {LedgerState.APPROVED, LedgerState.REJECTED},
}


@dataclass
class LedgerAudit:
    """Result of recomputing a stored entry from its job."""
    entry: LedgerEntry
    recomputed: Decimal | None
    recomputed_shares: dict[str, str]
    matches: bool
    estimate_mismatch: ComputationMismatch | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ledger_id": self.entry.id,
            "job_id": self.entry.job_id,
            "stored": str(self.entry.amount),
            "recomputed": str(self.recomputed) if self.recomputed is not None else None,
            "stored_shares": self.entry.shares,
            "recomputed_shares": self.recomputed_shares,
            "matches": self.matches,
            "estimate_mismatch": self.estimate_mismatch.to_dict() if self.estimate_mismatch else None,
        }


@dataclass
class TechnicianPayout:
    """One technician's view of a ledger entry: their own share of the job."""
    entry: LedgerEntry
    technician_id: str
    amount: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "ledger_id": self.entry.id,
            "job_id": self.entry.job_id,
            "technician_id": self.technician_id,
            "amount": str(self.amount),
            "job_total": str(self.entry.amount),
            "team_size": max(len(self.entry.shares), 1),
            "state": self.entry.state.value,
            "created_at": self.entry.created_at.isoformat() if self.entry.created_at else None,
        }


class PayoutLedger:
    def __init__(
        self,
        store: AsyncRecordStore,
        clock: Clock,
        split_mode: str = "equal",
        mismatch_tolerance: Decimal = Decimal("0.01"),
    ) -> None:
        self._store = store
        self._clock = clock
        self._split_mode = split_mode
        self._tolerance = mismatch_tolerance

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, ledger_id: str) -> LedgerEntry:
        row = await self._store.find_one(LEDGER, {"id": ledger_id})
        if row is None:
            raise NotFound(f"Ledger entry '{ledger_id}' not found")
        return LedgerEntry.from_record(row)

    async def entries_for(self, technician_id: str, limit: int | None = None) -> list[TechnicianPayout]:
        """Every entry the technician has a share in, newest first."""
        share_rows = await self._store.find_many(
            SHARES, {"technician_id": technician_id}, order=["-created_at"], limit=limit,
        )
        if not share_rows:
            return []

        ledger_rows = await self._store.find_many(
            LEDGER, {"id": [r["ledger_id"] for r in share_rows]},
        )
        entries = {str(r["id"]): LedgerEntry.from_record(r) for r in ledger_rows}

        payouts = []
        for share in share_rows:
            entry = entries.get(str(share["ledger_id"]))
            if entry is None:
                logger.warning(f"Share {share['id']} points at missing ledger entry {share['ledger_id']}")
                continue
            payouts.append(TechnicianPayout(
                entry=entry,
                technician_id=technician_id,
                amount=Decimal(str(share["amount"])),
            ))
        return payouts

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def compute(self, job: Job) -> PayoutComputation:
        """
        Compute the job's payout and split without writing anything.

        Raises ValidationError when the job cannot be paid out as recorded
        (no assigned technician, unusable split policy, bad estimate).
        Callers run this before committing a completion.
        """
        if not payout_participants(job):
            raise ValidationError(f"Job '{job.id}' has no assigned technician")
        return compute_job_payout(job, self._split_mode)

    async def record_completion(self, job: Job, technician_id: str) -> tuple[LedgerEntry, bool]:
        """
        Create the pending entry for a completed job (idempotent).

        ``technician_id`` is whoever signalled the completion; it must be
        one of the job's participants.  The entry itself belongs to the
        whole team.  The amount is always the recomputed, canonical value;
        a mismatch against ``metadata.estimated_payout`` is recorded, not
        raised.

        Returns (entry, created).
        """
        log = LogContext(logger, subject_id=technician_id, job_id=job.id)

        if job.status is not JobStatus.COMPLETED:
            raise ValidationError(f"Job '{job.id}' is not completed (status={job.status.value})")
        if not job.is_worked_by(technician_id):
            raise ValidationError(f"Technician '{technician_id}' did not work job '{job.id}'")

        computation = self.compute(job)
        mismatch = detect_mismatch(job.id, computation, job.metadata, self._tolerance)

        now = self._clock.now()
        record = {
            "id": str(uuid.uuid4()),
            "job_id": job.id,
            "technician_id": payout_participants(job)[0],
            "amount": computation.job_total,
            "shares": computation.shares_as_str(),
            "state": LedgerState.PENDING.value,
            "created_at": now,
            "updated_at": now,
        }
        stored, created = await self._store.upsert(
            LEDGER, record, conflict_key="job_id", ignore_existing=True,
        )
        entry = LedgerEntry.from_record(stored)

        # Repeated signals also repair an index left incomplete by a failed write
        await self._index_shares(entry)

        if not created:
            log.info(f"Ledger entry already exists for job (ledger={entry.id}); nothing created")
            return entry, False

        log.info(
            f"Ledger entry created: ledger={entry.id} total={entry.amount} "
            f"shares={len(entry.shares)} source={computation.source}"
        )
        audit_event(
            "ledger.created",
            actor_id=technician_id,
            ledger_id=entry.id,
            job_id=job.id,
            detail=f"total={entry.amount} shares={entry.shares}",
        )

        if mismatch is not None:
            await self._record_anomaly(entry, mismatch)

        return entry, True

    async def _index_shares(self, entry: LedgerEntry) -> None:
        shares = entry.shares or {entry.technician_id: str(entry.amount)}
        for technician_id, amount in shares.items():
            await self._store.upsert(
                SHARES,
                {
                    "id": f"{entry.job_id}:{technician_id}",
                    "ledger_id": entry.id,
                    "job_id": entry.job_id,
                    "technician_id": technician_id,
                    "amount": Decimal(amount),
                    "created_at": entry.created_at or self._clock.now(),
                },
                conflict_key="id",
                ignore_existing=True,
            )

    async def _record_anomaly(self, entry: LedgerEntry, mismatch: ComputationMismatch) -> None:
        LogContext(logger, job_id=entry.job_id, ledger_id=entry.id).warning(
            f"Payout mismatch: estimated={mismatch.estimated} recomputed={mismatch.recomputed}"
        )
        audit_event(
            "payout.mismatch",
            ledger_id=entry.id,
            job_id=entry.job_id,
            detail=f"estimated={mismatch.estimated} recomputed={mismatch.recomputed}",
        )
        await self._store.insert(ANOMALIES, {
            "id": str(uuid.uuid4()),
            "ledger_id": entry.id,
            **mismatch.to_dict(),
            "detected_at": self._clock.now(),
        })

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def set_state(self, ledger_id: str, new_state: str | LedgerState, actor: Identity) -> LedgerEntry:
        """
        Move an entry forward: pending -> approved | rejected.

        Raises:
            Unauthorized: actor is not an administrator
            ValidationError: unknown state
            NotFound: no such entry
            InvalidTransition: not allowed from the current state
        """
        if not actor.is_admin:
            raise Unauthorized()
        target = _parse_state(new_state)
        entry = await self.get(ledger_id)

        if entry.state is target:
            logger.info(f"Ledger {ledger_id} already {target.value}; no change")
            return entry
        if target is LedgerState.PENDING:
            raise InvalidTransition("Reopening an entry requires an administrative override")
        if target not in _FORWARD.get(entry.state, set()):
            raise InvalidTransition(
                f"Cannot move ledger entry from {entry.state.value} to {target.value}"
            )

        return await self._transition(entry, target, actor, override=False)

    async def override_to_pending(self, ledger_id: str, actor: Identity, reason: str) -> LedgerEntry:
        """The only backward move: approved -> pending, logged as an override."""
        if not actor.is_admin:
            raise Unauthorized()
        if not reason or not reason.strip():
            raise ValidationError("An override requires a reason")
        entry = await self.get(ledger_id)
        if entry.state is not LedgerState.APPROVED:
            raise InvalidTransition(
                f"Only approved entries can be reopened (state={entry.state.value})"
            )
        return await self._transition(entry, LedgerState.PENDING, actor, override=True, reason=reason.strip())

    async def _transition(
        self,
        entry: LedgerEntry,
        target: LedgerState,
        actor: Identity,
        override: bool,
        reason: str | None = None,
    ) -> LedgerEntry:
        now = self._clock.now()
        previous = entry.state

        updated = await self._store.update(
            LEDGER,
            {"id": entry.id, "state": previous.value},
            {"state": target.value, "updated_at": now},
        )
        if updated == 0:
            raise InvalidTransition("Ledger entry was changed concurrently; reload and retry")

        await self._store.insert(TRANSITIONS, {
            "id": str(uuid.uuid4()),
            "ledger_id": entry.id,
            "from_state": previous.value,
            "to_state": target.value,
            "actor_id": actor.subject_id,
            "override": override,
            "reason": reason,
            "at": now,
        })

        action = "ledger.override" if override else f"ledger.{target.value}"
        audit_event(
            action,
            actor_id=actor.subject_id,
            ledger_id=entry.id,
            job_id=entry.job_id,
            detail=f"{previous.value}->{target.value}" + (f" reason={reason}" if reason else ""),
        )
        log = LogContext(logger, subject_id=actor.subject_id, ledger_id=entry.id)
        if override:
            log.warning(f"Ledger OVERRIDE {previous.value} -> {target.value}: {reason}")
        else:
            log.info(f"Ledger {previous.value} -> {target.value}")

        entry.state = target
        entry.updated_at = now
        return entry

    async def transitions(self, ledger_id: str) -> list[dict[str, Any]]:
        return await self._store.find_many(TRANSITIONS, {"ledger_id": ledger_id}, order=["at"])

    # ------------------------------------------------------------------
    # Drift audit
    # ------------------------------------------------------------------

    async def verify_entry(self, ledger_id: str) -> LedgerAudit:
        """Recompute an entry's total and split from its job's current line items."""
        entry = await self.get(ledger_id)
        row = await self._store.find_one(JOBS, {"id": entry.job_id})
        if row is None:
            raise NotFound(f"Job '{entry.job_id}' not found")
        job = Job.from_record(row)

        computation = compute_job_payout(job, self._split_mode)
        recomputed_shares = computation.shares_as_str()
        matches = computation.job_total == entry.amount and recomputed_shares == entry.shares
        if not matches:
            LogContext(logger, job_id=job.id, ledger_id=entry.id).warning(
                f"Ledger drift: stored={entry.amount} {entry.shares} "
                f"recomputed={computation.job_total} {recomputed_shares}"
            )

        return LedgerAudit(
            entry=entry,
            recomputed=computation.job_total,
            recomputed_shares=recomputed_shares,
            matches=matches,
            estimate_mismatch=detect_mismatch(job.id, computation, job.metadata, self._tolerance),
        )


def _parse_state(value: str | LedgerState) -> LedgerState:
    if isinstance(value, LedgerState):
        return value
    try:
        return LedgerState(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown ledger state {value!r}")
