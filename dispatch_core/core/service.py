"""
Dispatch application service.

One method per portal/admin operation.  Each takes an already
authenticated ``Identity`` (the transport resolves tokens) and talks to the
record store, the matcher and the payout ledger.  Nothing here knows about
HTTP.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from dispatch_core.core.auth import (
    SessionAuthenticator,
    SessionIssuer,
    default_resolvers,
)
from dispatch_core.core.domain import (
    Identity,
    Job,
    JobStatus,
    LedgerEntry,
    SubjectKind,
    Technician,
    parse_timestamp,
)
from dispatch_core.core.errors import (
    InvalidTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from dispatch_core.core.ledger import LedgerAudit, PayoutLedger, TechnicianPayout
from dispatch_core.core.matching import (
    JobMatch,
    MatchResult,
    TechnicianMatch,
    job_distance,
    match_jobs,
    match_technicians,
)
from dispatch_core.core.ports import AsyncRecordStore, Clock
from dispatch_core.infra.audit_log import audit_event
from dispatch_core.infra.logging_config import get_logger, LogContext

logger = get_logger(__name__)

JOBS = "jobs"
TECHNICIANS = "technicians"
DECLINES = "job_declines"
STATUS_CHANGES = "technician_status_changes"

TECHNICIAN_STATUSES = ("active", "inactive", "suspended")


@dataclass
class CompletionResult:
    job: Job
    entry: LedgerEntry
    ledger_created: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job.id,
            "status": self.job.status.value,
            "ledger_created": self.ledger_created,
            "ledger": self.entry.to_dict(),
        }


@dataclass
class PortalJobs:
    """The technician's three job lists: open offers, accepted work, finished work."""
    offers: list[JobMatch] = field(default_factory=list)
    upcoming: list[JobMatch] = field(default_factory=list)
    completed: list[JobMatch] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "offers": [m.to_dict() for m in self.offers],
            "upcoming": [m.to_dict() for m in self.upcoming],
            "completed": [m.to_dict() for m in self.completed],
        }


def _require_technician(identity: Identity) -> None:
    if identity.subject_kind is not SubjectKind.TECHNICIAN:
        raise Unauthorized("Technician session required")


def _require_admin(identity: Identity) -> None:
    if not identity.is_admin:
        raise Unauthorized()


class DispatchService:
    def __init__(
        self,
        store: AsyncRecordStore,
        clock: Clock,
        authenticator: SessionAuthenticator,
        ledger: PayoutLedger,
        issuer: SessionIssuer | None = None,
        default_radius_miles: float = 50.0,
        completed_history_limit: int = 50,
    ) -> None:
        self.store = store
        self.clock = clock
        self.authenticator = authenticator
        self.ledger = ledger
        self.issuer = issuer
        self.default_radius_miles = default_radius_miles
        self.completed_history_limit = completed_history_limit

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def authenticate(self, token: str | None) -> Identity:
        return await self.authenticator.authenticate(token)

    async def issue_session(self, subject_id: str, subject_kind: SubjectKind | str) -> dict[str, Any]:
        """Create a session for a subject whose credentials were verified upstream."""
        if self.issuer is None:
            raise RuntimeError("Session issuing is not configured")
        return await self.issuer.issue_session(subject_id, subject_kind)

    # ------------------------------------------------------------------
    # Loaders
    # ------------------------------------------------------------------

    async def _technician(self, technician_id: str) -> Technician:
        row = await self.store.find_one(TECHNICIANS, {"id": technician_id})
        if row is None:
            raise NotFound(f"Technician '{technician_id}' not found")
        return Technician.from_record(row)

    async def _job(self, job_id: str) -> Job:
        row = await self.store.find_one(JOBS, {"id": job_id})
        if row is None:
            raise NotFound(f"Job '{job_id}' not found")
        return Job.from_record(row)

    async def _jobs(self, filter: dict[str, Any], order: list[str] | None = None) -> list[Job]:
        rows = await self.store.find_many(JOBS, filter, order=order or ["id"])
        jobs: list[Job] = []
        for row in rows:
            try:
                jobs.append(Job.from_record(row))
            except ValidationError as exc:
                # One malformed row must not hide every other job
                logger.warning(f"Skipping unreadable job {row.get('id')}: {exc.detail}")
        return jobs

    async def _declined_job_ids(self, technician_id: str) -> set[str]:
        rows = await self.store.find_many(DECLINES, {"technician_id": technician_id})
        return {str(r["job_id"]) for r in rows}

    async def _accepted_today(self, technician_id: str) -> int:
        """Jobs the technician took on the current UTC day, finished or not."""
        rows = await self.store.find_many(JOBS, {
            "assigned_technician_id": technician_id,
            "status": [JobStatus.ACCEPTED.value, JobStatus.COMPLETED.value],
        })
        today = self.clock.now().date()
        count = 0
        for row in rows:
            accepted_at = parse_timestamp(row.get("accepted_at"))
            if accepted_at is not None and accepted_at.date() == today:
                count += 1
        return count

    # ------------------------------------------------------------------
    # Technician portal
    # ------------------------------------------------------------------

    async def available_jobs(self, identity: Identity) -> MatchResult:
        """Open offers within the technician's radius, minus ones they declined."""
        _require_technician(identity)
        return await self._offers(await self._technician(identity.subject_id))

    async def _offers(self, technician: Technician) -> MatchResult:
        if technician.status != "active":
            logger.info(f"Technician {technician.id} is {technician.status}; no offers")
            return MatchResult()

        declined = await self._declined_job_ids(technician.id)
        jobs = [
            job for job in await self._jobs({"status": JobStatus.PENDING_ASSIGN.value})
            if job.id not in declined
        ]
        result = match_jobs(technician, jobs, self.default_radius_miles)
        LogContext(logger, subject_id=technician.id).info(
            f"Available jobs: eligible={len(result.eligible)} flagged={len(result.flagged)} "
            f"candidates={len(jobs)} declined={len(declined)}"
        )
        return result

    async def portal_jobs(self, identity: Identity) -> PortalJobs:
        """Offers, accepted jobs still to do, and recently completed jobs."""
        _require_technician(identity)
        technician = await self._technician(identity.subject_id)
        offers = await self._offers(technician)

        upcoming = [
            JobMatch(job, job_distance(technician, job))
            for job in await self._jobs({"status": JobStatus.ACCEPTED.value}, order=["accepted_at", "id"])
            if job.is_worked_by(technician.id)
        ]

        payouts = await self.ledger.entries_for(technician.id, limit=self.completed_history_limit)
        completed: list[JobMatch] = []
        if payouts:
            by_id = {
                job.id: job
                for job in await self._jobs({"id": [p.entry.job_id for p in payouts]})
            }
            for payout in payouts:
                job = by_id.get(payout.entry.job_id)
                if job is not None:
                    completed.append(JobMatch(job, job_distance(technician, job)))

        return PortalJobs(offers=offers.eligible, upcoming=upcoming, completed=completed)

    async def accept_job(self, identity: Identity, job_id: str) -> Job:
        """pending_assign -> accepted, assigned to the caller."""
        _require_technician(identity)
        log = LogContext(logger, subject_id=identity.subject_id, job_id=job_id)

        technician = await self._technician(identity.subject_id)
        if technician.status != "active":
            raise Unauthorized(f"Technician is {technician.status}")

        job = await self._job(job_id)
        if job.status is not JobStatus.PENDING_ASSIGN:
            raise InvalidTransition(f"Job is not open for acceptance (status={job.status.value})")

        if technician.max_jobs_per_day > 0:
            taken = await self._accepted_today(technician.id)
            if taken >= technician.max_jobs_per_day:
                log.info(f"Daily limit reached: {taken}/{technician.max_jobs_per_day}")
                raise InvalidTransition(
                    f"Daily job limit reached ({technician.max_jobs_per_day})"
                )

        now = self.clock.now()
        updated = await self.store.update(
            JOBS,
            {"id": job_id, "status": JobStatus.PENDING_ASSIGN.value},
            {
                "status": JobStatus.ACCEPTED.value,
                "assigned_technician_id": identity.subject_id,
                "accepted_at": now,
            },
        )
        if updated == 0:
            log.info("Accept lost the race; job already taken")
            raise InvalidTransition("Job was accepted by someone else")

        log.info("Job accepted")
        job.status = JobStatus.ACCEPTED
        job.assigned_technician_id = identity.subject_id
        return job

    async def decline_job(self, identity: Identity, job_id: str) -> Job:
        """
        Turn down a job.

        An open offer is hidden from this technician from now on.  A job
        the technician already accepted is released back to
        ``pending_assign`` so it can be offered to someone else.
        """
        _require_technician(identity)
        log = LogContext(logger, subject_id=identity.subject_id, job_id=job_id)
        job = await self._job(job_id)

        if job.status is JobStatus.ACCEPTED:
            if job.assigned_technician_id != identity.subject_id:
                raise Unauthorized("Job is not assigned to this technician")
            updated = await self.store.update(
                JOBS,
                {
                    "id": job_id,
                    "status": JobStatus.ACCEPTED.value,
                    "assigned_technician_id": identity.subject_id,
                },
                {
                    "status": JobStatus.PENDING_ASSIGN.value,
                    "assigned_technician_id": None,
                    "accepted_at": None,
                },
            )
            if updated == 0:
                raise InvalidTransition("Job was changed concurrently; reload and retry")
            audit_event("job.released", actor_id=identity.subject_id, job_id=job_id)
            log.info("Accepted job released back to pending_assign")
            job.status = JobStatus.PENDING_ASSIGN
            job.assigned_technician_id = None
        elif job.status is not JobStatus.PENDING_ASSIGN:
            raise InvalidTransition(f"Job cannot be declined (status={job.status.value})")
        else:
            log.info("Offer declined")

        await self.store.upsert(
            DECLINES,
            {
                "id": f"{job_id}:{identity.subject_id}",
                "job_id": job_id,
                "technician_id": identity.subject_id,
                "declined_at": self.clock.now(),
            },
            conflict_key="id",
            ignore_existing=True,
        )
        return job

    async def complete_job(self, identity: Identity, job_id: str) -> CompletionResult:
        """
        accepted -> completed, then create the pending ledger entry.

        The payout is computed before the status changes, so a job whose
        payout cannot be worked out stays ``accepted``.  Repeating the call
        for an already completed job is safe: the ledger returns the
        existing entry instead of creating another.
        """
        _require_technician(identity)
        log = LogContext(logger, subject_id=identity.subject_id, job_id=job_id)

        job = await self._job(job_id)
        if not job.is_worked_by(identity.subject_id):
            raise Unauthorized("Job is not assigned to this technician")

        if job.status is JobStatus.ACCEPTED:
            self.ledger.compute(job)
            updated = await self.store.update(
                JOBS,
                {"id": job_id, "status": JobStatus.ACCEPTED.value},
                {"status": JobStatus.COMPLETED.value, "completed_at": self.clock.now()},
            )
            if updated == 0:
                # Someone else moved it; re-read and let the checks below decide
                job = await self._job(job_id)
            else:
                job.status = JobStatus.COMPLETED
                log.info("Job completed")

        if job.status is not JobStatus.COMPLETED:
            raise InvalidTransition(f"Job cannot be completed (status={job.status.value})")

        entry, created = await self.ledger.record_completion(job, identity.subject_id)
        return CompletionResult(job=job, entry=entry, ledger_created=created)

    async def payouts(self, identity: Identity) -> list[TechnicianPayout]:
        """The caller's share of every ledger entry they are part of."""
        _require_technician(identity)
        return await self.ledger.entries_for(identity.subject_id)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def dispatch_candidates(self, identity: Identity, job_id: str) -> list[TechnicianMatch]:
        """Active technicians whose radius covers the job, closest first."""
        _require_admin(identity)
        job = await self._job(job_id)
        rows = await self.store.find_many(TECHNICIANS, {"status": "active"}, order=["id"])
        technicians = []
        for row in rows:
            try:
                technicians.append(Technician.from_record(row))
            except (KeyError, ValueError) as exc:
                logger.warning(f"Skipping unreadable technician {row.get('id')}: {exc}")
        candidates = match_technicians(job, technicians, self.default_radius_miles)
        LogContext(logger, subject_id=identity.subject_id, job_id=job_id).info(
            f"Dispatch candidates: {len(candidates)} of {len(technicians)} active"
        )
        return candidates

    async def assign_job(self, identity: Identity, job_id: str, technician_id: str) -> Job:
        """
        Manually assign an open job (pending_assign -> accepted).

        The administrator's choice is not limited by the technician's
        radius or daily limit; only active technicians can be assigned.
        """
        _require_admin(identity)
        technician = await self._technician(technician_id)
        if technician.status != "active":
            raise ValidationError(f"Technician '{technician_id}' is {technician.status}")

        job = await self._job(job_id)
        if job.status is not JobStatus.PENDING_ASSIGN:
            raise InvalidTransition(f"Job is not open for assignment (status={job.status.value})")

        updated = await self.store.update(
            JOBS,
            {"id": job_id, "status": JobStatus.PENDING_ASSIGN.value},
            {
                "status": JobStatus.ACCEPTED.value,
                "assigned_technician_id": technician_id,
                "accepted_at": self.clock.now(),
                "assigned_by": identity.subject_id,
            },
        )
        if updated == 0:
            raise InvalidTransition("Job was accepted by someone else")

        audit_event(
            "job.assigned",
            actor_id=identity.subject_id,
            job_id=job_id,
            detail=f"technician={technician_id}",
            extra={"technician_id": technician_id},
        )
        LogContext(logger, subject_id=identity.subject_id, job_id=job_id).info(
            f"Job manually assigned to {technician_id}"
        )
        job.status = JobStatus.ACCEPTED
        job.assigned_technician_id = technician_id
        return job

    async def set_payout_state(self, identity: Identity, ledger_id: str, state: str) -> LedgerEntry:
        return await self.ledger.set_state(ledger_id, state, identity)

    async def reopen_payout(self, identity: Identity, ledger_id: str, reason: str) -> LedgerEntry:
        return await self.ledger.override_to_pending(ledger_id, identity, reason)

    async def audit_payout(self, identity: Identity, ledger_id: str) -> LedgerAudit:
        _require_admin(identity)
        return await self.ledger.verify_entry(ledger_id)

    async def set_technician_status(self, identity: Identity, technician_id: str, status: str) -> Technician:
        _require_admin(identity)
        new_status = (status or "").strip().lower()
        if new_status not in TECHNICIAN_STATUSES:
            raise ValidationError(
                f"Unknown technician status {status!r}; expected one of {', '.join(TECHNICIAN_STATUSES)}"
            )

        technician = await self._technician(technician_id)
        if technician.status == new_status:
            return technician

        now = self.clock.now()
        await self.store.update(TECHNICIANS, {"id": technician_id}, {"status": new_status})
        await self.store.insert(STATUS_CHANGES, {
            "id": str(uuid.uuid4()),
            "technician_id": technician_id,
            "from_status": technician.status,
            "to_status": new_status,
            "actor_id": identity.subject_id,
            "at": now,
        })
        audit_event(
            "technician.status",
            actor_id=identity.subject_id,
            detail=f"{technician.status}->{new_status}",
            extra={"technician_id": technician_id},
        )
        logger.info(f"Technician {technician_id} status {technician.status} -> {new_status}")

        technician.status = new_status
        return technician


def build_service(store: AsyncRecordStore, clock: Clock, settings: Any) -> DispatchService:
    """Wire the service from ``Settings``."""
    authenticator = SessionAuthenticator(
        default_resolvers(store),
        clock,
        min_token_length=settings.session_token_min_length,
    )
    ledger = PayoutLedger(
        store,
        clock,
        split_mode=settings.payout_split_mode,
        mismatch_tolerance=Decimal(str(settings.payout_mismatch_tolerance)),
    )
    return DispatchService(
        store,
        clock,
        authenticator,
        ledger,
        issuer=SessionIssuer(store, clock, settings.session_ttl_seconds),
        default_radius_miles=settings.default_service_radius_miles,
    )
