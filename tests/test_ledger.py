# tests/test_ledger.py
"""Tests for dispatch_core/core/ledger.py: idempotent creation and approval workflow."""
from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from conftest import make_job
from dispatch_core.core.domain import Identity, Job, LedgerState, SubjectKind
from dispatch_core.core.errors import (
    InvalidTransition,
    NotFound,
    Unauthorized,
    ValidationError,
)
from dispatch_core.core.ledger import ANOMALIES, LEDGER, SHARES, TRANSITIONS, PayoutLedger
from dispatch_core.infra.memory_store import InMemoryRecordStore

ADMIN = Identity("ops@example.com", SubjectKind.ADMINISTRATOR)
TECH = Identity("tech_a", SubjectKind.TECHNICIAN)


def _completed_job(job_id: str = "job_1", **overrides) -> Job:
    overrides.setdefault("status", "completed")
    overrides.setdefault("assigned_technician_id", "tech_a")
    return Job.from_record(make_job(job_id, **overrides))


@pytest.fixture
def ledger_store():
    return InMemoryRecordStore({"jobs": [make_job(
        "job_1", status="completed", assigned_technician_id="tech_a",
    )]})


@pytest.fixture
def ledger(ledger_store, clock):
    return PayoutLedger(ledger_store, clock)


class TestRecordCompletion:
    @pytest.mark.asyncio
    async def test_creates_pending_entry(self, ledger, ledger_store, clock):
        entry, created = await ledger.record_completion(_completed_job(), "tech_a")

        assert created
        assert entry.state is LedgerState.PENDING
        assert entry.amount == Decimal("449.97")
        assert entry.technician_id == "tech_a"
        assert entry.shares == {"tech_a": "449.97"}
        assert entry.created_at == clock.now()
        assert ledger_store.count(LEDGER) == 1
        assert ledger_store.count(SHARES) == 1

    @pytest.mark.asyncio
    async def test_repeated_signal_is_idempotent(self, ledger, ledger_store):
        job = _completed_job()
        first, created_first = await ledger.record_completion(job, "tech_a")
        second, created_second = await ledger.record_completion(job, "tech_a")

        assert created_first and not created_second
        assert second.id == first.id
        assert ledger_store.count(LEDGER) == 1
        assert ledger_store.count(SHARES) == 1

    @pytest.mark.asyncio
    async def test_concurrent_signals_create_one_entry(self, ledger, ledger_store):
        job = _completed_job()
        results = await asyncio.gather(*[ledger.record_completion(job, "tech_a") for _ in range(10)])

        assert sum(1 for _, created in results if created) == 1
        assert len({entry.id for entry, _ in results}) == 1
        assert ledger_store.count(LEDGER) == 1

    @pytest.mark.asyncio
    async def test_requires_completed_job(self, ledger):
        job = _completed_job(status="accepted")
        with pytest.raises(ValidationError):
            await ledger.record_completion(job, "tech_a")

    @pytest.mark.asyncio
    async def test_requires_participant(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.record_completion(_completed_job(), "tech_z")

    @pytest.mark.asyncio
    async def test_team_entry_carries_whole_split(self, ledger):
        job = _completed_job(teammate_ids=["tech_b"])
        entry, _ = await ledger.record_completion(job, "tech_b")

        # The entry belongs to the team, whoever signalled completion
        assert entry.technician_id == "tech_a"
        assert entry.amount == Decimal("449.97")
        assert entry.shares == {"tech_a": "224.99", "tech_b": "224.98"}
        assert entry.share_for("tech_b") == Decimal("224.98")
        assert entry.share_for("tech_z") is None

    @pytest.mark.asyncio
    async def test_every_teammate_sees_their_share(self, ledger):
        job = _completed_job(teammate_ids=["tech_b"])
        entry, _ = await ledger.record_completion(job, "tech_b")

        primary = await ledger.entries_for("tech_a")
        teammate = await ledger.entries_for("tech_b")

        assert [(p.entry.id, p.amount) for p in primary] == [(entry.id, Decimal("224.99"))]
        assert [(p.entry.id, p.amount) for p in teammate] == [(entry.id, Decimal("224.98"))]
        assert primary[0].to_dict()["job_total"] == "449.97"
        assert primary[0].to_dict()["team_size"] == 2

    @pytest.mark.asyncio
    async def test_repeat_signal_repairs_missing_share_rows(self, ledger, ledger_store):
        job = _completed_job(teammate_ids=["tech_b"])
        await ledger.record_completion(job, "tech_a")
        await ledger_store.delete(SHARES, {"technician_id": "tech_b"})

        _, created = await ledger.record_completion(job, "tech_b")

        assert not created
        assert len(await ledger.entries_for("tech_b")) == 1

    @pytest.mark.asyncio
    async def test_bad_split_policy_raises_before_writing(self, ledger, ledger_store):
        job = _completed_job(
            teammate_ids=["tech_b"],
            metadata={"split_policy": {"mode": "percent", "percentages": {"tech_a": 100}}},
        )
        with pytest.raises(ValidationError):
            ledger.compute(job)
        with pytest.raises(ValidationError):
            await ledger.record_completion(job, "tech_a")
        assert ledger_store.count(LEDGER) == 0

    @pytest.mark.asyncio
    async def test_compute_requires_assignee(self, ledger):
        with pytest.raises(ValidationError):
            ledger.compute(_completed_job(assigned_technician_id=None))

    @pytest.mark.asyncio
    async def test_estimate_mismatch_recorded_not_raised(self, ledger, ledger_store):
        job = _completed_job(metadata={"estimated_payout": 400})
        entry, created = await ledger.record_completion(job, "tech_a")

        assert created
        assert entry.amount == Decimal("449.97")
        anomalies = await ledger_store.find_many(ANOMALIES, {"ledger_id": entry.id})
        assert len(anomalies) == 1
        assert anomalies[0]["error_code"] == "computation_mismatch"
        assert anomalies[0]["estimated"] == "400.00"

    @pytest.mark.asyncio
    async def test_entries_for_technician(self, ledger, clock):
        await ledger.record_completion(_completed_job("j1"), "tech_a")
        clock.advance(60)
        await ledger.record_completion(_completed_job("j2"), "tech_a")
        await ledger.record_completion(_completed_job("j3", assigned_technician_id="tech_b"), "tech_b")

        payouts = await ledger.entries_for("tech_a")
        assert [p.entry.job_id for p in payouts] == ["j2", "j1"]
        assert await ledger.entries_for("tech_z") == []


class TestTransitions:
    @pytest.mark.asyncio
    async def test_approve(self, ledger, ledger_store):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")

        approved = await ledger.set_state(entry.id, "approved", ADMIN)

        assert approved.state is LedgerState.APPROVED
        stored = await ledger.get(entry.id)
        assert stored.state is LedgerState.APPROVED
        history = await ledger.transitions(entry.id)
        assert [(t["from_state"], t["to_state"], t["actor_id"]) for t in history] == [
            ("pending", "approved", "ops@example.com"),
        ]

    @pytest.mark.asyncio
    async def test_reject(self, ledger):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")
        rejected = await ledger.set_state(entry.id, LedgerState.REJECTED, ADMIN)
        assert rejected.state is LedgerState.REJECTED

    @pytest.mark.asyncio
    async def test_same_state_is_noop(self, ledger):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")
        await ledger.set_state(entry.id, "approved", ADMIN)
        again = await ledger.set_state(entry.id, "approved", ADMIN)

        assert again.state is LedgerState.APPROVED
        assert len(await ledger.transitions(entry.id)) == 1

    @pytest.mark.asyncio
    async def test_rejected_cannot_be_approved(self, ledger):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")
        await ledger.set_state(entry.id, "rejected", ADMIN)

        with pytest.raises(InvalidTransition):
            await ledger.set_state(entry.id, "approved", ADMIN)

    @pytest.mark.asyncio
    async def test_back_to_pending_needs_override(self, ledger):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")
        await ledger.set_state(entry.id, "approved", ADMIN)

        with pytest.raises(InvalidTransition):
            await ledger.set_state(entry.id, "pending", ADMIN)

    @pytest.mark.asyncio
    async def test_technician_cannot_change_state(self, ledger):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")

        with pytest.raises(Unauthorized):
            await ledger.set_state(entry.id, "approved", TECH)
        assert (await ledger.get(entry.id)).state is LedgerState.PENDING

    @pytest.mark.asyncio
    async def test_unauthorized_checked_before_lookup(self, ledger):
        with pytest.raises(Unauthorized):
            await ledger.set_state("missing", "approved", TECH)

    @pytest.mark.asyncio
    async def test_unknown_entry(self, ledger):
        with pytest.raises(NotFound):
            await ledger.set_state("missing", "approved", ADMIN)

    @pytest.mark.asyncio
    async def test_unknown_state(self, ledger):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")
        with pytest.raises(ValidationError):
            await ledger.set_state(entry.id, "paid", ADMIN)

    @pytest.mark.asyncio
    async def test_concurrent_decisions_only_one_wins(self, ledger):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")

        results = await asyncio.gather(
            ledger.set_state(entry.id, "approved", ADMIN),
            ledger.set_state(entry.id, "rejected", ADMIN),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], InvalidTransition)
        assert len(await ledger.transitions(entry.id)) == 1


class TestOverride:
    @pytest.mark.asyncio
    async def test_override_approved_to_pending(self, ledger, ledger_store):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")
        await ledger.set_state(entry.id, "approved", ADMIN)

        reopened = await ledger.override_to_pending(entry.id, ADMIN, "  wrong line items ")

        assert reopened.state is LedgerState.PENDING
        history = await ledger_store.find_many(TRANSITIONS, {"ledger_id": entry.id, "override": True})
        assert len(history) == 1
        assert history[0]["reason"] == "wrong line items"

    @pytest.mark.asyncio
    async def test_override_requires_reason(self, ledger):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")
        await ledger.set_state(entry.id, "approved", ADMIN)

        with pytest.raises(ValidationError):
            await ledger.override_to_pending(entry.id, ADMIN, "   ")

    @pytest.mark.asyncio
    async def test_override_only_from_approved(self, ledger):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")
        with pytest.raises(InvalidTransition):
            await ledger.override_to_pending(entry.id, ADMIN, "reason")

    @pytest.mark.asyncio
    async def test_override_requires_admin(self, ledger):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")
        with pytest.raises(Unauthorized):
            await ledger.override_to_pending(entry.id, TECH, "reason")


class TestVerifyEntry:
    @pytest.mark.asyncio
    async def test_matches_when_job_unchanged(self, ledger):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")
        audit = await ledger.verify_entry(entry.id)

        assert audit.matches
        assert audit.recomputed == Decimal("449.97")
        assert audit.to_dict()["stored"] == "449.97"

    @pytest.mark.asyncio
    async def test_detects_drift(self, ledger, ledger_store):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")
        await ledger_store.update("jobs", {"id": "job_1"}, {
            "line_items": [{"service_id": "tv_mount", "quantity": 1, "unit_price": "199.99"}],
        })

        audit = await ledger.verify_entry(entry.id)

        assert not audit.matches
        assert audit.recomputed == Decimal("199.99")

    @pytest.mark.asyncio
    async def test_missing_job(self, ledger):
        entry, _ = await ledger.record_completion(_completed_job("ghost"), "tech_a")
        with pytest.raises(NotFound):
            await ledger.verify_entry(entry.id)

    @pytest.mark.asyncio
    async def test_detects_split_drift(self, ledger, ledger_store):
        entry, _ = await ledger.record_completion(_completed_job(), "tech_a")
        await ledger_store.update("jobs", {"id": "job_1"}, {"teammate_ids": ["tech_b"]})

        audit = await ledger.verify_entry(entry.id)

        assert not audit.matches
        assert audit.recomputed == Decimal("449.97")
        assert audit.recomputed_shares == {"tech_a": "224.99", "tech_b": "224.98"}
