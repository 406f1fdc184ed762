"""
Payout calculator: what a completed job owes its technician(s).

All tunable values live in ``data/payout_policy.json``.  This module loads
the JSON once at import time and exposes:
- ``PayoutPolicy`` / ``PAYOUT_POLICY``: tier multipliers and guardrails
- ``SplitPolicy`` and its ``equal`` / ``percent`` / ``flat`` variants
- ``compute_payout()``: the deterministic calculation
- ``detect_mismatch()``: compare against the estimate captured at assignment

Money is ``Decimal`` throughout and every amount is quantized to cents
with ROUND_HALF_UP, so recomputing from the same line items and metadata
always yields the same value.  The ledger relies on this to detect drift.

Tier adjustment (per line):
    1. ``line_total = quantity x unit_price``
    2. No tier on the line or the job -> payout is the line total.
    3. Tiered -> ``line_total x (1 - materials_pct) x labor_pct``, capped at
       ``max_payout_cap_pct x line_total``, floored at ``min_payout_floor``.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from pathlib import Path
from typing import Any, Iterable, Sequence

from dispatch_core.core.domain import Job, LineItem, to_decimal
from dispatch_core.core.errors import ComputationMismatch, ValidationError
from dispatch_core.infra.logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "PayoutPolicy", "TierRule", "PAYOUT_POLICY",
    "SplitPolicy", "EqualSplit", "PercentSplit", "FlatSplit",
    "split_policy_from_metadata",
    "LinePayout", "PayoutComputation",
    "compute_payout", "compute_job_payout", "payout_participants",
    "detect_mismatch",
    "quantize_cents",
]

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def quantize_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Load JSON policy (once at import time)
# ---------------------------------------------------------------------------

_POLICY_PATH = Path(__file__).parent / "data" / "payout_policy.json"


def _load_policy_config() -> dict:
    """Load payout policy from JSON file (numbers parsed as Decimal)."""
    with open(_POLICY_PATH, "r", encoding="utf-8") as f:
        return json.load(f, parse_float=Decimal, parse_int=Decimal)


@dataclass(frozen=True)
class TierRule:
    materials_pct: Decimal
    labor_pct: Decimal

    @property
    def multiplier(self) -> Decimal:
        return (1 - self.materials_pct) * self.labor_pct


@dataclass(frozen=True)
class PayoutPolicy:
    tiers: dict[str, TierRule]
    tier_aliases: dict[str, str]
    default_tier: str
    min_payout_floor: Decimal
    max_payout_cap_pct: Decimal
    default_primary_percent: Decimal

    @classmethod
    def from_config(cls, raw: dict[str, Any]) -> "PayoutPolicy":
        tiers = {
            code.upper(): TierRule(
                materials_pct=Decimal(rule["materials_pct"]),
                labor_pct=Decimal(rule["labor_pct"]),
            )
            for code, rule in raw["tiers"].items()
        }
        default_tier = str(raw.get("default_tier", "BASE")).upper()
        if default_tier not in tiers:
            raise ValueError(f"default_tier {default_tier!r} is not a configured tier")
        aliases = {k.upper(): str(v).upper() for k, v in raw.get("tier_aliases", {}).items()}
        for alias, target in aliases.items():
            if target not in tiers:
                raise ValueError(f"tier alias {alias!r} points at unknown tier {target!r}")
        return cls(
            tiers=tiers,
            tier_aliases=aliases,
            default_tier=default_tier,
            min_payout_floor=Decimal(raw.get("min_payout_floor", 0)),
            max_payout_cap_pct=Decimal(raw.get("max_payout_cap_pct", 1)),
            default_primary_percent=Decimal(raw.get("default_primary_percent", 50)),
        )

    def resolve_tier(self, code: str | None) -> str | None:
        """Canonical tier code; ``None`` when no tier applies."""
        if code is None:
            return None
        normalized = str(code).strip().upper()
        if not normalized:
            return None
        normalized = self.tier_aliases.get(normalized, normalized)
        if normalized not in self.tiers:
            logger.warning(f"Unknown pricing tier {code!r}, using {self.default_tier}")
            return self.default_tier
        return normalized


PAYOUT_POLICY = PayoutPolicy.from_config(_load_policy_config())


# ---------------------------------------------------------------------------
# Split policies
# ---------------------------------------------------------------------------

class SplitPolicy:
    """Divide a job total across the technicians who worked it."""

    mode: str = ""

    def split(self, total: Decimal, teammates: Sequence[str]) -> dict[str, Decimal]:
        raise NotImplementedError

    def describe(self) -> dict[str, Any]:
        return {"mode": self.mode}


class EqualSplit(SplitPolicy):
    """Equal shares; leftover cents go to the earliest teammates."""

    mode = "equal"

    def split(self, total: Decimal, teammates: Sequence[str]) -> dict[str, Decimal]:
        n = len(teammates)
        base = (total / n).quantize(CENT, rounding=ROUND_DOWN)
        leftover_cents = int((total - base * n) / CENT)
        return {
            tech: base + (CENT if i < leftover_cents else 0)
            for i, tech in enumerate(teammates)
        }


class PercentSplit(SplitPolicy):
    """
    Percentage shares.

    With explicit ``percentages`` every teammate must be listed and the
    values must sum to 100.  Otherwise the primary (first) teammate gets
    ``primary_percent`` and the rest share the remainder equally.  The
    last teammate absorbs rounding so shares always sum to the total.
    """

    mode = "percent"

    def __init__(
        self,
        percentages: dict[str, Decimal] | None = None,
        primary_percent: Decimal | None = None,
    ):
        self.percentages = percentages
        self.primary_percent = (
            primary_percent if primary_percent is not None
            else PAYOUT_POLICY.default_primary_percent
        )
        if not (0 <= self.primary_percent <= 100):
            raise ValidationError("primary_percent must be between 0 and 100")

    def _percent_map(self, teammates: Sequence[str]) -> dict[str, Decimal]:
        if self.percentages is not None:
            missing = [t for t in teammates if t not in self.percentages]
            if missing:
                raise ValidationError(f"split percentages missing teammates: {missing}")
            pct = {t: self.percentages[t] for t in teammates}
            if sum(pct.values()) != HUNDRED:
                raise ValidationError("split percentages must sum to 100")
            return pct

        if len(teammates) == 1:
            return {teammates[0]: HUNDRED}
        rest = (HUNDRED - self.primary_percent) / (len(teammates) - 1)
        pct = {t: rest for t in teammates[1:]}
        pct[teammates[0]] = self.primary_percent
        return pct

    def split(self, total: Decimal, teammates: Sequence[str]) -> dict[str, Decimal]:
        pct = self._percent_map(teammates)
        shares = {t: quantize_cents(total * pct[t] / HUNDRED) for t in teammates[:-1]}
        shares[teammates[-1]] = total - sum(shares.values(), Decimal("0"))
        return {t: shares[t] for t in teammates}

    def describe(self) -> dict[str, Any]:
        if self.percentages is not None:
            return {"mode": self.mode, "percentages": {k: str(v) for k, v in self.percentages.items()}}
        return {"mode": self.mode, "primary_percent": str(self.primary_percent)}


class FlatSplit(SplitPolicy):
    """Fixed recorded amounts per teammate; unlisted teammates get 0."""

    mode = "flat"

    def __init__(self, amounts: dict[str, Decimal]):
        self.amounts = amounts

    def split(self, total: Decimal, teammates: Sequence[str]) -> dict[str, Decimal]:
        shares = {t: quantize_cents(self.amounts.get(t, Decimal("0"))) for t in teammates}
        if sum(shares.values(), Decimal("0")) != total:
            logger.info(f"Flat split sums to {sum(shares.values())}, job total is {total}")
        return shares

    def describe(self) -> dict[str, Any]:
        return {"mode": self.mode, "amounts": {k: str(v) for k, v in self.amounts.items()}}


def split_policy_from_metadata(
    metadata: dict[str, Any],
    default_mode: str = "equal",
) -> SplitPolicy:
    """
    Build the split policy recorded on a job.

    ``metadata["split_policy"]`` may hold::

        {"mode": "percent", "primary_percent": 60}
        {"mode": "percent", "percentages": {"tech_a": 70, "tech_b": 30}}
        {"mode": "flat", "amounts": {"tech_a": 120, "tech_b": 80}}

    Without one, ``default_mode`` (from settings) applies.
    """
    raw = metadata.get("split_policy") or {}
    if not isinstance(raw, dict):
        raise ValidationError("split_policy must be an object")
    mode = str(raw.get("mode") or default_mode).lower()

    if mode == "equal":
        return EqualSplit()
    if mode == "percent":
        percentages = raw.get("percentages")
        primary = raw.get("primary_percent")
        return PercentSplit(
            percentages={str(k): to_decimal(v, "percentages") for k, v in percentages.items()}
            if isinstance(percentages, dict) else None,
            primary_percent=to_decimal(primary, "primary_percent") if primary is not None else None,
        )
    if mode == "flat":
        amounts = raw.get("amounts") or {}
        if not isinstance(amounts, dict):
            raise ValidationError("flat split requires an amounts object")
        return FlatSplit({str(k): to_decimal(v, "amounts") for k, v in amounts.items()})

    raise ValidationError(f"unknown split mode {mode!r}")


# ---------------------------------------------------------------------------
# Computation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LinePayout:
    service_id: str
    line_total: Decimal
    tier: str | None
    payout: Decimal


@dataclass
class PayoutComputation:
    job_total: Decimal
    lines: list[LinePayout] = field(default_factory=list)
    shares: dict[str, Decimal] = field(default_factory=dict)
    source: str = "line_items"  # "line_items" | "estimate"
    split: dict[str, Any] = field(default_factory=dict)

    def amount_for(self, technician_id: str) -> Decimal:
        if technician_id not in self.shares:
            raise ValidationError(f"technician {technician_id} has no share in this job")
        return self.shares[technician_id]

    def shares_as_str(self) -> dict[str, str]:
        return {k: str(v) for k, v in self.shares.items()}


def _line_payout(item: LineItem, tier: str | None, policy: PayoutPolicy) -> Decimal:
    line_total = item.line_total
    if tier is None:
        return quantize_cents(line_total)

    rule = policy.tiers[tier]
    raw = line_total * rule.multiplier
    capped = min(raw, line_total * policy.max_payout_cap_pct)
    if line_total > 0:
        capped = max(policy.min_payout_floor, capped)
    return quantize_cents(capped)


def compute_payout(
    line_items: Iterable[LineItem],
    metadata: dict[str, Any],
    teammates: Sequence[str] = (),
    split_policy: SplitPolicy | None = None,
    policy: PayoutPolicy = PAYOUT_POLICY,
) -> PayoutComputation:
    """
    Compute a job's payout and each technician's share.

    Args:
        line_items: the job's ordered line items.
        metadata: job metadata; ``pricing_tier`` / ``variant_code`` select a
            job-wide tier, ``estimated_payout`` is the fallback when the job
            has no line items.
        teammates: technicians sharing the payout, primary first.  One (or
            none) -> no split.
        split_policy: how to divide among teammates (default equal).

    Deterministic: identical input -> identical result.
    """
    job_tier = metadata.get("pricing_tier") or metadata.get("variant_code")

    lines: list[LinePayout] = []
    for item in line_items:
        tier = policy.resolve_tier(item.variant_code or job_tier)
        lines.append(
            LinePayout(
                service_id=item.service_id,
                line_total=quantize_cents(item.line_total),
                tier=tier,
                payout=_line_payout(item, tier, policy),
            )
        )

    if lines:
        total = sum((line.payout for line in lines), Decimal("0"))
        source = "line_items"
    else:
        estimated = metadata.get("estimated_payout")
        total = quantize_cents(to_decimal(estimated, "estimated_payout")) if estimated is not None else Decimal("0.00")
        source = "estimate"

    # Preserve order, drop duplicates (assigned tech may also be listed as teammate)
    participants = list(dict.fromkeys(teammates))
    split_desc: dict[str, Any] = {}
    if len(participants) > 1:
        split_policy = split_policy or EqualSplit()
        shares = split_policy.split(total, participants)
        split_desc = split_policy.describe()
    elif participants:
        shares = {participants[0]: total}
    else:
        shares = {}

    return PayoutComputation(
        job_total=total,
        lines=lines,
        shares=shares,
        source=source,
        split=split_desc,
    )


def payout_participants(job: Job) -> list[str]:
    """Assigned technician first, then teammates in recorded order."""
    participants: list[str] = []
    if job.assigned_technician_id:
        participants.append(job.assigned_technician_id)
    participants.extend(t for t in job.teammate_ids if t not in participants)
    return participants


def compute_job_payout(job: Job, default_split_mode: str = "equal") -> PayoutComputation:
    """``compute_payout`` with the participants and split policy recorded on ``job``."""
    return compute_payout(
        job.line_items,
        job.metadata,
        teammates=payout_participants(job),
        split_policy=split_policy_from_metadata(job.metadata, default_split_mode),
    )


def detect_mismatch(
    job_id: str,
    computation: PayoutComputation,
    metadata: dict[str, Any],
    tolerance: Decimal = CENT,
) -> ComputationMismatch | None:
    """
    Compare the recomputed job total with ``metadata.estimated_payout``.

    Returns the mismatch (never raises it).  No estimate, an unreadable
    estimate, or a computation that itself came from the estimate -> None.
    """
    if computation.source != "line_items":
        return None
    raw = metadata.get("estimated_payout")
    if raw is None or raw == "":
        return None
    try:
        estimated = quantize_cents(to_decimal(raw, "estimated_payout"))
    except ValidationError:
        logger.warning(f"Job {job_id} has unreadable estimated_payout {raw!r}")
        return None
    if abs(computation.job_total - estimated) > tolerance:
        return ComputationMismatch(job_id, estimated, computation.job_total)
    return None
