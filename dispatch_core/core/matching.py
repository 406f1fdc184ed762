"""
Job matcher: which pending jobs can a technician take?

Pure computation over already-loaded records.  The matcher never assigns
anything; it reports the eligible set (closest first) and the jobs it
had to skip because their destination is unusable.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from dispatch_core.core.domain import Job, JobStatus, Technician
from dispatch_core.core.geo import haversine_miles, parse_coordinates
from dispatch_core.infra.logging_config import get_logger, mask_coordinates

logger = get_logger(__name__)


@dataclass(frozen=True)
class JobMatch:
    job: Job
    distance_miles: float | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job.id,
            "status": self.job.status.value,
            "distance_miles": round(self.distance_miles, 1) if self.distance_miles is not None else None,
            "payout_estimated": self.job.metadata.get("estimated_payout", 0),
            "order_id": self.job.metadata.get("order_id"),
            "dest_lat": self.job.dest_lat,
            "dest_lng": self.job.dest_lng,
        }


@dataclass(frozen=True)
class FlaggedJob:
    """A candidate excluded for data problems, kept for follow-up."""
    job_id: str
    reason: str


@dataclass
class MatchResult:
    eligible: list[JobMatch] = field(default_factory=list)
    flagged: list[FlaggedJob] = field(default_factory=list)

    @property
    def job_ids(self) -> list[str]:
        return [m.job.id for m in self.eligible]


def effective_radius(technician: Technician, default_radius: float) -> float:
    """Service radius in miles; records without one use ``default_radius``."""
    if technician.service_radius is None:
        return default_radius
    return technician.service_radius


def match_jobs(
    technician: Technician,
    jobs: Iterable[Job],
    default_radius: float,
) -> MatchResult:
    """
    Compute the jobs within the technician's service radius.

    - Only ``pending_assign`` jobs are candidates.
    - ``distance <= radius`` is eligible (inclusive boundary).
    - Ordered by ascending distance; ties keep input order.
    - Radius <= 0 or unusable home coordinates -> empty result, no error.
    - Unusable job destinations are flagged, never matched.
    """
    result = MatchResult()
    radius = effective_radius(technician, default_radius)
    home = parse_coordinates(technician.home_lat, technician.home_lng)

    if radius <= 0:
        logger.info(f"Technician {technician.id} has no service radius; no matches")
        return result
    if home is None:
        logger.warning(f"Technician {technician.id} has no usable home coordinates; no matches")
        return result

    for job in jobs:
        if job.status is not JobStatus.PENDING_ASSIGN:
            continue

        dest = parse_coordinates(job.dest_lat, job.dest_lng)
        if dest is None:
            result.flagged.append(FlaggedJob(job_id=job.id, reason="invalid_destination"))
            continue

        distance = haversine_miles(home[0], home[1], dest[0], dest[1])
        logger.debug(
            f"Job {job.id} distance={distance:.2f}mi radius={radius}mi "
            f"home={mask_coordinates(*home)}"
        )
        if distance <= radius:
            result.eligible.append(JobMatch(job=job, distance_miles=distance))

    # list.sort is stable: equal distances keep insertion order
    result.eligible.sort(key=lambda m: m.distance_miles)

    if result.flagged:
        logger.warning(
            f"{len(result.flagged)} pending job(s) skipped for invalid destination",
            extra={"flagged_job_ids": [f.job_id for f in result.flagged]},
        )

    return result


def job_distance(technician: Technician, job: Job) -> float | None:
    """Home-to-destination miles, or None when either side is unusable."""
    home = parse_coordinates(technician.home_lat, technician.home_lng)
    dest = parse_coordinates(job.dest_lat, job.dest_lng)
    if home is None or dest is None:
        return None
    return haversine_miles(home[0], home[1], dest[0], dest[1])


@dataclass(frozen=True)
class TechnicianMatch:
    technician: Technician
    distance_miles: float
    radius_miles: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "technician_id": self.technician.id,
            "name": self.technician.name,
            "distance_miles": round(self.distance_miles, 2),
            "radius_miles": self.radius_miles,
            "max_jobs_per_day": self.technician.max_jobs_per_day,
        }


def match_technicians(
    job: Job,
    technicians: Iterable[Technician],
    default_radius: float,
) -> list[TechnicianMatch]:
    """
    Active technicians whose own service radius covers ``job``, closest first.

    The reverse of ``match_jobs``, used for manual dispatch.  Technicians
    with no usable home coordinates or no radius are left out; a job with
    an unusable destination has no candidates.
    """
    dest = parse_coordinates(job.dest_lat, job.dest_lng)
    if dest is None:
        logger.warning(f"Job {job.id} has no usable destination; no dispatch candidates")
        return []

    candidates = []
    for technician in technicians:
        if technician.status != "active":
            continue
        radius = effective_radius(technician, default_radius)
        home = parse_coordinates(technician.home_lat, technician.home_lng)
        if radius <= 0 or home is None:
            continue
        distance = haversine_miles(home[0], home[1], dest[0], dest[1])
        if distance <= radius:
            candidates.append(TechnicianMatch(technician, distance, radius))

    candidates.sort(key=lambda c: c.distance_miles)
    return candidates
