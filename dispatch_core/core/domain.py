from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional

from dispatch_core.core.errors import ValidationError


# ============================================================================
# ENUMS
# ============================================================================

class SubjectKind(str, Enum):
    TECHNICIAN = "technician"
    ADMINISTRATOR = "administrator"


class JobStatus(str, Enum):
    PENDING_ASSIGN = "pending_assign"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    ORDERED = "ordered"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.REJECTED)


class LedgerState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# ============================================================================
# VALUE HELPERS
# ============================================================================

def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Normalize a stored timestamp to an aware UTC datetime.

    Stores hand back either ``datetime`` objects (asyncpg) or ISO-8601
    strings (JSON backends, ``Z`` suffix included).  Naive values are
    taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_decimal(value: Any, field_name: str) -> Decimal:
    """Convert a numeric record value to Decimal, rejecting junk."""
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be numeric")
    try:
        # str() first so floats keep their printed value (199.99, not 199.98999...)
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field_name} must be numeric")
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    return result


# ============================================================================
# IDENTITY
# ============================================================================

@dataclass(frozen=True)
class Identity:
    """Authenticated caller resolved from a session token."""
    subject_id: str
    subject_kind: SubjectKind

    @property
    def is_admin(self) -> bool:
        return self.subject_kind is SubjectKind.ADMINISTRATOR


# ============================================================================
# TECHNICIAN
# ============================================================================

@dataclass
class Technician:
    id: str
    name: str = ""
    email: str = ""
    home_lat: Any = None
    home_lng: Any = None
    service_radius: Optional[float] = None  # miles; None = use configured default
    max_jobs_per_day: int = 0
    status: str = "active"

    @classmethod
    def from_record(cls, row: dict[str, Any]) -> "Technician":
        radius = row.get("service_radius_miles")
        try:
            radius = float(radius) if radius not in (None, "") else None
        except (TypeError, ValueError):
            radius = None
        return cls(
            id=str(row["id"]),
            name=row.get("name") or "",
            email=row.get("email") or "",
            home_lat=row.get("home_lat"),
            home_lng=row.get("home_lng"),
            service_radius=radius,
            max_jobs_per_day=int(row.get("max_jobs_per_day") or 0),
            status=row.get("status") or "active",
        )


# ============================================================================
# JOB
# ============================================================================

@dataclass(frozen=True)
class LineItem:
    service_id: str
    quantity: Decimal
    unit_price: Decimal
    variant_code: Optional[str] = None  # pricing tier override for this line

    @classmethod
    def from_record(cls, row: dict[str, Any]) -> "LineItem":
        if "quantity" not in row and "qty" not in row:
            raise ValidationError("line item is missing quantity")
        if "unit_price" not in row:
            raise ValidationError("line item is missing unit_price")
        quantity = to_decimal(row.get("quantity", row.get("qty")), "quantity")
        unit_price = to_decimal(row["unit_price"], "unit_price")
        if quantity < 0 or unit_price < 0:
            raise ValidationError("line item quantity and unit_price must be non-negative")
        return cls(
            service_id=str(row.get("service_id") or ""),
            quantity=quantity,
            unit_price=unit_price,
            variant_code=row.get("variant_code") or None,
        )

    @property
    def line_total(self) -> Decimal:
        return self.quantity * self.unit_price


@dataclass
class Job:
    id: str
    status: JobStatus
    dest_lat: Any = None
    dest_lng: Any = None
    assigned_technician_id: Optional[str] = None
    teammate_ids: list[str] = field(default_factory=list)
    line_items: list[LineItem] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, row: dict[str, Any]) -> "Job":
        try:
            status = JobStatus(row.get("status"))
        except ValueError:
            raise ValidationError(f"job {row.get('id')} has unknown status {row.get('status')!r}")
        return cls(
            id=str(row["id"]),
            status=status,
            dest_lat=row.get("dest_lat"),
            dest_lng=row.get("dest_lng"),
            assigned_technician_id=row.get("assigned_technician_id"),
            teammate_ids=[str(t) for t in (row.get("teammate_ids") or [])],
            line_items=[LineItem.from_record(li) for li in (row.get("line_items") or [])],
            metadata=dict(row.get("metadata") or {}),
        )

    def is_worked_by(self, technician_id: str) -> bool:
        return technician_id == self.assigned_technician_id or technician_id in self.teammate_ids


# ============================================================================
# LEDGER
# ============================================================================

@dataclass
class LedgerEntry:
    """
    Money owed for one completed job.

    ``amount`` is the job total and ``technician_id`` the primary
    technician; ``shares`` holds each participant's cut, so a team job is
    still a single entry.
    """
    id: str
    job_id: str
    technician_id: str
    amount: Decimal
    state: LedgerState
    shares: dict[str, str] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, row: dict[str, Any]) -> "LedgerEntry":
        return cls(
            id=str(row["id"]),
            job_id=str(row["job_id"]),
            technician_id=str(row["technician_id"]),
            amount=to_decimal(row["amount"], "amount"),
            state=LedgerState(row["state"]),
            shares={str(k): str(v) for k, v in (row.get("shares") or {}).items()},
            created_at=parse_timestamp(row.get("created_at")),
            updated_at=parse_timestamp(row.get("updated_at")),
        )

    def share_for(self, technician_id: str) -> Optional[Decimal]:
        if technician_id in self.shares:
            return to_decimal(self.shares[technician_id], "share")
        if not self.shares and technician_id == self.technician_id:
            return self.amount
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "technician_id": self.technician_id,
            "amount": str(self.amount),
            "shares": self.shares,
            "state": self.state.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
