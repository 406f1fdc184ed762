"""
Typed domain errors for the dispatch core.

Each error carries a stable machine-readable ``code`` and maps to a
specific HTTP status code.  The transport layer catches ``DispatchError``
subtypes and renders them as ``{"ok": false, "error", "error_code"}``
without embedding business logic in the route handlers.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500
    code: str = "server_error"

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        return {"ok": False, "error": self.detail, "error_code": self.code}


class InvalidSession(DispatchError):
    """Missing, unknown or expired session token (401)."""

    status_code = 401
    code = "bad_session"

    def __init__(self, detail: str = "Invalid/expired session"):
        super().__init__(detail)


class SessionExpired(InvalidSession):
    """Session found but ``now > expires_at`` (401)."""

    code = "session_expired"


class Unauthorized(DispatchError):
    """Valid session without the required privilege (403)."""

    status_code = 403
    code = "unauthorized"

    def __init__(self, detail: str = "Unauthorized - Admin access required"):
        super().__init__(detail)


class NotFound(DispatchError):
    """Referenced job, ledger entry or technician is absent (404)."""

    status_code = 404
    code = "not_found"


class ValidationError(DispatchError):
    """Missing required field or malformed value (400)."""

    status_code = 400
    code = "validation_error"


class InvalidTransition(ValidationError):
    """State change not allowed from the record's current state (409)."""

    status_code = 409
    code = "invalid_transition"


class RateLimited(DispatchError):
    """Per-window request ceiling exceeded (429)."""

    status_code = 429
    code = "rate_limit_exceeded"

    def __init__(self, retry_after: int, detail: str = "Too many requests. Please try again later."):
        self.retry_after = retry_after
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body


class StoreUnavailable(DispatchError):
    """Record-store call failed (503).  Never retried inside the core."""

    status_code = 503
    code = "store_unavailable"

    def __init__(self, detail: str = "Service temporarily unavailable"):
        super().__init__(detail)


class ComputationMismatch(DispatchError):
    """
    Recomputed payout disagrees with a previously stored estimate.

    Reported, never raised: the ledger keeps the recomputed value and
    records this error for audit.
    """

    status_code = 200
    code = "computation_mismatch"

    def __init__(self, job_id: str, estimated: Decimal, recomputed: Decimal):
        self.job_id = job_id
        self.estimated = estimated
        self.recomputed = recomputed
        super().__init__(
            f"Payout mismatch for job {job_id}: estimated={estimated} recomputed={recomputed}"
        )

    @property
    def difference(self) -> Decimal:
        return self.recomputed - self.estimated

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.code,
            "job_id": self.job_id,
            "estimated": str(self.estimated),
            "recomputed": str(self.recomputed),
            "difference": str(self.difference),
        }
