"""
Audit logging for payout and dispatch decisions.

Ledger transitions, administrative overrides, technician status changes
and payout anomalies are written to a dedicated ``audit`` logger
(separate from the application log) so they can be routed to their own
sink via logging configuration.  The ledger additionally persists its
transitions to the record store; this log is the operational trail.
"""
from __future__ import annotations

import logging
from typing import Any

_audit_logger = logging.getLogger("audit")


def audit_event(
    action: str,
    *,
    actor_id: str | None = None,
    ledger_id: str | None = None,
    job_id: str | None = None,
    detail: str = "",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Record an audit event.

    Args:
        action: Action name (e.g., "ledger.approve", "ledger.override")
        actor_id: Subject that performed the action (if any)
        ledger_id: Ledger entry affected (if applicable)
        job_id: Job affected (if applicable)
        detail: Human-readable detail
        extra: Additional structured context
    """
    record = {
        "audit_action": action,
        "actor_id": actor_id or "",
        "ledger_id": ledger_id or "",
        "job_id": job_id or "",
        "detail": detail,
    }
    if extra:
        record.update(extra)

    _audit_logger.info(
        f"AUDIT: {action} actor={actor_id or '-'} ledger={ledger_id or '-'} "
        f"job={job_id or '-'} {detail}",
        extra=record,
    )
