"""Pytest configuration and fixtures"""
import pytest
import sys
from datetime import timedelta
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dispatch_core.infra.clock import ManualClock  # noqa: E402
from dispatch_core.infra.memory_store import InMemoryRecordStore  # noqa: E402


TECH_TOKEN = "tech-session-token-0001"
TECH_B_TOKEN = "tech-session-token-0002"
ADMIN_TOKEN = "admin-session-token-0001"


def make_technician(tech_id: str = "tech_a", **overrides) -> dict:
    """Technician record at (34.00, -82.00) with a 30 mile radius."""
    row = {
        "id": tech_id,
        "name": "Test Tech",
        "email": f"{tech_id}@example.com",
        "home_lat": 34.00,
        "home_lng": -82.00,
        "service_radius_miles": 30,
        "max_jobs_per_day": 3,
        "status": "active",
    }
    row.update(overrides)
    return row


def make_job(job_id: str = "job_1", **overrides) -> dict:
    """Pending job about 7.5 miles from ``make_technician``'s home."""
    row = {
        "id": job_id,
        "status": "pending_assign",
        "dest_lat": 34.10,
        "dest_lng": -82.05,
        "assigned_technician_id": None,
        "teammate_ids": [],
        "line_items": [
            {"service_id": "tv_mount", "quantity": 2, "unit_price": "199.99"},
            {"service_id": "cam_install", "quantity": 1, "unit_price": "49.99"},
        ],
        "metadata": {"order_id": "ord_1"},
    }
    row.update(overrides)
    return row


def make_session(token: str, subject_id: str, clock: ManualClock, *, kind: str = "technician",
                 ttl_seconds: int = 3600, key: str = "session_id") -> dict:
    now = clock.now()
    return {
        key: token,
        "subject_id": subject_id,
        "subject_kind": kind,
        "issued_at": now,
        "expires_at": now + timedelta(seconds=ttl_seconds),
        "last_seen_at": None,
    }


def make_admin_session(token: str, email: str, clock: ManualClock, *, role: str = "admin",
                       ttl_seconds: int = 3600) -> dict:
    now = clock.now()
    return {
        "session_id": token,
        "admin_email": email,
        "role": role,
        "issued_at": now,
        "expires_at": now + timedelta(seconds=ttl_seconds),
        "last_seen_at": None,
    }


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def seeded_store(clock):
    """Store with two technicians, one admin and one pending job."""
    return InMemoryRecordStore({
        "technicians": [make_technician("tech_a"), make_technician("tech_b")],
        "jobs": [make_job("job_1")],
        "sessions": [
            make_session(TECH_TOKEN, "tech_a", clock),
            make_session(TECH_B_TOKEN, "tech_b", clock),
        ],
        "admin_sessions": [make_admin_session(ADMIN_TOKEN, "ops@example.com", clock)],
    })
