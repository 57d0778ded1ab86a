# tests/conftest.py
"""Pytest configuration and fixtures"""
from __future__ import annotations

import itertools
import sys
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional, Sequence
from unittest.mock import AsyncMock

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.core.dispatch.domain import (  # noqa: E402
    Assignment,
    AssignmentState,
    CapacitySlot,
    GeoPoint,
    Job,
    JobLine,
    JobStatus,
    LedgerState,
    OWNING_STATES,
    PayoutLedgerEntry,
    Pro,
    TeamSplit,
    to_money,
)
from app.core.dispatch.errors import JobAlreadyAssignedError  # noqa: E402
from app.infra.db_resilience_async import RetryPolicy  # noqa: E402


# ============================================================================
# IN-MEMORY STORES
# ============================================================================

def _now() -> datetime:
    return datetime.now(timezone.utc)


class FakeJobStore:
    def __init__(self):
        self.jobs: dict[str, Job] = {}
        self.lines: dict[str, list[JobLine]] = {}
        self.splits: dict[str, TeamSplit] = {}
        self.status_calls: list[tuple[str, JobStatus, tuple[JobStatus, ...]]] = []
        self.fail_status_updates = False

    def add(self, job: Job, lines: Sequence[JobLine] = (), split: Optional[TeamSplit] = None) -> Job:
        self.jobs[job.job_id] = job
        self.lines[job.job_id] = list(lines)
        if split is not None:
            self.splits[job.job_id] = split
        return job

    async def get(self, job_id):
        return self.jobs.get(job_id)

    async def update_status_if(self, job_id, new_status, expected):
        self.status_calls.append((job_id, new_status, tuple(expected)))
        if self.fail_status_updates:
            raise RuntimeError("status write rejected")
        job = self.jobs.get(job_id)
        if job is None or job.status not in expected:
            return False
        job.status = new_status
        return True

    async def set_geo(self, job_id, lat, lng):
        job = self.jobs[job_id]
        job.geo_lat, job.geo_lng = lat, lng

    async def set_estimated_payout(self, job_id, amount):
        self.jobs[job_id].metadata["estimated_payout"] = str(amount)

    async def get_lines(self, job_id):
        return list(self.lines.get(job_id, []))

    async def get_team_split(self, job_id):
        return self.splits.get(job_id)


class FakeProStore:
    def __init__(self, pros: Sequence[Pro] = ()):
        self.pros: dict[str, Pro] = {p.pro_id: p for p in pros}

    def add(self, pro: Pro) -> Pro:
        self.pros[pro.pro_id] = pro
        return pro

    async def get(self, pro_id):
        return self.pros.get(pro_id)

    async def list_active(self):
        return [p for p in self.pros.values() if p.is_active]


class FakeAssignmentStore:
    """Newest-row-per-pair semantics matching the asyncpg repository."""

    def __init__(self):
        self.rows: list[Assignment] = []
        self._ids = itertools.count(1)
        # Queue of assign_ids whose next compare_and_set should lose
        self.lose_next_cas: list[str] = []

    def seed(self, job_id, pro_id, state: AssignmentState, **kwargs) -> Assignment:
        row = Assignment(
            assign_id=f"a{next(self._ids)}",
            job_id=job_id,
            pro_id=pro_id,
            state=state,
            created_at=_now(),
            **kwargs,
        )
        self.rows.append(row)
        return row

    def for_pair(self, job_id, pro_id) -> list[Assignment]:
        return [r for r in self.rows if r.job_id == job_id and r.pro_id == pro_id]

    async def find(self, job_id, pro_id):
        rows = self.for_pair(job_id, pro_id)
        return rows[-1] if rows else None

    def _check_ownership(self, job_id, pro_id, co_owners):
        allowed = set(co_owners) | {pro_id}
        for row in self.rows:
            if row.job_id == job_id and row.state in OWNING_STATES and row.pro_id not in allowed:
                raise JobAlreadyAssignedError("Job is already assigned to another pro", owner_pro_id=row.pro_id)

    async def owners(self, job_id):
        return [r for r in self.rows if r.job_id == job_id and r.state in OWNING_STATES]

    async def insert_if_absent(
        self, job_id, pro_id, state, *, distance_miles=None, picked_by_rule="manual_dispatch", co_owners=None
    ):
        active = [r for r in self.for_pair(job_id, pro_id) if r.state != AssignmentState.DECLINED]
        if active:
            return active[-1], False
        if co_owners is not None:
            self._check_ownership(job_id, pro_id, co_owners)
        stamp = {
            AssignmentState.OFFERED: "offer_sent_at",
            AssignmentState.ACCEPTED: "accepted_at",
        }[state]
        row = self.seed(
            job_id, pro_id, state,
            distance_miles=distance_miles,
            picked_by_rule=picked_by_rule,
            **{stamp: _now()},
        )
        return row, True

    async def compare_and_set(self, assign_id, expected, target, *, co_owners=None):
        if assign_id in self.lose_next_cas:
            self.lose_next_cas.remove(assign_id)
            return None
        for row in self.rows:
            if row.assign_id == assign_id:
                if co_owners is not None:
                    self._check_ownership(row.job_id, row.pro_id, co_owners)
                if row.state != expected:
                    return None
                row.state = target
                setattr(row, {
                    AssignmentState.ACCEPTED: "accepted_at",
                    AssignmentState.DECLINED: "declined_at",
                    AssignmentState.COMPLETED: "completed_at",
                }[target], _now())
                return row
        return None

    async def list_completed(self, pro_id=None):
        return [
            r for r in self.rows
            if r.state == AssignmentState.COMPLETED and (pro_id is None or r.pro_id == pro_id)
        ]


class FakeLedgerStore:
    def __init__(self):
        self.entries: dict[tuple[str, str], PayoutLedgerEntry] = {}
        self.insert_calls = 0

    async def exists(self, job_id, pro_id):
        return (job_id, pro_id) in self.entries

    async def list_for_job(self, job_id):
        return [e for (j, _), e in self.entries.items() if j == job_id]

    async def insert(self, job_id, pro_id, amount, *, note, source):
        self.insert_calls += 1
        key = (job_id, pro_id)
        if key in self.entries:
            return None
        # One solo entry per job, like the partial unique index
        if note == "solo" and any(e.note == "solo" for (j, _), e in self.entries.items() if j == job_id):
            return None
        entry = PayoutLedgerEntry(
            entry_id=f"e{len(self.entries) + 1}",
            pro_id=pro_id,
            job_id=job_id,
            amount=to_money(amount),
            state=LedgerState.PENDING,
            note=note,
            source=source,
            created_at=_now(),
        )
        self.entries[key] = entry
        return entry


class FakeCapacityStore:
    def __init__(self):
        self.slots: dict[tuple[date, str], list[CapacitySlot]] = {}
        self.bookings: dict[tuple[date, str], int] = {}

    def add_slot(self, slot: CapacitySlot) -> None:
        self.slots.setdefault((slot.date_local, slot.time_slot), []).append(slot)

    async def list_slots(self, day, time_slot):
        return list(self.slots.get((day, time_slot), []))

    async def count_bookings(self, day, time_slot):
        return self.bookings.get((day, time_slot), 0)


class FakeDb:
    """Stands in for ``db_conn``; records the autocommit flag of each borrow."""

    def __init__(self):
        self.conn = AsyncMock()
        self.borrows: list[bool] = []

    @asynccontextmanager
    async def __call__(self, autocommit: bool = True):
        self.borrows.append(autocommit)
        yield self.conn


class FakeSessionStore:
    def __init__(self, pros: Optional[dict[str, str]] = None, admins: Optional[dict[str, str]] = None):
        self.pros = pros or {}
        self.admins = admins or {}

    async def get_pro_id(self, session_id):
        return self.pros.get(session_id)

    async def get_admin(self, session_id):
        return self.admins.get(session_id)


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent: list[tuple[str, str, str]] = []
        self.fail = fail

    async def notify(self, job_id, pro_id, notification_type):
        if self.fail:
            raise RuntimeError("notifier down")
        self.sent.append((job_id, pro_id, notification_type))
        return True


class StaticGeocoder:
    def __init__(self, point: Optional[GeoPoint] = None):
        self.point = point
        self.calls: list[str] = []

    async def geocode(self, address):
        self.calls.append(address)
        return self.point


# ============================================================================
# FACTORIES
# ============================================================================

def make_job(job_id="job-1", status=JobStatus.PENDING_ASSIGN, **kwargs) -> Job:
    defaults = dict(
        service_id="tv-mount-65",
        customer_name="Dana Customer",
        service_address="1 Main St",
        service_city="Newark",
        service_state="NJ",
        service_zip="07102",
        geo_lat=40.7357,
        geo_lng=-74.1724,
    )
    defaults.update(kwargs)
    return Job(job_id=job_id, status=status, **defaults)


def make_pro(pro_id="pro-1", lat=40.7357, lng=-74.1724, **kwargs) -> Pro:
    defaults = dict(
        name=f"Pro {pro_id}",
        email=f"{pro_id}@example.com",
        phone="555-0100",
        geo_lat=lat,
        geo_lng=lng,
        service_radius_miles=50.0,
        max_jobs_per_day=5,
        is_active=True,
    )
    defaults.update(kwargs)
    return Pro(pro_id=pro_id, **defaults)


async def _no_sleep(_delay: float) -> None:
    return None


def fast_retry(max_attempts: int = 3) -> RetryPolicy:
    """Real retry policy without real sleeping."""
    return RetryPolicy(max_attempts=max_attempts, base_delay=0.1, sleep=_no_sleep)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def retry():
    return fast_retry()


@pytest.fixture
def job_store():
    return FakeJobStore()


@pytest.fixture
def pro_store():
    return FakeProStore()


@pytest.fixture
def assignment_store():
    return FakeAssignmentStore()


@pytest.fixture
def ledger_store():
    return FakeLedgerStore()


@pytest.fixture
def capacity_store():
    return FakeCapacityStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def money():
    return lambda value: Decimal(str(value)).quantize(Decimal("0.01"))


@pytest.fixture
def db():
    return FakeDb()
