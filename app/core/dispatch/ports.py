# app/core/dispatch/ports.py
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional, Protocol, Sequence

from app.core.dispatch.domain import (
    Assignment,
    AssignmentState,
    CapacitySlot,
    GeoPoint,
    Job,
    JobLine,
    JobStatus,
    PayoutLedgerEntry,
    Pro,
    TeamSplit,
)


# ============================================================================
# STORES (asyncpg implementations live in app/infra/pg_*_repo_async.py)
# ============================================================================

class AsyncJobStore(Protocol):
    async def get(self, job_id: str) -> Optional[Job]: ...

    async def update_status_if(
        self, job_id: str, new_status: JobStatus, expected: Sequence[JobStatus]
    ) -> bool:
        """
        Conditional status write.

        True  => row was in one of ``expected`` and now has ``new_status``
        False => job missing or already moved on; nothing written
        """
        ...

    async def set_geo(self, job_id: str, lat: float, lng: float) -> None: ...
    async def set_estimated_payout(self, job_id: str, amount: Decimal) -> None: ...
    async def get_lines(self, job_id: str) -> list[JobLine]: ...
    async def get_team_split(self, job_id: str) -> Optional[TeamSplit]: ...


class AsyncProStore(Protocol):
    async def get(self, pro_id: str) -> Optional[Pro]: ...
    async def list_active(self) -> list[Pro]: ...


class AsyncAssignmentStore(Protocol):
    async def find(self, job_id: str, pro_id: str) -> Optional[Assignment]:
        """Newest assignment row for the pair (any state)."""
        ...

    async def insert_if_absent(
        self,
        job_id: str,
        pro_id: str,
        state: AssignmentState,
        *,
        distance_miles: Optional[float] = None,
        picked_by_rule: str = "manual_dispatch",
        co_owners: Optional[frozenset[str]] = None,
    ) -> tuple[Assignment, bool]:
        """
        Insert unless a non-declined assignment already exists for the pair.

        The lookup and the insert are serialized per job.
        Returns ``(assignment, created)``; when ``created`` is False the
        returned assignment is the existing row.

        With ``co_owners`` set, the insert is refused with
        ``JobAlreadyAssignedError`` when a pro outside ``co_owners`` already
        holds an accepted or completed assignment on the job.
        """
        ...

    async def compare_and_set(
        self,
        assign_id: str,
        expected: AssignmentState,
        target: AssignmentState,
        *,
        co_owners: Optional[frozenset[str]] = None,
    ) -> Optional[Assignment]:
        """
        Transition only if the row is still in ``expected``.

        Returns the updated row, or None when the predicate did not match.
        ``co_owners`` applies the same ownership check as ``insert_if_absent``.
        """
        ...

    async def owners(self, job_id: str) -> list[Assignment]:
        """Accepted and completed assignments on the job."""
        ...

    async def list_completed(self, pro_id: Optional[str] = None) -> list[Assignment]: ...


class AsyncCapacityStore(Protocol):
    async def list_slots(self, day: date, time_slot: str) -> list[CapacitySlot]:
        """Every capacity row for the date/slot (blocked and inactive included)."""
        ...

    async def count_bookings(self, day: date, time_slot: str) -> int:
        """Non-cancelled jobs booked into the date/slot."""
        ...


class AsyncPayoutLedgerStore(Protocol):
    async def exists(self, job_id: str, pro_id: str) -> bool: ...
    async def list_for_job(self, job_id: str) -> list[PayoutLedgerEntry]: ...

    async def insert(
        self, job_id: str, pro_id: str, amount: Decimal, *, note: str, source: str
    ) -> Optional[PayoutLedgerEntry]:
        """Insert a pending entry. None when an entry for the pair already exists."""
        ...


class AsyncSessionStore(Protocol):
    async def get_pro_id(self, session_id: str) -> Optional[str]: ...
    async def get_admin(self, session_id: str) -> Optional[str]: ...


# ============================================================================
# COLLABORATORS (advisory: failures degrade, never abort)
# ============================================================================

class ProNotifier(Protocol):
    async def notify(self, job_id: str, pro_id: str, notification_type: str) -> bool: ...


class Geocoder(Protocol):
    async def geocode(self, address: str) -> Optional[GeoPoint]: ...


class CategoryResolver(Protocol):
    async def category_for(self, service_id: str) -> Optional[str]: ...
