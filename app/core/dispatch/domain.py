# app/core/dispatch/domain.py
"""
Dispatch domain types: jobs, pros, assignments, capacity and payouts.

Pure data — no I/O.  Repositories map database rows onto these
dataclasses and the dispatch services operate on them.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Optional


CENTS = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Coerce a numeric-ish value (float, str, int, Decimal, None) to cents."""
    if value is None or value == "":
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


# ============================================================================
# ENUMS
# ============================================================================

class JobStatus(str, Enum):
    PENDING_ASSIGN = "pending_assign"
    OFFER_SENT = "offer_sent"
    ACCEPTED = "accepted"
    EN_ROUTE = "en_route"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.CANCELLED)


class AssignmentState(str, Enum):
    OFFERED = "offered"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (AssignmentState.DECLINED, AssignmentState.COMPLETED)


# Allowed transitions: offered -> accepted | declined, accepted -> completed
TRANSITIONS: dict[AssignmentState, frozenset[AssignmentState]] = {
    AssignmentState.OFFERED: frozenset({AssignmentState.ACCEPTED, AssignmentState.DECLINED}),
    AssignmentState.ACCEPTED: frozenset({AssignmentState.COMPLETED}),
    AssignmentState.DECLINED: frozenset(),
    AssignmentState.COMPLETED: frozenset(),
}


def can_transition(current: AssignmentState, target: AssignmentState) -> bool:
    return target in TRANSITIONS[current]


# States in which a pro owns the job
OWNING_STATES: frozenset[AssignmentState] = frozenset({AssignmentState.ACCEPTED, AssignmentState.COMPLETED})


class LedgerState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"


class SplitMode(str, Enum):
    PERCENT = "percent"
    FLAT = "flat"


class PayoutRole(str, Enum):
    SOLO = "solo"
    PRIMARY = "primary"
    SECONDARY = "secondary"


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float

    @property
    def is_valid(self) -> bool:
        """Zero coordinates are treated as "never geocoded"."""
        return bool(self.lat) and bool(self.lng)


@dataclass
class JobLine:
    job_id: str
    service_id: str
    qty: int = 1
    unit_price: Decimal = Decimal("0.00")
    line_total: Decimal = Decimal("0.00")
    variant_code: str = "BASE"
    calc_pro_payout_total: Optional[Decimal] = None


@dataclass
class Job:
    job_id: str
    status: JobStatus
    service_id: str = ""
    customer_name: str = ""
    customer_email: Optional[str] = None
    service_address: str = ""
    service_city: str = ""
    service_state: str = ""
    service_zip: str = ""
    geo_lat: Optional[float] = None
    geo_lng: Optional[float] = None
    start_iso: Optional[datetime] = None
    end_iso: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @property
    def location(self) -> Optional[GeoPoint]:
        if self.geo_lat is None or self.geo_lng is None:
            return None
        point = GeoPoint(float(self.geo_lat), float(self.geo_lng))
        return point if point.is_valid else None

    @property
    def full_address(self) -> str:
        parts = [self.service_address, self.service_city, f"{self.service_state} {self.service_zip}".strip()]
        return ", ".join(p for p in parts if p)


@dataclass
class Pro:
    pro_id: str
    name: str = ""
    email: str = ""
    phone: str = ""
    geo_lat: Optional[float] = None
    geo_lng: Optional[float] = None
    service_radius_miles: Optional[float] = None
    max_jobs_per_day: Optional[int] = None
    is_active: bool = True
    city: str = ""
    state: str = ""

    @property
    def location(self) -> Optional[GeoPoint]:
        if self.geo_lat is None or self.geo_lng is None:
            return None
        point = GeoPoint(float(self.geo_lat), float(self.geo_lng))
        return point if point.is_valid else None


@dataclass
class Assignment:
    assign_id: str
    job_id: str
    pro_id: str
    state: AssignmentState
    distance_miles: Optional[float] = None
    picked_by_rule: str = "manual_dispatch"
    offer_sent_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class CapacitySlot:
    """A pro's capacity for one date/time-slot, joined with the pro's profile."""

    pro_id: str
    date_local: date
    time_slot: str
    max_jobs: int = 0
    booked_jobs: int = 0
    blocked: bool = False
    pro_active: bool = True
    pro_geo_lat: Optional[float] = None
    pro_geo_lng: Optional[float] = None
    pro_service_radius_miles: Optional[float] = None

    @property
    def spots(self) -> int:
        return max(0, (self.max_jobs or 0) - (self.booked_jobs or 0))


@dataclass
class TeamSplit:
    job_id: str
    primary_pro_id: str
    secondary_pro_id: Optional[str] = None
    split_mode: SplitMode = SplitMode.PERCENT
    primary_percent: Decimal = Decimal("50")
    primary_flat: Decimal = Decimal("0.00")
    secondary_flat: Decimal = Decimal("0.00")

    @property
    def is_team(self) -> bool:
        return bool(self.secondary_pro_id)

    def partners_of(self, pro_id: str) -> frozenset[str]:
        """Pros allowed to hold the job alongside ``pro_id`` (empty if not on the team)."""
        team = {self.primary_pro_id, self.secondary_pro_id} if self.is_team else set()
        if pro_id not in team:
            return frozenset()
        return frozenset(team - {pro_id})


@dataclass
class PayoutLedgerEntry:
    entry_id: str
    pro_id: str
    job_id: str
    amount: Decimal
    state: LedgerState = LedgerState.PENDING
    note: str = PayoutRole.SOLO.value
    source: str = ""
    created_at: Optional[datetime] = None
