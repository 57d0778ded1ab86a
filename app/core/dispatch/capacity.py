# app/core/dispatch/capacity.py
"""
Capacity-aware availability.

Two modes, decided once per (date, time slot):

- **intelligent**: per-pro capacity rows exist for the slot.  Remaining
  spots are summed over active, non-blocked pros (optionally restricted to
  pros whose service radius covers the customer location).
- **fallback**: no capacity rows at all.  A fixed city-wide capacity per
  slot is reduced by the number of jobs already booked into it.

``availability()`` walks business hours over a date range and reports
each bookable slot.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo

from app.config import settings
from app.core.dispatch.domain import CapacitySlot, GeoPoint
from app.core.dispatch.errors import ValidationError
from app.core.dispatch.geo import within_radius
from app.core.dispatch.ports import AsyncCapacityStore
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Business hours
# ---------------------------------------------------------------------------

MORNING = "9:00 AM - 12:00 PM"
MIDDAY = "12:00 PM - 3:00 PM"
AFTERNOON = "3:00 PM - 6:00 PM"

# date.weekday(): Monday == 0
BUSINESS_HOURS: dict[int, tuple[str, ...]] = {
    0: (MORNING, MIDDAY, AFTERNOON),
    1: (MORNING, MIDDAY, AFTERNOON),
    2: (MORNING, MIDDAY, AFTERNOON),
    3: (MORNING, MIDDAY, AFTERNOON),
    4: (MORNING, MIDDAY, AFTERNOON),
    5: (MORNING, MIDDAY),
    6: (),  # Closed
}


def business_slots(day: date) -> tuple[str, ...]:
    return BUSINESS_HOURS[day.weekday()]


def _parse_clock(text: str) -> time:
    """``"9:00 AM"`` → ``time(9, 0)``; ``"12:00 PM"`` → ``time(12, 0)``."""
    clock, _, modifier = text.strip().partition(" ")
    hours_text, _, minutes_text = clock.partition(":")
    hours = int(hours_text)
    minutes = int(minutes_text or "0")

    modifier = modifier.strip().upper()
    if modifier == "PM" and hours != 12:
        hours += 12
    elif modifier == "AM" and hours == 12:
        hours = 0
    return time(hours, minutes)


def slot_bounds(day: date, time_slot: str, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Timezone-aware start/end of a ``"H:MM AM - H:MM PM"`` slot on ``day``."""
    start_text, _, end_text = time_slot.partition(" - ")
    start = datetime.combine(day, _parse_clock(start_text), tzinfo=tz)
    end = datetime.combine(day, _parse_clock(end_text or start_text), tzinfo=tz)
    return start, end


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class CapacityMode(str, Enum):
    INTELLIGENT = "intelligent"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class SlotCapacity:
    day: date
    time_slot: str
    spots_remaining: int
    pros_considered: int
    total_capacity: int
    mode: CapacityMode

    @property
    def available(self) -> bool:
        return self.spots_remaining > 0


@dataclass(frozen=True)
class AvailableSlot:
    date: str
    time: str
    available: bool
    spots_remaining: int
    mode: str
    start_iso: str
    end_iso: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Allocator
# ---------------------------------------------------------------------------

class CapacityAllocator:
    """Remaining job slots per date/time slot across active pros."""

    def __init__(
        self,
        store: AsyncCapacityStore,
        *,
        fallback_capacity: Optional[int] = None,
        timezone: Optional[str] = None,
        days_ahead: Optional[int] = None,
        min_advance_hours: Optional[int] = None,
    ):
        self.store = store
        self.fallback_capacity = (
            settings.fallback_capacity_per_slot if fallback_capacity is None else fallback_capacity
        )
        self.tz = ZoneInfo(timezone or settings.business_timezone)
        self.days_ahead = settings.availability_days_ahead if days_ahead is None else days_ahead
        self.min_advance = timedelta(
            hours=settings.availability_min_advance_hours if min_advance_hours is None else min_advance_hours
        )

    async def remaining(
        self,
        day: date,
        time_slot: str,
        location: Optional[GeoPoint] = None,
    ) -> SlotCapacity:
        rows = await self.store.list_slots(day, time_slot)

        if rows:
            return self._intelligent(day, time_slot, rows, location)

        booked = await self.store.count_bookings(day, time_slot)
        return SlotCapacity(
            day=day,
            time_slot=time_slot,
            spots_remaining=max(0, self.fallback_capacity - booked),
            pros_considered=0,
            total_capacity=self.fallback_capacity,
            mode=CapacityMode.FALLBACK,
        )

    def _intelligent(
        self,
        day: date,
        time_slot: str,
        rows: list[CapacitySlot],
        location: Optional[GeoPoint],
    ) -> SlotCapacity:
        if location is not None and not location.is_valid:
            location = None

        spots = 0
        total = 0
        considered = 0

        for row in rows:
            if not row.pro_active or row.blocked:
                continue

            pro_location = None
            if row.pro_geo_lat is not None and row.pro_geo_lng is not None:
                candidate = GeoPoint(float(row.pro_geo_lat), float(row.pro_geo_lng))
                pro_location = candidate if candidate.is_valid else None

            # Pros without a location are counted unfiltered
            if not within_radius(location, pro_location, row.pro_service_radius_miles):
                continue

            considered += 1
            spots += row.spots
            total += max(0, row.max_jobs or 0)

        return SlotCapacity(
            day=day,
            time_slot=time_slot,
            spots_remaining=spots,
            pros_considered=considered,
            total_capacity=total,
            mode=CapacityMode.INTELLIGENT,
        )

    async def availability(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        location: Optional[GeoPoint] = None,
        now: Optional[datetime] = None,
    ) -> list[AvailableSlot]:
        """
        Bookable slots between ``start_date`` and ``end_date`` (inclusive).

        Closed days and slots starting sooner than the minimum advance
        window produce no entries.  The range is capped at ``days_ahead``
        days from its start.
        """
        now = (now or datetime.now(self.tz)).astimezone(self.tz)
        earliest = now + self.min_advance

        start_date = start_date or now.date()
        end_date = end_date or (start_date + timedelta(days=self.days_ahead - 1))
        if end_date < start_date:
            raise ValidationError("end_date must not be before start_date")

        last_day = start_date + timedelta(days=self.days_ahead - 1)
        if end_date > last_day:
            logger.info(f"Availability range capped at {self.days_ahead} days (requested through {end_date})")
            end_date = last_day

        slots: list[AvailableSlot] = []
        day = start_date
        while day <= end_date:
            for time_slot in business_slots(day):
                start, end = slot_bounds(day, time_slot, self.tz)
                if start < earliest:
                    continue

                capacity = await self.remaining(day, time_slot, location)
                slots.append(AvailableSlot(
                    date=day.isoformat(),
                    time=time_slot,
                    available=capacity.available,
                    spots_remaining=capacity.spots_remaining,
                    mode=capacity.mode.value,
                    start_iso=start.isoformat(),
                    end_iso=end.isoformat(),
                ))
            day += timedelta(days=1)

        return slots
