# app/core/dispatch/geo.py
"""
Geo-matching of jobs to pros.

Pure functions over provided data: no I/O, no clock.  Distances are
great-circle (Haversine) in statute miles.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Iterable, Optional

from app.core.dispatch.domain import GeoPoint, Pro

__all__ = [
    "EARTH_RADIUS_MILES", "DEFAULT_SERVICE_RADIUS_MILES",
    "ProMatch",
    "haversine_miles", "distance_between", "within_radius", "match",
]

EARTH_RADIUS_MILES = 3959.0
DEFAULT_SERVICE_RADIUS_MILES = 50.0


@dataclass(frozen=True)
class ProMatch:
    """One eligible pro, annotated with distance from the job."""

    pro_id: str
    name: str
    email: str
    phone: str
    distance_miles: Optional[float]  # None when the job has no location
    max_radius: float
    max_jobs_per_day: Optional[int]
    city: str = ""
    state: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Haversine distance
# ---------------------------------------------------------------------------

def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in miles."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_MILES * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_between(a: GeoPoint, b: GeoPoint) -> float:
    return haversine_miles(a.lat, a.lng, b.lat, b.lng)


def _radius_of(radius: Optional[float]) -> float:
    # Unset and non-positive radii both mean "use the default"
    return float(radius) if radius else DEFAULT_SERVICE_RADIUS_MILES


def within_radius(
    origin: Optional[GeoPoint],
    center: Optional[GeoPoint],
    radius_miles: Optional[float],
) -> bool:
    """True when ``origin`` lies within ``radius_miles`` of ``center``.

    Either point missing → True: location filtering degrades to "no filter"
    rather than excluding (capacity counting relies on this).
    """
    if origin is None or center is None:
        return True
    return distance_between(origin, center) <= _radius_of(radius_miles)


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

def _to_match(pro: Pro, distance: Optional[float]) -> ProMatch:
    return ProMatch(
        pro_id=pro.pro_id,
        name=pro.name,
        email=pro.email,
        phone=pro.phone,
        distance_miles=round(distance, 2) if distance is not None else None,
        max_radius=_radius_of(pro.service_radius_miles),
        max_jobs_per_day=pro.max_jobs_per_day,
        city=pro.city,
        state=pro.state,
    )


def match(job_location: Optional[GeoPoint], candidates: Iterable[Pro]) -> list[ProMatch]:
    """
    Rank candidate pros for a job.

    Eligible: active, valid (non-zero) location, and distance within the
    pro's own service radius (default 50 miles).  Results are nearest-first;
    the sort is stable so equal distances keep input order.

    A job without a usable location cannot be ranked: every active pro with
    a valid location is returned in input order with ``distance_miles=None``.
    """
    if job_location is not None and not job_location.is_valid:
        job_location = None

    ranked: list[tuple[float, ProMatch]] = []
    unranked: list[ProMatch] = []

    for pro in candidates:
        if not pro.is_active:
            continue
        pro_location = pro.location
        if pro_location is None:
            continue

        if job_location is None:
            unranked.append(_to_match(pro, None))
            continue

        distance = distance_between(job_location, pro_location)
        if distance <= _radius_of(pro.service_radius_miles):
            ranked.append((distance, _to_match(pro, distance)))

    # Exact distances for ordering, rounded ones for display
    ranked.sort(key=lambda item: item[0])
    return [m for _, m in ranked] + unranked
