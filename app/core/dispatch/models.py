# app/core/dispatch/models.py
"""
Pydantic request/response models for the dispatch API.

These live *outside* the transport layer so the orchestrator's callers
share one typed contract per operation.  Required fields are validated at
the boundary; identifiers are trimmed and must be non-empty.
"""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def _strip_id(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    v = v.strip()
    if not v:
        raise ValueError("must not be blank")
    return v


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class FindMatchesRequest(BaseModel):
    job_id: str = Field(..., min_length=1, max_length=128)

    @field_validator("job_id")
    @classmethod
    def job_id_not_blank(cls, v: str) -> str:
        return _strip_id(v)


class SendOfferRequest(BaseModel):
    job_id: str = Field(..., min_length=1, max_length=128)
    pro_id: str = Field(..., min_length=1, max_length=128)
    distance_miles: Optional[float] = Field(default=None, ge=0)

    @field_validator("job_id", "pro_id")
    @classmethod
    def ids_not_blank(cls, v: str) -> str:
        return _strip_id(v)


class AssignRequest(BaseModel):
    """Admin manual assignment (skips the offer step)."""

    job_id: str = Field(..., min_length=1, max_length=128)
    pro_id: str = Field(..., min_length=1, max_length=128)

    @field_validator("job_id", "pro_id")
    @classmethod
    def ids_not_blank(cls, v: str) -> str:
        return _strip_id(v)


class PortalActionRequest(BaseModel):
    """Body for portal accept / decline / complete.

    ``pro_id`` is optional: the session identifies the pro.  When given it
    must match the session's pro (checked by the route).
    """

    job_id: str = Field(..., min_length=1, max_length=128)
    pro_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("job_id")
    @classmethod
    def job_id_not_blank(cls, v: str) -> str:
        return _strip_id(v)

    @field_validator("pro_id")
    @classmethod
    def pro_id_trimmed(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()


class AvailabilityQuery(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)

    @model_validator(mode="after")
    def coordinates_come_in_pairs(self) -> "AvailabilityQuery":
        if (self.lat is None) != (self.lng is None):
            raise ValueError("lat and lng must be given together")
        return self


class BackfillRequest(BaseModel):
    pro_id: Optional[str] = Field(default=None, max_length=128)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class OkResponse(BaseModel):
    ok: bool = True


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    error_code: str


class JobSummary(BaseModel):
    job_id: str
    status: str
    service_id: str = ""
    customer_name: str = ""
    service_address: str = ""
    service_city: str = ""
    service_state: str = ""
    geo_lat: Optional[float] = None
    geo_lng: Optional[float] = None
    start_iso: Optional[datetime] = None


class MatchItem(BaseModel):
    pro_id: str
    name: str = ""
    email: str = ""
    phone: str = ""
    distance_miles: Optional[float] = None
    max_radius: float
    max_jobs_per_day: Optional[int] = None
    city: str = ""
    state: str = ""


class FindMatchesResponse(BaseModel):
    ok: bool = True
    job: JobSummary
    matches: list[MatchItem] = Field(default_factory=list)
    total_matches: int = 0


class AssignmentView(BaseModel):
    assign_id: str
    job_id: str
    pro_id: str
    state: str
    distance_miles: Optional[float] = None
    picked_by_rule: str = ""
    offer_sent_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class SendOfferResponse(BaseModel):
    ok: bool = True
    offer: AssignmentView


class AssignResponse(BaseModel):
    ok: bool = True
    assignment: AssignmentView


class CompleteResponse(BaseModel):
    ok: bool = True
    payout: Optional[dict[str, Any]] = None


class OnMyWayResponse(BaseModel):
    ok: bool = True
    job_status_updated: bool = False


class AvailableSlotView(BaseModel):
    date: str
    time: str
    available: bool
    spots_remaining: int
    mode: str
    start_iso: str
    end_iso: str


class AvailabilityResponse(BaseModel):
    ok: bool = True
    available_slots: list[AvailableSlotView] = Field(default_factory=list)
    timezone: str


class BackfillResponse(BaseModel):
    ok: bool = True
    results: dict[str, int]
