# app/core/dispatch/orchestrator.py
"""
Dispatch orchestrator — the single entry point the HTTP layer talks to.

Composes matching, the assignment state machine, payouts and capacity,
and hands events to the notification collaborator.  Collaborator calls
(geocoding, notifications) are advisory: their failure is logged and the
owning operation still succeeds.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from app.core.dispatch.assignments import RULE_ADMIN_ASSIGN, AssignmentStateMachine, TransitionResult
from app.core.dispatch.capacity import AvailableSlot, CapacityAllocator
from app.core.dispatch.domain import Assignment, GeoPoint, Job, JobStatus, Pro
from app.core.dispatch.errors import InvalidTransitionError, NotFoundError
from app.core.dispatch.geo import ProMatch, distance_between, match
from app.core.dispatch.payouts import BackfillReport, PayoutCalculator
from app.core.dispatch.ports import AsyncJobStore, AsyncProStore, Geocoder, ProNotifier
from app.infra.db_resilience_async import RetryPolicy, default_retry_policy
from app.infra.logging_config import LogContext, get_logger, mask_coordinates
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

NOTIFY_NEW_OFFER = "new_job_assignment"
NOTIFY_ASSIGNED = "job_assigned"
NOTIFY_ACCEPTED = "pro_accepted"
NOTIFY_DECLINED = "pro_declined"
NOTIFY_EN_ROUTE = "pro_en_route"
NOTIFY_COMPLETED = "job_completed"


@dataclass(frozen=True)
class MatchResult:
    job: Job
    matches: list[ProMatch]

    @property
    def total_matches(self) -> int:
        return len(self.matches)


class DispatchOrchestrator:
    def __init__(
        self,
        jobs: AsyncJobStore,
        pros: AsyncProStore,
        state_machine: AssignmentStateMachine,
        payouts: PayoutCalculator,
        capacity: CapacityAllocator,
        notifier: Optional[ProNotifier] = None,
        geocoder: Optional[Geocoder] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.jobs = jobs
        self.pros = pros
        self.state_machine = state_machine
        self.payouts = payouts
        self.capacity = capacity
        self.notifier = notifier
        self.geocoder = geocoder
        self.retry = retry or default_retry_policy()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _require_job(self, job_id: str) -> Job:
        job = await self.retry.run(lambda: self.jobs.get(job_id), name="get_job")
        if job is None:
            raise NotFoundError("Job not found")
        return job

    async def _require_pro(self, pro_id: str) -> Pro:
        pro = await self.retry.run(lambda: self.pros.get(pro_id), name="get_pro")
        if pro is None:
            raise NotFoundError("Pro not found")
        return pro

    async def _require_open_job(self, job_id: str) -> Job:
        job = await self._require_job(job_id)
        if job.status.is_terminal:
            raise InvalidTransitionError(f"Job is already {job.status.value}")
        return job

    @staticmethod
    def _distance(job: Job, pro: Optional[Pro]) -> Optional[float]:
        """Pro-to-job miles (2 dp) when both sides are geocoded."""
        if pro is None or job.location is None or pro.location is None:
            return None
        return round(distance_between(job.location, pro.location), 2)

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    async def find_matches(self, job_id: str) -> MatchResult:
        """Rank active pros for a job. No state change beyond caching geocodes."""
        job = await self._require_job(job_id)
        location = job.location or await self._geocode_job(job)

        candidates = await self.retry.run(self.pros.list_active, name="list_active_pros")
        with AppMetrics.track_operation_time("match"):
            matches = match(location, candidates)
        AppMetrics.matches_found(len(matches))

        logger.info(
            f"Found {len(matches)} matches among {len(candidates)} active pros"
            f"{'' if location else ' (unranked: job has no location)'}",
            extra={"job_id": job_id},
        )
        return MatchResult(job=job, matches=matches)

    async def _geocode_job(self, job: Job) -> Optional[GeoPoint]:
        if self.geocoder is None or not job.full_address:
            return None

        try:
            point = await self.geocoder.geocode(job.full_address)
        except Exception as exc:
            logger.warning(f"Geocoding failed: {exc}", extra={"job_id": job.job_id})
            return None

        if point is None or not point.is_valid:
            return None

        job.geo_lat, job.geo_lng = point.lat, point.lng
        try:
            await self.jobs.set_geo(job.job_id, point.lat, point.lng)
        except Exception as exc:
            logger.warning(f"Could not persist geocode: {exc}", extra={"job_id": job.job_id})
        else:
            logger.info(
                f"Job geocoded to ({mask_coordinates(point.lat, point.lng)})",
                extra={"job_id": job.job_id},
            )
        return point

    # ------------------------------------------------------------------
    # Offers and assignment
    # ------------------------------------------------------------------

    async def send_offer(
        self, job_id: str, pro_id: str, distance_miles: Optional[float] = None
    ) -> Assignment:
        """Offer a job to a pro; 404 for unknown job/pro, 409 on duplicate."""
        log = LogContext(logger, job_id=job_id, pro_id=pro_id)

        job = await self._require_open_job(job_id)
        await self._require_pro(pro_id)

        offer = await self.state_machine.create_offer(job_id, pro_id, distance_miles)

        try:
            flipped = await self.jobs.update_status_if(
                job_id, JobStatus.OFFER_SENT, (JobStatus.PENDING_ASSIGN,)
            )
            if not flipped:
                log.info(f"Job status left as is (was {job.status.value})")
        except Exception as exc:
            log.warning(f"Job status update to offer_sent failed: {exc}")

        await self._notify(job_id, pro_id, NOTIFY_NEW_OFFER)
        return offer

    async def assign(self, job_id: str, pro_id: str) -> Assignment:
        """Admin manual assignment: record the pro as accepted directly."""
        job = await self._require_open_job(job_id)
        pro = await self._require_pro(pro_id)

        result = await self.state_machine.accept(
            job_id, pro_id, self._distance(job, pro), picked_by_rule=RULE_ADMIN_ASSIGN
        )
        if result.changed:
            await self._notify(job_id, pro_id, NOTIFY_ASSIGNED)
        return result.assignment

    # ------------------------------------------------------------------
    # Portal actions
    # ------------------------------------------------------------------

    async def accept(self, job_id: str, pro_id: str) -> TransitionResult:
        """Pro accepts an offer, or takes the job directly (distance recorded)."""
        job = await self._require_open_job(job_id)
        pro = await self.retry.run(lambda: self.pros.get(pro_id), name="get_pro")
        result = await self.state_machine.accept(job_id, pro_id, self._distance(job, pro))
        if result.changed:
            await self._notify(job_id, pro_id, NOTIFY_ACCEPTED)
        return result

    async def decline(self, job_id: str, pro_id: str) -> Assignment:
        await self._require_job(job_id)
        assignment = await self.state_machine.decline(job_id, pro_id)
        await self._notify(job_id, pro_id, NOTIFY_DECLINED)
        return assignment

    async def on_my_way(self, job_id: str, pro_id: str) -> bool:
        """
        Pro heading to the job: accepted → en_route, then tell the customer
        flow.  Repeating the call is harmless and notifies only once.
        """
        await self._require_open_job(job_id)
        updated = await self.state_machine.mark_en_route(job_id, pro_id)
        if updated:
            await self._notify(job_id, pro_id, NOTIFY_EN_ROUTE)
        return updated

    async def complete(self, job_id: str, pro_id: str) -> TransitionResult:
        # A completed job may still be finished by the second pro of a team
        job = await self._require_job(job_id)
        if job.status == JobStatus.CANCELLED:
            raise InvalidTransitionError("Job is already cancelled")
        result = await self.state_machine.complete(job_id, pro_id)
        await self._notify(job_id, pro_id, NOTIFY_COMPLETED)
        return result

    # ------------------------------------------------------------------
    # Capacity and payouts
    # ------------------------------------------------------------------

    async def availability(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        location: Optional[GeoPoint] = None,
        now: Optional[datetime] = None,
    ) -> list[AvailableSlot]:
        return await self.retry.run(
            lambda: self.capacity.availability(start_date, end_date, location, now),
            name="availability",
        )

    async def backfill_payouts(self, pro_id: Optional[str] = None) -> BackfillReport:
        return await self.payouts.backfill(pro_id)

    # ------------------------------------------------------------------
    # Notifications (advisory)
    # ------------------------------------------------------------------

    async def _notify(self, job_id: str, pro_id: str, notification_type: str) -> bool:
        if self.notifier is None:
            return False
        try:
            delivered = await self.notifier.notify(job_id, pro_id, notification_type)
        except Exception as exc:
            AppMetrics.notification_failed(notification_type)
            logger.warning(
                f"Notification {notification_type} failed: {exc}",
                extra={"job_id": job_id, "pro_id": pro_id},
            )
            return False
        return bool(delivered)
