# app/core/dispatch/assignments.py
"""
Assignment (offer) state machine.

    offered ──► accepted ──► completed
       │
       └──────► declined

``completed`` and ``declined`` are terminal.  The assignment row is the
unit of atomicity: every transition is a compare-and-swap on the row's
current state, and inserts are serialized per job by the store.  A job is
owned by one pro, or by the two pros its team split names: accepting a job
someone else owns is refused with ``JobAlreadyAssignedError``.  Job-status updates are best-effort follow-ups guarded by the
expected prior status; the assignment table stays authoritative for
"who owns this job".

Store calls run under the shared ``RetryPolicy``: transient store errors
are retried with backoff, domain errors surface immediately.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Sequence

from app.core.dispatch.domain import Assignment, AssignmentState, JobStatus, can_transition
from app.core.dispatch.errors import (
    AssignmentNotFoundError,
    ConflictError,
    DuplicateOfferError,
    InvalidTransitionError,
    OfferNotFoundError,
)
from app.core.dispatch.ports import AsyncAssignmentStore, AsyncJobStore
from app.infra.db_resilience_async import RetryPolicy, default_retry_policy
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

if TYPE_CHECKING:
    from app.core.dispatch.payouts import PayoutCalculator, PayoutRecord

logger = get_logger(__name__)

RULE_MANUAL_DISPATCH = "manual_dispatch"
RULE_DIRECT_ACCEPT = "direct_accept"
RULE_ADMIN_ASSIGN = "admin_assign"

# Re-reads after a lost compare-and-swap before giving up with a conflict
MAX_CAS_ROUNDS = 5


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of an accept/complete call."""

    assignment: Assignment
    changed: bool                 # False => idempotent no-op
    created: bool = False         # True => direct-accept insert
    job_status_updated: bool = False
    payout: Optional["PayoutRecord"] = None


class AssignmentStateMachine:
    def __init__(
        self,
        assignments: AsyncAssignmentStore,
        jobs: AsyncJobStore,
        payouts: Optional["PayoutCalculator"] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.assignments = assignments
        self.jobs = jobs
        self.payouts = payouts
        self.retry = retry or default_retry_policy()

    # ------------------------------------------------------------------
    # Offer
    # ------------------------------------------------------------------

    async def create_offer(
        self,
        job_id: str,
        pro_id: str,
        distance_miles: Optional[float] = None,
        *,
        picked_by_rule: str = RULE_MANUAL_DISPATCH,
    ) -> Assignment:
        """
        Record an ``offered`` assignment.

        Raises:
            DuplicateOfferError: a non-declined assignment already exists
                for the pair (a declined pair may be offered again).
        """
        assignment, created = await self.retry.run(
            lambda: self.assignments.insert_if_absent(
                job_id,
                pro_id,
                AssignmentState.OFFERED,
                distance_miles=distance_miles,
                picked_by_rule=picked_by_rule,
            ),
            name="create_offer",
        )

        if not created:
            AppMetrics.offer_duplicate()
            logger.info(
                f"Duplicate offer rejected (existing state={assignment.state.value})",
                extra={"job_id": job_id, "pro_id": pro_id, "assign_id": assignment.assign_id},
            )
            raise DuplicateOfferError(
                "Offer already exists for this job and pro",
                existing_state=assignment.state.value,
            )

        AppMetrics.offer_sent()
        logger.info(
            "Offer created",
            extra={"job_id": job_id, "pro_id": pro_id, "assign_id": assignment.assign_id},
        )
        return assignment

    # ------------------------------------------------------------------
    # Accept
    # ------------------------------------------------------------------

    async def accept(
        self,
        job_id: str,
        pro_id: str,
        distance_miles: Optional[float] = None,
        *,
        picked_by_rule: str = RULE_DIRECT_ACCEPT,
    ) -> TransitionResult:
        """
        Idempotent accept.

        offered → accepted; already accepted → no-op; no assignment →
        insert directly as accepted.  Declined or completed → conflict.

        Raises:
            JobAlreadyAssignedError: another pro owns the job and is not
                this pro's team partner.
        """
        co_owners = await self._co_owners(job_id, pro_id)
        result = await self.retry.run(
            lambda: self._accept_once(job_id, pro_id, distance_miles, picked_by_rule, co_owners),
            name="accept",
        )

        if not result.changed:
            return result

        updated = await self._set_job_status(
            job_id, JobStatus.ACCEPTED, (JobStatus.PENDING_ASSIGN, JobStatus.OFFER_SENT)
        )
        return TransitionResult(
            assignment=result.assignment,
            changed=True,
            created=result.created,
            job_status_updated=updated,
        )

    async def _accept_once(
        self,
        job_id: str,
        pro_id: str,
        distance_miles: Optional[float],
        picked_by_rule: str,
        co_owners: frozenset[str],
    ) -> TransitionResult:
        context = {"job_id": job_id, "pro_id": pro_id}

        for _ in range(MAX_CAS_ROUNDS):
            current = await self.assignments.find(job_id, pro_id)

            if current is None:
                row, created = await self.assignments.insert_if_absent(
                    job_id,
                    pro_id,
                    AssignmentState.ACCEPTED,
                    distance_miles=distance_miles,
                    picked_by_rule=picked_by_rule,
                    co_owners=co_owners,
                )
                if created:
                    AppMetrics.assignment_transition(AssignmentState.ACCEPTED.value, path="insert")
                    logger.info(
                        f"Assignment created directly as accepted ({picked_by_rule})",
                        extra={**context, "assign_id": row.assign_id},
                    )
                    return TransitionResult(assignment=row, changed=True, created=True)
                # Lost the insert race; evaluate the winner's row
                continue

            if current.state == AssignmentState.ACCEPTED:
                logger.info(
                    "Accept is a no-op (already accepted)",
                    extra={**context, "assign_id": current.assign_id},
                )
                return TransitionResult(assignment=current, changed=False)

            if not can_transition(current.state, AssignmentState.ACCEPTED):
                raise InvalidTransitionError(
                    f"Cannot accept an assignment in state '{current.state.value}'"
                )

            updated = await self.assignments.compare_and_set(
                current.assign_id,
                AssignmentState.OFFERED,
                AssignmentState.ACCEPTED,
                co_owners=co_owners,
            )
            if updated is not None:
                AppMetrics.assignment_transition(AssignmentState.ACCEPTED.value)
                logger.info("Offer accepted", extra={**context, "assign_id": updated.assign_id})
                return TransitionResult(assignment=updated, changed=True)

            AppMetrics.cas_lost("accept")
            logger.info("Accept lost a concurrent update, re-reading", extra=context)

        raise ConflictError("Assignment is changing concurrently, re-query and retry")

    async def _co_owners(self, job_id: str, pro_id: str) -> frozenset[str]:
        split = await self.retry.run(lambda: self.jobs.get_team_split(job_id), name="get_team_split")
        return split.partners_of(pro_id) if split is not None else frozenset()

    # ------------------------------------------------------------------
    # Decline
    # ------------------------------------------------------------------

    async def decline(self, job_id: str, pro_id: str) -> Assignment:
        """
        offered → declined.  Never touches the job's status.

        Raises:
            OfferNotFoundError: no assignment in ``offered`` state for the pair.
        """
        return await self.retry.run(lambda: self._decline_once(job_id, pro_id), name="decline")

    async def _decline_once(self, job_id: str, pro_id: str) -> Assignment:
        context = {"job_id": job_id, "pro_id": pro_id}

        for _ in range(MAX_CAS_ROUNDS):
            current = await self.assignments.find(job_id, pro_id)
            if current is None or current.state != AssignmentState.OFFERED:
                raise OfferNotFoundError("No active offer found for this job")

            updated = await self.assignments.compare_and_set(
                current.assign_id, AssignmentState.OFFERED, AssignmentState.DECLINED
            )
            if updated is not None:
                AppMetrics.assignment_transition(AssignmentState.DECLINED.value)
                logger.info("Offer declined", extra={**context, "assign_id": updated.assign_id})
                return updated

            AppMetrics.cas_lost("decline")

        raise ConflictError("Assignment is changing concurrently, re-query and retry")

    # ------------------------------------------------------------------
    # Complete
    # ------------------------------------------------------------------

    async def complete(self, job_id: str, pro_id: str) -> TransitionResult:
        """
        accepted → completed, then best-effort job status and the payout
        ledger write for this pro.

        Raises:
            AssignmentNotFoundError: no assignment for the pair.
            InvalidTransitionError: assignment is not ``accepted``.
        """
        # Rows whose completing CAS failed mid-flight; a later attempt that
        # finds them completed treats it as this call's own write.
        in_doubt: set[str] = set()
        assignment = await self.retry.run(
            lambda: self._complete_once(job_id, pro_id, in_doubt), name="complete"
        )

        updated = await self._set_job_status(
            job_id, JobStatus.COMPLETED, (JobStatus.ACCEPTED, JobStatus.EN_ROUTE)
        )

        payout = None
        if self.payouts is not None:
            # Exactly one CAS winner reaches this point per (job, pro).
            # A failed ledger write leaves the completion in place; backfill picks it up.
            try:
                payout = await self.payouts.record_for_completion(job_id, pro_id)
            except Exception as exc:
                AppMetrics.database_error("ledger_write")
                logger.error(
                    f"Ledger write after completion failed: {exc}",
                    extra={"job_id": job_id, "pro_id": pro_id},
                    exc_info=True,
                )

        return TransitionResult(
            assignment=assignment,
            changed=True,
            job_status_updated=updated,
            payout=payout,
        )

    async def _complete_once(self, job_id: str, pro_id: str, in_doubt: set[str]) -> Assignment:
        context = {"job_id": job_id, "pro_id": pro_id}

        for _ in range(MAX_CAS_ROUNDS):
            current = await self.assignments.find(job_id, pro_id)
            if current is None:
                raise AssignmentNotFoundError("No assignment found for this job")

            if current.state == AssignmentState.COMPLETED and current.assign_id in in_doubt:
                logger.info(
                    "Completion from an interrupted attempt was applied",
                    extra={**context, "assign_id": current.assign_id},
                )
                return current

            if current.state != AssignmentState.ACCEPTED:
                raise InvalidTransitionError(
                    f"Cannot complete an assignment in state '{current.state.value}'"
                )

            try:
                updated = await self.assignments.compare_and_set(
                    current.assign_id, AssignmentState.ACCEPTED, AssignmentState.COMPLETED
                )
            except Exception:
                in_doubt.add(current.assign_id)
                raise
            if updated is not None:
                AppMetrics.assignment_transition(AssignmentState.COMPLETED.value)
                logger.info("Assignment completed", extra={**context, "assign_id": updated.assign_id})
                return updated

            AppMetrics.cas_lost("complete")

        raise ConflictError("Assignment is changing concurrently, re-query and retry")

    # ------------------------------------------------------------------
    # En route
    # ------------------------------------------------------------------

    async def mark_en_route(self, job_id: str, pro_id: str) -> bool:
        """
        accepted → en_route on the job, for the pro holding it.

        Returns False when the job was not in ``accepted`` (already en
        route, or moved on).  The assignment itself does not change.

        Raises:
            AssignmentNotFoundError: the pro has no accepted assignment.
        """
        current = await self.retry.run(
            lambda: self.assignments.find(job_id, pro_id), name="find_assignment"
        )
        if current is None or current.state != AssignmentState.ACCEPTED:
            raise AssignmentNotFoundError("Job not found or not assigned to you")

        updated = await self.retry.run(
            lambda: self.jobs.update_status_if(job_id, JobStatus.EN_ROUTE, (JobStatus.ACCEPTED,)),
            name="job_en_route",
        )
        logger.info(
            "Pro is on the way" if updated else "Job status left as is (not accepted)",
            extra={"job_id": job_id, "pro_id": pro_id, "assign_id": current.assign_id},
        )
        return updated

    # ------------------------------------------------------------------
    # Job status (best-effort)
    # ------------------------------------------------------------------

    async def _set_job_status(
        self, job_id: str, new_status: JobStatus, expected: Sequence[JobStatus]
    ) -> bool:
        """Conditional job-status write. Failures are logged, never retried or raised."""
        try:
            updated = await self.jobs.update_status_if(job_id, new_status, expected)
        except Exception as exc:
            AppMetrics.database_error("job_status_update")
            logger.warning(
                f"Job status update to {new_status.value} failed: {exc}",
                extra={"job_id": job_id},
            )
            return False

        if not updated:
            logger.info(
                f"Job status not moved to {new_status.value} "
                f"(not in {', '.join(s.value for s in expected)})",
                extra={"job_id": job_id},
            )
        return updated
