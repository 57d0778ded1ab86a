# tests/test_orchestrator.py
"""Tests for app/core/dispatch/orchestrator.py — end-to-end dispatch flows over in-memory stores."""
from decimal import Decimal

import pytest

from app.core.dispatch.assignments import AssignmentStateMachine
from app.core.dispatch.capacity import CapacityAllocator
from app.core.dispatch.domain import AssignmentState, GeoPoint, JobStatus
from app.core.dispatch.errors import (
    AssignmentNotFoundError,
    DuplicateOfferError,
    InvalidTransitionError,
    JobAlreadyAssignedError,
    NotFoundError,
    OfferNotFoundError,
)
from app.core.dispatch.orchestrator import (
    NOTIFY_ACCEPTED,
    NOTIFY_ASSIGNED,
    NOTIFY_COMPLETED,
    NOTIFY_DECLINED,
    NOTIFY_EN_ROUTE,
    NOTIFY_NEW_OFFER,
    DispatchOrchestrator,
)
from app.core.dispatch.payouts import PayoutCalculator
from conftest import FakeProStore, RecordingNotifier, StaticGeocoder, make_job, make_pro


def build(job_store, assignment_store, ledger_store, capacity_store, retry,
          pros=(), notifier=None, geocoder=None):
    payouts = PayoutCalculator(job_store, assignment_store, ledger_store, retry=retry)
    machine = AssignmentStateMachine(assignment_store, job_store, payouts=payouts, retry=retry)
    capacity = CapacityAllocator(
        capacity_store, fallback_capacity=3, timezone="America/New_York", days_ahead=30, min_advance_hours=24
    )
    return DispatchOrchestrator(
        jobs=job_store,
        pros=FakeProStore(pros),
        state_machine=machine,
        payouts=payouts,
        capacity=capacity,
        notifier=notifier,
        geocoder=geocoder,
        retry=retry,
    )


@pytest.fixture
def orchestrator(job_store, assignment_store, ledger_store, capacity_store, retry, notifier):
    orch = build(
        job_store, assignment_store, ledger_store, capacity_store, retry,
        pros=[make_pro("pro-1"), make_pro("pro-2", lat=40.80)],
        notifier=notifier,
    )
    job_store.add(make_job())
    return orch


class TestFindMatches:
    @pytest.mark.asyncio
    async def test_ranks_active_pros(self, orchestrator):
        result = await orchestrator.find_matches("job-1")

        assert result.job.job_id == "job-1"
        assert [m.pro_id for m in result.matches] == ["pro-1", "pro-2"]
        assert result.total_matches == 2

    @pytest.mark.asyncio
    async def test_unknown_job(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.find_matches("nope")

    @pytest.mark.asyncio
    async def test_geocodes_and_persists(self, job_store, assignment_store, ledger_store, capacity_store, retry):
        geocoder = StaticGeocoder(GeoPoint(40.7357, -74.1724))
        orch = build(
            job_store, assignment_store, ledger_store, capacity_store, retry,
            pros=[make_pro("pro-1")], geocoder=geocoder,
        )
        job_store.add(make_job(geo_lat=None, geo_lng=None))

        result = await orch.find_matches("job-1")

        assert geocoder.calls == ["1 Main St, Newark, NJ 07102"]
        assert job_store.jobs["job-1"].geo_lat == 40.7357
        assert result.matches[0].distance_miles == 0.0

    @pytest.mark.asyncio
    async def test_geocode_failure_returns_unranked(self, job_store, assignment_store, ledger_store, capacity_store, retry):
        class BrokenGeocoder:
            async def geocode(self, address):
                raise RuntimeError("geocoder unavailable")

        orch = build(
            job_store, assignment_store, ledger_store, capacity_store, retry,
            pros=[make_pro("pro-1"), make_pro("pro-2")], geocoder=BrokenGeocoder(),
        )
        job_store.add(make_job(geo_lat=None, geo_lng=None))

        result = await orch.find_matches("job-1")

        assert [m.pro_id for m in result.matches] == ["pro-1", "pro-2"]
        assert all(m.distance_miles is None for m in result.matches)

    @pytest.mark.asyncio
    async def test_no_state_change(self, orchestrator, job_store, assignment_store):
        await orchestrator.find_matches("job-1")

        assert job_store.status_calls == []
        assert assignment_store.rows == []


class TestSendOffer:
    @pytest.mark.asyncio
    async def test_creates_offer_and_flips_status(self, orchestrator, job_store, notifier):
        offer = await orchestrator.send_offer("job-1", "pro-1", distance_miles=3.2)

        assert offer.state == AssignmentState.OFFERED
        assert offer.distance_miles == 3.2
        assert job_store.jobs["job-1"].status == JobStatus.OFFER_SENT
        assert notifier.sent == [("job-1", "pro-1", NOTIFY_NEW_OFFER)]

    @pytest.mark.asyncio
    async def test_second_offer_to_other_pro_keeps_status(self, orchestrator, job_store):
        await orchestrator.send_offer("job-1", "pro-1")
        await orchestrator.send_offer("job-1", "pro-2")

        assert job_store.jobs["job-1"].status == JobStatus.OFFER_SENT

    @pytest.mark.asyncio
    async def test_duplicate_is_conflict(self, orchestrator, notifier):
        await orchestrator.send_offer("job-1", "pro-1")

        with pytest.raises(DuplicateOfferError) as exc_info:
            await orchestrator.send_offer("job-1", "pro-1")

        assert exc_info.value.status_code == 409
        assert len(notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_job_and_pro(self, orchestrator):
        with pytest.raises(NotFoundError, match="Job not found"):
            await orchestrator.send_offer("ghost", "pro-1")
        with pytest.raises(NotFoundError, match="Pro not found"):
            await orchestrator.send_offer("job-1", "ghost")

    @pytest.mark.asyncio
    async def test_terminal_job_rejected(self, orchestrator, job_store, assignment_store):
        job_store.jobs["job-1"].status = JobStatus.CANCELLED

        with pytest.raises(InvalidTransitionError):
            await orchestrator.send_offer("job-1", "pro-1")
        assert assignment_store.rows == []

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_fail_offer(self, job_store, assignment_store, ledger_store, capacity_store, retry):
        orch = build(
            job_store, assignment_store, ledger_store, capacity_store, retry,
            pros=[make_pro("pro-1")], notifier=RecordingNotifier(fail=True),
        )
        job_store.add(make_job())

        offer = await orch.send_offer("job-1", "pro-1")

        assert offer.state == AssignmentState.OFFERED

    @pytest.mark.asyncio
    async def test_status_write_failure_does_not_fail_offer(self, orchestrator, job_store, assignment_store):
        job_store.fail_status_updates = True

        await orchestrator.send_offer("job-1", "pro-1")

        assert len(assignment_store.rows) == 1


class TestAssign:
    @pytest.mark.asyncio
    async def test_direct_assignment(self, orchestrator, job_store, notifier):
        assignment = await orchestrator.assign("job-1", "pro-1")

        assert assignment.state == AssignmentState.ACCEPTED
        assert assignment.picked_by_rule == "admin_assign"
        assert job_store.jobs["job-1"].status == JobStatus.ACCEPTED
        assert notifier.sent == [("job-1", "pro-1", NOTIFY_ASSIGNED)]

    @pytest.mark.asyncio
    async def test_assign_accepts_open_offer(self, orchestrator, assignment_store):
        offer = await orchestrator.send_offer("job-1", "pro-1")

        assignment = await orchestrator.assign("job-1", "pro-1")

        assert assignment.assign_id == offer.assign_id
        assert len(assignment_store.rows) == 1

    @pytest.mark.asyncio
    async def test_repeat_assign_is_quiet(self, orchestrator, notifier):
        await orchestrator.assign("job-1", "pro-1")
        await orchestrator.assign("job-1", "pro-1")

        assert [n[2] for n in notifier.sent] == [NOTIFY_ASSIGNED]


class TestPortalFlow:
    @pytest.mark.asyncio
    async def test_offer_accept_complete(self, orchestrator, job_store, ledger_store, notifier):
        job_store.jobs["job-1"].metadata["estimated_payout"] = "95"

        await orchestrator.send_offer("job-1", "pro-1")
        accepted = await orchestrator.accept("job-1", "pro-1")
        completed = await orchestrator.complete("job-1", "pro-1")

        assert accepted.changed is True
        assert completed.assignment.state == AssignmentState.COMPLETED
        assert job_store.jobs["job-1"].status == JobStatus.COMPLETED
        assert completed.payout.amount == Decimal("95.00")
        assert ledger_store.entries[("job-1", "pro-1")].amount == Decimal("95.00")
        assert [n[2] for n in notifier.sent] == [NOTIFY_NEW_OFFER, NOTIFY_ACCEPTED, NOTIFY_COMPLETED]

    @pytest.mark.asyncio
    async def test_accept_twice_notifies_once(self, orchestrator, notifier):
        await orchestrator.send_offer("job-1", "pro-1")
        await orchestrator.accept("job-1", "pro-1")
        again = await orchestrator.accept("job-1", "pro-1")

        assert again.changed is False
        assert [n[2] for n in notifier.sent] == [NOTIFY_NEW_OFFER, NOTIFY_ACCEPTED]

    @pytest.mark.asyncio
    async def test_decline_leaves_job_status(self, orchestrator, job_store, notifier):
        await orchestrator.send_offer("job-1", "pro-1")

        declined = await orchestrator.decline("job-1", "pro-1")

        assert declined.state == AssignmentState.DECLINED
        assert job_store.jobs["job-1"].status == JobStatus.OFFER_SENT
        assert notifier.sent[-1] == ("job-1", "pro-1", NOTIFY_DECLINED)

    @pytest.mark.asyncio
    async def test_decline_then_reoffer(self, orchestrator, assignment_store):
        await orchestrator.send_offer("job-1", "pro-1")
        await orchestrator.decline("job-1", "pro-1")

        again = await orchestrator.send_offer("job-1", "pro-1")

        assert again.state == AssignmentState.OFFERED
        assert len(assignment_store.for_pair("job-1", "pro-1")) == 2

    @pytest.mark.asyncio
    async def test_decline_without_offer(self, orchestrator):
        with pytest.raises(OfferNotFoundError):
            await orchestrator.decline("job-1", "pro-1")

    @pytest.mark.asyncio
    async def test_portal_actions_require_known_job(self, orchestrator):
        for action in (orchestrator.accept, orchestrator.decline, orchestrator.complete):
            with pytest.raises(NotFoundError):
                await action("ghost", "pro-1")

    @pytest.mark.asyncio
    async def test_direct_accept_records_distance(self, orchestrator):
        result = await orchestrator.accept("job-1", "pro-2")

        # 0.0643° of latitude north of the job
        assert result.created is True
        assert result.assignment.distance_miles == pytest.approx(4.44, abs=0.01)
        assert result.assignment.distance_miles == round(result.assignment.distance_miles, 2)

    @pytest.mark.asyncio
    async def test_accept_without_job_location_leaves_distance_unset(self, orchestrator, job_store):
        job_store.jobs["job-1"].geo_lat = None

        result = await orchestrator.accept("job-1", "pro-1")

        assert result.assignment.distance_miles is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [JobStatus.CANCELLED, JobStatus.COMPLETED])
    async def test_accept_on_closed_job_rejected(self, orchestrator, job_store, assignment_store, notifier, status):
        job_store.jobs["job-1"].status = status

        with pytest.raises(InvalidTransitionError):
            await orchestrator.accept("job-1", "pro-1")
        assert assignment_store.rows == []
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_complete_on_cancelled_job_rejected(self, orchestrator, job_store, assignment_store, ledger_store):
        await orchestrator.accept("job-1", "pro-1")
        job_store.jobs["job-1"].status = JobStatus.CANCELLED

        with pytest.raises(InvalidTransitionError):
            await orchestrator.complete("job-1", "pro-1")
        assert assignment_store.for_pair("job-1", "pro-1")[-1].state == AssignmentState.ACCEPTED
        assert ledger_store.entries == {}

    @pytest.mark.asyncio
    async def test_second_pro_cannot_take_accepted_job(self, orchestrator, notifier):
        await orchestrator.accept("job-1", "pro-1")

        with pytest.raises(JobAlreadyAssignedError):
            await orchestrator.accept("job-1", "pro-2")
        assert [n[1] for n in notifier.sent] == ["pro-1"]


class TestOnMyWay:
    @pytest.mark.asyncio
    async def test_accepted_job_goes_en_route(self, orchestrator, job_store, notifier):
        await orchestrator.accept("job-1", "pro-1")

        updated = await orchestrator.on_my_way("job-1", "pro-1")

        assert updated is True
        assert job_store.jobs["job-1"].status == JobStatus.EN_ROUTE
        assert notifier.sent[-1] == ("job-1", "pro-1", NOTIFY_EN_ROUTE)

    @pytest.mark.asyncio
    async def test_repeat_notifies_once(self, orchestrator, notifier):
        await orchestrator.accept("job-1", "pro-1")
        await orchestrator.on_my_way("job-1", "pro-1")

        assert await orchestrator.on_my_way("job-1", "pro-1") is False
        assert [n[2] for n in notifier.sent] == [NOTIFY_ACCEPTED, NOTIFY_EN_ROUTE]

    @pytest.mark.asyncio
    async def test_en_route_job_can_complete(self, orchestrator, job_store):
        await orchestrator.accept("job-1", "pro-1")
        await orchestrator.on_my_way("job-1", "pro-1")

        await orchestrator.complete("job-1", "pro-1")

        assert job_store.jobs["job-1"].status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_requires_accepted_assignment(self, orchestrator, job_store, notifier):
        await orchestrator.send_offer("job-1", "pro-1")

        with pytest.raises(AssignmentNotFoundError):
            await orchestrator.on_my_way("job-1", "pro-1")
        with pytest.raises(AssignmentNotFoundError):
            await orchestrator.on_my_way("job-1", "pro-2")
        assert job_store.jobs["job-1"].status == JobStatus.OFFER_SENT
        assert [n[2] for n in notifier.sent] == [NOTIFY_NEW_OFFER]

    @pytest.mark.asyncio
    async def test_closed_job_rejected(self, orchestrator, job_store):
        await orchestrator.accept("job-1", "pro-1")
        job_store.jobs["job-1"].status = JobStatus.CANCELLED

        with pytest.raises(InvalidTransitionError):
            await orchestrator.on_my_way("job-1", "pro-1")

    @pytest.mark.asyncio
    async def test_unknown_job(self, orchestrator):
        with pytest.raises(NotFoundError):
            await orchestrator.on_my_way("ghost", "pro-1")

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_fail_status_change(
        self, job_store, assignment_store, ledger_store, capacity_store, retry
    ):
        orch = build(
            job_store, assignment_store, ledger_store, capacity_store, retry,
            pros=[make_pro("pro-1")], notifier=RecordingNotifier(fail=True),
        )
        job_store.add(make_job())
        await orch.accept("job-1", "pro-1")

        assert await orch.on_my_way("job-1", "pro-1") is True
        assert job_store.jobs["job-1"].status == JobStatus.EN_ROUTE


class TestCapacityAndBackfill:
    @pytest.mark.asyncio
    async def test_availability_delegates(self, orchestrator):
        from datetime import date, datetime
        from zoneinfo import ZoneInfo

        now = datetime(2026, 10, 18, 10, 0, tzinfo=ZoneInfo("America/New_York"))
        slots = await orchestrator.availability(date(2026, 10, 20), date(2026, 10, 20), now=now)

        assert len(slots) == 3
        assert all(s.available for s in slots)

    @pytest.mark.asyncio
    async def test_backfill_payouts(self, orchestrator, assignment_store, ledger_store):
        assignment_store.seed("job-1", "pro-1", AssignmentState.COMPLETED)

        report = await orchestrator.backfill_payouts()

        assert report.created == 1
        assert ("job-1", "pro-1") in ledger_store.entries
