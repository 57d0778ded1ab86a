# tests/test_repos.py
"""Tests for the asyncpg repositories: row mapping and the SQL each call issues.

The connection pool is replaced with a fake ``db_conn`` yielding an
AsyncMock connection, so no database is needed.
"""
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from app.core.dispatch.domain import AssignmentState, JobStatus, LedgerState, SplitMode
from app.core.dispatch.errors import JobAlreadyAssignedError
from app.infra.pg_assignment_repo_async import AsyncPostgresAssignmentRepository
from app.infra.pg_capacity_repo_async import AsyncPostgresCapacityRepository
from app.infra.pg_job_repo_async import AsyncPostgresJobRepository
from app.infra.pg_payout_repo_async import AsyncPostgresPayoutRepository
from app.infra.pg_pro_repo_async import AsyncPostgresProRepository
from app.infra.pg_session_store_async import AsyncPostgresSessionStore
from conftest import FakeDb

NOW = datetime(2026, 10, 18, 14, 0, tzinfo=timezone.utc)


def _patch_db(module: str, db: FakeDb):
    return patch(f"app.infra.{module}.db_conn", db)


def _assignment_row(**overrides):
    row = {
        "assign_id": "a-1",
        "job_id": "job-1",
        "pro_id": "pro-1",
        "state": "offered",
        "distance_miles": Decimal("3.25"),
        "picked_by_rule": "manual_dispatch",
        "offer_sent_at": NOW,
        "accepted_at": None,
        "declined_at": None,
        "completed_at": None,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


# ============================================================================
# ASSIGNMENTS
# ============================================================================

class TestAssignmentRepository:
    @pytest.mark.asyncio
    async def test_find_maps_row(self, db):
        db.conn.fetchrow.return_value = _assignment_row()

        with _patch_db("pg_assignment_repo_async", db):
            found = await AsyncPostgresAssignmentRepository().find("job-1", "pro-1")

        assert found.state == AssignmentState.OFFERED
        assert found.distance_miles == 3.25
        sql = db.conn.fetchrow.call_args.args[0]
        assert "ORDER BY created_at DESC" in sql

    @pytest.mark.asyncio
    async def test_find_missing(self, db):
        db.conn.fetchrow.return_value = None
        with _patch_db("pg_assignment_repo_async", db):
            assert await AsyncPostgresAssignmentRepository().find("job-1", "pro-1") is None

    @pytest.mark.asyncio
    async def test_insert_takes_job_lock_in_transaction(self, db):
        db.conn.fetchrow.side_effect = [None, _assignment_row(state="accepted", accepted_at=NOW)]

        with _patch_db("pg_assignment_repo_async", db):
            row, created = await AsyncPostgresAssignmentRepository().insert_if_absent(
                "job-1", "pro-1", AssignmentState.ACCEPTED, picked_by_rule="direct_accept"
            )

        assert created is True
        assert row.state == AssignmentState.ACCEPTED
        assert db.borrows == [False]
        lock_sql, lock_key = db.conn.execute.call_args.args
        assert "pg_advisory_xact_lock" in lock_sql
        assert lock_key == "job_assignment:job-1"
        insert_sql = db.conn.fetchrow.call_args_list[1].args[0]
        assert "accepted_at" in insert_sql
        assert db.conn.fetchrow.call_args_list[1].args[3] == "accepted"

    @pytest.mark.asyncio
    async def test_insert_returns_existing_active_row(self, db):
        db.conn.fetchrow.return_value = _assignment_row()

        with _patch_db("pg_assignment_repo_async", db):
            row, created = await AsyncPostgresAssignmentRepository().insert_if_absent(
                "job-1", "pro-1", AssignmentState.OFFERED
            )

        assert created is False
        assert row.assign_id == "a-1"
        assert db.conn.fetchrow.await_count == 1

    @pytest.mark.asyncio
    async def test_insert_failure_propagates(self, db):
        db.conn.execute.side_effect = RuntimeError("lock wait aborted")

        with _patch_db("pg_assignment_repo_async", db):
            with pytest.raises(RuntimeError):
                await AsyncPostgresAssignmentRepository().insert_if_absent(
                    "job-1", "pro-1", AssignmentState.OFFERED
                )

    @pytest.mark.asyncio
    async def test_compare_and_set_guards_on_expected_state(self, db):
        db.conn.fetchrow.return_value = _assignment_row(state="completed", completed_at=NOW)

        with _patch_db("pg_assignment_repo_async", db):
            row = await AsyncPostgresAssignmentRepository().compare_and_set(
                "a-1", AssignmentState.ACCEPTED, AssignmentState.COMPLETED
            )

        assert row.state == AssignmentState.COMPLETED
        sql, assign_id, expected, target = db.conn.fetchrow.call_args.args
        assert "WHERE assign_id = $1 AND state = $2" in sql
        assert "completed_at = now()" in sql
        assert (assign_id, expected, target) == ("a-1", "accepted", "completed")

    @pytest.mark.asyncio
    async def test_compare_and_set_lost(self, db):
        db.conn.fetchrow.return_value = None
        with _patch_db("pg_assignment_repo_async", db):
            assert await AsyncPostgresAssignmentRepository().compare_and_set(
                "a-1", AssignmentState.OFFERED, AssignmentState.DECLINED
            ) is None

    @pytest.mark.asyncio
    async def test_insert_refused_when_job_owned(self, db):
        db.conn.fetchrow.return_value = None
        db.conn.fetchval.return_value = "pro-1"

        with _patch_db("pg_assignment_repo_async", db):
            with pytest.raises(JobAlreadyAssignedError) as exc_info:
                await AsyncPostgresAssignmentRepository().insert_if_absent(
                    "job-1", "pro-2", AssignmentState.ACCEPTED, co_owners=frozenset()
                )

        assert exc_info.value.owner_pro_id == "pro-1"
        sql, job_id, states, allowed = db.conn.fetchval.call_args.args
        assert "NOT (pro_id = ANY($3::text[]))" in sql
        assert (job_id, states, allowed) == ("job-1", ["accepted", "completed"], ["pro-2"])
        # Only the existing-row lookup ran; nothing was inserted
        assert db.conn.fetchrow.await_count == 1

    @pytest.mark.asyncio
    async def test_insert_allows_team_partner(self, db):
        db.conn.fetchrow.side_effect = [None, _assignment_row(pro_id="helper", state="accepted")]
        db.conn.fetchval.return_value = None

        with _patch_db("pg_assignment_repo_async", db):
            row, created = await AsyncPostgresAssignmentRepository().insert_if_absent(
                "job-1", "helper", AssignmentState.ACCEPTED, co_owners=frozenset({"lead"})
            )

        assert created is True
        assert db.conn.fetchval.call_args.args[3] == ["helper", "lead"]

    @pytest.mark.asyncio
    async def test_compare_and_set_with_owners_locks_job(self, db):
        db.conn.fetchrow.side_effect = [
            {"job_id": "job-1", "pro_id": "pro-2"},
            _assignment_row(pro_id="pro-2", state="accepted", accepted_at=NOW),
        ]
        db.conn.fetchval.return_value = None

        with _patch_db("pg_assignment_repo_async", db):
            row = await AsyncPostgresAssignmentRepository().compare_and_set(
                "a-1", AssignmentState.OFFERED, AssignmentState.ACCEPTED, co_owners=frozenset()
            )

        assert row.state == AssignmentState.ACCEPTED
        assert db.borrows == [False]
        assert db.conn.execute.call_args.args[1] == "job_assignment:job-1"

    @pytest.mark.asyncio
    async def test_compare_and_set_with_owners_refused(self, db):
        db.conn.fetchrow.return_value = {"job_id": "job-1", "pro_id": "pro-2"}
        db.conn.fetchval.return_value = "pro-1"

        with _patch_db("pg_assignment_repo_async", db):
            with pytest.raises(JobAlreadyAssignedError):
                await AsyncPostgresAssignmentRepository().compare_and_set(
                    "a-1", AssignmentState.OFFERED, AssignmentState.ACCEPTED, co_owners=frozenset()
                )

        assert db.conn.fetchrow.await_count == 1

    @pytest.mark.asyncio
    async def test_compare_and_set_with_owners_missing_row(self, db):
        db.conn.fetchrow.return_value = None

        with _patch_db("pg_assignment_repo_async", db):
            assert await AsyncPostgresAssignmentRepository().compare_and_set(
                "a-9", AssignmentState.OFFERED, AssignmentState.ACCEPTED, co_owners=frozenset()
            ) is None

        db.conn.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_owners(self, db):
        db.conn.fetch.return_value = [_assignment_row(state="accepted")]

        with _patch_db("pg_assignment_repo_async", db):
            rows = await AsyncPostgresAssignmentRepository().owners("job-1")

        assert [r.pro_id for r in rows] == ["pro-1"]
        assert db.conn.fetch.call_args.args[1:] == ("job-1", ["accepted", "completed"])

    @pytest.mark.asyncio
    async def test_list_completed(self, db):
        db.conn.fetch.return_value = [_assignment_row(state="completed"), _assignment_row(assign_id="a-2", state="completed")]

        with _patch_db("pg_assignment_repo_async", db):
            rows = await AsyncPostgresAssignmentRepository().list_completed("pro-1")

        assert [r.assign_id for r in rows] == ["a-1", "a-2"]
        assert db.conn.fetch.call_args.args[1] == "pro-1"


# ============================================================================
# JOBS / PROS
# ============================================================================

def _job_row(**overrides):
    row = {
        "job_id": "job-1",
        "status": "pending_assign",
        "service_id": "tv-mount-65",
        "customer_name": "Dana",
        "customer_email": None,
        "service_address": "1 Main St",
        "service_city": "Newark",
        "service_state": "NJ",
        "service_zip": "07102",
        "geo_lat": 40.7357,
        "geo_lng": -74.1724,
        "start_iso": None,
        "end_iso": None,
        "metadata": '{"subtotal": "200"}',
        "created_at": NOW,
    }
    row.update(overrides)
    return row


class TestJobRepository:
    @pytest.mark.asyncio
    async def test_get_parses_json_metadata(self, db):
        db.conn.fetchrow.return_value = _job_row()

        with _patch_db("pg_job_repo_async", db):
            job = await AsyncPostgresJobRepository().get("job-1")

        assert job.status == JobStatus.PENDING_ASSIGN
        assert job.metadata == {"subtotal": "200"}
        assert job.full_address == "1 Main St, Newark, NJ 07102"

    @pytest.mark.asyncio
    async def test_update_status_if(self, db):
        db.conn.execute.return_value = "UPDATE 1"

        with _patch_db("pg_job_repo_async", db):
            updated = await AsyncPostgresJobRepository().update_status_if(
                "job-1", JobStatus.ACCEPTED, (JobStatus.PENDING_ASSIGN, JobStatus.OFFER_SENT)
            )

        assert updated is True
        assert db.conn.execute.call_args.args[2:] == ("accepted", ["pending_assign", "offer_sent"])

    @pytest.mark.asyncio
    async def test_update_status_if_no_match(self, db):
        db.conn.execute.return_value = "UPDATE 0"
        with _patch_db("pg_job_repo_async", db):
            assert await AsyncPostgresJobRepository().update_status_if(
                "job-1", JobStatus.COMPLETED, (JobStatus.ACCEPTED,)
            ) is False

    @pytest.mark.asyncio
    async def test_team_split_defaults(self, db):
        db.conn.fetchrow.return_value = {
            "job_id": "job-1",
            "primary_pro_id": "lead",
            "secondary_pro_id": "",
            "split_mode": None,
            "primary_percent": None,
            "primary_flat": None,
            "secondary_flat": None,
        }

        with _patch_db("pg_job_repo_async", db):
            split = await AsyncPostgresJobRepository().get_team_split("job-1")

        assert split.split_mode == SplitMode.PERCENT
        assert split.primary_percent == Decimal("50")
        assert split.is_team is False


class TestProRepository:
    @pytest.mark.asyncio
    async def test_defaults_for_missing_radius_and_limit(self, db):
        db.conn.fetch.return_value = [{
            "pro_id": "pro-1", "name": "Sam", "email": None, "phone": None,
            "geo_lat": 40.7, "geo_lng": -74.1,
            "service_radius_miles": None, "max_jobs_per_day": None,
            "status": "Active", "city": None, "state": "NJ",
        }]

        with _patch_db("pg_pro_repo_async", db):
            pros = await AsyncPostgresProRepository().list_active()

        assert pros[0].service_radius_miles == 50.0
        assert pros[0].max_jobs_per_day == 5
        assert pros[0].is_active is True
        assert pros[0].email == ""


# ============================================================================
# LEDGER / CAPACITY / SESSIONS
# ============================================================================

class TestPayoutRepository:
    @pytest.mark.asyncio
    async def test_insert_created(self, db):
        db.conn.fetchrow.return_value = {
            "entry_id": "e-1", "pro_id": "pro-1", "job_id": "job-1",
            "amount": Decimal("65.00"), "state": "pending", "note": "solo",
            "source": "category_default", "created_at": NOW,
        }

        with _patch_db("pg_payout_repo_async", db):
            entry = await AsyncPostgresPayoutRepository().insert(
                "job-1", "pro-1", Decimal("65"), note="solo", source="category_default"
            )

        assert entry.state == LedgerState.PENDING
        assert entry.amount == Decimal("65.00")
        assert "ON CONFLICT DO NOTHING" in db.conn.fetchrow.call_args.args[0]

    @pytest.mark.asyncio
    async def test_insert_conflict_returns_none(self, db):
        db.conn.fetchrow.return_value = None
        with _patch_db("pg_payout_repo_async", db):
            assert await AsyncPostgresPayoutRepository().insert(
                "job-1", "pro-1", Decimal("65"), note="solo", source="category_default"
            ) is None

    @pytest.mark.asyncio
    async def test_exists(self, db):
        db.conn.fetchval.return_value = True
        with _patch_db("pg_payout_repo_async", db):
            assert await AsyncPostgresPayoutRepository().exists("job-1", "pro-1") is True

    @pytest.mark.asyncio
    async def test_list_for_job(self, db):
        db.conn.fetch.return_value = [{
            "entry_id": "e-1", "pro_id": "pro-1", "job_id": "job-1",
            "amount": Decimal("75.00"), "state": "pending", "note": "solo",
            "source": "metadata_estimate", "created_at": NOW,
        }]

        with _patch_db("pg_payout_repo_async", db):
            entries = await AsyncPostgresPayoutRepository().list_for_job("job-1")

        assert [(e.pro_id, e.note) for e in entries] == [("pro-1", "solo")]
        assert db.conn.fetch.call_args.args[1] == "job-1"


class TestCapacityRepository:
    @pytest.mark.asyncio
    async def test_list_slots_maps_pro_fields(self, db):
        db.conn.fetch.return_value = [{
            "pro_id": "pro-1", "date_local": date(2026, 10, 19), "time_slot": "12-15",
            "max_jobs": 3, "booked_jobs": None, "blocked": False, "pro_active": True,
            "geo_lat": 40.7, "geo_lng": -74.1, "service_radius_miles": 25,
        }]

        with _patch_db("pg_capacity_repo_async", db):
            slots = await AsyncPostgresCapacityRepository().list_slots(date(2026, 10, 19), "12-15")

        assert slots[0].booked_jobs == 0
        assert slots[0].spots == 3
        assert slots[0].pro_service_radius_miles == 25

    @pytest.mark.asyncio
    async def test_count_bookings(self, db):
        db.conn.fetchval.return_value = None
        with _patch_db("pg_capacity_repo_async", db):
            assert await AsyncPostgresCapacityRepository().count_bookings(date(2026, 10, 19), "9-12") == 0


class TestSessionStore:
    @pytest.mark.asyncio
    async def test_pro_session(self, db):
        db.conn.fetchval.return_value = "pro-1"

        with _patch_db("pg_session_store_async", db):
            assert await AsyncPostgresSessionStore().get_pro_id("sess-abcdef") == "pro-1"

        assert "expires_at > now()" in db.conn.fetchval.call_args.args[0]

    @pytest.mark.asyncio
    async def test_expired_admin_session(self, db):
        db.conn.fetchval.return_value = None
        with _patch_db("pg_session_store_async", db):
            assert await AsyncPostgresSessionStore().get_admin("sess-abcdef") is None
