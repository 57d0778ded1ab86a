# app/infra/pg_assignment_repo_async.py
"""
Async PostgreSQL assignment repository (asyncpg).

The table has no unique constraint on (job_id, pro_id) because a declined
pair may be offered again.  Single-active-assignment and single ownership
are enforced here:

- ``insert_if_absent`` runs lookup + insert in one transaction holding a
  transaction-scoped advisory lock keyed on the job, so concurrent
  offers/accepts for the job serialize and only one inserts per pair.
- ``compare_and_set`` updates with the expected prior state in the WHERE
  clause; a caller that lost the race gets ``None`` back and re-reads.
- With ``co_owners`` given, both calls check under the same job lock that
  no other pro (outside ``co_owners``) holds an accepted or completed
  assignment, and raise ``JobAlreadyAssignedError`` otherwise.
"""
from __future__ import annotations

from typing import Optional

from app.core.dispatch.domain import OWNING_STATES, Assignment, AssignmentState
from app.core.dispatch.errors import DispatchError, JobAlreadyAssignedError
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

# Timestamp column stamped when a row enters each state
_STATE_TIMESTAMP = {
    AssignmentState.OFFERED: "offer_sent_at",
    AssignmentState.ACCEPTED: "accepted_at",
    AssignmentState.DECLINED: "declined_at",
    AssignmentState.COMPLETED: "completed_at",
}

_OWNING_VALUES = sorted(state.value for state in OWNING_STATES)


def _job_lock_key(job_id: str) -> str:
    return f"job_assignment:{job_id}"


def _row_to_assignment(row) -> Assignment:
    """Convert an asyncpg Record to an Assignment dataclass."""
    distance = row.get("distance_miles")
    return Assignment(
        assign_id=str(row["assign_id"]),
        job_id=str(row["job_id"]),
        pro_id=str(row["pro_id"]),
        state=AssignmentState(row["state"]),
        distance_miles=float(distance) if distance is not None else None,
        picked_by_rule=row.get("picked_by_rule") or "manual_dispatch",
        offer_sent_at=row.get("offer_sent_at"),
        accepted_at=row.get("accepted_at"),
        declined_at=row.get("declined_at"),
        completed_at=row.get("completed_at"),
        created_at=row.get("created_at"),
    )


async def _lock_job(conn, job_id: str) -> None:
    # Released automatically at commit/rollback
    await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", _job_lock_key(job_id))


async def _check_ownership(conn, job_id: str, pro_id: str, co_owners: frozenset[str]) -> None:
    allowed = sorted(co_owners | {pro_id})
    owner = await conn.fetchval(
        """
        SELECT pro_id FROM job_assignments
        WHERE job_id = $1 AND state = ANY($2::text[]) AND NOT (pro_id = ANY($3::text[]))
        ORDER BY created_at
        LIMIT 1
        """,
        job_id, _OWNING_VALUES, allowed,
    )
    if owner is not None:
        logger.info(
            "Ownership check refused: job held by another pro",
            extra={"job_id": job_id, "pro_id": pro_id},
        )
        raise JobAlreadyAssignedError("Job is already assigned to another pro", owner_pro_id=str(owner))


class AsyncPostgresAssignmentRepository:

    async def find(self, job_id: str, pro_id: str) -> Optional[Assignment]:
        """Newest assignment for the pair, any state."""
        async with db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM job_assignments
                WHERE job_id = $1 AND pro_id = $2
                ORDER BY created_at DESC, assign_id DESC
                LIMIT 1
                """,
                job_id, pro_id,
            )
            return _row_to_assignment(row) if row else None

    async def owners(self, job_id: str) -> list[Assignment]:
        async with db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM job_assignments
                WHERE job_id = $1 AND state = ANY($2::text[])
                ORDER BY created_at
                """,
                job_id, _OWNING_VALUES,
            )
            return [_row_to_assignment(row) for row in rows]

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
        Insert unless a non-declined assignment exists for the pair.

        Returns:
            (assignment, created) — the new row and True, or the existing
            active row and False.
        """
        try:
            async with db_conn(autocommit=False) as conn:
                await _lock_job(conn, job_id)

                existing = await conn.fetchrow(
                    """
                    SELECT * FROM job_assignments
                    WHERE job_id = $1 AND pro_id = $2 AND state <> 'declined'
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    job_id, pro_id,
                )
                if existing:
                    return _row_to_assignment(existing), False

                if co_owners is not None:
                    await _check_ownership(conn, job_id, pro_id, co_owners)

                stamp_column = _STATE_TIMESTAMP[state]
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO job_assignments
                        (job_id, pro_id, state, distance_miles, picked_by_rule, {stamp_column})
                    VALUES ($1, $2, $3, $4, $5, now())
                    RETURNING *
                    """,
                    job_id,
                    pro_id,
                    state.value,
                    float(distance_miles) if distance_miles is not None else None,
                    picked_by_rule,
                )
                assignment = _row_to_assignment(row)
                logger.debug(
                    f"Assignment inserted in state {state.value}",
                    extra={"job_id": job_id, "pro_id": pro_id, "assign_id": assignment.assign_id},
                )
                return assignment, True
        except DispatchError:
            raise
        except Exception:
            logger.error(
                "Failed to insert assignment",
                extra={"job_id": job_id, "pro_id": pro_id},
                exc_info=True,
            )
            AppMetrics.database_error("assignment_insert")
            raise

    async def compare_and_set(
        self,
        assign_id: str,
        expected: AssignmentState,
        target: AssignmentState,
        *,
        co_owners: Optional[frozenset[str]] = None,
    ) -> Optional[Assignment]:
        """
        Transition ``expected`` → ``target`` atomically.

        Returns the updated row, or None if the row was no longer in
        ``expected`` (someone else moved it first).
        """
        stamp_column = _STATE_TIMESTAMP[target]
        update_sql = f"""
            UPDATE job_assignments
            SET state = $3, {stamp_column} = now(), updated_at = now()
            WHERE assign_id = $1 AND state = $2
            RETURNING *
        """

        if co_owners is None:
            async with db_conn() as conn:
                row = await conn.fetchrow(update_sql, assign_id, expected.value, target.value)
                return _row_to_assignment(row) if row else None

        async with db_conn(autocommit=False) as conn:
            pair = await conn.fetchrow(
                "SELECT job_id, pro_id FROM job_assignments WHERE assign_id = $1", assign_id
            )
            if pair is None:
                return None
            await _lock_job(conn, pair["job_id"])
            await _check_ownership(conn, pair["job_id"], pair["pro_id"], co_owners)
            row = await conn.fetchrow(update_sql, assign_id, expected.value, target.value)
            return _row_to_assignment(row) if row else None

    async def list_completed(self, pro_id: Optional[str] = None) -> list[Assignment]:
        async with db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM job_assignments
                WHERE state = 'completed'
                  AND ($1::text IS NULL OR pro_id = $1)
                ORDER BY completed_at NULLS LAST, assign_id
                """,
                pro_id,
            )
            return [_row_to_assignment(row) for row in rows]


# Global singleton
_assignment_repo: AsyncPostgresAssignmentRepository | None = None


def get_assignment_repo() -> AsyncPostgresAssignmentRepository:
    """Get the global assignment repository instance."""
    global _assignment_repo
    if _assignment_repo is None:
        _assignment_repo = AsyncPostgresAssignmentRepository()
    return _assignment_repo
