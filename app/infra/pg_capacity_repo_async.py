# app/infra/pg_capacity_repo_async.py
"""
Async PostgreSQL capacity repository (read-only for dispatch).

Capacity rows are maintained by booking collaborators; dispatch reads
them joined with each pro's status, location and service radius.
"""
from __future__ import annotations

from datetime import date

from app.core.dispatch.domain import CapacitySlot
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_slot(row) -> CapacitySlot:
    return CapacitySlot(
        pro_id=str(row["pro_id"]),
        date_local=row["date_local"],
        time_slot=row["time_slot"],
        max_jobs=row["max_jobs"] or 0,
        booked_jobs=row["booked_jobs"] or 0,
        blocked=bool(row["blocked"]),
        pro_active=bool(row["pro_active"]),
        pro_geo_lat=row.get("geo_lat"),
        pro_geo_lng=row.get("geo_lng"),
        pro_service_radius_miles=row.get("service_radius_miles"),
    )


class AsyncPostgresCapacityRepository:

    async def list_slots(self, day: date, time_slot: str) -> list[CapacitySlot]:
        async with db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT c.pro_id, c.date_local, c.time_slot, c.max_jobs, c.booked_jobs, c.blocked,
                       (p.status = 'active') AS pro_active,
                       p.geo_lat, p.geo_lng, p.service_radius_miles
                FROM pro_capacity c
                JOIN pros p ON p.pro_id = c.pro_id
                WHERE c.date_local = $1 AND c.time_slot = $2
                ORDER BY c.pro_id
                """,
                day, time_slot,
            )
            return [_row_to_slot(row) for row in rows]

    async def count_bookings(self, day: date, time_slot: str) -> int:
        async with db_conn() as conn:
            count = await conn.fetchval(
                """
                SELECT count(*) FROM jobs
                WHERE date_local = $1 AND time_slot = $2 AND status <> 'cancelled'
                """,
                day, time_slot,
            )
            return int(count or 0)


# Global singleton
_capacity_repo: AsyncPostgresCapacityRepository | None = None


def get_capacity_repo() -> AsyncPostgresCapacityRepository:
    """Get the global capacity repository instance."""
    global _capacity_repo
    if _capacity_repo is None:
        _capacity_repo = AsyncPostgresCapacityRepository()
    return _capacity_repo
