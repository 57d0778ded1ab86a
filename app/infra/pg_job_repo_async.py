# app/infra/pg_job_repo_async.py
"""
Async PostgreSQL job repository (asyncpg).

Jobs are created by the booking flow; dispatch only reads them and
updates ``status``, ``geo_lat/geo_lng`` and ``metadata.estimated_payout``.
Status writes are conditional on the expected prior status so a stale
caller can never overwrite a newer state.
"""
from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Optional, Sequence

from app.core.dispatch.domain import Job, JobLine, JobStatus, SplitMode, TeamSplit
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)


def _json_field(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        value = json.loads(value)
    return dict(value)


def _row_to_job(row) -> Job:
    """Convert an asyncpg Record to a Job dataclass."""
    return Job(
        job_id=str(row["job_id"]),
        status=JobStatus(row["status"]),
        service_id=row["service_id"] or "",
        customer_name=row["customer_name"] or "",
        customer_email=row.get("customer_email"),
        service_address=row["service_address"] or "",
        service_city=row["service_city"] or "",
        service_state=row["service_state"] or "",
        service_zip=row["service_zip"] or "",
        geo_lat=row.get("geo_lat"),
        geo_lng=row.get("geo_lng"),
        start_iso=row.get("start_iso"),
        end_iso=row.get("end_iso"),
        metadata=_json_field(row.get("metadata")),
        created_at=row.get("created_at"),
    )


def _row_to_line(row) -> JobLine:
    return JobLine(
        job_id=str(row["job_id"]),
        service_id=row["service_id"] or "",
        qty=row["qty"] or 1,
        unit_price=row["unit_price"] if row["unit_price"] is not None else Decimal("0.00"),
        line_total=row["line_total"] if row["line_total"] is not None else Decimal("0.00"),
        variant_code=row["variant_code"] or "BASE",
        calc_pro_payout_total=row.get("calc_pro_payout_total"),
    )


def _row_to_split(row) -> TeamSplit:
    return TeamSplit(
        job_id=str(row["job_id"]),
        primary_pro_id=row["primary_pro_id"],
        secondary_pro_id=row.get("secondary_pro_id") or None,
        split_mode=SplitMode((row["split_mode"] or "percent").lower()),
        primary_percent=row["primary_percent"] if row["primary_percent"] is not None else Decimal("50"),
        primary_flat=row["primary_flat"] if row["primary_flat"] is not None else Decimal("0.00"),
        secondary_flat=row["secondary_flat"] if row["secondary_flat"] is not None else Decimal("0.00"),
    )


class AsyncPostgresJobRepository:
    """Job reads plus the few job fields dispatch is allowed to write."""

    async def get(self, job_id: str) -> Optional[Job]:
        try:
            async with db_conn() as conn:
                row = await conn.fetchrow("SELECT * FROM jobs WHERE job_id = $1", job_id)
                return _row_to_job(row) if row else None
        except Exception:
            logger.error("Failed to load job", extra={"job_id": job_id}, exc_info=True)
            AppMetrics.database_error("job_get")
            raise

    async def update_status_if(
        self, job_id: str, new_status: JobStatus, expected: Sequence[JobStatus]
    ) -> bool:
        """
        Move the job to ``new_status`` only while it is in one of ``expected``.

        Returns:
            True if the row was updated, False if the job is missing or has
            already moved to another status.
        """
        async with db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE jobs
                SET status = $2,
                    tech_en_route_at = CASE WHEN $2 = 'en_route' THEN now() ELSE tech_en_route_at END,
                    updated_at = now()
                WHERE job_id = $1 AND status = ANY($3::text[])
                """,
                job_id,
                new_status.value,
                [s.value for s in expected],
            )
            # asyncpg execute returns "UPDATE N"
            updated = int(result.split()[-1]) if result else 0
            if updated:
                logger.debug(f"Job status → {new_status.value}", extra={"job_id": job_id})
            return updated > 0

    async def set_geo(self, job_id: str, lat: float, lng: float) -> None:
        async with db_conn() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET geo_lat = $2, geo_lng = $3, updated_at = now()
                WHERE job_id = $1
                """,
                job_id, float(lat), float(lng),
            )

    async def set_estimated_payout(self, job_id: str, amount: Decimal) -> None:
        async with db_conn() as conn:
            await conn.execute(
                """
                UPDATE jobs
                SET metadata = jsonb_set(COALESCE(metadata, '{}'::jsonb),
                                         '{estimated_payout}', to_jsonb($2::numeric)),
                    updated_at = now()
                WHERE job_id = $1
                """,
                job_id, amount,
            )

    async def get_lines(self, job_id: str) -> list[JobLine]:
        async with db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM job_lines WHERE job_id = $1 ORDER BY created_at, line_id",
                job_id,
            )
            return [_row_to_line(row) for row in rows]

    async def get_team_split(self, job_id: str) -> Optional[TeamSplit]:
        async with db_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM job_team_splits WHERE job_id = $1", job_id)
            return _row_to_split(row) if row else None


# Global singleton
_job_repo: AsyncPostgresJobRepository | None = None


def get_job_repo() -> AsyncPostgresJobRepository:
    """Get the global job repository instance."""
    global _job_repo
    if _job_repo is None:
        _job_repo = AsyncPostgresJobRepository()
    return _job_repo
