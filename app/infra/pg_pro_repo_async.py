# app/infra/pg_pro_repo_async.py
"""
Async PostgreSQL pro repository (read-only for dispatch).
"""
from __future__ import annotations

from typing import Optional

from app.config import settings
from app.core.dispatch.domain import Pro
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

_PRO_COLUMNS = """
    pro_id, name, email, phone, geo_lat, geo_lng,
    service_radius_miles, max_jobs_per_day, status, city, state
"""


def _row_to_pro(row) -> Pro:
    radius = row.get("service_radius_miles")
    max_jobs = row.get("max_jobs_per_day")
    return Pro(
        pro_id=str(row["pro_id"]),
        name=row["name"] or "",
        email=row["email"] or "",
        phone=row["phone"] or "",
        geo_lat=row.get("geo_lat"),
        geo_lng=row.get("geo_lng"),
        service_radius_miles=float(radius) if radius else settings.default_service_radius_miles,
        max_jobs_per_day=int(max_jobs) if max_jobs else settings.default_max_jobs_per_day,
        is_active=(row["status"] or "").lower() == "active",
        city=row["city"] or "",
        state=row["state"] or "",
    )


class AsyncPostgresProRepository:

    async def get(self, pro_id: str) -> Optional[Pro]:
        try:
            async with db_conn() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_PRO_COLUMNS} FROM pros WHERE pro_id = $1", pro_id
                )
                return _row_to_pro(row) if row else None
        except Exception:
            logger.error("Failed to load pro", extra={"pro_id": pro_id}, exc_info=True)
            AppMetrics.database_error("pro_get")
            raise

    async def list_active(self) -> list[Pro]:
        """All active pros, oldest first (stable input order for matching)."""
        try:
            async with db_conn() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {_PRO_COLUMNS} FROM pros
                    WHERE status = 'active'
                    ORDER BY created_at, pro_id
                    """
                )
                return [_row_to_pro(row) for row in rows]
        except Exception:
            logger.error("Failed to list active pros", exc_info=True)
            AppMetrics.database_error("pro_list_active")
            raise


# Global singleton
_pro_repo: AsyncPostgresProRepository | None = None


def get_pro_repo() -> AsyncPostgresProRepository:
    """Get the global pro repository instance."""
    global _pro_repo
    if _pro_repo is None:
        _pro_repo = AsyncPostgresProRepository()
    return _pro_repo
