# app/infra/health_checks_async.py
from __future__ import annotations
import time
from typing import Dict, Any
from enum import Enum

from app.infra.db_async import get_pool
from app.infra.logging_config import get_logger
from app.infra.migrations_async import get_schema_info

logger = get_logger(__name__)

DISPATCH_TABLES = ("jobs", "pros", "job_assignments", "pro_capacity", "payout_ledger")


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AsyncHealthCheck:
    """Base class for async health checks"""

    def __init__(self, name: str, critical: bool = True):
        self.name = name
        self.critical = critical

    async def check(self) -> Dict[str, Any]:
        """Return a dict with 'status', 'details' and optionally 'error'."""
        raise NotImplementedError


class AsyncDatabaseHealthCheck(AsyncHealthCheck):
    """Connectivity, dispatch tables present, response time"""

    def __init__(self):
        super().__init__("database", critical=True)

    async def check(self) -> Dict[str, Any]:
        start = time.monotonic()

        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")

                missing = [
                    table for table in DISPATCH_TABLES
                    if await conn.fetchval("SELECT to_regclass($1)", table) is None
                ]
                if missing:
                    return {
                        "status": HealthStatus.UNHEALTHY,
                        "details": "Missing required tables",
                        "error": f"Missing: {', '.join(missing)}",
                    }

            duration = time.monotonic() - start
            if duration > 1.0:
                return {
                    "status": HealthStatus.DEGRADED,
                    "details": f"Slow database response: {duration:.3f}s",
                    "response_time": duration,
                }

            return {
                "status": HealthStatus.HEALTHY,
                "details": "Database operational",
                "response_time": duration,
            }

        except Exception as exc:
            logger.error("Database health check failed", exc_info=True)
            return {
                "status": HealthStatus.UNHEALTHY,
                "details": "Database connection failed",
                "error": str(exc)[:200],
            }


class AsyncDispatchActivityHealthCheck(AsyncHealthCheck):
    """Open offers and pending ledger entries; informational only"""

    def __init__(self):
        super().__init__("dispatch_activity", critical=False)

    async def check(self) -> Dict[str, Any]:
        try:
            pool = await get_pool()
            async with pool.acquire() as conn:
                open_offers = await conn.fetchval(
                    "SELECT COUNT(*) FROM job_assignments WHERE state = 'offered'"
                )
                pending_payouts = await conn.fetchval(
                    "SELECT COUNT(*) FROM payout_ledger WHERE state = 'pending'"
                )
                unpaid_completions = await conn.fetchval(
                    """
                    SELECT COUNT(*) FROM job_assignments a
                    WHERE a.state = 'completed'
                      AND NOT EXISTS (
                          SELECT 1 FROM payout_ledger l
                          WHERE l.job_id = a.job_id AND l.pro_id = a.pro_id
                      )
                    """
                )

            # Completed assignments without a ledger row need a backfill run
            status = HealthStatus.DEGRADED if unpaid_completions else HealthStatus.HEALTHY
            return {
                "status": status,
                "details": "Dispatch tables readable",
                "open_offers": open_offers,
                "pending_payouts": pending_payouts,
                "completions_without_ledger": unpaid_completions,
            }

        except Exception as exc:
            logger.error("Dispatch activity health check failed", exc_info=True)
            return {
                "status": HealthStatus.DEGRADED,
                "details": "Dispatch activity check failed",
                "error": str(exc)[:200],
            }


class AsyncHealthChecker:
    """Aggregate async health checks"""

    def __init__(self, checks: list[AsyncHealthCheck] | None = None):
        self.checks: list[AsyncHealthCheck] = checks if checks is not None else [
            AsyncDatabaseHealthCheck(),
            AsyncDispatchActivityHealthCheck(),
        ]

    async def run_checks(self, include_non_critical: bool = True, include_schema: bool = True) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            {"status": "healthy" | "degraded" | "unhealthy", "checks": {...},
             "schema": {...}, "timestamp": float}
        """
        results = {}
        overall_status = HealthStatus.HEALTHY

        for check in self.checks:
            if not include_non_critical and not check.critical:
                continue

            result = await check.check()
            results[check.name] = result

            if result["status"] == HealthStatus.UNHEALTHY and check.critical:
                overall_status = HealthStatus.UNHEALTHY
            elif result["status"] != HealthStatus.HEALTHY and overall_status == HealthStatus.HEALTHY:
                overall_status = HealthStatus.DEGRADED

        report: Dict[str, Any] = {
            "status": overall_status.value,
            "checks": results,
            "timestamp": time.time(),
        }
        if include_schema:
            report["schema"] = await get_schema_info()
        return report


_async_health_checker = AsyncHealthChecker()


def get_async_health_checker() -> AsyncHealthChecker:
    """Get the global async health checker"""
    return _async_health_checker
