# app/infra/pg_payout_repo_async.py
"""
Async PostgreSQL payout ledger repository (insert-only for dispatch).

Entries are unique per (job_id, pro_id), and a job carries at most one
``solo`` entry.  Callers check ``exists`` first; the unique indexes plus
``ON CONFLICT DO NOTHING`` keep a concurrent second writer from creating
a duplicate.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from app.core.dispatch.domain import LedgerState, PayoutLedgerEntry, to_money
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)


def _row_to_entry(row) -> PayoutLedgerEntry:
    return PayoutLedgerEntry(
        entry_id=str(row["entry_id"]),
        pro_id=str(row["pro_id"]),
        job_id=str(row["job_id"]),
        amount=to_money(row["amount"]),
        state=LedgerState(row["state"]),
        note=row["note"],
        source=row.get("source") or "",
        created_at=row.get("created_at"),
    )


class AsyncPostgresPayoutRepository:

    async def exists(self, job_id: str, pro_id: str) -> bool:
        async with db_conn() as conn:
            return bool(await conn.fetchval(
                "SELECT EXISTS (SELECT 1 FROM payout_ledger WHERE job_id = $1 AND pro_id = $2)",
                job_id, pro_id,
            ))

    async def list_for_job(self, job_id: str) -> list[PayoutLedgerEntry]:
        async with db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM payout_ledger WHERE job_id = $1 ORDER BY created_at, entry_id",
                job_id,
            )
            return [_row_to_entry(row) for row in rows]

    async def insert(
        self, job_id: str, pro_id: str, amount: Decimal, *, note: str, source: str
    ) -> Optional[PayoutLedgerEntry]:
        """Insert a pending entry; None if the pair (or the job's solo slot) is taken."""
        try:
            async with db_conn() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO payout_ledger (job_id, pro_id, amount, state, note, source)
                    VALUES ($1, $2, $3, 'pending', $4, $5)
                    ON CONFLICT DO NOTHING
                    RETURNING *
                    """,
                    job_id, pro_id, to_money(amount), note, source,
                )
                if row is None:
                    logger.info(
                        "Ledger insert skipped: conflicting entry exists",
                        extra={"job_id": job_id, "pro_id": pro_id},
                    )
                    return None
                return _row_to_entry(row)
        except Exception:
            logger.error(
                "Failed to insert ledger entry",
                extra={"job_id": job_id, "pro_id": pro_id},
                exc_info=True,
            )
            AppMetrics.database_error("ledger_insert")
            raise


# Global singleton
_payout_repo: AsyncPostgresPayoutRepository | None = None


def get_payout_repo() -> AsyncPostgresPayoutRepository:
    """Get the global payout ledger repository instance."""
    global _payout_repo
    if _payout_repo is None:
        _payout_repo = AsyncPostgresPayoutRepository()
    return _payout_repo
