# app/infra/pg_session_store_async.py
"""
Async session lookups for the portal and admin APIs.

Sessions are issued by the auth collaborator; dispatch only resolves a
bearer session id to its pro (or admin) while it has not expired.
"""
from __future__ import annotations
from typing import Optional

from app.infra.db_async import db_conn
from app.infra.metrics import AppMetrics
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


class AsyncPostgresSessionStore:
    """Async implementation of the session store using asyncpg"""

    async def get_pro_id(self, session_id: str) -> Optional[str]:
        try:
            async with db_conn() as conn:
                return await conn.fetchval(
                    "SELECT pro_id FROM pro_sessions WHERE session_id = $1 AND expires_at > now()",
                    session_id,
                )
        except Exception:
            logger.error(f"Failed to resolve pro session: {session_id[:6]}***", exc_info=True)
            AppMetrics.database_error("pro_session_get")
            raise

    async def get_admin(self, session_id: str) -> Optional[str]:
        try:
            async with db_conn() as conn:
                return await conn.fetchval(
                    "SELECT admin_email FROM admin_sessions WHERE session_id = $1 AND expires_at > now()",
                    session_id,
                )
        except Exception:
            logger.error(f"Failed to resolve admin session: {session_id[:6]}***", exc_info=True)
            AppMetrics.database_error("admin_session_get")
            raise


# Global singleton
_session_store: AsyncPostgresSessionStore | None = None


def get_session_store() -> AsyncPostgresSessionStore:
    """Get the global session store instance."""
    global _session_store
    if _session_store is None:
        _session_store = AsyncPostgresSessionStore()
    return _session_store
