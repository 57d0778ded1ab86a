# app/infra/http_client.py
"""
Shared HTTP client sessions for the application.

Provides named, lazy-initialized aiohttp.ClientSession singletons
to avoid per-request session creation overhead and TCP connection churn.

Session profiles
~~~~~~~~~~~~~~~~
- **collaborator** – notify / catalog calls (total=collaborator_timeout_seconds, pool limit=20)
- **geocoder**     – address lookups (total=geocoding_timeout_seconds, pool limit=5)

Shutdown
~~~~~~~~
Call ``close_all_sessions()`` once during application shutdown.
"""
from __future__ import annotations

import aiohttp

from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Internal state
# ---------------------------------------------------------------------------

_sessions: dict[str, aiohttp.ClientSession] = {}


def _get_or_create(
    name: str,
    timeout: aiohttp.ClientTimeout,
    limit: int = 10,
) -> aiohttp.ClientSession:
    """Return an existing session or create a new one."""
    session = _sessions.get(name)
    if session is None or session.closed:
        session = aiohttp.ClientSession(
            timeout=timeout,
            connector=aiohttp.TCPConnector(
                keepalive_timeout=30,
                limit=limit,
                enable_cleanup_closed=True,
            ),
        )
        _sessions[name] = session
        logger.debug("HTTP session '%s' created (limit=%d)", name, limit)
    return session


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_collaborator_session() -> aiohttp.ClientSession:
    """Session for fire-and-forget collaborator calls (notifications, catalog)."""
    total = settings.collaborator_timeout_seconds
    return _get_or_create(
        "collaborator",
        aiohttp.ClientTimeout(total=total, connect=min(total, 2.0)),
        limit=20,
    )


def get_geocoder_session() -> aiohttp.ClientSession:
    """Session for forward geocoding lookups."""
    total = settings.geocoding_timeout_seconds
    return _get_or_create(
        "geocoder",
        aiohttp.ClientTimeout(total=total, connect=min(total, 2.0)),
        limit=5,
    )


async def close_all_sessions() -> None:
    """Gracefully close every managed session.  Call during app shutdown."""
    for name in list(_sessions):
        session = _sessions.pop(name, None)
        if session is not None and not session.closed:
            await session.close()
            logger.debug("HTTP session '%s' closed", name)
