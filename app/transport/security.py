# app/transport/security.py
"""
Security utilities for the dispatch API.

- Session authentication: ``Authorization: Bearer <session_id>`` resolved
  against the pro / admin session tables
- Metrics access: METRICS_TOKEN bearer or internal network
- Response security headers
- Error message sanitization for production
"""
import hmac
import ipaddress
from functools import lru_cache

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import settings
from app.core.dispatch.errors import AuthError
from app.core.dispatch.ports import AsyncSessionStore
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum token length for security (32 bytes = 256 bits)
MIN_TOKEN_LENGTH = 32

session_bearer_scheme = HTTPBearer(
    scheme_name="Session",
    description="Session id issued at login (without 'Bearer ' prefix)",
    auto_error=False,  # Missing/invalid sessions map to our own 401 body
)

metrics_bearer_scheme = HTTPBearer(
    scheme_name="Metrics Token",
    description="Enter your metrics token (without 'Bearer ' prefix)",
    auto_error=False,
)


def check_configured_tokens() -> None:
    """Warn at startup about a short metrics token."""
    if settings.metrics_token and len(settings.metrics_token) < MIN_TOKEN_LENGTH:
        logger.warning(
            f"SECURITY: METRICS_TOKEN is too short ({len(settings.metrics_token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )


# =============================================================================
# Session authentication
# =============================================================================

def get_session_store(request: Request) -> AsyncSessionStore:
    return request.app.state.sessions


def _session_id(credentials: HTTPAuthorizationCredentials | None) -> str:
    if credentials is None or not credentials.credentials.strip():
        raise AuthError("Missing session")
    return credentials.credentials.strip()


async def require_pro_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(session_bearer_scheme),
    sessions: AsyncSessionStore = Depends(get_session_store),
) -> str:
    """Resolve the bearer session to its pro_id, or 401."""
    session_id = _session_id(credentials)
    pro_id = await sessions.get_pro_id(session_id)
    if not pro_id:
        logger.info("Rejected pro session", extra={"session_prefix": session_id[:6]})
        raise AuthError("Invalid or expired session")
    return pro_id


async def require_admin_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(session_bearer_scheme),
    sessions: AsyncSessionStore = Depends(get_session_store),
) -> str:
    """Resolve the bearer session to the admin's email, or 401."""
    session_id = _session_id(credentials)
    admin = await sessions.get_admin(session_id)
    if not admin:
        logger.info("Rejected admin session", extra={"session_prefix": session_id[:6]})
        raise AuthError("Invalid or expired admin session")
    return admin


# =============================================================================
# Metrics / monitoring access
# =============================================================================

@lru_cache(maxsize=1)
def _get_internal_networks() -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    networks = []
    for cidr in settings.internal_networks.split(","):
        cidr = cidr.strip()
        if not cidr:
            continue
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError as e:
            logger.warning(f"Invalid CIDR in INTERNAL_NETWORKS: {cidr} - {e}")
    return networks


def _get_client_ip(request: Request) -> str:
    """Client IP; X-Forwarded-For is trusted only with TRUST_PROXY_HEADERS."""
    client_ip = request.client.host if request.client else "unknown"

    if settings.trust_proxy_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()

    return client_ip


def _is_internal_ip(ip_str: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(ip in network for network in _get_internal_networks())


def require_metrics_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
):
    """
    Metrics/monitoring endpoints.

    With METRICS_TOKEN set a matching bearer token is required; without it
    only internal-network clients get through.
    """
    if settings.metrics_token:
        if not credentials or not hmac.compare_digest(credentials.credentials, settings.metrics_token):
            logger.warning("Metrics endpoint accessed without a valid token")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return

    client_ip = _get_client_ip(request)
    if not _is_internal_ip(client_ip):
        logger.warning(f"Metrics access denied from non-internal IP: {client_ip}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


# =============================================================================
# Response hardening
# =============================================================================

class SecurityHeaders:
    """OWASP recommended headers for a JSON API."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store"

        # HSTS (only behind HTTPS)
        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """Detailed messages in dev, generic ones in production."""
    if not is_production:
        return str(error)

    generic_messages = {
        "ValueError": "Invalid input",
        "KeyError": "Invalid request",
        "PostgresError": "Service temporarily unavailable",
        "ConnectionError": "Service temporarily unavailable",
        "TimeoutError": "Request timeout",
    }
    return generic_messages.get(type(error).__name__, "An error occurred")
