# app/transport/http_app.py
"""
Dispatch HTTP API.

Access layers:
1. Public: /health, /ready, /availability
2. Pro portal: accept / decline / on my way / complete (pro session)
3. Admin: find matches, send offer, assign, payout backfill (admin session)
4. Monitoring: /metrics, /health/detailed (METRICS_TOKEN or internal network)

Routes are thin adapters: parse request → call the orchestrator →
map ``DispatchError`` to ``{ok: false, error, error_code}``.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Optional, Type, TypeVar

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError as PydanticValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.core.dispatch.assignments import AssignmentStateMachine
from app.core.dispatch.capacity import CapacityAllocator
from app.core.dispatch.domain import Assignment, GeoPoint, Job
from app.core.dispatch.errors import AuthError, DispatchError
from app.core.dispatch.models import (
    AssignmentView,
    AssignRequest,
    AssignResponse,
    AvailabilityQuery,
    AvailabilityResponse,
    AvailableSlotView,
    BackfillRequest,
    BackfillResponse,
    CompleteResponse,
    ErrorResponse,
    FindMatchesRequest,
    FindMatchesResponse,
    JobSummary,
    MatchItem,
    OkResponse,
    OnMyWayResponse,
    PortalActionRequest,
    SendOfferRequest,
    SendOfferResponse,
)
from app.core.dispatch.orchestrator import DispatchOrchestrator
from app.core.dispatch.payouts import PayoutCalculator
from app.infra.catalog_client import ServiceCatalogClient
from app.infra.db_async import close_pool, init_pool
from app.infra.db_resilience_async import default_retry_policy
from app.infra.geocoding import NominatimGeocoder
from app.infra.health_checks_async import get_async_health_checker
from app.infra.http_client import close_all_sessions
from app.infra.logging_config import get_logger, setup_logging
from app.infra.metrics import get_metrics_collector
from app.infra.migrations_async import validate_schema_version
from app.infra.notification_service import HttpProNotifier
from app.infra.pg_assignment_repo_async import get_assignment_repo
from app.infra.pg_capacity_repo_async import get_capacity_repo
from app.infra.pg_job_repo_async import get_job_repo
from app.infra.pg_payout_repo_async import get_payout_repo
from app.infra.pg_pro_repo_async import get_pro_repo
from app.infra.pg_session_store_async import get_session_store as get_pg_session_store
from app.transport.middleware import (
    ErrorHandlingMiddleware,
    RequestIDMiddleware,
    RequestLoggingMiddleware,
)
from app.transport.security import (
    SecurityHeaders,
    check_configured_tokens,
    require_admin_session,
    require_metrics_auth,
    require_pro_session,
    sanitize_error_message,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


# ============================================================================
# WIRING
# ============================================================================

def build_orchestrator() -> DispatchOrchestrator:
    """Compose the dispatch services over the asyncpg repositories."""
    retry = default_retry_policy()
    jobs = get_job_repo()
    assignments = get_assignment_repo()

    payouts = PayoutCalculator(
        jobs,
        assignments,
        get_payout_repo(),
        categories=ServiceCatalogClient() if settings.catalog_url else None,
        retry=retry,
    )
    state_machine = AssignmentStateMachine(assignments, jobs, payouts=payouts, retry=retry)

    return DispatchOrchestrator(
        jobs=jobs,
        pros=get_pro_repo(),
        state_machine=state_machine,
        payouts=payouts,
        capacity=CapacityAllocator(get_capacity_repo()),
        notifier=HttpProNotifier(),
        geocoder=NominatimGeocoder(),
        retry=retry,
    )


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_orchestrator(request: Request) -> DispatchOrchestrator:
    """Get the orchestrator from app state"""
    return request.app.state.orchestrator


def _parse(model: Type[M], payload: Any) -> M:
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise HTTPException(status_code=400, detail=_validation_summary(exc.errors()))


def _validation_summary(errors) -> str:
    parts = []
    for err in errors:
        location = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


def _acting_pro(session_pro_id: str, body_pro_id: Optional[str]) -> str:
    """The session decides who is acting; a body pro_id may only confirm it."""
    if body_pro_id and body_pro_id != session_pro_id:
        raise AuthError("Session does not belong to this pro")
    return session_pro_id


def _error_body(error: str, error_code: str) -> dict:
    return ErrorResponse(error=error, error_code=error_code).model_dump()


# ============================================================================
# VIEWS
# ============================================================================

def _assignment_view(assignment: Assignment) -> AssignmentView:
    return AssignmentView(
        assign_id=assignment.assign_id,
        job_id=assignment.job_id,
        pro_id=assignment.pro_id,
        state=assignment.state.value,
        distance_miles=assignment.distance_miles,
        picked_by_rule=assignment.picked_by_rule,
        offer_sent_at=assignment.offer_sent_at,
        accepted_at=assignment.accepted_at,
        completed_at=assignment.completed_at,
    )


def _job_summary(job: Job) -> JobSummary:
    return JobSummary(
        job_id=job.job_id,
        status=job.status.value,
        service_id=job.service_id,
        customer_name=job.customer_name,
        service_address=job.service_address,
        service_city=job.service_city,
        service_state=job.service_state,
        geo_lat=job.geo_lat,
        geo_lng=job.geo_lng,
        start_iso=job.start_iso,
    )


# ============================================================================
# MIDDLEWARE FOR SECURITY HEADERS
# ============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(f"Starting dispatch API: env={settings.app_env}")

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

        if settings.log_level.upper() == "DEBUG":
            logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
            raise RuntimeError("LOG_LEVEL=DEBUG in production")

    check_configured_tokens()

    await init_pool()
    logger.info("Database pool initialized")

    # Validate schema version (does NOT run migrations)
    try:
        await validate_schema_version()
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m app.infra.migrate",
            exc_info=True
        )
        await close_pool()
        raise

    fastapi_app.state.sessions = get_pg_session_store()
    fastapi_app.state.orchestrator = build_orchestrator()

    logger.info(
        f"Dispatch ready: tz={settings.business_timezone}, "
        f"fallback_capacity={settings.fallback_capacity_per_slot}, "
        f"notifications={'on' if settings.notify_pro_url else 'off'}, "
        f"geocoding={'on' if settings.geocoding_enabled else 'off'}"
    )

    yield

    # SHUTDOWN
    logger.info("Shutting down application")
    await close_all_sessions()
    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Pro Dispatch",
    description="Dispatch & assignment engine: geo-matching, capacity, offers, payouts",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Domain errors carry their own status code"""
    if exc.status_code >= 500:
        logger.error(f"Dispatch error: {exc.error_code}: {exc.detail}")
        detail = sanitize_error_message(exc, settings.is_production)
    else:
        detail = exc.detail

    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthError) else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(detail, exc.error_code),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies and query strings are plain 400s"""
    return JSONResponse(
        status_code=400,
        content=_error_body(_validation_summary(exc.errors()), "invalid_request"),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    error_code = "invalid_request" if exc.status_code == 400 else f"http_{exc.status_code}"
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(str(exc.detail), error_code),
        headers=exc.headers,
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness probe. Minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness probe: critical checks only."""
    result = await get_async_health_checker().run_checks(include_non_critical=False, include_schema=False)
    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


@app.get("/availability")
async def availability(
    request: Request,
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    """Bookable slots over a date range, optionally filtered by location."""
    query = _parse(AvailabilityQuery, dict(request.query_params))
    location = GeoPoint(query.lat, query.lng) if query.lat is not None else None

    slots = await orchestrator.availability(query.start_date, query.end_date, location)
    return AvailabilityResponse(
        available_slots=[AvailableSlotView(**slot.to_dict()) for slot in slots],
        timezone=orchestrator.capacity.tz.key,
    ).model_dump()


# ============================================================================
# ADMIN DISPATCH ENDPOINTS (admin session)
# ============================================================================

@app.post("/dispatch/find_matches")
async def find_matches(
    payload: dict,
    admin: str = Depends(require_admin_session),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    req = _parse(FindMatchesRequest, payload)
    result = await orchestrator.find_matches(req.job_id)
    return FindMatchesResponse(
        job=_job_summary(result.job),
        matches=[MatchItem(**m.to_dict()) for m in result.matches],
        total_matches=result.total_matches,
    ).model_dump(mode="json")


@app.post("/dispatch/send_offer")
async def send_offer(
    payload: dict,
    admin: str = Depends(require_admin_session),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    req = _parse(SendOfferRequest, payload)
    offer = await orchestrator.send_offer(req.job_id, req.pro_id, req.distance_miles)
    logger.info("Offer sent by admin", extra={"job_id": req.job_id, "pro_id": req.pro_id, "admin": admin})
    return SendOfferResponse(offer=_assignment_view(offer)).model_dump(mode="json")


@app.post("/dispatch/assign")
async def assign(
    payload: dict,
    admin: str = Depends(require_admin_session),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    req = _parse(AssignRequest, payload)
    assignment = await orchestrator.assign(req.job_id, req.pro_id)
    logger.info("Job assigned by admin", extra={"job_id": req.job_id, "pro_id": req.pro_id, "admin": admin})
    return AssignResponse(assignment=_assignment_view(assignment)).model_dump(mode="json")


@app.post("/admin/payouts/backfill")
async def backfill_payouts(
    payload: Optional[dict] = None,
    admin: str = Depends(require_admin_session),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    req = _parse(BackfillRequest, payload or {})
    report = await orchestrator.backfill_payouts(req.pro_id)
    return BackfillResponse(results=report.to_dict()).model_dump()


# ============================================================================
# PRO PORTAL ENDPOINTS (pro session)
# ============================================================================

@app.post("/portal/accept")
async def portal_accept(
    payload: dict,
    session_pro_id: str = Depends(require_pro_session),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    req = _parse(PortalActionRequest, payload)
    await orchestrator.accept(req.job_id, _acting_pro(session_pro_id, req.pro_id))
    return OkResponse().model_dump()


@app.post("/portal/decline")
async def portal_decline(
    payload: dict,
    session_pro_id: str = Depends(require_pro_session),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    req = _parse(PortalActionRequest, payload)
    await orchestrator.decline(req.job_id, _acting_pro(session_pro_id, req.pro_id))
    return OkResponse().model_dump()


@app.post("/portal/on_my_way")
async def portal_on_my_way(
    payload: dict,
    session_pro_id: str = Depends(require_pro_session),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    req = _parse(PortalActionRequest, payload)
    updated = await orchestrator.on_my_way(req.job_id, _acting_pro(session_pro_id, req.pro_id))
    return OnMyWayResponse(job_status_updated=updated).model_dump()


@app.post("/portal/complete")
async def portal_complete(
    payload: dict,
    session_pro_id: str = Depends(require_pro_session),
    orchestrator: DispatchOrchestrator = Depends(get_orchestrator),
):
    req = _parse(PortalActionRequest, payload)
    result = await orchestrator.complete(req.job_id, _acting_pro(session_pro_id, req.pro_id))
    payout = result.payout.to_dict() if result.payout is not None else None
    return CompleteResponse(payout=payout).model_dump()


# ============================================================================
# MONITORING ENDPOINTS (Internal network or METRICS_TOKEN)
# ============================================================================

@app.get("/health/detailed", dependencies=[Depends(require_metrics_auth)])
async def detailed_health():
    """All checks plus schema state."""
    return await get_async_health_checker().run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    """In-process counters and histograms."""
    return get_metrics_collector().get_metrics()


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"], include_in_schema=False)
async def catch_all(path: str):
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,  # Middleware logs requests
        server_header=False,
        date_header=False,
    )
