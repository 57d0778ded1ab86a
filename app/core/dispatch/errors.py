# app/core/dispatch/errors.py
"""
Typed domain errors for the dispatch services.

Each error maps to a specific HTTP status code.  The transport layer
catches ``DispatchError`` subtypes and converts them to JSON responses
without embedding business logic in the route handlers.

Only ``TransientStoreError`` represents a retryable condition; every
other subtype is a caller-visible outcome and is never retried.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(DispatchError):
    """Missing or malformed required field (400)."""

    status_code = 400
    error_code = "invalid_request"


class AuthError(DispatchError):
    """Invalid or expired session (401)."""

    status_code = 401
    error_code = "bad_session"


class NotFoundError(DispatchError):
    """Job, pro or assignment not found (404)."""

    status_code = 404
    error_code = "not_found"


class OfferNotFoundError(NotFoundError):
    """No active (offered) assignment for the job/pro pair."""

    error_code = "offer_not_found"


class AssignmentNotFoundError(NotFoundError):
    """No assignment at all for the job/pro pair."""

    error_code = "assignment_not_found"


class ConflictError(DispatchError):
    """Duplicate or conflicting state (409). Caller must re-query."""

    status_code = 409
    error_code = "conflict"


class DuplicateOfferError(ConflictError):
    """An offer already exists for this job/pro pair."""

    error_code = "duplicate_offer"

    def __init__(self, detail: str, existing_state: str | None = None):
        super().__init__(detail)
        self.existing_state = existing_state


class InvalidTransitionError(ConflictError):
    """Assignment is in a state that does not allow the requested transition."""

    error_code = "invalid_transition"


class JobAlreadyAssignedError(ConflictError):
    """Another pro already owns the job and is not its team partner."""

    error_code = "job_already_assigned"

    def __init__(self, detail: str, owner_pro_id: str | None = None):
        super().__init__(detail)
        self.owner_pro_id = owner_pro_id


class TransientStoreError(DispatchError):
    """Store unavailable after the retry budget was exhausted (500)."""

    status_code = 500
    error_code = "store_unavailable"
