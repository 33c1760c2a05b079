"""
GroupCopilot
Blueprint registry and shared request helpers.
"""

import logging

from flask import current_app, request
from werkzeug.exceptions import HTTPException

from groupcopilot.core.exceptions import (
    ConcurrencyConflictError,
    ConflictError,
    GateResolvedError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from groupcopilot.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def current_user_id() -> str | None:
    """Acting user from ``X-User-Id`` (identity is asserted by the fronting auth proxy)."""
    user_id = request.headers.get("X-User-Id", "").strip()
    if user_id:
        return user_id
    data = request.get_json(silent=True) or {}
    return (str(data.get("user_id") or "").strip()) or None


def get_dispatcher():
    return current_app.extensions["agent_dispatcher"]


def bounded_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        value = default
    return max(minimum, min(value, maximum))


def register_error_handlers(bp):
    """Map service exceptions to JSON responses for every route on *bp*."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(InvalidTransitionError)
    def _handle_transition(error: InvalidTransitionError):
        return api_error(E.INVALID_TRANSITION, str(error), details=error.details)

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_INVALID, str(error), details=error.details)

    @bp.errorhandler(GateResolvedError)
    def _handle_resolved(error: GateResolvedError):
        return api_error(E.CONFLICT_STATE, str(error), details={"status": error.status})

    @bp.errorhandler(ConcurrencyConflictError)
    def _handle_concurrent(error: ConcurrencyConflictError):
        logger.info("Concurrent update on %s endpoint=%s", error.resource, request.endpoint)
        return api_error(E.CONFLICT_CONCURRENT, str(error))

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        return api_error(E.CONFLICT_DUPLICATE, str(error))

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")

    return bp
