"""JSON error responses for the API.

Every error body has the same shape::

    {"error": "<message>", "code": "ERR_*", "details": {...}?, ...extra}

Services raise the exceptions in ``itsm.core.exceptions``; each blueprint
calls ``register_error_handlers(bp)`` once and the handlers below turn
those exceptions into responses.
"""

from __future__ import annotations

import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

from itsm.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConcurrencyConflictError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class E:
    """Error codes."""

    BAD_REQUEST = "ERR_BAD_REQUEST"
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"
    RATE_LIMITED = "ERR_RATE_LIMITED"
    INTERNAL = "ERR_INTERNAL"


HTTP_STATUS = {
    E.BAD_REQUEST: 400,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.VALIDATION_INVALID: 422,
    E.INVALID_TRANSITION: 422,
    E.RATE_LIMITED: 429,
    E.INTERNAL: 500,
}

INTERNAL_MESSAGE = "An unexpected error occurred. Please try again later."


def api_error(code: str, message: str, *, status: int | None = None,
              details: dict | None = None, **extra):
    """``(response, status)`` for ``code``; ``status`` overrides the usual mapping."""
    body = {"error": message, "code": code}
    if details:
        body["details"] = details
    body.update(extra)
    return jsonify(body), status or HTTP_STATUS.get(code, 400)


def register_error_handlers(bp):
    """Install the exception-to-response mapping on ``bp``."""

    @bp.errorhandler(AuthenticationError)
    def _unauthenticated(exc):
        return api_error(E.UNAUTHORIZED, str(exc))

    @bp.errorhandler(AuthorizationError)
    def _forbidden(exc):
        return api_error(E.FORBIDDEN, str(exc))

    @bp.errorhandler(NotFoundError)
    def _missing(exc):
        return api_error(E.NOT_FOUND, f"{exc.resource} not found")

    @bp.errorhandler(ValidationError)
    def _invalid(exc):
        code = E.INVALID_TRANSITION if exc.transition else E.VALIDATION_INVALID
        return api_error(code, str(exc), details=exc.details)

    @bp.errorhandler(ConcurrencyConflictError)
    def _conflict(exc):
        logger.info("Concurrent update rejected: %s", exc)
        return api_error(E.CONFLICT_STATE, str(exc), retryable=exc.retryable)

    @bp.errorhandler(HTTPException)
    def _http(exc):
        return api_error(E.BAD_REQUEST, exc.description or exc.name, status=exc.code)

    @bp.errorhandler(Exception)
    def _unexpected(exc):
        logger.exception("Unhandled error in blueprint %s", bp.name)
        return api_error(E.INTERNAL, INTERNAL_MESSAGE)

    return bp
