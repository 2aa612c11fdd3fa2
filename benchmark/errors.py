"""Exception hierarchy and JSON error responses.

Services raise these; the app factory registers one handler for
``BenchmarkError`` so every blueprint answers with the same shape::

    {"success": false, "error": {"code": ..., "message": ..., "details": {...}}}

Running out of work (no queued order, WIP cap reached) is not an error and is
reported by the assignment engine as an outcome instead.
"""

import logging

from flask import jsonify
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class BenchmarkError(Exception):
    code = "ERR_INTERNAL"
    status = 500

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidTransition(BenchmarkError):
    """The requested event is not allowed from the order's current state."""

    code = "ERR_INVALID_TRANSITION"
    status = 409

    def __init__(self, message: str, state: str | None = None,
                 event: str | None = None, details: dict | None = None) -> None:
        details = dict(details or {})
        if state is not None:
            details.setdefault("state", state)
        if event is not None:
            details.setdefault("event", event)
        super().__init__(message, details)
        self.state = state
        self.event = event


class RoleNotPermitted(InvalidTransition):
    """The actor's role may not perform the event on this state."""

    code = "ERR_ROLE_NOT_PERMITTED"
    status = 403


class ValidationError(BenchmarkError):
    """Well-formed request that breaks a business rule; ``details`` is per field."""

    code = "ERR_VALIDATION"
    status = 422


class ConcurrencyConflict(BenchmarkError):
    """A guarded update matched no row: someone else changed the row first."""

    code = "ERR_CONCURRENCY_CONFLICT"
    status = 409

    def __init__(self, resource_id: int, expected_state: str, resource: str = "Order") -> None:
        super().__init__(
            f"{resource} {resource_id} is no longer in state {expected_state}",
            {f"{resource.lower()}_id": resource_id, "expected_state": expected_state},
        )
        self.resource = resource
        self.resource_id = resource_id
        self.expected_state = expected_state


class NotFound(BenchmarkError):
    code = "ERR_NOT_FOUND"
    status = 404

    def __init__(self, resource: str, resource_id=None) -> None:
        msg = resource
        if resource_id is not None:
            msg += f" id={resource_id}"
        super().__init__(msg + " not found")
        self.resource = resource
        self.resource_id = resource_id


class Unauthorized(BenchmarkError):
    code = "ERR_UNAUTHORIZED"
    status = 401


def api_error(code: str, message: str, status: int, details: dict | None = None):
    body = {"success": False, "error": {"code": code, "message": message}}
    if details:
        body["error"]["details"] = details
    return jsonify(body), status


def register_error_handlers(app):
    from . import db

    @app.errorhandler(BenchmarkError)
    def handle_benchmark_error(e):
        logger.info("%s: %s", e.code, e.message)
        return api_error(e.code, e.message, e.status, e.details)

    @app.errorhandler(SQLAlchemyError)
    def handle_storage_error(e):
        db.session.rollback()
        logger.error("Storage failure: %s", e, exc_info=True)
        return api_error("ERR_DATABASE", "Storage unavailable", 500)

    @app.errorhandler(404)
    def not_found(e):
        return api_error("ERR_NOT_FOUND", "Not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error("ERR_METHOD_NOT_ALLOWED", "Method not allowed", 405)
