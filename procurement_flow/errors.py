"""
procurement_flow/errors.py

Typed failures of the workflow core.

Every core operation validates fully before mutating. When it cannot proceed it raises
one of the errors below; nothing is committed. The app factory renders them as JSON
(see register_error_handlers).

- ValidationError: user-correctable input (bad quantity, missing field, over backlog).
- AuthorizationError: the acting user may not perform the action.
- StateConflictError: the document is not in the required source state, or it was
  modified concurrently. Retryable after re-fetching.
- ReferentialIntegrityError: a referenced record does not exist or is outside the
  caller's project scope.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from flask import jsonify

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Base class for all workflow failures."""

    status_code = 400
    error_type = "WorkflowError"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_type, "message": self.message, "details": self.details}


class ValidationError(WorkflowError):
    status_code = 400
    error_type = "ValidationError"

    def __init__(self, message: str, *, line: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if line is not None:
            details["line"] = line
        super().__init__(message, details=details)
        self.line = line


class AuthorizationError(WorkflowError):
    status_code = 403
    error_type = "AuthorizationError"


class StateConflictError(WorkflowError):
    status_code = 409
    error_type = "StateConflictError"


class ReferentialIntegrityError(WorkflowError):
    status_code = 404
    error_type = "ReferentialIntegrityError"


def register_error_handlers(app) -> None:
    """Render WorkflowError subclasses as JSON with their HTTP status."""

    @app.errorhandler(WorkflowError)
    def _handle_workflow_error(exc: WorkflowError):
        logger.warning("%s: %s %s", exc.error_type, exc.message, exc.details or "")
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(404)
    def _handle_not_found(_exc):
        return jsonify({"error": "NotFound", "message": "Resource not found.", "details": {}}), 404

    @app.errorhandler(401)
    def _handle_unauthorized(_exc):
        return jsonify({"error": "Unauthorized", "message": "Login required.", "details": {}}), 401
