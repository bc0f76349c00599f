"""Shared error handling utilities for the Flask services.

Provides the APIError exception and standard JSON error responses of the form
``{"error": {"code": ..., "message": ..., "status": ...}}``.
"""

import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class APIError(Exception):
    """API error carrying an HTTP status and a machine readable code."""

    def __init__(self, message: str, status: int = 400, code: str = "bad_request", extra: dict | None = None):
        super().__init__(message)
        self.message = message
        self.status = int(status)
        self.code = code
        self.extra = extra or {}

    def to_dict(self):
        payload = {
            "code": self.code,
            "message": self.message,
            "status": self.status,
        }
        if self.extra:
            payload["extra"] = self.extra
        return payload


def not_found(what: str) -> APIError:
    return APIError(f"{what} not found", status=404, code="not_found")


def validation_error(message: str, extra: dict | None = None) -> APIError:
    return APIError(message, status=400, code="validation_error", extra=extra)


def install_error_handlers(app):
    """Install global error handlers returning standardized JSON."""

    @app.errorhandler(APIError)
    def _handle_api_error(err: APIError):
        if err.status >= 500:
            logger.error("%s %s failed: %s", app.name, err.code, err.message)
        resp = jsonify({"error": err.to_dict()})
        if "retry_after" in err.extra:
            resp.headers["Retry-After"] = str(err.extra["retry_after"])
        return resp, err.status

    @app.errorhandler(HTTPException)
    def _handle_http_exception(err: HTTPException):
        payload = {
            "code": (err.name or "http_error").lower().replace(" ", "_"),
            "message": err.description if hasattr(err, 'description') else str(err),
            "status": err.code or 500,
        }
        return jsonify({"error": payload}), err.code or 500

    @app.errorhandler(Exception)
    def _handle_unexpected(err: Exception):
        # Do not leak internals; return generic server error
        logger.exception("unhandled error in %s", app.name)
        payload = {"code": "server_error", "message": "unexpected server error", "status": 500}
        return jsonify({"error": payload}), 500


__all__ = ["APIError", "install_error_handlers", "not_found", "validation_error"]
