"""Error taxonomy and the JSON error envelope returned by every endpoint."""
from __future__ import annotations

import uuid
from typing import Any, Dict, Mapping, Optional

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

__all__ = [
    "ERROR_STATUS",
    "AuthenticationError",
    "AuthorizationError",
    "CounterRegression",
    "NotFoundError",
    "PasskeyError",
    "RateLimitError",
    "ServerError",
    "ValidationError",
    "current_request_id",
    "error_envelope",
    "register_error_handlers",
]


ERROR_STATUS: Dict[str, int] = {
    "INVALID_REQUEST": 400,
    "INVALID_APP_ID": 400,
    "INVALID_CHALLENGE": 400,
    "REGISTRATION_FAILED": 400,
    "INVALID_REDIRECT_URI": 400,
    "PROVIDER_NOT_ENABLED": 400,
    "AUTHENTICATION_FAILED": 401,
    "INVALID_TOKEN": 401,
    "METHOD_DISABLED": 403,
    "INSUFFICIENT_SCOPE": 403,
    "APP_NOT_FOUND": 404,
    "USER_NOT_FOUND": 404,
    "CREDENTIAL_NOT_FOUND": 404,
    "NOT_FOUND": 404,
    "METHOD_NOT_ALLOWED": 405,
    "RATE_LIMITED": 429,
    "INTERNAL_ERROR": 500,
}

_DEFAULT_MESSAGES: Dict[str, str] = {
    "INVALID_REQUEST": "The request is malformed.",
    "INVALID_APP_ID": "A valid application ID is required.",
    "INVALID_CHALLENGE": "The challenge is invalid or has expired.",
    "REGISTRATION_FAILED": "Passkey registration failed.",
    "INVALID_REDIRECT_URI": "The redirect URI is not registered for this application.",
    "PROVIDER_NOT_ENABLED": "The requested OAuth provider is not enabled.",
    "AUTHENTICATION_FAILED": "Authentication failed.",
    "INVALID_TOKEN": "The token is invalid or has expired.",
    "METHOD_DISABLED": "This authentication method is disabled for the application.",
    "INSUFFICIENT_SCOPE": "The token does not grant the required scope.",
    "APP_NOT_FOUND": "Application not found.",
    "USER_NOT_FOUND": "User not found.",
    "CREDENTIAL_NOT_FOUND": "Credential not found.",
    "NOT_FOUND": "The requested resource was not found.",
    "METHOD_NOT_ALLOWED": "The HTTP method is not allowed for this resource.",
    "RATE_LIMITED": "Too many requests.",
    "INTERNAL_ERROR": "An internal error occurred.",
}

_HTTP_STATUS_CODES: Dict[int, str] = {
    400: "INVALID_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    429: "RATE_LIMITED",
}


class PasskeyError(Exception):
    """Base class for errors that are reported to the caller."""

    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        code: Optional[str] = None,
        message: Optional[str] = None,
        *,
        details: Optional[Mapping[str, Any]] = None,
        status: Optional[int] = None,
    ) -> None:
        self.code = code or self.default_code
        self.message = message or _DEFAULT_MESSAGES.get(self.code, "Request failed.")
        self.details = dict(details) if details else None
        self.status = status or ERROR_STATUS.get(self.code, 500)
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code!r}, {self.message!r})"


class ValidationError(PasskeyError):
    default_code = "INVALID_REQUEST"


class AuthenticationError(PasskeyError):
    default_code = "AUTHENTICATION_FAILED"


class AuthorizationError(PasskeyError):
    default_code = "INSUFFICIENT_SCOPE"


class NotFoundError(PasskeyError):
    default_code = "NOT_FOUND"


class RateLimitError(PasskeyError):
    default_code = "RATE_LIMITED"


class ServerError(PasskeyError):
    default_code = "INTERNAL_ERROR"


class CounterRegression(Exception):
    """Raised when an assertion's signature counter did not increase.

    Never reported to the caller directly; the ceremony layer collapses it
    into ``AUTHENTICATION_FAILED``.
    """

    def __init__(self, stored: int, received: int) -> None:
        self.stored = stored
        self.received = received
        super().__init__(
            f"signature counter {received} is not greater than stored counter {stored}"
        )


def current_request_id() -> str:
    request_id = getattr(g, "request_id", None)
    if not request_id:
        request_id = uuid.uuid4().hex
        g.request_id = request_id
    return request_id


def error_envelope(
    code: str,
    message: str,
    details: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "details": dict(details) if details else None,
            "requestId": current_request_id(),
        }
    }


def register_error_handlers(app: Flask) -> None:
    """Install request-id tracking and the envelope error handlers on ``app``."""

    @app.before_request
    def _assign_request_id() -> None:
        inbound = request.headers.get("X-Request-ID", "").strip()
        g.request_id = inbound[:64] if inbound else uuid.uuid4().hex

    @app.after_request
    def _echo_request_id(response):
        response.headers["X-Request-ID"] = current_request_id()
        return response

    @app.errorhandler(PasskeyError)
    def _handle_passkey_error(exc: PasskeyError):
        if exc.status >= 500:
            app.logger.error("Request %s failed: %s", current_request_id(), exc.code)
        response = jsonify(error_envelope(exc.code, exc.message, exc.details))
        response.status_code = exc.status
        return response

    @app.errorhandler(HTTPException)
    def _handle_http_exception(exc: HTTPException):
        status = exc.code or 500
        code = _HTTP_STATUS_CODES.get(status, "INTERNAL_ERROR" if status >= 500 else "INVALID_REQUEST")
        message = _DEFAULT_MESSAGES.get(code, "Request failed.")
        response = jsonify(error_envelope(code, message))
        response.status_code = status
        return response

    @app.errorhandler(Exception)
    def _handle_unexpected(exc: Exception):  # pylint: disable=broad-except
        app.logger.exception("Unhandled error while serving request %s", current_request_id())
        response = jsonify(error_envelope("INTERNAL_ERROR", _DEFAULT_MESSAGES["INTERNAL_ERROR"]))
        response.status_code = 500
        return response
