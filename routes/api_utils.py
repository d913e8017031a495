"""Error translation for the admin sync API."""

from __future__ import annotations

import json
from functools import wraps
from typing import Any, Callable, ParamSpec, TypeVar

from flask import current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from catalog_sync.errors import AuthError, TransportError

P = ParamSpec("P")
R = TypeVar("R")


class APIError(Exception):
    """An error rendered as ``{"error": message, **payload}`` with ``status_code``."""

    status_code: int = 500
    message: str = "An unexpected error occurred."

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or type(self).message
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        self.payload = dict(payload or {})

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, **self.payload}


class BadRequestError(APIError):
    status_code = 400
    message = "Invalid request."


class NotFoundError(APIError):
    status_code = 404
    message = "Resource not found."


class ServiceUnavailableError(APIError):
    status_code = 503
    message = "Service unavailable."


class UpstreamServiceError(APIError):
    status_code = 502
    message = "IGDB request failed."


class UpstreamAuthError(UpstreamServiceError):
    message = "IGDB rejected the access token."


def upstream_error_from(exc: TransportError) -> UpstreamServiceError:
    """Map a transport failure to a 502 that keeps the upstream status."""

    payload = {"upstream_status": exc.status}
    if isinstance(exc, AuthError):
        return UpstreamAuthError(payload=payload)
    return UpstreamServiceError(str(exc), payload=payload)


def _as_api_error(exc: Exception) -> tuple[APIError, bool]:
    """Return the API error for ``exc`` and whether it was an expected failure."""

    if isinstance(exc, APIError):
        return exc, True
    if isinstance(exc, TransportError):
        return upstream_error_from(exc), True
    if isinstance(exc, HTTPException):
        return APIError(exc.description or str(exc), status_code=exc.code or 500), True
    return APIError("Internal server error"), False


def _request_context(status_code: int) -> str:
    context: dict[str, Any] = {
        "method": request.method,
        "route": request.path,
        "endpoint": request.endpoint,
        "view_args": dict(request.view_args or {}),
        "args": request.args.to_dict(flat=False),
        "status_code": status_code,
    }
    body = request.get_json(silent=True)
    if body is not None:
        context["json"] = body
    try:
        return json.dumps(context, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return repr(context)


def _log_failure(exc: Exception, api_error: APIError, expected: bool) -> None:
    status_code = api_error.status_code
    context = _request_context(status_code)
    if not expected:
        current_app.logger.exception(
            "Unhandled API error (%s): %s | context=%s", status_code, exc, context
        )
    elif status_code < 500:
        current_app.logger.warning(
            "Rejected API request (%s): %s | context=%s", status_code, exc, context
        )
    else:
        current_app.logger.error(
            "API request failed (%s): %s | context=%s", status_code, exc, context
        )


def handle_api_errors(func: Callable[P, R]) -> Callable[P, R]:
    """Render raised errors as JSON responses and log them with request context."""

    @wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs):  # type: ignore[misc]
        try:
            return func(*args, **kwargs)
        except Exception as exc:
            api_error, expected = _as_api_error(exc)
            _log_failure(exc, api_error, expected)
            return jsonify(api_error.to_dict()), api_error.status_code

    return wrapper


__all__ = [
    "APIError",
    "BadRequestError",
    "NotFoundError",
    "ServiceUnavailableError",
    "UpstreamAuthError",
    "UpstreamServiceError",
    "handle_api_errors",
    "upstream_error_from",
]
