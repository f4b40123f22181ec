"""
OSS Manager - Access Core Exception Hierarchy
=============================================

Structured exception types raised by the token service, guards and the
administration layer. Each carries the HTTP status it maps to so the
FastAPI handlers registered in ``register_exception_handlers`` can render
them without per-route try/except blocks.

Exception Categories:
    - AuthenticationError: Bad credentials at login
    - TokenExpired / TokenInvalid: Session credential problems
    - PermissionDenied: Authenticated but not allowed
    - NotFound / ValidationError / ConflictError: Administration input errors
    - RateLimited: Too many failed logins for a key
    - DeadlineExceeded: Caller deadline elapsed
    - InternalError: Catch-all, never leaks internals
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ossmanager.api.config import settings


logger = logging.getLogger(__name__)


class AccessCoreError(Exception):
    """
    Base exception for all access-core errors.

    Attributes:
        message: Human-readable error description, safe to return to clients
        code: Stable machine-readable error code
        details: Optional dict with additional context (logged, not returned)
    """

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


# =============================================================================
# IDENTITY ERRORS (401)
# =============================================================================


class AuthenticationError(AccessCoreError):
    """Username/password pair did not authenticate."""

    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs):
        super().__init__(message, **kwargs)


class TokenError(AccessCoreError):
    """Base for session credential failures."""

    status_code = status.HTTP_401_UNAUTHORIZED


class TokenExpired(TokenError):
    """Credential was valid but its validity window has closed."""

    default_code = "token_expired"

    def __init__(self, message: str = "Session expired", **kwargs):
        super().__init__(message, **kwargs)


class TokenInvalid(TokenError):
    """Credential is missing, malformed or forged."""

    default_code = "token_invalid"

    def __init__(self, message: str = "Invalid session credential", **kwargs):
        super().__init__(message, **kwargs)


# =============================================================================
# AUTHORIZATION ERRORS (403)
# =============================================================================


class PermissionDenied(AccessCoreError):
    """Identity is known but not allowed to perform the operation."""

    status_code = status.HTTP_403_FORBIDDEN
    default_code = "forbidden"

    def __init__(self, message: str = "Forbidden", **kwargs):
        super().__init__(message, **kwargs)


# =============================================================================
# ADMINISTRATION ERRORS
# =============================================================================


class NotFound(AccessCoreError):
    """Referenced user, role, permission or mapping does not exist."""

    status_code = status.HTTP_404_NOT_FOUND
    default_code = "not_found"

    def __init__(self, entity: str, entity_id: Any = None, **kwargs):
        message = f"{entity} not found"
        super().__init__(message, **kwargs)
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(AccessCoreError):
    """Field-level input validation failure."""

    status_code = 422
    default_code = "validation_error"

    def __init__(self, errors: Dict[str, str], message: str = "Validation failed", **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors


class ConflictError(AccessCoreError):
    """Unique key (username, role name, mapping) already taken."""

    status_code = status.HTTP_409_CONFLICT
    default_code = "conflict"

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.field = field


class RateLimited(AccessCoreError):
    """Too many failed login attempts for a key within the window."""

    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_code = "rate_limited"

    def __init__(self, retry_after: int, message: str = "Too many login attempts", **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class DeadlineExceeded(AccessCoreError):
    """Administration call did not finish before the caller's deadline."""

    status_code = status.HTTP_504_GATEWAY_TIMEOUT
    default_code = "deadline_exceeded"

    def __init__(self, message: str = "Request deadline exceeded", **kwargs):
        super().__init__(message, **kwargs)


class InternalError(AccessCoreError):
    """Unexpected failure. The message returned to clients is always generic."""

    def __init__(self, message: str = "Internal server error", **kwargs):
        super().__init__(message, **kwargs)


# =============================================================================
# FASTAPI HANDLERS
# =============================================================================


def _error_body(exc: AccessCoreError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, ValidationError):
        body["errors"] = exc.errors
    elif isinstance(exc, ConflictError) and exc.field:
        body["errors"] = {exc.field: exc.message}
    return body


async def access_core_error_handler(request: Request, exc: AccessCoreError) -> JSONResponse:
    """Render an AccessCoreError with its mapped status code."""
    headers: Dict[str, str] = {}

    if isinstance(exc, (AuthenticationError, TokenError)):
        headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)

    if exc.status_code >= 500:
        logger.error(
            "Request failed: %s",
            exc,
            extra={"path": request.url.path, "details": exc.details},
        )

    response = JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc),
        headers=headers,
    )

    # A rejected session credential must not linger in the browser
    if isinstance(exc, TokenError):
        response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")

    return response


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render body/query validation failures with the field-level error map."""
    errors: Dict[str, str] = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        errors[".".join(location) or "body"] = error.get("msg", "Invalid value")
    return JSONResponse(status_code=422, content=_error_body(ValidationError(errors)))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected exceptions and return a generic 500."""
    logger.exception("Unhandled error on %s", request.url.path)
    error = InternalError()
    return JSONResponse(status_code=error.status_code, content=_error_body(error))


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the access-core handlers to an application."""
    app.add_exception_handler(AccessCoreError, access_core_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
