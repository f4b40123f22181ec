"""
Route-level gating.

A static prefix table assigns each path an access level; the longest
matching prefix wins. The middleware enforces it before any handler runs:
console pages are redirected, API paths get JSON errors.
"""

import logging
from enum import Enum
from typing import Dict, Optional

from fastapi import Request
from fastapi.responses import RedirectResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from ossmanager.api.access.guards import authenticate_request, ensure_admin
from ossmanager.api.config import settings
from ossmanager.api.exceptions import (
    AccessCoreError,
    PermissionDenied,
    TokenError,
    access_core_error_handler,
)


logger = logging.getLogger(__name__)


class AccessLevel(str, Enum):
    PUBLIC = "PUBLIC"
    AUTH = "AUTH"
    ADMIN = "ADMIN"


LOGIN_PAGE = "/auth/login"
DENIED_PAGE = "/main/dashboard"


def default_route_table(api_prefix: str = settings.API_PREFIX) -> Dict[str, AccessLevel]:
    """Console pages plus the API surface."""
    return {
        "/main/admin": AccessLevel.ADMIN,
        "/main": AccessLevel.AUTH,
        "/auth": AccessLevel.PUBLIC,
        "/": AccessLevel.PUBLIC,
        api_prefix: AccessLevel.AUTH,
        f"{api_prefix}/auth": AccessLevel.PUBLIC,
        f"{api_prefix}/health": AccessLevel.PUBLIC,
        f"{api_prefix}/audit": AccessLevel.ADMIN,
    }


def _prefix_matches(prefix: str, path: str) -> bool:
    if prefix == "/":
        return True
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


def resolve_access_level(path: str, table: Dict[str, AccessLevel]) -> AccessLevel:
    """Longest matching prefix wins; unmatched paths are public."""
    best: Optional[str] = None
    for prefix in table:
        if _prefix_matches(prefix, path) and (best is None or len(prefix) > len(best)):
            best = prefix
    return table[best] if best is not None else AccessLevel.PUBLIC


class RouteAccessMiddleware(BaseHTTPMiddleware):
    """Applies the prefix table using the application's token service."""

    def __init__(
        self,
        app: ASGIApp,
        table: Optional[Dict[str, AccessLevel]] = None,
        api_prefix: str = settings.API_PREFIX,
    ):
        super().__init__(app)
        self.api_prefix = api_prefix
        self.table = table if table is not None else default_route_table(api_prefix)

    def _is_api(self, path: str) -> bool:
        return _prefix_matches(self.api_prefix, path)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        # Preflight requests carry no credentials
        if request.method == "OPTIONS":
            return await call_next(request)

        path = request.url.path
        level = resolve_access_level(path, self.table)
        if level is AccessLevel.PUBLIC:
            return await call_next(request)

        try:
            claims = authenticate_request(request, request.app.state.token_service)
            if level is AccessLevel.ADMIN:
                ensure_admin(claims)
        except AccessCoreError as exc:
            return await self._deny(request, exc)

        request.state.claims = claims
        return await call_next(request)

    async def _deny(self, request: Request, exc: AccessCoreError) -> Response:
        if self._is_api(request.url.path):
            return await access_core_error_handler(request, exc)

        target = DENIED_PAGE if isinstance(exc, PermissionDenied) else LOGIN_PAGE
        logger.info("Redirecting %s to %s (%s)", request.url.path, target, exc.code)
        response = RedirectResponse(url=target, status_code=302)
        if isinstance(exc, TokenError):
            response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")
        return response
