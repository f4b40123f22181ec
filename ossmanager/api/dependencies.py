"""
FastAPI Dependencies

Common dependencies for dependency injection. The guard dependencies form a
chain: every guard depends on ``get_current_claims`` (AuthGuard). A denial
on an audited route is recorded before the 403 is raised.
"""

import math
from typing import Optional

from fastapi import Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ossmanager.api.access.audit import AuditEmitter, get_audit_emitter, record_denial
from ossmanager.api.access.guards import (
    OwnershipPredicate,
    authenticate_request,
    ensure_admin,
    ensure_owner,
    ensure_permission,
)
from ossmanager.api.access.rbac import Action, Claims, Resource
from ossmanager.api.auth.jwt import TokenService, get_token_service
from ossmanager.api.config import settings
from ossmanager.api.db.session import get_db
from ossmanager.api.db.store import CredentialStore
from ossmanager.api.exceptions import PermissionDenied, ValidationError


def get_app_token_service(request: Request) -> TokenService:
    """Token service attached to the running application."""
    return getattr(request.app.state, "token_service", None) or get_token_service()


async def get_current_claims(
    request: Request,
    token_service: TokenService = Depends(get_app_token_service),
) -> Claims:
    """
    AuthGuard. Resolve the bearer header or session cookie into claims.

    Raises:
        TokenInvalid / TokenExpired: Rendered as 401
    """
    return authenticate_request(request, token_service)


def get_emitter() -> AuditEmitter:
    """Dependency to get the audit emitter."""
    return get_audit_emitter()


async def get_admin_claims(
    request: Request,
    claims: Claims = Depends(get_current_claims),
    emitter: AuditEmitter = Depends(get_emitter),
) -> Claims:
    """AdminGuard. Require a manager identity."""
    try:
        return ensure_admin(claims)
    except PermissionDenied as e:
        await record_denial(request, claims, emitter, e)
        raise


def require_permission(resource: Resource, action: Optional[Action] = None):
    """PermissionGuard factory for route dependencies."""

    async def permission_guard(
        request: Request,
        claims: Claims = Depends(get_current_claims),
        emitter: AuditEmitter = Depends(get_emitter),
    ) -> Claims:
        try:
            return ensure_permission(claims, resource, action)
        except PermissionDenied as e:
            await record_denial(request, claims, emitter, e)
            raise

    return permission_guard


def require_ownership(predicate: OwnershipPredicate):
    """OwnershipGuard factory; managers bypass the predicate."""

    async def ownership_guard(
        request: Request,
        claims: Claims = Depends(get_current_claims),
    ) -> Claims:
        return await ensure_owner(claims, request, predicate)

    return ownership_guard


def get_store(db: AsyncSession = Depends(get_db)) -> CredentialStore:
    return CredentialStore(db)


def get_request_deadline(request: Request) -> float:
    """Seconds the caller is willing to wait, from X-Request-Timeout or the default."""
    raw = request.headers.get("x-request-timeout")
    if raw is None:
        return settings.ADMIN_REQUEST_TIMEOUT_SECONDS
    try:
        seconds = float(raw)
    except ValueError:
        raise ValidationError({"X-Request-Timeout": "Must be a number of seconds"})
    if not math.isfinite(seconds) or seconds <= 0:
        raise ValidationError({"X-Request-Timeout": "Must be a positive number of seconds"})
    return min(seconds, settings.ADMIN_REQUEST_TIMEOUT_SECONDS)


def get_client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


class Pagination:
    """Page/page_size query parameters bounded by MAX_PAGE_SIZE."""

    def __init__(
        self,
        page: int = Query(1, ge=1),
        page_size: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    ):
        self.page = page
        self.page_size = page_size
