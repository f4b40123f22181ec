"""
Access Guards

Authentication and authorization checks shared by the FastAPI dependencies,
the route-prefix middleware and handler decorators.

Denials never name the missing permission.
"""

import inspect
import logging
from functools import wraps
from typing import Awaitable, Callable, Optional, Union

from fastapi import Request

from ossmanager.api.access.rbac import Action, Claims, Resource, has_permission, is_manager
from ossmanager.api.auth.jwt import TokenService
from ossmanager.api.config import settings
from ossmanager.api.exceptions import PermissionDenied, TokenInvalid


logger = logging.getLogger(__name__)


OwnershipPredicate = Callable[[Claims, Request], Union[bool, Awaitable[bool]]]


# ============================================================
# Credential extraction
# ============================================================


def extract_token(request: Request) -> Optional[str]:
    """Bearer header first, then the session cookie."""
    authorization = request.headers.get("authorization")
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return request.cookies.get(settings.SESSION_COOKIE_NAME) or None


def authenticate_request(request: Request, token_service: TokenService) -> Claims:
    """
    AuthGuard: resolve the request's credential into claims.

    Raises:
        TokenInvalid: No credential, or a malformed/forged one
        TokenExpired: Credential past its expiry
    """
    raw = extract_token(request)
    if raw is None:
        raise TokenInvalid("Authentication required")
    return token_service.validate(raw)


# ============================================================
# Checks over claims
# ============================================================


def ensure_admin(claims: Claims) -> Claims:
    """AdminGuard: identity must hold the MANAGER tag."""
    if not is_manager(claims):
        logger.warning("Admin access denied", extra={"user_id": claims.user_id})
        raise PermissionDenied()
    return claims


def ensure_permission(
    claims: Claims,
    resource: Resource,
    action: Optional[Action] = None,
) -> Claims:
    """PermissionGuard: identity must satisfy (resource, action)."""
    if not has_permission(claims, resource, action):
        logger.info(
            "Permission denied",
            extra={"user_id": claims.user_id, "resource": resource.value},
        )
        raise PermissionDenied()
    return claims


async def ensure_owner(
    claims: Claims,
    request: Request,
    predicate: OwnershipPredicate,
) -> Claims:
    """OwnershipGuard: managers bypass, everyone else must satisfy the predicate."""
    if is_manager(claims):
        return claims
    allowed = predicate(claims, request)
    if inspect.isawaitable(allowed):
        allowed = await allowed
    if not allowed:
        raise PermissionDenied()
    return claims


def is_self(param: str = "user_id") -> OwnershipPredicate:
    """Predicate: the path parameter names the caller's own user id. Absent means denied."""
    def predicate(claims: Claims, request: Request) -> bool:
        value = request.path_params.get(param)
        if value is None:
            return False
        try:
            return int(value) == claims.user_id
        except (TypeError, ValueError):
            return False
    return predicate


# ============================================================
# Handler decorators
# ============================================================


def _claims_from(kwargs: dict) -> Claims:
    claims: Optional[Claims] = kwargs.get("claims")
    if claims is None:
        raise TokenInvalid("Authentication required")
    return claims


def require_auth(func):
    """Decorator to require an authenticated ``claims`` keyword."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        _claims_from(kwargs)
        return await func(*args, **kwargs)
    return wrapper


def require_admin(func):
    """Decorator to require a manager identity."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        ensure_admin(_claims_from(kwargs))
        return await func(*args, **kwargs)
    return wrapper


def require_permission(resource: Resource, action: Optional[Action] = None):
    """Decorator to require a specific permission."""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            ensure_permission(_claims_from(kwargs), resource, action)
            return await func(*args, **kwargs)
        return wrapper
    return decorator


def require_ownership(predicate: OwnershipPredicate):
    """Decorator to require ownership; the handler must also take ``request``."""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            await ensure_owner(_claims_from(kwargs), kwargs.get("request"), predicate)
            return await func(*args, **kwargs)
        return wrapper
    return decorator
