"""
Authentication Routes

API endpoints for console sign-in and session management.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ossmanager.api.access.audit import AuditActor, AuditEmitter
from ossmanager.api.access.guards import extract_token
from ossmanager.api.access.ratelimit import LoginRateLimiter, get_login_rate_limiter
from ossmanager.api.auth.jwt import IssuedTokens, TokenService
from ossmanager.api.auth.schemas import (
    AuthResponse,
    LoginRequest,
    LogoutRequest,
    RefreshTokenRequest,
)
from ossmanager.api.auth.service import AuthService
from ossmanager.api.config import settings
from ossmanager.api.db.session import get_db
from ossmanager.api.dependencies import get_app_token_service, get_emitter
from ossmanager.api.exceptions import TokenError
from ossmanager.api.schemas import MessageResponse


router = APIRouter()


def get_auth_service(
    db: AsyncSession = Depends(get_db),
    token_service: TokenService = Depends(get_app_token_service),
    emitter: AuditEmitter = Depends(get_emitter),
    limiter: LoginRateLimiter = Depends(get_login_rate_limiter),
) -> AuthService:
    """Dependency to get auth service."""
    return AuthService(db, token_service, emitter, limiter)


def set_session_cookie(response: Response, tokens: IssuedTokens) -> None:
    response.set_cookie(
        key=settings.SESSION_COOKIE_NAME,
        value=tokens.access_token,
        max_age=tokens.expires_in,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(settings.SESSION_COOKIE_NAME, path="/")


async def _auth_response(service: AuthService, tokens: IssuedTokens) -> AuthResponse:
    return AuthResponse(
        token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        user=await service.current_user(tokens.claims),
    )


@router.post(
    "/login",
    response_model=AuthResponse,
    summary="Login and get tokens",
)
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """
    Authenticate with username and password.

    Returns the session token (also set as an httponly cookie), a refresh
    token, and the caller's identity. Repeated failures for the same
    username or client address are throttled with 429.
    """
    _, tokens = await auth_service.authenticate(
        data.username, data.password, AuditActor.from_request(request)
    )
    set_session_cookie(response, tokens)
    return await _auth_response(auth_service, tokens)


@router.post(
    "/refresh",
    response_model=AuthResponse,
    summary="Refresh session token",
)
async def refresh(
    data: RefreshTokenRequest,
    request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
) -> AuthResponse:
    """
    Exchange a refresh token for a new token pair.

    The presented refresh token is revoked; grants are re-read from the store.
    """
    _, tokens = await auth_service.refresh(data.refresh_token, AuditActor.from_request(request))
    set_session_cookie(response, tokens)
    return await _auth_response(auth_service, tokens)


@router.post(
    "/logout",
    response_model=MessageResponse,
    summary="Logout",
)
async def logout(
    request: Request,
    response: Response,
    data: Optional[LogoutRequest] = None,
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Revoke the refresh token (if given) and clear the session cookie."""
    claims = None
    raw = extract_token(request)
    if raw:
        try:
            claims = auth_service.token_service.validate(raw)
        except TokenError:
            claims = None

    await auth_service.logout(
        data.refresh_token if data else None,
        AuditActor.from_request(request, claims),
    )
    clear_session_cookie(response)
    return MessageResponse(message="Successfully logged out")
