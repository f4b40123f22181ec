"""
Current User Routes

API endpoints for the signed-in user's own identity.
"""

from fastapi import APIRouter, Depends, Request

from ossmanager.api.access.audit import AuditActor
from ossmanager.api.access.rbac import Claims
from ossmanager.api.auth.routes import get_auth_service
from ossmanager.api.auth.schemas import CurrentUserResponse, PasswordChangeRequest
from ossmanager.api.auth.service import AuthService
from ossmanager.api.dependencies import get_current_claims
from ossmanager.api.schemas import MessageResponse


router = APIRouter()


@router.get(
    "/current",
    response_model=CurrentUserResponse,
    summary="Get current user",
)
async def get_current_user(
    claims: Claims = Depends(get_current_claims),
    auth_service: AuthService = Depends(get_auth_service),
) -> CurrentUserResponse:
    """
    Get the signed-in user's identity and granted permissions.

    Requires a valid session credential (bearer header or cookie).
    """
    return await auth_service.current_user(claims)


@router.put(
    "/current/password",
    response_model=MessageResponse,
    summary="Change password",
)
async def change_password(
    data: PasswordChangeRequest,
    request: Request,
    claims: Claims = Depends(get_current_claims),
    auth_service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """
    Change the current user's password.

    The account is always the caller's own, taken from the session credential.
    Requires the current password. All refresh tokens are revoked.
    """
    await auth_service.change_password(
        claims,
        data.current_password,
        data.new_password,
        AuditActor.from_request(request, claims),
    )
    return MessageResponse(message="Password changed successfully")
