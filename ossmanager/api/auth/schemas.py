"""
Authentication Schemas

Pydantic models for auth request/response validation.
"""

from typing import List, Optional

from pydantic import Field

from ossmanager.api.schemas import CamelModel


class LoginRequest(CamelModel):
    """User login request."""

    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=256)


class RefreshTokenRequest(CamelModel):
    """Token refresh request."""

    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(CamelModel):
    """Logout request; the refresh token is revoked when supplied."""

    refresh_token: Optional[str] = None


class GrantResponse(CamelModel):
    """A (resource, action) pair held by the caller."""

    resource: str
    action: str


class BucketResponse(CamelModel):
    region_code: str
    bucket_name: str


class CurrentUserResponse(CamelModel):
    """Identity of the caller as seen by the console."""

    id: int
    username: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    roles: List[str] = []
    permissions: List[GrantResponse] = []
    buckets: List[BucketResponse] = []


class AuthResponse(CamelModel):
    """Full auth response with tokens and user."""

    token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: CurrentUserResponse


class PasswordChangeRequest(CamelModel):
    """Password change request."""

    current_password: str
    new_password: str
