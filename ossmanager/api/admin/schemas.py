"""
Admin Schemas

Pydantic models for user, role, permission and bucket-grant management.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import ConfigDict, EmailStr, Field

from ossmanager.api.access.rbac import Action, Resource
from ossmanager.api.schemas import CamelModel, PageResponse


UserStatus = Literal["active", "inactive"]


class StrictCamelModel(CamelModel):
    """Request body that rejects unknown fields (e.g. attempts to rename a user)."""

    model_config = ConfigDict(extra="forbid")


# ==================== Users ====================


class UserCreateRequest(StrictCamelModel):
    username: str = Field(..., max_length=100)
    password: str
    email: Optional[EmailStr] = None
    display_name: Optional[str] = Field(None, max_length=100)
    status: UserStatus = "active"
    role_ids: List[int] = []


class UserUpdateRequest(StrictCamelModel):
    """Only provided fields are changed; role_ids replaces the whole set."""

    email: Optional[EmailStr] = None
    display_name: Optional[str] = Field(None, max_length=100)
    status: Optional[UserStatus] = None
    role_ids: Optional[List[int]] = None
    password: Optional[str] = None


class UserResponse(CamelModel):
    id: int
    username: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    status: str
    role_ids: List[int] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None


UserListResponse = PageResponse[UserResponse]


# ==================== Roles ====================


class RoleCreateRequest(StrictCamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    permission_ids: List[int] = []


class RoleUpdateRequest(StrictCamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    permission_ids: Optional[List[int]] = None


class RoleResponse(CamelModel):
    id: int
    name: str
    description: Optional[str] = None
    permission_ids: List[int] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


RoleListResponse = PageResponse[RoleResponse]


# ==================== Permissions ====================


class PermissionCreateRequest(StrictCamelModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    resource: Resource
    action: Action


class PermissionUpdateRequest(StrictCamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    resource: Optional[Resource] = None
    action: Optional[Action] = None


class PermissionResponse(CamelModel):
    id: int
    name: str
    description: Optional[str] = None
    resource: Resource
    action: Action
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


PermissionListResponse = PageResponse[PermissionResponse]


# ==================== Region / Bucket ====================


class MappingCreateRequest(StrictCamelModel):
    region_code: str = Field(..., min_length=1, max_length=64)
    bucket_name: str = Field(..., min_length=1, max_length=255)


class MappingResponse(CamelModel):
    id: int
    region_code: str
    bucket_name: str
    created_at: Optional[datetime] = None


MappingListResponse = PageResponse[MappingResponse]


class BucketAccessRequest(StrictCamelModel):
    mapping_ids: List[int]


class BucketAccessResponse(CamelModel):
    role_id: int
    mapping_ids: List[int]
    mappings: List[MappingResponse] = []
