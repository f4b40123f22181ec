"""
Admin Routes

API endpoints for managing users, roles, permissions and region/bucket
grants. Each endpoint is gated by a PermissionGuard (managers pass all of
them), runs within the caller's deadline and is audited.
"""

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from ossmanager.api.access.audit import AuditAction, AuditEmitter, audited
from ossmanager.api.access.rbac import Action, Claims, Resource
from ossmanager.api.admin.schemas import (
    BucketAccessRequest,
    BucketAccessResponse,
    MappingCreateRequest,
    MappingListResponse,
    MappingResponse,
    PermissionCreateRequest,
    PermissionListResponse,
    PermissionResponse,
    PermissionUpdateRequest,
    RoleCreateRequest,
    RoleListResponse,
    RoleResponse,
    RoleUpdateRequest,
    UserCreateRequest,
    UserListResponse,
    UserResponse,
    UserUpdateRequest,
)
from ossmanager.api.admin.service import AdminService
from ossmanager.api.db.session import get_db
from ossmanager.api.dependencies import (
    Pagination,
    get_emitter,
    get_request_deadline,
    require_permission,
)
from ossmanager.api.exceptions import DeadlineExceeded
from ossmanager.api.schemas import MessageResponse


logger = logging.getLogger(__name__)

router = APIRouter()

T = TypeVar("T")


def get_admin_service(db: AsyncSession = Depends(get_db)) -> AdminService:
    """Dependency to get admin service."""
    return AdminService(db)


async def within_deadline(operation: Awaitable[T], seconds: float, db: AsyncSession) -> T:
    """Run an admin operation, cancelling and rolling back once the deadline passes."""
    try:
        return await asyncio.wait_for(operation, timeout=seconds)
    except asyncio.TimeoutError:
        await db.rollback()
        logger.warning("Admin operation exceeded deadline", extra={"timeout_seconds": seconds})
        raise DeadlineExceeded()


# ==================== Users ====================


@router.get(
    "/users",
    response_model=UserListResponse,
    summary="List users",
)
async def list_users(
    pagination: Pagination = Depends(),
    search: Optional[str] = Query(None, description="Search by username, email or name"),
    claims: Claims = Depends(require_permission(Resource.USER, Action.LIST)),
    service: AdminService = Depends(get_admin_service),
    deadline: float = Depends(get_request_deadline),
) -> UserListResponse:
    """Get paginated list of users."""
    return await within_deadline(
        service.list_users(pagination.page, pagination.page_size, search), deadline, service.db
    )


@router.get(
    "/users/{user_id}",
    response_model=UserResponse,
    summary="Get user",
)
async def get_user(
    user_id: int,
    claims: Claims = Depends(require_permission(Resource.USER, Action.READ)),
    service: AdminService = Depends(get_admin_service),
    deadline: float = Depends(get_request_deadline),
) -> UserResponse:
    return await within_deadline(service.get_user(user_id), deadline, service.db)


@router.post(
    "/users",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create user",
)
@audited(AuditAction.CREATE, "user", include_request=True)
async def create_user(
    data: UserCreateRequest,
    request: Request,
    claims: Claims = Depends(require_permission(Resource.USER, Action.CREATE)),
    service: AdminService = Depends(get_admin_service),
    emitter: AuditEmitter = Depends(get_emitter),
    deadline: float = Depends(get_request_deadline),
) -> UserResponse:
    """
    Create a user.

    - **username**: 3-100 characters of letters, digits, `_` or `-` (unique)
    - **password**: 10+ characters from three classes, or 12+ from four
    - **roleIds**: Existing role ids
    """
    return await within_deadline(service.create_user(data, claims), deadline, service.db)


@router.put(
    "/users/{user_id}",
    response_model=UserResponse,
    summary="Update user",
)
@audited(AuditAction.UPDATE, "user", resource_id_param="user_id", include_request=True)
async def update_user(
    user_id: int,
    data: UserUpdateRequest,
    request: Request,
    claims: Claims = Depends(require_permission(Resource.USER, Action.UPDATE)),
    service: AdminService = Depends(get_admin_service),
    emitter: AuditEmitter = Depends(get_emitter),
    deadline: float = Depends(get_request_deadline),
) -> UserResponse:
    """Update a user. The username cannot be changed."""
    return await within_deadline(service.update_user(user_id, data, claims), deadline, service.db)


@router.delete(
    "/users/{user_id}",
    response_model=MessageResponse,
    summary="Delete user",
)
@audited(AuditAction.DELETE, "user", resource_id_param="user_id")
async def delete_user(
    user_id: int,
    request: Request,
    claims: Claims = Depends(require_permission(Resource.USER, Action.DELETE)),
    service: AdminService = Depends(get_admin_service),
    emitter: AuditEmitter = Depends(get_emitter),
    deadline: float = Depends(get_request_deadline),
) -> MessageResponse:
    await within_deadline(service.delete_user(user_id, claims), deadline, service.db)
    return MessageResponse(message="User deleted")


# ==================== Roles ====================


@router.get(
    "/roles",
    response_model=RoleListResponse,
    summary="List roles",
)
async def list_roles(
    pagination: Pagination = Depends(),
    search: Optional[str] = Query(None, description="Search by role name"),
    claims: Claims = Depends(require_permission(Resource.ROLE, Action.LIST)),
    service: AdminService = Depends(get_admin_service),
    deadline: float = Depends(get_request_deadline),
) -> RoleListResponse:
    return await within_deadline(
        service.list_roles(pagination.page, pagination.page_size, search), deadline, service.db
    )


@router.get(
    "/roles/{role_id}",
    response_model=RoleResponse,
    summary="Get role",
)
async def get_role(
    role_id: int,
    claims: Claims = Depends(require_permission(Resource.ROLE, Action.READ)),
    service: AdminService = Depends(get_admin_service),
    deadline: float = Depends(get_request_deadline),
) -> RoleResponse:
    return await within_deadline(service.get_role(role_id), deadline, service.db)


@router.post(
    "/roles",
    response_model=RoleResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create role",
)
@audited(AuditAction.CREATE, "role", include_request=True)
async def create_role(
    data: RoleCreateRequest,
    request: Request,
    claims: Claims = Depends(require_permission(Resource.ROLE, Action.CREATE)),
    service: AdminService = Depends(get_admin_service),
    emitter: AuditEmitter = Depends(get_emitter),
    deadline: float = Depends(get_request_deadline),
) -> RoleResponse:
    return await within_deadline(service.create_role(data, claims), deadline, service.db)


@router.put(
    "/roles/{role_id}",
    response_model=RoleResponse,
    summary="Update role",
)
@audited(AuditAction.UPDATE, "role", resource_id_param="role_id", include_request=True)
async def update_role(
    role_id: int,
    data: RoleUpdateRequest,
    request: Request,
    claims: Claims = Depends(require_permission(Resource.ROLE, Action.UPDATE)),
    service: AdminService = Depends(get_admin_service),
    emitter: AuditEmitter = Depends(get_emitter),
    deadline: float = Depends(get_request_deadline),
) -> RoleResponse:
    """Update a role. `permissionIds`, when given, replaces the whole set."""
    return await within_deadline(service.update_role(role_id, data, claims), deadline, service.db)


@router.delete(
    "/roles/{role_id}",
    response_model=MessageResponse,
    summary="Delete role",
)
@audited(AuditAction.DELETE, "role", resource_id_param="role_id")
async def delete_role(
    role_id: int,
    request: Request,
    claims: Claims = Depends(require_permission(Resource.ROLE, Action.DELETE)),
    service: AdminService = Depends(get_admin_service),
    emitter: AuditEmitter = Depends(get_emitter),
    deadline: float = Depends(get_request_deadline),
) -> MessageResponse:
    """Delete a role. It is removed from every user and bucket grant."""
    await within_deadline(service.delete_role(role_id, claims), deadline, service.db)
    return MessageResponse(message="Role deleted")


@router.get(
    "/roles/{role_id}/bucket-access",
    response_model=BucketAccessResponse,
    summary="Get role bucket access",
)
async def get_role_bucket_access(
    role_id: int,
    claims: Claims = Depends(require_permission(Resource.ROLE, Action.READ)),
    service: AdminService = Depends(get_admin_service),
    deadline: float = Depends(get_request_deadline),
) -> BucketAccessResponse:
    return await within_deadline(service.get_role_bucket_access(role_id), deadline, service.db)


@router.api_route(
    "/roles/{role_id}/bucket-access",
    methods=["POST", "PUT"],
    response_model=BucketAccessResponse,
    summary="Replace role bucket access",
)
@audited(AuditAction.UPDATE, "role_bucket_access", resource_id_param="role_id", include_request=True)
async def set_role_bucket_access(
    role_id: int,
    data: BucketAccessRequest,
    request: Request,
    claims: Claims = Depends(require_permission(Resource.ROLE, Action.UPDATE)),
    service: AdminService = Depends(get_admin_service),
    emitter: AuditEmitter = Depends(get_emitter),
    deadline: float = Depends(get_request_deadline),
) -> BucketAccessResponse:
    """Replace the role's region/bucket grants with `mappingIds`. Idempotent."""
    return await within_deadline(
        service.set_role_bucket_access(role_id, data.mapping_ids, claims), deadline, service.db
    )


# ==================== Permissions ====================


@router.get(
    "/permissions",
    response_model=PermissionListResponse,
    summary="List permissions",
)
async def list_permissions(
    pagination: Pagination = Depends(),
    resource: Optional[Resource] = Query(None, description="Filter by resource"),
    claims: Claims = Depends(require_permission(Resource.PERMISSION, Action.LIST)),
    service: AdminService = Depends(get_admin_service),
    deadline: float = Depends(get_request_deadline),
) -> PermissionListResponse:
    return await within_deadline(
        service.list_permissions(
            pagination.page, pagination.page_size, resource.value if resource else None
        ),
        deadline,
        service.db,
    )


@router.get(
    "/permissions/{permission_id}",
    response_model=PermissionResponse,
    summary="Get permission",
)
async def get_permission(
    permission_id: int,
    claims: Claims = Depends(require_permission(Resource.PERMISSION, Action.READ)),
    service: AdminService = Depends(get_admin_service),
    deadline: float = Depends(get_request_deadline),
) -> PermissionResponse:
    return await within_deadline(service.get_permission(permission_id), deadline, service.db)


@router.post(
    "/permissions",
    response_model=PermissionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create permission",
)
@audited(AuditAction.CREATE, "permission", include_request=True)
async def create_permission(
    data: PermissionCreateRequest,
    request: Request,
    claims: Claims = Depends(require_permission(Resource.PERMISSION, Action.CREATE)),
    service: AdminService = Depends(get_admin_service),
    emitter: AuditEmitter = Depends(get_emitter),
    deadline: float = Depends(get_request_deadline),
) -> PermissionResponse:
    return await within_deadline(service.create_permission(data, claims), deadline, service.db)


@router.put(
    "/permissions/{permission_id}",
    response_model=PermissionResponse,
    summary="Update permission",
)
@audited(AuditAction.UPDATE, "permission", resource_id_param="permission_id", include_request=True)
async def update_permission(
    permission_id: int,
    data: PermissionUpdateRequest,
    request: Request,
    claims: Claims = Depends(require_permission(Resource.PERMISSION, Action.UPDATE)),
    service: AdminService = Depends(get_admin_service),
    emitter: AuditEmitter = Depends(get_emitter),
    deadline: float = Depends(get_request_deadline),
) -> PermissionResponse:
    return await within_deadline(
        service.update_permission(permission_id, data, claims), deadline, service.db
    )


@router.delete(
    "/permissions/{permission_id}",
    response_model=MessageResponse,
    summary="Delete permission",
)
@audited(AuditAction.DELETE, "permission", resource_id_param="permission_id")
async def delete_permission(
    permission_id: int,
    request: Request,
    claims: Claims = Depends(require_permission(Resource.PERMISSION, Action.DELETE)),
    service: AdminService = Depends(get_admin_service),
    emitter: AuditEmitter = Depends(get_emitter),
    deadline: float = Depends(get_request_deadline),
) -> MessageResponse:
    """Delete a permission. It is removed from every role."""
    await within_deadline(service.delete_permission(permission_id, claims), deadline, service.db)
    return MessageResponse(message="Permission deleted")


# ==================== Region / Bucket ====================


@router.get(
    "/region-bucket-mappings",
    response_model=MappingListResponse,
    summary="List region/bucket mappings",
)
async def list_mappings(
    pagination: Pagination = Depends(),
    text_filter: Optional[str] = Query(None, alias="filter", description="Match region or bucket"),
    claims: Claims = Depends(require_permission(Resource.STORAGE, Action.LIST)),
    service: AdminService = Depends(get_admin_service),
    deadline: float = Depends(get_request_deadline),
) -> MappingListResponse:
    return await within_deadline(
        service.list_mappings(pagination.page, pagination.page_size, text_filter),
        deadline,
        service.db,
    )


@router.post(
    "/region-bucket-mappings",
    response_model=MappingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create region/bucket mapping",
)
@audited(AuditAction.CREATE, "region_bucket_mapping", include_request=True)
async def create_mapping(
    data: MappingCreateRequest,
    request: Request,
    claims: Claims = Depends(require_permission(Resource.STORAGE, Action.CREATE)),
    service: AdminService = Depends(get_admin_service),
    emitter: AuditEmitter = Depends(get_emitter),
    deadline: float = Depends(get_request_deadline),
) -> MappingResponse:
    return await within_deadline(service.create_mapping(data), deadline, service.db)


@router.delete(
    "/region-bucket-mappings/{mapping_id}",
    response_model=MessageResponse,
    summary="Delete region/bucket mapping",
)
@audited(AuditAction.DELETE, "region_bucket_mapping", resource_id_param="mapping_id")
async def delete_mapping(
    mapping_id: int,
    request: Request,
    claims: Claims = Depends(require_permission(Resource.STORAGE, Action.DELETE)),
    service: AdminService = Depends(get_admin_service),
    emitter: AuditEmitter = Depends(get_emitter),
    deadline: float = Depends(get_request_deadline),
) -> MessageResponse:
    await within_deadline(service.delete_mapping(mapping_id), deadline, service.db)
    return MessageResponse(message="Mapping deleted")
