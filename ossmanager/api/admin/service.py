"""
Admin Service

Business logic for managing users, roles, permissions and bucket grants.
Every mutation is one transaction: the aggregate row is locked, references
are validated, changes are flushed and committed once.
Non-managers may only hand out grants they hold and may not modify
accounts, roles or permissions that carry the MANAGER tag.
"""

import logging
import math
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ossmanager.api.access.rbac import Action, Claims, PermissionGrant, Resource, can_grant, is_manager
from ossmanager.api.admin.schemas import (
    BucketAccessResponse,
    MappingCreateRequest,
    MappingResponse,
    PermissionCreateRequest,
    PermissionResponse,
    PermissionUpdateRequest,
    RoleCreateRequest,
    RoleResponse,
    RoleUpdateRequest,
    UserCreateRequest,
    UserResponse,
    UserUpdateRequest,
)
from ossmanager.api.auth.jwt import utcnow
from ossmanager.api.auth.passwords import hash_password, password_strength_error, username_error
from ossmanager.api.db.models import (
    USER_STATUS_INACTIVE,
    Permission,
    RegionBucketMapping,
    Role,
    User,
)
from ossmanager.api.db.store import CredentialStore
from ossmanager.api.exceptions import ConflictError, NotFound, PermissionDenied, ValidationError
from ossmanager.api.schemas import PageResponse


logger = logging.getLogger(__name__)


def _page(items: list, total: int, page: int, page_size: int) -> PageResponse:
    return PageResponse(
        items=items,
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total > 0 else 1,
    )


class AdminService:
    """Service for administration operations."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db
        self.store = CredentialStore(db)

    async def _commit(self, conflict_message: str, field: Optional[str] = None) -> None:
        """Commit, mapping a unique-key race to ConflictError."""
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(conflict_message, field=field)

    async def _add(self, entity, conflict_message: str, field: Optional[str] = None):
        try:
            return await self.store.add(entity)
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(conflict_message, field=field)

    async def _fail(self, error: Exception) -> None:
        await self.db.rollback()
        raise error

    async def _ensure_exist(self, model, ids: Sequence[int], field: str, label: str) -> None:
        missing = await self.store.missing_ids(model, ids)
        if missing:
            await self._fail(
                ValidationError({field: f"Unknown {label} ids: {', '.join(map(str, missing))}"})
            )

    async def _deny(self, actor: Claims, reason: str) -> None:
        logger.warning("Admin change refused", extra={"user_id": actor.user_id, "reason": reason})
        await self._fail(PermissionDenied())

    async def _ensure_grantable(
        self,
        actor: Claims,
        role_ids: Iterable[int] = (),
        permission_ids: Iterable[int] = (),
        mapping_ids: Iterable[int] = (),
        permissions: Iterable[PermissionGrant] = (),
    ) -> None:
        """Refuse grants the actor does not hold unless the actor is a manager."""
        if is_manager(actor):
            return
        role_ids = sorted(set(role_ids))
        granted = set(permissions)
        granted |= await self.store.resolve_permissions(role_ids)
        granted |= await self.store.get_permission_grants(permission_ids)
        buckets = set(await self.store.resolve_buckets(role_ids))
        buckets |= await self.store.get_mapping_grants(mapping_ids)
        if not can_grant(actor, granted, buckets):
            await self._deny(actor, "grant_not_held")

    async def _ensure_not_manager_target(self, actor: Claims, role_ids: Sequence[int]) -> None:
        """Only managers may modify an account or role carrying the MANAGER tag."""
        if is_manager(actor) or not role_ids:
            return
        grants = await self.store.resolve_permissions(list(role_ids))
        if any(grant.resource is Resource.MANAGER for grant in grants):
            await self._deny(actor, "manager_target")

    async def _ensure_not_manager_permission(self, actor: Claims, permission: Permission) -> None:
        if not is_manager(actor) and permission.resource_enum is Resource.MANAGER:
            await self._deny(actor, "manager_target")

    # ==================== Users ====================

    async def _user_response(self, user: User) -> UserResponse:
        response = UserResponse.model_validate(user)
        response.role_ids = await self.store.get_user_role_ids(user.id)
        return response

    async def list_users(
        self, page: int, page_size: int, search: Optional[str] = None
    ) -> PageResponse:
        users, total = await self.store.list_users(page, page_size, search)
        items = [await self._user_response(user) for user in users]
        return _page(items, total, page, page_size)

    async def get_user(self, user_id: int) -> UserResponse:
        user = await self.store.get(User, user_id)
        if user is None:
            raise NotFound("User", user_id)
        return await self._user_response(user)

    async def create_user(self, data: UserCreateRequest, actor: Claims) -> UserResponse:
        """
        Create a user account.

        Raises:
            ValidationError: Bad username, weak password or unknown role ids
            ConflictError: Username already taken
            PermissionDenied: The roles carry grants the actor does not hold
        """
        errors: Dict[str, str] = {}
        message = username_error(data.username)
        if message:
            errors["username"] = message
        message = password_strength_error(data.password)
        if message:
            errors["password"] = message
        if errors:
            raise ValidationError(errors)

        if await self.store.get_user_by_username(data.username):
            await self._fail(ConflictError("Username already exists", field="username"))
        await self._ensure_exist(Role, data.role_ids, "roleIds", "role")
        await self._ensure_grantable(actor, role_ids=data.role_ids)

        user = await self._add(
            User(
                username=data.username,
                password_hash=hash_password(data.password),
                email=data.email,
                display_name=data.display_name,
                status=data.status,
            ),
            "Username already exists",
            field="username",
        )
        await self.store.set_user_roles(user.id, data.role_ids)
        await self._commit("Username already exists", field="username")

        logger.info("User created", extra={"user_id": user.id, "username": user.username})
        return await self._user_response(user)

    async def update_user(self, user_id: int, data: UserUpdateRequest, actor: Claims) -> UserResponse:
        """
        Update profile fields, status, roles or password. Username is immutable.

        Deactivating a user or resetting the password revokes their refresh tokens.
        Roles added by a non-manager must carry only grants the actor holds.
        """
        user = await self.store.get(User, user_id, lock=True)
        if user is None:
            await self._fail(NotFound("User", user_id))
        current_role_ids = await self.store.get_user_role_ids(user.id)
        await self._ensure_not_manager_target(actor, current_role_ids)

        if data.password is not None:
            message = password_strength_error(data.password)
            if message:
                await self._fail(ValidationError({"password": message}))
        if data.role_ids is not None:
            await self._ensure_exist(Role, data.role_ids, "roleIds", "role")
            await self._ensure_grantable(actor, role_ids=set(data.role_ids) - set(current_role_ids))

        fields = data.model_fields_set
        if "email" in fields:
            user.email = data.email
        if "display_name" in fields:
            user.display_name = data.display_name
        if data.status is not None:
            user.status = data.status
        if data.password is not None:
            user.password_hash = hash_password(data.password)
        if data.role_ids is not None:
            await self.store.set_user_roles(user.id, data.role_ids)

        if data.password is not None or data.status == USER_STATUS_INACTIVE:
            await self.store.revoke_refresh_tokens(user.id, utcnow())

        user.updated_at = utcnow()
        await self._commit("User update conflicts with existing data")
        return await self._user_response(user)

    async def delete_user(self, user_id: int, actor: Claims) -> None:
        """Delete a user with its role links. Users cannot delete themselves."""
        if user_id == actor.user_id:
            raise ValidationError({"id": "You cannot delete your own account"})

        user = await self.store.get(User, user_id, lock=True)
        if user is None:
            await self._fail(NotFound("User", user_id))
        await self._ensure_not_manager_target(actor, await self.store.get_user_role_ids(user.id))

        await self.store.delete_user(user)
        await self.db.commit()
        logger.info("User deleted", extra={"user_id": user_id})

    # ==================== Roles ====================

    async def _role_response(self, role: Role) -> RoleResponse:
        response = RoleResponse.model_validate(role)
        response.permission_ids = await self.store.get_role_permission_ids(role.id)
        return response

    async def list_roles(
        self, page: int, page_size: int, search: Optional[str] = None
    ) -> PageResponse:
        roles, total = await self.store.list_roles(page, page_size, search)
        items = [await self._role_response(role) for role in roles]
        return _page(items, total, page, page_size)

    async def get_role(self, role_id: int) -> RoleResponse:
        role = await self.store.get(Role, role_id)
        if role is None:
            raise NotFound("Role", role_id)
        return await self._role_response(role)

    async def create_role(self, data: RoleCreateRequest, actor: Claims) -> RoleResponse:
        if await self.store.get_role_by_name(data.name):
            await self._fail(ConflictError("Role name already exists", field="name"))
        await self._ensure_exist(Permission, data.permission_ids, "permissionIds", "permission")
        await self._ensure_grantable(actor, permission_ids=data.permission_ids)

        role = await self._add(
            Role(name=data.name, description=data.description),
            "Role name already exists",
            field="name",
        )
        await self.store.set_role_permissions(role.id, data.permission_ids)
        await self._commit("Role name already exists", field="name")
        return await self._role_response(role)

    async def update_role(self, role_id: int, data: RoleUpdateRequest, actor: Claims) -> RoleResponse:
        role = await self.store.get(Role, role_id, lock=True)
        if role is None:
            await self._fail(NotFound("Role", role_id))
        await self._ensure_not_manager_target(actor, [role.id])

        if data.name is not None and data.name != role.name:
            if await self.store.get_role_by_name(data.name):
                await self._fail(ConflictError("Role name already exists", field="name"))
            role.name = data.name
        if "description" in data.model_fields_set:
            role.description = data.description
        if data.permission_ids is not None:
            await self._ensure_exist(Permission, data.permission_ids, "permissionIds", "permission")
            current_ids = await self.store.get_role_permission_ids(role.id)
            await self._ensure_grantable(
                actor, permission_ids=set(data.permission_ids) - set(current_ids)
            )
            await self.store.set_role_permissions(role.id, data.permission_ids)

        role.updated_at = utcnow()
        await self._commit("Role name already exists", field="name")
        return await self._role_response(role)

    async def delete_role(self, role_id: int, actor: Claims) -> None:
        """Delete a role; user assignments and bucket grants go with it."""
        role = await self.store.get(Role, role_id, lock=True)
        if role is None:
            await self._fail(NotFound("Role", role_id))
        await self._ensure_not_manager_target(actor, [role.id])

        await self.store.delete_role(role)
        await self.db.commit()
        logger.info("Role deleted", extra={"role_id": role_id})

    # ==================== Permissions ====================

    async def list_permissions(
        self, page: int, page_size: int, resource: Optional[str] = None
    ) -> PageResponse:
        permissions, total = await self.store.list_permissions(page, page_size, resource)
        items = [PermissionResponse.model_validate(p) for p in permissions]
        return _page(items, total, page, page_size)

    async def get_permission(self, permission_id: int) -> PermissionResponse:
        permission = await self.store.get(Permission, permission_id)
        if permission is None:
            raise NotFound("Permission", permission_id)
        return PermissionResponse.model_validate(permission)

    async def create_permission(self, data: PermissionCreateRequest, actor: Claims) -> PermissionResponse:
        await self._ensure_grantable(actor, permissions=[PermissionGrant(data.resource, data.action)])
        permission = await self.store.add(
            Permission(
                name=data.name,
                description=data.description,
                resource=data.resource.value,
                action=data.action.value,
            )
        )
        await self._commit("Permission conflicts with existing data")
        return PermissionResponse.model_validate(permission)

    async def update_permission(
        self, permission_id: int, data: PermissionUpdateRequest, actor: Claims
    ) -> PermissionResponse:
        """Changing the resource or action changes what every holding role grants."""
        permission = await self.store.get(Permission, permission_id, lock=True)
        if permission is None:
            await self._fail(NotFound("Permission", permission_id))
        await self._ensure_not_manager_permission(actor, permission)
        if data.resource is not None or data.action is not None:
            target = PermissionGrant(
                data.resource or permission.resource_enum,
                data.action or permission.action_enum,
            )
            await self._ensure_grantable(actor, permissions=[target])

        if data.name is not None:
            permission.name = data.name
        if "description" in data.model_fields_set:
            permission.description = data.description
        if data.resource is not None:
            permission.resource = data.resource.value
        if data.action is not None:
            permission.action = data.action.value

        permission.updated_at = utcnow()
        await self._commit("Permission conflicts with existing data")
        return PermissionResponse.model_validate(permission)

    async def delete_permission(self, permission_id: int, actor: Claims) -> None:
        permission = await self.store.get(Permission, permission_id, lock=True)
        if permission is None:
            await self._fail(NotFound("Permission", permission_id))
        await self._ensure_not_manager_permission(actor, permission)

        await self.store.delete_permission(permission)
        await self.db.commit()

    # ==================== Region / Bucket ====================

    async def list_mappings(
        self, page: int, page_size: int, text_filter: Optional[str] = None
    ) -> PageResponse:
        mappings, total = await self.store.list_mappings(page, page_size, text_filter)
        items = [MappingResponse.model_validate(m) for m in mappings]
        return _page(items, total, page, page_size)

    async def create_mapping(self, data: MappingCreateRequest) -> MappingResponse:
        if await self.store.get_mapping_by_pair(data.region_code, data.bucket_name):
            await self._fail(ConflictError("Region/bucket mapping already exists", field="bucketName"))

        mapping = await self._add(
            RegionBucketMapping(region_code=data.region_code, bucket_name=data.bucket_name),
            "Region/bucket mapping already exists",
            field="bucketName",
        )
        await self._commit("Region/bucket mapping already exists", field="bucketName")
        return MappingResponse.model_validate(mapping)

    async def delete_mapping(self, mapping_id: int) -> None:
        """Delete a mapping and remove it from every role's grants."""
        mapping = await self.store.get(RegionBucketMapping, mapping_id, lock=True)
        if mapping is None:
            await self._fail(NotFound("Region/bucket mapping", mapping_id))

        await self.store.delete_mapping(mapping)
        await self.db.commit()

    async def get_role_bucket_access(self, role_id: int) -> BucketAccessResponse:
        role = await self.store.get(Role, role_id)
        if role is None:
            raise NotFound("Role", role_id)
        return await self._bucket_access_response(role_id)

    async def set_role_bucket_access(
        self, role_id: int, mapping_ids: List[int], actor: Claims
    ) -> BucketAccessResponse:
        """
        Replace a role's bucket grants.

        Duplicates collapse; applying the same list twice yields the same set.
        """
        role = await self.store.get(Role, role_id, lock=True)
        if role is None:
            await self._fail(NotFound("Role", role_id))
        await self._ensure_not_manager_target(actor, [role.id])
        await self._ensure_exist(RegionBucketMapping, mapping_ids, "mappingIds", "mapping")
        current_ids = await self.store.get_role_mapping_ids(role_id)
        await self._ensure_grantable(actor, mapping_ids=set(mapping_ids) - set(current_ids))

        await self.store.set_role_mappings(role_id, mapping_ids)
        role.updated_at = utcnow()
        await self.db.commit()
        return await self._bucket_access_response(role_id)

    async def _bucket_access_response(self, role_id: int) -> BucketAccessResponse:
        mapping_ids = await self.store.get_role_mapping_ids(role_id)
        mappings = []
        for mapping_id in mapping_ids:
            mapping = await self.store.get(RegionBucketMapping, mapping_id)
            if mapping is not None:
                mappings.append(MappingResponse.model_validate(mapping))
        return BucketAccessResponse(role_id=role_id, mapping_ids=mapping_ids, mappings=mappings)


# ==================== Bootstrap ====================


MANAGER_ROLE_NAME = "manager"


async def ensure_bootstrap_admin(db: AsyncSession, username: str, password: str) -> Optional[User]:
    """
    Seed the first manager account on an empty user table.

    Creates (or reuses) a MANAGER:ALL permission and a ``manager`` role.
    Returns the created user, or None when users already exist.
    """
    store = CredentialStore(db)
    if await store.count_users() > 0:
        return None

    message = username_error(username) or password_strength_error(password)
    if message:
        raise ValueError(f"Bootstrap admin rejected: {message}")

    result = await db.execute(
        select(Permission).where(
            Permission.resource == Resource.MANAGER.value,
            Permission.action == Action.ALL.value,
        )
    )
    permission = result.scalars().first()
    if permission is None:
        permission = await store.add(
            Permission(
                name="Manager",
                description="Full administrative access",
                resource=Resource.MANAGER.value,
                action=Action.ALL.value,
            )
        )

    role = await store.get_role_by_name(MANAGER_ROLE_NAME)
    if role is None:
        role = await store.add(Role(name=MANAGER_ROLE_NAME, description="Console administrators"))
    permission_ids = set(await store.get_role_permission_ids(role.id)) | {permission.id}
    await store.set_role_permissions(role.id, permission_ids)

    user = await store.add(User(username=username, password_hash=hash_password(password)))
    await store.set_user_roles(user.id, [role.id])
    await db.commit()

    logger.info("Bootstrap admin created", extra={"username": username})
    return user
