"""
Credential Store

Data access for users, roles, permissions and region/bucket grants.
Associations are plain id tables; the store resolves them into id lists and
claims snapshots. Callers own the transaction.
"""

from typing import Iterable, List, Optional, Sequence, Tuple, Type, TypeVar

from sqlalchemy import delete, desc, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ossmanager.api.access.rbac import BucketGrant, PermissionGrant, effective_permissions
from ossmanager.api.db.models import (
    AuditLog,
    Base,
    Permission,
    RefreshToken,
    RegionBucketMapping,
    Role,
    RolePermission,
    RoleRegionBucketAccess,
    User,
    UserRole,
)


ModelT = TypeVar("ModelT", bound=Base)


class CredentialStore:
    """Repository over the access-control tables bound to one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== Generic ====================

    async def get(self, model: Type[ModelT], entity_id: int, lock: bool = False) -> Optional[ModelT]:
        """Fetch a row by primary key, optionally with SELECT ... FOR UPDATE."""
        query = select(model).where(model.id == entity_id)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def add(self, entity: ModelT) -> ModelT:
        self.db.add(entity)
        await self.db.flush()
        return entity

    async def missing_ids(self, model: Type[Base], ids: Iterable[int]) -> List[int]:
        """Return the subset of ids that have no row in the model's table."""
        wanted = set(ids)
        if not wanted:
            return []
        result = await self.db.execute(select(model.id).where(model.id.in_(wanted)))
        found = set(result.scalars().all())
        return sorted(wanted - found)

    async def _paginate(self, query, page: int, page_size: int, *order_by) -> Tuple[list, int]:
        count_query = select(func.count()).select_from(query.subquery())
        total = await self.db.scalar(count_query) or 0

        offset = (page - 1) * page_size
        result = await self.db.execute(
            query.order_by(*order_by).limit(page_size).offset(offset)
        )
        return list(result.scalars().all()), total

    # ==================== Users ====================

    async def get_user_by_username(self, username: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.username == username))
        return result.scalar_one_or_none()

    async def count_users(self) -> int:
        return await self.db.scalar(select(func.count(User.id))) or 0

    async def list_users(
        self,
        page: int,
        page_size: int,
        search: Optional[str] = None,
    ) -> Tuple[List[User], int]:
        query = select(User)
        if search:
            query = query.where(
                or_(
                    User.username.ilike(f"%{search}%"),
                    User.email.ilike(f"%{search}%"),
                    User.display_name.ilike(f"%{search}%"),
                )
            )
        return await self._paginate(query, page, page_size, User.id)

    async def delete_user(self, user: User) -> None:
        """Remove a user together with its role links and refresh tokens."""
        await self.db.execute(delete(UserRole).where(UserRole.user_id == user.id))
        await self.db.execute(delete(RefreshToken).where(RefreshToken.user_id == user.id))
        await self.db.delete(user)
        await self.db.flush()

    async def get_user_role_ids(self, user_id: int) -> List[int]:
        result = await self.db.execute(
            select(UserRole.role_id).where(UserRole.user_id == user_id).order_by(UserRole.role_id)
        )
        return list(result.scalars().all())

    async def set_user_roles(self, user_id: int, role_ids: Iterable[int]) -> None:
        """Replace the user's role set."""
        await self.db.execute(delete(UserRole).where(UserRole.user_id == user_id))
        for role_id in sorted(set(role_ids)):
            self.db.add(UserRole(user_id=user_id, role_id=role_id))
        await self.db.flush()

    # ==================== Roles ====================

    async def get_role_by_name(self, name: str) -> Optional[Role]:
        result = await self.db.execute(select(Role).where(Role.name == name))
        return result.scalar_one_or_none()

    async def list_roles(
        self,
        page: int,
        page_size: int,
        search: Optional[str] = None,
    ) -> Tuple[List[Role], int]:
        query = select(Role)
        if search:
            query = query.where(Role.name.ilike(f"%{search}%"))
        return await self._paginate(query, page, page_size, Role.id)

    async def delete_role(self, role: Role) -> None:
        """Remove a role and every reference to it."""
        await self.db.execute(delete(UserRole).where(UserRole.role_id == role.id))
        await self.db.execute(delete(RolePermission).where(RolePermission.role_id == role.id))
        await self.db.execute(
            delete(RoleRegionBucketAccess).where(RoleRegionBucketAccess.role_id == role.id)
        )
        await self.db.delete(role)
        await self.db.flush()

    async def get_role_permission_ids(self, role_id: int) -> List[int]:
        result = await self.db.execute(
            select(RolePermission.permission_id)
            .where(RolePermission.role_id == role_id)
            .order_by(RolePermission.permission_id)
        )
        return list(result.scalars().all())

    async def set_role_permissions(self, role_id: int, permission_ids: Iterable[int]) -> None:
        """Replace the role's permission set."""
        await self.db.execute(delete(RolePermission).where(RolePermission.role_id == role_id))
        for permission_id in sorted(set(permission_ids)):
            self.db.add(RolePermission(role_id=role_id, permission_id=permission_id))
        await self.db.flush()

    # ==================== Permissions ====================

    async def list_permissions(
        self,
        page: int,
        page_size: int,
        resource: Optional[str] = None,
    ) -> Tuple[List[Permission], int]:
        query = select(Permission)
        if resource:
            query = query.where(Permission.resource == resource)
        return await self._paginate(query, page, page_size, Permission.id)

    async def get_permission_grants(self, permission_ids: Iterable[int]) -> frozenset:
        wanted = set(permission_ids)
        if not wanted:
            return frozenset()
        result = await self.db.execute(
            select(Permission.resource, Permission.action).where(Permission.id.in_(wanted))
        )
        return frozenset(PermissionGrant.from_pair(row) for row in result.all())

    async def delete_permission(self, permission: Permission) -> None:
        """Remove a permission and detach it from every role."""
        await self.db.execute(
            delete(RolePermission).where(RolePermission.permission_id == permission.id)
        )
        await self.db.delete(permission)
        await self.db.flush()

    # ==================== Region / Bucket ====================

    async def get_mapping_by_pair(
        self, region_code: str, bucket_name: str
    ) -> Optional[RegionBucketMapping]:
        result = await self.db.execute(
            select(RegionBucketMapping).where(
                RegionBucketMapping.region_code == region_code,
                RegionBucketMapping.bucket_name == bucket_name,
            )
        )
        return result.scalar_one_or_none()

    async def list_mappings(
        self,
        page: int,
        page_size: int,
        text_filter: Optional[str] = None,
    ) -> Tuple[List[RegionBucketMapping], int]:
        query = select(RegionBucketMapping)
        if text_filter:
            query = query.where(
                or_(
                    RegionBucketMapping.region_code.ilike(f"%{text_filter}%"),
                    RegionBucketMapping.bucket_name.ilike(f"%{text_filter}%"),
                )
            )
        return await self._paginate(query, page, page_size, RegionBucketMapping.id)

    async def delete_mapping(self, mapping: RegionBucketMapping) -> None:
        await self.db.execute(
            delete(RoleRegionBucketAccess).where(RoleRegionBucketAccess.mapping_id == mapping.id)
        )
        await self.db.delete(mapping)
        await self.db.flush()

    async def get_mapping_grants(self, mapping_ids: Iterable[int]) -> frozenset:
        wanted = set(mapping_ids)
        if not wanted:
            return frozenset()
        result = await self.db.execute(
            select(RegionBucketMapping.region_code, RegionBucketMapping.bucket_name).where(
                RegionBucketMapping.id.in_(wanted)
            )
        )
        return frozenset(BucketGrant(region, bucket) for region, bucket in result.all())

    async def get_role_mapping_ids(self, role_id: int) -> List[int]:
        result = await self.db.execute(
            select(RoleRegionBucketAccess.mapping_id)
            .where(RoleRegionBucketAccess.role_id == role_id)
            .order_by(RoleRegionBucketAccess.mapping_id)
        )
        return list(result.scalars().all())

    async def set_role_mappings(self, role_id: int, mapping_ids: Iterable[int]) -> None:
        """Replace the role's bucket grants. Same input, same resulting set."""
        await self.db.execute(
            delete(RoleRegionBucketAccess).where(RoleRegionBucketAccess.role_id == role_id)
        )
        for mapping_id in sorted(set(mapping_ids)):
            self.db.add(RoleRegionBucketAccess(role_id=role_id, mapping_id=mapping_id))
        await self.db.flush()

    # ==================== Claims resolution ====================

    async def get_role_names(self, role_ids: Sequence[int]) -> List[str]:
        if not role_ids:
            return []
        result = await self.db.execute(
            select(Role.name).where(Role.id.in_(role_ids)).order_by(Role.name)
        )
        return list(result.scalars().all())

    async def resolve_permissions(self, role_ids: Sequence[int]) -> frozenset:
        """Union of permission grants across the given roles."""
        if not role_ids:
            return frozenset()
        result = await self.db.execute(
            select(Permission.resource, Permission.action)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role_id.in_(role_ids))
        )
        return effective_permissions(
            PermissionGrant.from_pair(row) for row in result.all()
        )

    async def resolve_buckets(self, role_ids: Sequence[int]) -> frozenset:
        if not role_ids:
            return frozenset()
        result = await self.db.execute(
            select(RegionBucketMapping.region_code, RegionBucketMapping.bucket_name)
            .join(
                RoleRegionBucketAccess,
                RoleRegionBucketAccess.mapping_id == RegionBucketMapping.id,
            )
            .where(RoleRegionBucketAccess.role_id.in_(role_ids))
        )
        return frozenset(BucketGrant(region, bucket) for region, bucket in result.all())

    # ==================== Refresh tokens ====================

    async def get_refresh_token(self, token_hash: str, lock: bool = False) -> Optional[RefreshToken]:
        query = select(RefreshToken).where(RefreshToken.token_hash == token_hash)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def revoke_refresh_tokens(self, user_id: int, now) -> None:
        """Revoke every live refresh token of a user."""
        await self.db.execute(
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now)
        )

    # ==================== Audit ====================

    async def list_audit_logs(self, filters: list, page: int, page_size: int) -> Tuple[List[AuditLog], int]:
        query = select(AuditLog)
        if filters:
            query = query.where(*filters)
        return await self._paginate(query, page, page_size, desc(AuditLog.timestamp), desc(AuditLog.id))
