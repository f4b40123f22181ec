"""
Bootstrap Admin Tests
"""

import pytest
from sqlalchemy import select

from ossmanager.api.admin.service import MANAGER_ROLE_NAME, ensure_bootstrap_admin
from ossmanager.api.auth.passwords import verify_password
from ossmanager.api.db.models import Permission, Role
from ossmanager.api.db.store import CredentialStore


@pytest.mark.asyncio
async def test_bootstrap_creates_manager_on_empty_store(db_session):
    user = await ensure_bootstrap_admin(db_session, "root", "Bootstrap-Pass-1")

    assert user is not None
    assert verify_password("Bootstrap-Pass-1", user.password_hash)

    store = CredentialStore(db_session)
    role_ids = await store.get_user_role_ids(user.id)
    assert await store.get_role_names(role_ids) == [MANAGER_ROLE_NAME]
    grants = await store.resolve_permissions(role_ids)
    assert {grant.to_pair() for grant in grants} == {("MANAGER", "ALL")}


@pytest.mark.asyncio
async def test_bootstrap_is_noop_when_users_exist(db_session, seed):
    await seed.user("someone", "Someone-Pass-1")

    assert await ensure_bootstrap_admin(db_session, "root", "Bootstrap-Pass-1") is None

    roles = await db_session.execute(select(Role))
    assert roles.scalars().all() == []


@pytest.mark.asyncio
async def test_bootstrap_reuses_existing_manager_permission(db_session, seed):
    permission_id = await seed.permission("MANAGER", "ALL", name="Preexisting")

    user = await ensure_bootstrap_admin(db_session, "root", "Bootstrap-Pass-1")

    permissions = (await db_session.execute(select(Permission))).scalars().all()
    assert [p.id for p in permissions] == [permission_id]
    role_ids = await CredentialStore(db_session).get_user_role_ids(user.id)
    assert len(role_ids) == 1


@pytest.mark.asyncio
async def test_bootstrap_rejects_weak_password(db_session):
    with pytest.raises(ValueError):
        await ensure_bootstrap_admin(db_session, "root", "password")
