"""
Test Configuration and Fixtures

Shared fixtures for the OSS Manager API tests.
Provides an isolated database, a controllable clock, an in-memory login
attempt counter and helpers for seeding users, roles and grants.
"""

import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Dict, Iterable, List, Optional, Tuple

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ossmanager.api.access.audit import AuditEmitter
from ossmanager.api.access.ratelimit import LoginRateLimiter, get_login_rate_limiter
from ossmanager.api.auth.jwt import TokenService
from ossmanager.api.auth.passwords import hash_password
from ossmanager.api.db.models import Base, Permission, RegionBucketMapping, Role, User
from ossmanager.api.db.session import get_db
from ossmanager.api.db.store import CredentialStore
from ossmanager.api.dependencies import get_emitter
from ossmanager.api.main import create_app


MANAGER_PASSWORD = "Manager-Pass-2024"
EDITOR_PASSWORD = "Editor-Pass-2024"
VIEWER_PASSWORD = "Viewer-Pass-2024"


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class InMemoryAttemptCounter:
    """AttemptCounter with windows measured on the test clock."""

    def __init__(self, clock: FrozenClock):
        self.clock = clock
        self._entries: Dict[str, list] = {}

    def _live(self, key: str) -> Optional[list]:
        entry = self._entries.get(key)
        if entry is not None and entry[1] <= self.clock():
            del self._entries[key]
            return None
        return entry

    async def hit(self, key: str, window: int) -> int:
        entry = self._live(key)
        if entry is None:
            entry = [0, self.clock() + timedelta(seconds=window)]
            self._entries[key] = entry
        entry[0] += 1
        return entry[0]

    async def ttl(self, key: str) -> int:
        entry = self._live(key)
        if entry is None:
            return 0
        return int((entry[1] - self.clock()).total_seconds())

    async def reset(self, key: str) -> None:
        self._entries.pop(key, None)


# ==================== Database Fixtures ====================


@pytest_asyncio.fixture(scope="function")
async def async_engine():
    """Create async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for seeding and inspecting rows directly."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ==================== Service Fixtures ====================


@pytest.fixture(scope="function")
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture(scope="function")
def token_service(clock) -> TokenService:
    return TokenService(
        secret_key="test-secret-key",
        ttl=timedelta(hours=24),
        refresh_ttl=timedelta(days=7),
        clock=clock,
    )


@pytest.fixture(scope="function")
def attempt_counter(clock) -> InMemoryAttemptCounter:
    return InMemoryAttemptCounter(clock)


@pytest.fixture(scope="function")
def emitter(session_factory) -> AuditEmitter:
    return AuditEmitter(session_factory)


# ==================== Application Fixtures ====================


@pytest.fixture(scope="function")
def app(session_factory, token_service, attempt_counter, emitter) -> FastAPI:
    """Create FastAPI app with test database, clock and counters."""
    test_app = create_app(token_service=token_service)

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_emitter] = lambda: emitter
    test_app.dependency_overrides[get_login_rate_limiter] = lambda: LoginRateLimiter(
        attempt_counter, max_attempts=5, window_seconds=900
    )
    return test_app


@pytest_asyncio.fixture(scope="function")
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ==================== Seeding ====================


class Seeder:
    """Writes fixtures straight through the credential store."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def permission(self, resource: str, action: str, name: Optional[str] = None) -> int:
        async with self.session_factory() as session:
            permission = await CredentialStore(session).add(
                Permission(name=name or f"{resource}:{action}", resource=resource, action=action)
            )
            await session.commit()
            return permission.id

    async def role(
        self,
        name: str,
        permission_ids: Iterable[int] = (),
        mapping_ids: Iterable[int] = (),
    ) -> int:
        async with self.session_factory() as session:
            store = CredentialStore(session)
            role = await store.add(Role(name=name))
            await store.set_role_permissions(role.id, permission_ids)
            await store.set_role_mappings(role.id, mapping_ids)
            await session.commit()
            return role.id

    async def user(
        self,
        username: str,
        password: str,
        role_ids: Iterable[int] = (),
        status: str = "active",
        email: Optional[str] = None,
    ) -> int:
        async with self.session_factory() as session:
            store = CredentialStore(session)
            user = await store.add(
                User(
                    username=username,
                    password_hash=hash_password(password),
                    email=email,
                    status=status,
                )
            )
            await store.set_user_roles(user.id, role_ids)
            await session.commit()
            return user.id

    async def mapping(self, region_code: str, bucket_name: str) -> int:
        async with self.session_factory() as session:
            mapping = await CredentialStore(session).add(
                RegionBucketMapping(region_code=region_code, bucket_name=bucket_name)
            )
            await session.commit()
            return mapping.id


@pytest.fixture(scope="function")
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest_asyncio.fixture(scope="function")
async def manager_user(seed) -> int:
    """User 'admin' holding MANAGER:ALL through the 'manager' role."""
    permission_id = await seed.permission("MANAGER", "ALL")
    role_id = await seed.role("manager", [permission_id])
    return await seed.user("admin", MANAGER_PASSWORD, [role_id], email="admin@example.com")


@pytest_asyncio.fixture(scope="function")
async def editor_user(seed) -> int:
    """User 'editor' who may read and list users but not change them."""
    read_id = await seed.permission("USER", "READ")
    list_id = await seed.permission("USER", "LIST")
    file_id = await seed.permission("FILE", "ALL")
    role_id = await seed.role("editor", [read_id, list_id, file_id])
    return await seed.user("editor", EDITOR_PASSWORD, [role_id])


@pytest_asyncio.fixture(scope="function")
async def viewer_user(seed) -> int:
    """User 'viewer' with no roles."""
    return await seed.user("viewer", VIEWER_PASSWORD)


# ==================== Auth Helpers ====================


async def login(client: AsyncClient, username: str, password: str) -> Tuple[str, dict]:
    """Log in through the API and return the session token and response body."""
    response = await client.post(
        "/api/v1/auth/login",
        json={"username": username, "password": password},
    )
    assert response.status_code == 200, response.text
    body = response.json()
    return body["token"], body


def bearer(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture(scope="function")
async def admin_headers(async_client, manager_user) -> Dict[str, str]:
    """Authorization headers for the manager."""
    token, _ = await login(async_client, "admin", MANAGER_PASSWORD)
    async_client.cookies.clear()
    return bearer(token)


@pytest_asyncio.fixture(scope="function")
async def editor_headers(async_client, editor_user) -> Dict[str, str]:
    """Authorization headers for the editor."""
    token, _ = await login(async_client, "editor", EDITOR_PASSWORD)
    async_client.cookies.clear()
    return bearer(token)


def ids(items: List[dict]) -> List[int]:
    return [item["id"] for item in items]
