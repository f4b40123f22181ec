"""
OSS Manager Test Configuration
==============================

Pytest fixtures for the access-core unit tests.
"""

import os

os.environ.setdefault("BCRYPT_ROUNDS", "4")

from datetime import datetime, timedelta, timezone

import pytest

from ossmanager.api.access.rbac import Action, Claims, PermissionGrant, Resource
from ossmanager.api.auth.jwt import TokenService


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    """Clock pinned to a whole second."""
    return FrozenClock(datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def token_service(clock):
    """Token service with a 24h session on the frozen clock."""
    return TokenService(secret_key="unit-test-secret", ttl=timedelta(hours=24), clock=clock)


@pytest.fixture
def make_claims():
    """Build claims from (resource, action) pairs."""

    def _make(*pairs, user_id=1, username="alice", buckets=frozenset()):
        return Claims(
            user_id=user_id,
            username=username,
            permissions=frozenset(
                PermissionGrant(Resource(resource), Action(action)) for resource, action in pairs
            ),
            buckets=buckets,
        )

    return _make
