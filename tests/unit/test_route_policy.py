"""
Tests for the route-prefix access table.
"""

import pytest

from ossmanager.api.access.routes import AccessLevel, default_route_table, resolve_access_level


@pytest.fixture
def table():
    return default_route_table("/api/v1")


@pytest.mark.parametrize(
    "path, level",
    [
        ("/", AccessLevel.PUBLIC),
        ("/favicon.ico", AccessLevel.PUBLIC),
        ("/auth/login", AccessLevel.PUBLIC),
        ("/main", AccessLevel.AUTH),
        ("/main/dashboard", AccessLevel.AUTH),
        ("/main/admin", AccessLevel.ADMIN),
        ("/main/admin/users", AccessLevel.ADMIN),
        ("/main/administrators", AccessLevel.AUTH),
        ("/api/v1/users", AccessLevel.AUTH),
        ("/api/v1/auth/login", AccessLevel.PUBLIC),
        ("/api/v1/health", AccessLevel.PUBLIC),
        ("/api/v1/audit/logs", AccessLevel.ADMIN),
        ("/api/v10/users", AccessLevel.PUBLIC),
    ],
)
def test_longest_prefix_wins(table, path, level):
    assert resolve_access_level(path, table) is level


def test_unmatched_path_is_public():
    assert resolve_access_level("/anything", {"/main": AccessLevel.AUTH}) is AccessLevel.PUBLIC


def test_custom_table():
    table = {"/reports": AccessLevel.ADMIN, "/reports/public": AccessLevel.PUBLIC}
    assert resolve_access_level("/reports/q3", table) is AccessLevel.ADMIN
    assert resolve_access_level("/reports/public/q3", table) is AccessLevel.PUBLIC
