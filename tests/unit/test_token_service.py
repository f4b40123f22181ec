"""
Tests for the Token Service
===========================

Issuance, validation, expiry boundaries and tamper rejection.
"""

from datetime import timedelta

import jwt
import pytest

from ossmanager.api.access.rbac import Action, BucketGrant, PermissionGrant, Resource
from ossmanager.api.auth.jwt import TokenService
from ossmanager.api.exceptions import TokenExpired, TokenInvalid


BASE64URL = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"


@pytest.fixture
def issued(token_service):
    return token_service.issue(
        user_id=7,
        username="alice",
        roles=["editor", "auditor"],
        permissions=[
            PermissionGrant(Resource.USER, Action.READ),
            PermissionGrant(Resource.FILE, Action.ALL),
        ],
        buckets=[BucketGrant("cn-east-1", "logs")],
    )


class TestIssue:
    """Tests for token issuance."""

    def test_round_trip(self, token_service, issued):
        claims = token_service.validate(issued.access_token)

        assert claims == issued.claims
        assert claims.user_id == 7
        assert claims.roles == ("auditor", "editor")
        assert PermissionGrant(Resource.FILE, Action.ALL) in claims.permissions
        assert claims.buckets == frozenset({BucketGrant("cn-east-1", "logs")})

    def test_expiry_is_ttl_after_issue(self, issued):
        assert issued.expires_in == 24 * 60 * 60
        assert issued.claims.expires_at - issued.claims.issued_at == 24 * 60 * 60

    def test_refresh_token_is_opaque(self, token_service, issued):
        assert issued.refresh_token.count(".") == 0
        with pytest.raises(TokenInvalid):
            token_service.validate(issued.refresh_token)

    def test_each_issue_has_own_session_id(self, token_service):
        first = token_service.issue(1, "a", [], [])
        second = token_service.issue(1, "a", [], [])
        assert first.claims.session_id != second.claims.session_id


class TestExpiry:
    """Tests for the validity window."""

    def test_valid_one_second_before_expiry(self, token_service, issued, clock):
        clock.advance(24 * 60 * 60 - 1)
        token_service.validate(issued.access_token)

    def test_expired_at_exp(self, token_service, issued, clock):
        clock.advance(24 * 60 * 60)
        with pytest.raises(TokenExpired):
            token_service.validate(issued.access_token)

    def test_leeway_extends_window(self, issued, clock):
        lenient = TokenService(secret_key="unit-test-secret", leeway_seconds=5, clock=clock)
        clock.advance(24 * 60 * 60 + 4)
        lenient.validate(issued.access_token)

        clock.advance(1)
        with pytest.raises(TokenExpired):
            lenient.validate(issued.access_token)

    @pytest.mark.parametrize("leeway", [-1, 6])
    def test_leeway_bounds(self, leeway):
        with pytest.raises(ValueError):
            TokenService(secret_key="x", leeway_seconds=leeway)


class TestTampering:
    """Tests for forged and malformed credentials."""

    @pytest.mark.parametrize("raw", [None, "", "abc", "a.b.c", "not a token at all"])
    def test_malformed(self, token_service, raw):
        with pytest.raises(TokenInvalid):
            token_service.validate(raw)

    def test_wrong_secret(self, issued, clock):
        other = TokenService(secret_key="another-secret", clock=clock)
        with pytest.raises(TokenInvalid):
            other.validate(issued.access_token)

    def test_any_character_change_rejected(self, token_service, issued):
        token = issued.access_token
        for index, char in enumerate(token):
            if char == ".":
                continue
            replacement = "A" if char != "A" else "B"
            forged = token[:index] + replacement + token[index + 1:]
            with pytest.raises(TokenInvalid):
                token_service.validate(forged)

    def test_non_canonical_signature_rejected(self, token_service, issued):
        # HS256 signatures leave two unused bits in the last base64url character
        head, signature = issued.access_token.rsplit(".", 1)
        last = BASE64URL.index(signature[-1])
        forged = f"{head}.{signature[:-1]}{BASE64URL[last ^ 1]}"

        assert forged != issued.access_token
        with pytest.raises(TokenInvalid):
            token_service.validate(forged)

    def test_none_algorithm_rejected(self, token_service, issued):
        payload = jwt.decode(issued.access_token, options={"verify_signature": False})
        unsigned = jwt.encode(payload, key=None, algorithm="none")
        with pytest.raises(TokenInvalid):
            token_service.validate(unsigned)

    def test_wrong_type_rejected(self, token_service, issued):
        payload = jwt.decode(issued.access_token, options={"verify_signature": False})
        payload["type"] = "refresh"
        forged = jwt.encode(payload, "unit-test-secret", algorithm="HS256")
        with pytest.raises(TokenInvalid):
            token_service.validate(forged)

    def test_unknown_permission_rejected(self, token_service, issued):
        payload = jwt.decode(issued.access_token, options={"verify_signature": False})
        payload["permissions"] = [["PRINTER", "READ"]]
        forged = jwt.encode(payload, "unit-test-secret", algorithm="HS256")
        with pytest.raises(TokenInvalid):
            token_service.validate(forged)

    def test_missing_expiry_rejected(self, token_service, issued):
        payload = jwt.decode(issued.access_token, options={"verify_signature": False})
        del payload["exp"]
        forged = jwt.encode(payload, "unit-test-secret", algorithm="HS256")
        with pytest.raises(TokenInvalid):
            token_service.validate(forged)


def test_refresh_ttl(clock):
    service = TokenService(secret_key="s", refresh_ttl=timedelta(days=3), clock=clock)
    issued = service.issue(1, "a", [], [])
    assert issued.refresh_expires_at == clock() + timedelta(days=3)
