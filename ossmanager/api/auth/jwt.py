"""
Session Credential Handling

Issue and validate signed session tokens carrying a claims snapshot.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional
from uuid import uuid4

import jwt
from jwt.exceptions import InvalidTokenError
from jwt.utils import base64url_decode, base64url_encode

from ossmanager.api.access.rbac import BucketGrant, Claims, PermissionGrant
from ossmanager.api.config import Settings, settings
from ossmanager.api.exceptions import TokenExpired, TokenInvalid


ACCESS_TOKEN_TYPE = "access"

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class IssuedTokens:
    """Result of a successful issuance."""

    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime
    claims: Claims


class TokenService:
    """
    Issues and validates HMAC-signed session credentials.

    Validation is a pure decode + compare and never touches the store.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        ttl: timedelta = timedelta(hours=24),
        refresh_ttl: timedelta = timedelta(days=7),
        leeway_seconds: int = 0,
        clock: Clock = utcnow,
    ):
        if not 0 <= leeway_seconds <= 5:
            raise ValueError("leeway_seconds must be between 0 and 5")
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.ttl = ttl
        self.refresh_ttl = refresh_ttl
        self.leeway_seconds = leeway_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, config: Settings) -> "TokenService":
        return cls(
            secret_key=config.JWT_SECRET_KEY,
            algorithm=config.JWT_ALGORITHM,
            ttl=timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES),
            refresh_ttl=timedelta(days=config.REFRESH_TOKEN_EXPIRE_DAYS),
            leeway_seconds=config.TOKEN_LEEWAY_SECONDS,
        )

    def _now(self) -> int:
        return int(self.clock().timestamp())

    @property
    def ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    def issue(
        self,
        user_id: int,
        username: str,
        roles: Iterable[str],
        permissions: Iterable[PermissionGrant],
        buckets: Iterable[BucketGrant] = (),
    ) -> IssuedTokens:
        """
        Create a signed access token and an unrelated opaque refresh token.

        Args:
            user_id: User's id
            username: User's username
            roles: Names of the user's roles at issuance
            permissions: Effective permission grants at issuance
            buckets: Region/bucket grants at issuance

        Returns:
            IssuedTokens with both credentials and the embedded claims
        """
        now = self._now()
        claims = Claims(
            user_id=user_id,
            username=username,
            roles=tuple(sorted(set(roles))),
            permissions=frozenset(permissions),
            buckets=frozenset(buckets),
            issued_at=now,
            expires_at=now + self.ttl_seconds,
            session_id=uuid4().hex,
        )

        payload = {
            "sub": str(claims.user_id),
            "username": claims.username,
            "roles": list(claims.roles),
            "permissions": sorted(list(grant.to_pair()) for grant in claims.permissions),
            "buckets": sorted(list(bucket.to_pair()) for bucket in claims.buckets),
            "iat": claims.issued_at,
            "exp": claims.expires_at,
            "jti": claims.session_id,
            "type": ACCESS_TOKEN_TYPE,
        }
        access_token = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

        return IssuedTokens(
            access_token=access_token,
            refresh_token=secrets.token_urlsafe(48),
            expires_in=self.ttl_seconds,
            refresh_expires_at=self.clock() + self.refresh_ttl,
            claims=claims,
        )

    def validate(self, raw: Optional[str]) -> Claims:
        """
        Verify and decode a session token.

        Raises:
            TokenInvalid: Missing, malformed, forged or wrong-type token
            TokenExpired: now >= exp (plus configured leeway)
        """
        if not raw:
            raise TokenInvalid()

        try:
            payload = jwt.decode(
                raw,
                self.secret_key,
                algorithms=[self.algorithm],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["sub", "exp", "iat", "type"],
                },
            )
        except InvalidTokenError:
            raise TokenInvalid()

        _ensure_canonical_signature(raw)

        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise TokenInvalid()

        try:
            claims = Claims(
                user_id=int(payload["sub"]),
                username=str(payload["username"]),
                roles=tuple(payload.get("roles", [])),
                permissions=frozenset(
                    PermissionGrant.from_pair(pair) for pair in payload.get("permissions", [])
                ),
                buckets=frozenset(
                    BucketGrant(str(region), str(bucket))
                    for region, bucket in payload.get("buckets", [])
                ),
                issued_at=int(payload["iat"]),
                expires_at=int(payload["exp"]),
                session_id=payload.get("jti"),
            )
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid()

        if self._now() >= claims.expires_at + self.leeway_seconds:
            raise TokenExpired()

        return claims


def _ensure_canonical_signature(raw: str) -> None:
    """
    Reject signatures whose base64url text differs from the canonical form.

    Trailing padding bits are ignored by the decoder, so two encodings can
    map to the same bytes; only the canonical one is accepted.
    """
    signature = raw.rsplit(".", 1)[-1]
    try:
        canonical = base64url_encode(base64url_decode(signature.encode())).decode()
    except (ValueError, TypeError):
        raise TokenInvalid()
    if canonical != signature:
        raise TokenInvalid()


_token_service: Optional[TokenService] = None


def get_token_service() -> TokenService:
    """Get the process-wide token service built from settings."""
    global _token_service
    if _token_service is None:
        _token_service = TokenService.from_settings(settings)
    return _token_service
