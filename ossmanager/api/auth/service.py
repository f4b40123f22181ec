"""
Authentication Service

Login, refresh-token rotation, logout and password changes.
"""

import hashlib
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ossmanager.api.access.audit import AuditAction, AuditActor, AuditEmitter, AuditStatus
from ossmanager.api.access.ratelimit import LoginRateLimiter
from ossmanager.api.access.rbac import Claims
from ossmanager.api.auth.jwt import IssuedTokens, TokenService
from ossmanager.api.auth.passwords import hash_password, password_strength_error, verify_password
from ossmanager.api.auth.schemas import BucketResponse, CurrentUserResponse, GrantResponse
from ossmanager.api.db.models import RefreshToken, User
from ossmanager.api.db.store import CredentialStore
from ossmanager.api.exceptions import (
    AuthenticationError,
    NotFound,
    RateLimited,
    TokenInvalid,
    ValidationError,
)


logger = logging.getLogger(__name__)


def hash_refresh_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


def _as_aware(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AuthService:
    """Authentication service with password and session credential management."""

    def __init__(
        self,
        db: AsyncSession,
        token_service: TokenService,
        emitter: AuditEmitter,
        limiter: Optional[LoginRateLimiter] = None,
    ):
        self.db = db
        self.store = CredentialStore(db)
        self.token_service = token_service
        self.emitter = emitter
        self.limiter = limiter

    async def authenticate(
        self, username: str, password: str, actor: AuditActor
    ) -> Tuple[User, IssuedTokens]:
        """
        Authenticate a username/password pair and open a session.

        Raises:
            RateLimited: Username or client address exceeded the attempt limit
            AuthenticationError: Unknown user, wrong password or inactive account
        """
        actor.username = username

        if self.limiter is not None:
            try:
                await self.limiter.acquire(username, actor.ip_address)
            except RateLimited:
                await self._emit_login(actor, AuditStatus.FAILURE, {"reason": "rate_limited"})
                raise

        user = await self.store.get_user_by_username(username)
        password_ok = verify_password(password, user.password_hash if user else None)

        if not user or not password_ok or not user.is_active:
            reason = "inactive" if user and password_ok else "invalid_credentials"
            if user:
                actor.user_id = user.id
            logger.info("Login failed", extra={"username": username, "reason": reason})
            await self._emit_login(actor, AuditStatus.FAILURE, {"reason": reason})
            raise AuthenticationError()

        if self.limiter is not None:
            await self.limiter.record_success(username, actor.ip_address)

        user.last_login_at = self.token_service.clock()
        tokens = await self.issue_for_user(user)
        await self.db.commit()

        actor.user_id = user.id
        await self._emit_login(actor, AuditStatus.SUCCESS, {"session_id": tokens.claims.session_id})
        return user, tokens

    async def issue_for_user(self, user: User) -> IssuedTokens:
        """Snapshot the user's grants into a new token pair. Caller commits."""
        role_ids = await self.store.get_user_role_ids(user.id)
        tokens = self.token_service.issue(
            user_id=user.id,
            username=user.username,
            roles=await self.store.get_role_names(role_ids),
            permissions=await self.store.resolve_permissions(role_ids),
            buckets=await self.store.resolve_buckets(role_ids),
        )
        self.db.add(
            RefreshToken(
                user_id=user.id,
                token_hash=hash_refresh_token(tokens.refresh_token),
                expires_at=tokens.refresh_expires_at,
            )
        )
        await self.db.flush()
        return tokens

    async def refresh(self, raw_refresh_token: str, actor: AuditActor) -> Tuple[User, IssuedTokens]:
        """
        Rotate a refresh token into a new token pair.

        Raises:
            TokenInvalid: Unknown, revoked or expired refresh token, or inactive user
        """
        now = self.token_service.clock()
        record = await self.store.get_refresh_token(hash_refresh_token(raw_refresh_token), lock=True)

        if record is None or record.revoked_at is not None or _as_aware(record.expires_at) <= now:
            await self._emit(AuditAction.TOKEN_REFRESH, actor, AuditStatus.FAILURE)
            raise TokenInvalid("Invalid or expired refresh token")

        user = await self.store.get(User, record.user_id)
        if user is None or not user.is_active:
            record.revoked_at = now
            await self.db.commit()
            actor.user_id = record.user_id
            await self._emit(AuditAction.TOKEN_REFRESH, actor, AuditStatus.FAILURE, {"reason": "inactive"})
            raise TokenInvalid("Invalid or expired refresh token")

        record.revoked_at = now
        tokens = await self.issue_for_user(user)
        await self.db.commit()

        actor.user_id = user.id
        actor.username = user.username
        await self._emit(AuditAction.TOKEN_REFRESH, actor, AuditStatus.SUCCESS)
        return user, tokens

    async def logout(self, raw_refresh_token: Optional[str], actor: AuditActor) -> None:
        """Revoke the refresh token if one was supplied."""
        if raw_refresh_token:
            record = await self.store.get_refresh_token(hash_refresh_token(raw_refresh_token), lock=True)
            if record is not None and record.revoked_at is None:
                record.revoked_at = self.token_service.clock()
                if actor.user_id is None:
                    actor.user_id = record.user_id
                await self.db.commit()

        await self._emit(AuditAction.LOGOUT, actor, AuditStatus.SUCCESS)

    async def change_password(
        self,
        claims: Claims,
        current_password: str,
        new_password: str,
        actor: AuditActor,
    ) -> None:
        """
        Change the caller's password and revoke their refresh tokens.

        Raises:
            NotFound: The account no longer exists
            ValidationError: Wrong current password or weak new password
        """
        user = await self.store.get(User, claims.user_id, lock=True)
        if user is None:
            raise NotFound("User", claims.user_id)

        errors = {}
        if not verify_password(current_password, user.password_hash):
            errors["currentPassword"] = "Current password is incorrect"
        strength = password_strength_error(new_password)
        if strength:
            errors["newPassword"] = strength

        if errors:
            await self.db.rollback()
            await self._emit(AuditAction.PASSWORD_CHANGE, actor, AuditStatus.FAILURE, {"fields": sorted(errors)})
            raise ValidationError(errors)

        now = self.token_service.clock()
        user.password_hash = hash_password(new_password)
        await self.store.revoke_refresh_tokens(user.id, now)
        await self.db.commit()

        await self._emit(AuditAction.PASSWORD_CHANGE, actor, AuditStatus.SUCCESS)

    async def current_user(self, claims: Claims) -> CurrentUserResponse:
        """Profile fields from the store, grants from the credential snapshot."""
        user = await self.store.get(User, claims.user_id)
        if user is None:
            raise NotFound("User", claims.user_id)

        return CurrentUserResponse(
            id=user.id,
            username=user.username,
            email=user.email,
            display_name=user.display_name,
            roles=list(claims.roles),
            permissions=[
                GrantResponse(resource=resource, action=action)
                for resource, action in sorted(grant.to_pair() for grant in claims.permissions)
            ],
            buckets=[
                BucketResponse(region_code=region, bucket_name=bucket)
                for region, bucket in sorted(bucket.to_pair() for bucket in claims.buckets)
            ],
        )

    async def _emit_login(self, actor: AuditActor, status: AuditStatus, details: dict) -> None:
        await self._emit(AuditAction.LOGIN, actor, status, details)

    async def _emit(
        self,
        action: AuditAction,
        actor: AuditActor,
        status: AuditStatus,
        details: Optional[dict] = None,
    ) -> None:
        await self.emitter.emit(
            action,
            "session",
            status,
            actor=actor,
            resource_id=actor.user_id,
            details=details,
        )
