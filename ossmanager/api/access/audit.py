"""
OSS Manager - Audit Trail

Best-effort recording of authentication events and guarded mutations.
Each event is written in its own session after the primary transaction
has finished; a failed write is logged and counted, never raised.
"""

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from ossmanager.api.access.rbac import Claims
from ossmanager.api.db.models import AuditLog, utcnow
from ossmanager.api.exceptions import AccessCoreError


logger = logging.getLogger(__name__)


# ============================================================
# Audit Event Types
# ============================================================


class AuditAction(str, Enum):
    """Categories of auditable events."""

    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AuditStatus(str, Enum):
    """Result of an audited action."""

    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class AuditActor:
    """Who performed the action."""

    user_id: Optional[int] = None
    username: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(
        cls,
        request: Optional[Request],
        claims: Optional[Claims] = None,
        username: Optional[str] = None,
    ) -> "AuditActor":
        ip_address = None
        user_agent = None
        if request is not None:
            ip_address = request.client.host if request.client else None
            user_agent = request.headers.get("user-agent")
        return cls(
            user_id=claims.user_id if claims else None,
            username=claims.username if claims else username,
            ip_address=ip_address,
            user_agent=user_agent[:500] if user_agent else None,
        )


# ============================================================
# Emitter
# ============================================================


class AuditEmitter:
    """Writes audit rows through a dedicated session factory."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self.failed_writes = 0

    async def emit(
        self,
        action: AuditAction,
        resource_type: str,
        status: AuditStatus,
        actor: Optional[AuditActor] = None,
        resource_id: Optional[Any] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Record one audit event.

        Returns:
            True if the row was written, False if the write failed
        """
        actor = actor or AuditActor()
        payload = {
            "action": action.value,
            "resource_type": resource_type,
            "resource_id": str(resource_id) if resource_id is not None else None,
            "status": status.value,
            "details": _sanitize_for_audit(details or {}),
            **asdict(actor),
        }

        try:
            async with self.session_factory() as session:
                session.add(AuditLog(timestamp=utcnow(), **payload))
                await session.commit()
        except Exception:
            self.failed_writes += 1
            logger.exception("Audit write failed", extra={"audit_event": payload})
            return False

        logger.info("AUDIT %s %s %s", payload["action"], resource_type, payload["status"])
        return True


_emitter: Optional[AuditEmitter] = None


def get_audit_emitter() -> AuditEmitter:
    """Get the process-wide emitter bound to the application database."""
    global _emitter
    if _emitter is None:
        from ossmanager.api.db.session import get_session_maker

        _emitter = AuditEmitter(get_session_maker())
    return _emitter


# ============================================================
# Audit Decorator
# ============================================================


def audited(
    action: AuditAction,
    resource_type: str,
    resource_id_param: Optional[str] = None,
    include_request: bool = False,
):
    """
    Decorator that records the outcome of an async route handler.

    The wrapped handler must accept ``claims``, ``request`` and ``emitter``
    keyword arguments. Failures raised as AccessCoreError are recorded with
    their error code, anything else as ``internal_error``; both are re-raised.
    Guard denials happen before the handler runs and are recorded by
    ``record_denial`` from the ``audit_event`` attribute set here.

    Usage:
        @router.post("/users")
        @audited(AuditAction.CREATE, "user", include_request=True)
        async def create_user(data, claims=..., request=..., emitter=...):
            ...
    """
    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            emitter: Optional[AuditEmitter] = kwargs.get("emitter")
            if emitter is None:
                return await func(*args, **kwargs)

            actor = AuditActor.from_request(kwargs.get("request"), kwargs.get("claims"))
            resource_id = kwargs.get(resource_id_param) if resource_id_param else None

            details: Dict[str, Any] = {}
            if include_request:
                request_data = kwargs.get("data")
                if request_data is not None:
                    details["request"] = _sanitize_for_audit(request_data)

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                details["error"] = e.code if isinstance(e, AccessCoreError) else "internal_error"
                await emitter.emit(
                    action,
                    resource_type,
                    AuditStatus.FAILURE,
                    actor=actor,
                    resource_id=resource_id,
                    details=details,
                )
                raise

            if resource_id is None:
                resource_id = getattr(result, "id", None)

            await emitter.emit(
                action,
                resource_type,
                AuditStatus.SUCCESS,
                actor=actor,
                resource_id=resource_id,
                details=details,
            )
            return result

        wrapper.audit_event = (action, resource_type, resource_id_param)
        return wrapper
    return decorator


async def record_denial(
    request: Request,
    claims: Claims,
    emitter: AuditEmitter,
    error: AccessCoreError,
) -> None:
    """Record a guard denial against the audited route it protected."""
    event = getattr(request.scope.get("endpoint"), "audit_event", None)
    if event is None:
        return

    action, resource_type, resource_id_param = event
    resource_id = request.path_params.get(resource_id_param) if resource_id_param else None
    await emitter.emit(
        action,
        resource_type,
        AuditStatus.FAILURE,
        actor=AuditActor.from_request(request, claims),
        resource_id=resource_id,
        details={"error": error.code},
    )


def _sanitize_for_audit(data: Any) -> Any:
    """Remove sensitive fields from data before logging."""
    sensitive_fields = {
        "password", "password_hash", "new_password", "current_password",
        "token", "refresh_token", "refreshtoken", "secret",
    }

    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")

    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if k.lower() in sensitive_fields else _sanitize_for_audit(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple, set, frozenset)):
        return [_sanitize_for_audit(item) for item in data]
    else:
        return data
