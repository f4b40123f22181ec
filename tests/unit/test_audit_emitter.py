"""
Tests for the Audit Emitter
===========================

Best-effort writes, the ``audited`` decorator and payload sanitizing.
"""

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from ossmanager.api.access.audit import (
    AuditAction,
    AuditActor,
    AuditEmitter,
    AuditStatus,
    _sanitize_for_audit,
    audited,
)
from ossmanager.api.exceptions import ConflictError


def broken_factory():
    raise ConnectionError("audit database unreachable")


def recording_factory():
    """Session factory capturing the rows it is given."""
    session = MagicMock()
    session.commit = AsyncMock()
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=session), session


class TestEmitter:
    """Tests for AuditEmitter.emit."""

    @pytest.mark.asyncio
    async def test_writes_row(self):
        factory, session = recording_factory()
        emitter = AuditEmitter(factory)

        written = await emitter.emit(
            AuditAction.DELETE,
            "role",
            AuditStatus.SUCCESS,
            actor=AuditActor(user_id=1, username="admin", ip_address="10.0.0.1"),
            resource_id=9,
        )

        assert written is True
        row = session.add.call_args.args[0]
        assert row.action == "DELETE"
        assert row.resource_type == "role"
        assert row.resource_id == "9"
        assert row.status == "success"
        assert row.username == "admin"
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_is_counted_and_logged(self, caplog):
        emitter = AuditEmitter(broken_factory)

        with caplog.at_level(logging.ERROR, logger="ossmanager.api.access.audit"):
            written = await emitter.emit(AuditAction.LOGIN, "session", AuditStatus.FAILURE)

        assert written is False
        assert emitter.failed_writes == 1
        record = next(r for r in caplog.records if r.getMessage() == "Audit write failed")
        assert record.audit_event["action"] == "LOGIN"


class TestAuditedDecorator:
    """Tests for the route decorator."""

    @pytest.mark.asyncio
    async def test_success_uses_result_id(self):
        emitter = MagicMock()
        emitter.emit = AsyncMock(return_value=True)

        @audited(AuditAction.CREATE, "role", include_request=True)
        async def handler(data=None, claims=None, request=None, emitter=None):
            result = MagicMock()
            result.id = 12
            return result

        await handler(data={"name": "ops", "password": "x"}, emitter=emitter)

        args, kwargs = emitter.emit.call_args
        assert args == (AuditAction.CREATE, "role", AuditStatus.SUCCESS)
        assert kwargs["resource_id"] == 12
        assert kwargs["details"] == {"request": {"name": "ops", "password": "[REDACTED]"}}

    @pytest.mark.asyncio
    async def test_failure_records_code_and_reraises(self):
        emitter = MagicMock()
        emitter.emit = AsyncMock(return_value=True)

        @audited(AuditAction.UPDATE, "role", resource_id_param="role_id")
        async def handler(role_id=None, claims=None, request=None, emitter=None):
            raise ConflictError("Role name already exists", field="name")

        with pytest.raises(ConflictError):
            await handler(role_id=4, emitter=emitter)

        args, kwargs = emitter.emit.call_args
        assert args[2] is AuditStatus.FAILURE
        assert kwargs["resource_id"] == 4
        assert kwargs["details"] == {"error": "conflict"}

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded_as_internal_and_reraised(self):
        emitter = MagicMock()
        emitter.emit = AsyncMock(return_value=True)

        @audited(AuditAction.DELETE, "permission", resource_id_param="permission_id")
        async def handler(permission_id=None, claims=None, request=None, emitter=None):
            raise RuntimeError("database went away")

        with pytest.raises(RuntimeError):
            await handler(permission_id=6, emitter=emitter)

        args, kwargs = emitter.emit.call_args
        assert args == (AuditAction.DELETE, "permission", AuditStatus.FAILURE)
        assert kwargs["resource_id"] == 6
        assert kwargs["details"] == {"error": "internal_error"}

    def test_route_is_tagged_with_its_event(self):
        @audited(AuditAction.UPDATE, "role", resource_id_param="role_id")
        async def handler(role_id=None, emitter=None):
            return None

        assert handler.audit_event == (AuditAction.UPDATE, "role", "role_id")

    @pytest.mark.asyncio
    async def test_without_emitter_runs_handler(self):
        @audited(AuditAction.DELETE, "user")
        async def handler(emitter=None):
            return "done"

        assert await handler() == "done"


class TestSanitize:
    """Tests for secret redaction."""

    def test_nested_secrets_redacted(self):
        data = {
            "username": "bob",
            "password": "p",
            "nested": {"refreshToken": "r", "items": [{"secret": "s", "ok": 1}]},
        }

        assert _sanitize_for_audit(data) == {
            "username": "bob",
            "password": "[REDACTED]",
            "nested": {"refreshToken": "[REDACTED]", "items": [{"secret": "[REDACTED]", "ok": 1}]},
        }

    def test_scalars_untouched(self):
        assert _sanitize_for_audit(5) == 5
