"""
Audit Routes

Read access to the audit trail. Managers only.
"""

import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ossmanager.api.access.audit import AuditAction, AuditStatus
from ossmanager.api.access.rbac import Claims
from ossmanager.api.audit.schemas import AuditLogListResponse, AuditLogResponse
from ossmanager.api.db.models import AuditLog
from ossmanager.api.db.store import CredentialStore
from ossmanager.api.dependencies import Pagination, get_admin_claims, get_store
from ossmanager.api.exceptions import ValidationError


router = APIRouter()


@router.get(
    "/logs",
    response_model=AuditLogListResponse,
    summary="Query audit logs",
)
async def list_audit_logs(
    pagination: Pagination = Depends(),
    start_time: Optional[datetime] = Query(None, description="RFC 3339, inclusive"),
    end_time: Optional[datetime] = Query(None, description="RFC 3339, inclusive"),
    user_id: Optional[int] = Query(None),
    username: Optional[str] = Query(None),
    action: Optional[AuditAction] = Query(None),
    resource_type: Optional[str] = Query(None),
    status: Optional[AuditStatus] = Query(None),
    claims: Claims = Depends(get_admin_claims),
    store: CredentialStore = Depends(get_store),
) -> AuditLogListResponse:
    """
    Get audit events, newest first.

    All filters are optional and combined with AND.
    """
    if start_time and end_time and start_time > end_time:
        raise ValidationError({"start_time": "Must not be after end_time"})

    filters = []
    if start_time:
        filters.append(AuditLog.timestamp >= start_time)
    if end_time:
        filters.append(AuditLog.timestamp <= end_time)
    if user_id is not None:
        filters.append(AuditLog.user_id == user_id)
    if username:
        filters.append(AuditLog.username == username)
    if action:
        filters.append(AuditLog.action == action.value)
    if resource_type:
        filters.append(AuditLog.resource_type == resource_type)
    if status:
        filters.append(AuditLog.status == status.value)

    logs, total = await store.list_audit_logs(filters, pagination.page, pagination.page_size)

    return AuditLogListResponse(
        items=[AuditLogResponse.model_validate(log) for log in logs],
        total=total,
        page=pagination.page,
        page_size=pagination.page_size,
        total_pages=math.ceil(total / pagination.page_size) if total > 0 else 1,
    )
