"""
Audit Schemas

Pydantic models for querying the audit trail.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from ossmanager.api.schemas import CamelModel, PageResponse


class AuditLogResponse(CamelModel):
    id: int
    timestamp: datetime
    user_id: Optional[int] = None
    username: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: str


AuditLogListResponse = PageResponse[AuditLogResponse]
