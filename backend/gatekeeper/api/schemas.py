"""Response models shared by the auth and admin routers."""

import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict


class UserSummary(BaseModel):
    id: str
    name: str
    email: str
    role: str
    is_email_verified: bool
    is_two_factor_enabled: bool
    last_login: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UserDetail(UserSummary):
    login_attempts: int
    lock_until: Optional[datetime] = None
    profile: Dict[str, Any] = {}
    preferences: Dict[str, Any] = {}
    created_at: Optional[datetime] = None


class AuditLogResponse(BaseModel):
    id: str
    user_id: Optional[str]
    action: str
    severity: str
    status: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    details: Optional[Dict[str, Any]]
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class SecurityEventResponse(BaseModel):
    id: str
    user_id: Optional[str]
    event_type: str
    severity: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    location: Optional[Dict[str, Any]]
    details: Optional[Dict[str, Any]]
    resolved: bool
    resolved_by: Optional[str]
    resolved_at: Optional[datetime]
    notes: Optional[str]
    timestamp: datetime

    model_config = ConfigDict(from_attributes=True)


class SessionResponse(BaseModel):
    id: str
    user_id: str
    ip_address: str
    user_agent: str
    device: Dict[str, Optional[str]]
    location: Optional[Dict[str, Any]]
    expires_at: datetime
    last_active_at: datetime
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


def paginated(items: List[Any], total: int, page: int, limit: int, key: str) -> Dict[str, Any]:
    """Envelope for a page of results"""
    return {
        "success": True,
        "count": len(items),
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
        "current_page": page,
        "data": {key: items},
    }
