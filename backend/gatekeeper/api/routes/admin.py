from datetime import datetime, timedelta
from typing import Dict, Iterable, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import func, or_
from sqlalchemy.orm import Query as SAQuery, Session

from gatekeeper.api.dependencies import (
    CurrentUser,
    get_audit,
    get_request_context,
    get_sessions,
    get_settings,
    require_admin,
)
from gatekeeper.api.schemas import (
    AuditLogResponse,
    SecurityEventResponse,
    SessionResponse,
    UserDetail,
    UserSummary,
    paginated,
)
from gatekeeper.core.config import Settings
from gatekeeper.core.database import get_db
from gatekeeper.core.errors import BadRequestError, NotFoundError
from gatekeeper.core.lockout import LockoutState
from gatekeeper.models.audit import (
    AuditAction,
    AuditLog,
    AuditSeverity,
    AuditStatus,
    SecurityEvent,
    SecuritySeverity,
    UserSession,
)
from gatekeeper.models.user import User
from gatekeeper.services.audit_service import AuditService, RequestContext
from gatekeeper.services.session_service import SessionTracker
from gatekeeper.utils.clock import utcnow

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

USER_NOT_FOUND_MESSAGE = "User not found"
DASHBOARD_WINDOW_DAYS = 30
LOGIN_TREND_DAYS = 7


class ResolveEventRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=1000)


class RoleUpdate(BaseModel):
    role: Literal["user", "admin"]


class LockUpdate(BaseModel):
    lock: bool


def _load_user(db: Session, user_id: UUID) -> User:
    user = db.query(User).filter(User.id == str(user_id)).first()
    if user is None:
        raise NotFoundError(USER_NOT_FOUND_MESSAGE)
    return user


def _user_lookup(db: Session, user_ids: Iterable[Optional[str]]) -> Dict[str, dict]:
    """Fetch name/email for the users referenced by a page of rows"""
    ids = {user_id for user_id in user_ids if user_id}
    if not ids:
        return {}
    users = db.query(User.id, User.name, User.email).filter(User.id.in_(ids)).all()
    return {u.id: {"id": u.id, "name": u.name, "email": u.email} for u in users}


def _within_dates(query: SAQuery, column, start_date: Optional[datetime], end_date: Optional[datetime]) -> SAQuery:
    if start_date is not None:
        query = query.filter(column >= start_date)
    if end_date is not None:
        query = query.filter(column <= end_date)
    return query


def _page(query: SAQuery, page: int, limit: int):
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    return items, total


@router.get("/dashboard")
async def dashboard(db: Session = Depends(get_db)):
    """Aggregate counters for the admin dashboard"""
    now = utcnow()
    window_start = now - timedelta(days=DASHBOARD_WINDOW_DAYS)
    trend_start = now - timedelta(days=LOGIN_TREND_DAYS)

    total_users = db.query(func.count(User.id)).scalar()
    new_users = db.query(func.count(User.id)).filter(User.created_at >= window_start).scalar()
    active_sessions = db.query(func.count(UserSession.id)).filter(
        UserSession.is_active.is_(True),
        UserSession.expires_at > now,
    ).scalar()

    login_counts = dict(
        db.query(AuditLog.action, func.count(AuditLog.id))
        .filter(
            AuditLog.action.in_([AuditAction.USER_LOGIN_SUCCESS.value, AuditAction.USER_LOGIN_FAILED.value]),
            AuditLog.timestamp >= window_start,
        )
        .group_by(AuditLog.action)
        .all()
    )
    successful_logins = login_counts.get(AuditAction.USER_LOGIN_SUCCESS.value, 0)
    failed_logins = login_counts.get(AuditAction.USER_LOGIN_FAILED.value, 0)
    attempts = successful_logins + failed_logins

    security_total = db.query(func.count(SecurityEvent.id)).filter(
        SecurityEvent.timestamp >= window_start).scalar()
    security_unresolved = db.query(func.count(SecurityEvent.id)).filter(
        SecurityEvent.resolved.is_(False)).scalar()
    severity_counts = dict(
        db.query(SecurityEvent.severity, func.count(SecurityEvent.id))
        .filter(SecurityEvent.timestamp >= window_start)
        .group_by(SecurityEvent.severity)
        .all()
    )

    # date() renders as a string on SQLite and a date on PostgreSQL
    day = func.date(AuditLog.timestamp)
    daily_rows = (
        db.query(day, AuditLog.action, func.count(AuditLog.id))
        .filter(
            AuditLog.action.in_([AuditAction.USER_LOGIN_SUCCESS.value, AuditAction.USER_LOGIN_FAILED.value]),
            AuditLog.timestamp >= trend_start,
        )
        .group_by(day, AuditLog.action)
        .order_by(day)
        .all()
    )
    daily: Dict[str, Dict[str, int]] = {}
    for bucket, action, count in daily_rows:
        entry = daily.setdefault(str(bucket), {"date": str(bucket), "success": 0, "failed": 0})
        if action == AuditAction.USER_LOGIN_SUCCESS.value:
            entry["success"] += count
        else:
            entry["failed"] += count

    recent_events = (
        db.query(SecurityEvent)
        .filter(
            SecurityEvent.resolved.is_(False),
            SecurityEvent.severity.in_([SecuritySeverity.HIGH.value, SecuritySeverity.CRITICAL.value]),
        )
        .order_by(SecurityEvent.timestamp.desc())
        .limit(5)
        .all()
    )

    return {
        "success": True,
        "data": {
            "users": {"total": total_users, "new": new_users},
            "sessions": {"active": active_sessions},
            "logins": {
                "successful": successful_logins,
                "failed": failed_logins,
                "success_rate": round(successful_logins / attempts * 100, 2) if attempts else 0,
            },
            "security": {
                "total": security_total,
                "unresolved": security_unresolved,
                "by_severity": {severity.value: severity_counts.get(severity.value, 0)
                                for severity in SecuritySeverity},
            },
            "daily_logins": list(daily.values()),
            "recent_security_events": [SecurityEventResponse.model_validate(e) for e in recent_events],
        },
    }


@router.get("/audit-logs")
async def list_audit_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user_id: Optional[str] = None,
    action: Optional[AuditAction] = None,
    severity: Optional[AuditSeverity] = None,
    status: Optional[AuditStatus] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    """Audit trail, newest first"""
    query = db.query(AuditLog)
    if user_id:
        query = query.filter(AuditLog.user_id == user_id)
    if action:
        query = query.filter(AuditLog.action == action.value)
    if severity:
        query = query.filter(AuditLog.severity == severity.value)
    if status:
        query = query.filter(AuditLog.status == status.value)
    query = _within_dates(query, AuditLog.timestamp, start_date, end_date)

    logs, total = _page(query.order_by(AuditLog.timestamp.desc()), page, limit)
    users = _user_lookup(db, (log.user_id for log in logs))
    items = [
        {**AuditLogResponse.model_validate(log).model_dump(), "user": users.get(log.user_id)}
        for log in logs
    ]
    return paginated(items, total, page, limit, "logs")


@router.get("/security-events")
async def list_security_events(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    severity: Optional[SecuritySeverity] = None,
    resolved: Optional[bool] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    query = db.query(SecurityEvent)
    if user_id:
        query = query.filter(SecurityEvent.user_id == user_id)
    if event_type:
        query = query.filter(SecurityEvent.event_type == event_type)
    if severity:
        query = query.filter(SecurityEvent.severity == severity.value)
    if resolved is not None:
        query = query.filter(SecurityEvent.resolved.is_(resolved))
    query = _within_dates(query, SecurityEvent.timestamp, start_date, end_date)

    events, total = _page(query.order_by(SecurityEvent.timestamp.desc()), page, limit)
    users = _user_lookup(db, [e.user_id for e in events] + [e.resolved_by for e in events])
    items = [
        {
            **SecurityEventResponse.model_validate(event).model_dump(),
            "user": users.get(event.user_id),
            "resolver": users.get(event.resolved_by),
        }
        for event in events
    ]
    return paginated(items, total, page, limit, "events")


@router.patch("/security-events/{event_id}/resolve")
async def resolve_security_event(
    event_id: UUID,
    payload: Optional[ResolveEventRequest] = None,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    event = db.query(SecurityEvent).filter(SecurityEvent.id == str(event_id)).first()
    if event is None:
        raise NotFoundError("Security event not found")
    if event.resolved:
        raise BadRequestError("Security event is already resolved")

    event.resolved = True
    event.resolved_by = admin.user_id
    event.resolved_at = utcnow()
    event.notes = (payload.notes if payload and payload.notes else None) or "Resolved by admin"
    db.commit()
    db.refresh(event)

    audit.log_audit(admin.user_id, AuditAction.SECURITY_EVENT_RESOLVED, AuditSeverity.INFO, context,
                    {"event_id": event.id, "event_type": event.event_type})

    return {
        "success": True,
        "message": "Security event resolved",
        "data": {"event": SecurityEventResponse.model_validate(event)},
    }


@router.get("/user-sessions")
async def list_user_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user_id: Optional[str] = None,
    is_active: Optional[bool] = None,
    db: Session = Depends(get_db),
):
    query = db.query(UserSession)
    if user_id:
        query = query.filter(UserSession.user_id == user_id)
    if is_active is not None:
        query = query.filter(UserSession.is_active.is_(is_active))

    sessions, total = _page(query.order_by(UserSession.last_active_at.desc()), page, limit)
    users = _user_lookup(db, (s.user_id for s in sessions))
    items = [
        {**SessionResponse.model_validate(s).model_dump(), "user": users.get(s.user_id)}
        for s in sessions
    ]
    return paginated(items, total, page, limit, "sessions")


@router.delete("/user-sessions/{session_id}")
async def invalidate_user_session(
    session_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
    sessions: SessionTracker = Depends(get_sessions),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    session = db.query(UserSession).filter(UserSession.id == str(session_id)).first()
    if session is None:
        raise NotFoundError("Session not found")

    sessions.deactivate(db, session)

    audit.log_audit(admin.user_id, AuditAction.SESSION_REVOKED, AuditSeverity.WARNING, context,
                    {"session_id": session.id, "user_id": session.user_id})

    return {"success": True, "message": "Session invalidated"}


@router.delete("/users/{user_id}/sessions")
async def invalidate_all_user_sessions(
    user_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
    sessions: SessionTracker = Depends(get_sessions),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    user = _load_user(db, user_id)
    count = sessions.invalidate_all(db, user.id)

    audit.log_audit(admin.user_id, AuditAction.SESSION_REVOKED, AuditSeverity.WARNING, context,
                    {"user_id": user.id, "count": count})

    return {
        "success": True,
        "message": f"Invalidated {count} sessions",
        "data": {"count": count},
    }


@router.get("/users/{user_id}/activity")
async def user_activity(
    user_id: UUID,
    db: Session = Depends(get_db),
    sessions: SessionTracker = Depends(get_sessions),
):
    """Login history and recent records for one user"""
    user = _load_user(db, user_id)

    login_counts = dict(
        db.query(AuditLog.action, func.count(AuditLog.id))
        .filter(
            AuditLog.user_id == user.id,
            AuditLog.action.in_([AuditAction.USER_LOGIN_SUCCESS.value, AuditAction.USER_LOGIN_FAILED.value]),
        )
        .group_by(AuditLog.action)
        .all()
    )
    recent_logs = (
        db.query(AuditLog)
        .filter(AuditLog.user_id == user.id)
        .order_by(AuditLog.timestamp.desc())
        .limit(20)
        .all()
    )
    recent_events = (
        db.query(SecurityEvent)
        .filter(SecurityEvent.user_id == user.id)
        .order_by(SecurityEvent.timestamp.desc())
        .limit(10)
        .all()
    )
    active = sessions.active_sessions(db, user.id)

    return {
        "success": True,
        "data": {
            "user": UserDetail.model_validate(user),
            "logins": {
                "successful": login_counts.get(AuditAction.USER_LOGIN_SUCCESS.value, 0),
                "failed": login_counts.get(AuditAction.USER_LOGIN_FAILED.value, 0),
                "last_login": user.last_login,
            },
            "active_sessions": [SessionResponse.model_validate(s) for s in active],
            "recent_audit_logs": [AuditLogResponse.model_validate(log) for log in recent_logs],
            "recent_security_events": [SecurityEventResponse.model_validate(e) for e in recent_events],
        },
    }


@router.get("/users")
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    db: Session = Depends(get_db),
):
    query = db.query(User)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(User.name.ilike(pattern), User.email.ilike(pattern)))

    users, total = _page(query.order_by(User.created_at.desc()), page, limit)
    return paginated([UserSummary.model_validate(u) for u in users], total, page, limit, "users")


@router.patch("/users/{user_id}/role")
async def update_user_role(
    user_id: UUID,
    payload: RoleUpdate,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    user = _load_user(db, user_id)
    previous = user.role
    user.role = payload.role
    db.commit()
    db.refresh(user)

    audit.log_audit(admin.user_id, AuditAction.USER_ROLE_CHANGED, AuditSeverity.WARNING, context,
                    {"user_id": user.id, "from": previous, "to": user.role})

    return {
        "success": True,
        "message": "User role updated",
        "data": {"user": UserSummary.model_validate(user)},
    }


@router.patch("/users/{user_id}/lock")
async def toggle_user_lock(
    user_id: UUID,
    payload: LockUpdate,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    user = _load_user(db, user_id)
    if user.id == admin.user_id:
        raise BadRequestError("You cannot lock your own account")

    if payload.lock:
        lock_until = utcnow() + timedelta(hours=settings.ADMIN_LOCK_HOURS)
        user.apply_lockout(LockoutState(user.login_attempts or 0, lock_until))
        action = AuditAction.ACCOUNT_LOCKED
        details = {"user_id": user.id, "lock_until": lock_until.isoformat(), "by_admin": True}
    else:
        user.apply_lockout(LockoutState())
        action = AuditAction.ACCOUNT_UNLOCKED
        details = {"user_id": user.id, "by_admin": True}
    db.commit()
    db.refresh(user)

    audit.log_audit(admin.user_id, action, AuditSeverity.WARNING, context, details)

    return {
        "success": True,
        "message": "User locked" if payload.lock else "User unlocked",
        "data": {"user": UserDetail.model_validate(user)},
    }


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
    sessions: SessionTracker = Depends(get_sessions),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    user = _load_user(db, user_id)
    if user.id == admin.user_id:
        raise BadRequestError("You cannot delete your own account")

    audit.log_audit(admin.user_id, AuditAction.USER_DELETED, AuditSeverity.WARNING, context,
                    {"user_id": user.id, "email": user.email, "deleted_by": admin.user_id})

    sessions.invalidate_all(db, user.id)
    db.delete(user)
    db.commit()

    return {"success": True, "message": "User deleted"}
