import logging
from dataclasses import dataclass
from typing import Optional, Any, Dict

from fastapi import Request

from gatekeeper.models.audit import (
    AuditAction,
    AuditLog,
    AuditSeverity,
    AuditStatus,
    SecurityEvent,
    SecurityEventType,
    SecuritySeverity,
)
from gatekeeper.services.audit_channel import AuditChannel
from gatekeeper.services.geolocation import GeoLocator
from gatekeeper.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestContext":
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ip_address = forwarded.split(",")[0].strip()
        elif request.client:
            ip_address = request.client.host
        else:
            ip_address = "unknown"
        return cls(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


class AuditService:
    """
    Records account actions and security events.

    Both entry points build the row on the caller's thread and hand the write
    to the AuditChannel; the request never waits for the database and never
    sees an audit failure.
    """

    def __init__(self, channel: AuditChannel, geolocator: Optional[GeoLocator] = None):
        self.channel = channel
        self.geolocator = geolocator or GeoLocator()

    def log_audit(
        self,
        user_id: Optional[str],
        action: AuditAction,
        severity: AuditSeverity = AuditSeverity.INFO,
        context: Optional[RequestContext] = None,
        details: Optional[Dict[str, Any]] = None,
        status: AuditStatus = AuditStatus.SUCCESS,
    ) -> None:
        try:
            context = context or RequestContext()
            entry = AuditLog(
                user_id=user_id,
                action=AuditAction(action).value,
                severity=AuditSeverity(severity).value,
                status=AuditStatus(status).value,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                details=details,
                timestamp=utcnow(),
            )
            self.channel.submit(f"audit log {entry.action}", lambda db: db.add(entry))

            if entry.severity in (AuditSeverity.ERROR.value, AuditSeverity.CRITICAL.value):
                logger.warning(
                    f"Audit event: {entry.action} | User: {user_id or 'anonymous'} | "
                    f"Status: {entry.status} | IP: {context.ip_address or 'unknown'}")
        except Exception:
            logger.exception(f"Failed to record audit log {action}")

    def log_security_event(
        self,
        event_type: SecurityEventType,
        severity: SecuritySeverity,
        user_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            context = context or RequestContext()
            location = self.geolocator.lookup(context.ip_address) or {}
            event = SecurityEvent(
                user_id=user_id,
                event_type=SecurityEventType(event_type).value,
                severity=SecuritySeverity(severity).value,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                country=location.get("country"),
                city=location.get("city"),
                latitude=location.get("latitude"),
                longitude=location.get("longitude"),
                details=details,
                resolved=False,
                timestamp=utcnow(),
            )
            self.channel.submit(f"security event {event.event_type}", lambda db: db.add(event))

            logger.warning(
                f"Security event: {event.event_type} | Severity: {event.severity} | "
                f"User: {user_id or 'anonymous'} | IP: {context.ip_address or 'unknown'}")
        except Exception:
            logger.exception(f"Failed to record security event {event_type}")
