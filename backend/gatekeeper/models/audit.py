from enum import Enum

from sqlalchemy import Column, String, DateTime, Boolean, Float, JSON, Index

from gatekeeper.core.database import Base
from gatekeeper.models.user import new_id
from gatekeeper.utils.clock import utcnow


class AuditAction(str, Enum):
    # Authentication
    USER_REGISTERED = "user_registered"
    USER_LOGIN_SUCCESS = "user_login_success"
    USER_LOGIN_FAILED = "user_login_failed"
    USER_LOGOUT = "user_logout"
    TOKEN_REFRESHED = "token_refreshed"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"
    EMAIL_VERIFICATION_REQUESTED = "email_verification_requested"
    EMAIL_VERIFICATION_COMPLETED = "email_verification_completed"
    TWO_FACTOR_SETUP = "two_factor_setup"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    TWO_FACTOR_DISABLED = "two_factor_disabled"
    TWO_FACTOR_VERIFIED = "two_factor_verified"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"

    # Profile
    PROFILE_UPDATED = "profile_updated"
    PREFERENCES_UPDATED = "preferences_updated"

    # Admin
    USER_ROLE_CHANGED = "user_role_changed"
    USER_DELETED = "user_deleted"
    SESSION_REVOKED = "session_revoked"
    SECURITY_EVENT_RESOLVED = "security_event_resolved"


class AuditSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class SecurityEventType(str, Enum):
    SUSPICIOUS_LOGIN = "suspicious_login"
    BRUTE_FORCE_ATTEMPT = "brute_force_attempt"
    PASSWORD_GUESSING = "password_guessing"
    SESSION_HIJACKING = "session_hijacking"
    UNUSUAL_LOCATION = "unusual_location"
    UNUSUAL_DEVICE = "unusual_device"


class SecuritySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditLog(Base):
    """Append-only record of an account action. Read newest first."""
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    # No foreign key: entries outlive deleted users, and anonymous actions have no user
    user_id = Column(String(36), nullable=True)
    action = Column(String(64), nullable=False)
    severity = Column(String(16), nullable=False, default=AuditSeverity.INFO.value)
    status = Column(String(16), nullable=False, default=AuditStatus.SUCCESS.value)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    details = Column(JSON, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_audit_logs_user_ts", "user_id", "timestamp"),
        Index("ix_audit_logs_action_ts", "action", "timestamp"),
        Index("ix_audit_logs_severity_ts", "severity", "timestamp"),
        Index("ix_audit_logs_ts", "timestamp"),
    )


class SecurityEvent(Base):
    """Heuristically detected suspicious activity, resolved once by an admin."""
    __tablename__ = "security_events"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=True)
    event_type = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False, default=SecuritySeverity.MEDIUM.value)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)

    country = Column(String(64), nullable=True)
    city = Column(String(128), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    details = Column(JSON, nullable=True)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_by = Column(String(36), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    notes = Column(String(1000), nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_security_events_user_ts", "user_id", "timestamp"),
        Index("ix_security_events_type_ts", "event_type", "timestamp"),
        Index("ix_security_events_resolved_ts", "resolved", "timestamp"),
        Index("ix_security_events_ts", "timestamp"),
    )

    @property
    def location(self):
        if self.country is None and self.city is None:
            return None
        return {
            "country": self.country,
            "city": self.city,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


class UserSession(Base):
    """
    One issued access/refresh token pair.

    Tokens are kept as SHA-256 digests. Sessions are deactivated on logout or
    revocation and are never deleted.
    """
    __tablename__ = "user_sessions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), nullable=False)
    token_hash = Column(String(64), nullable=False, index=True)
    refresh_token_hash = Column(String(64), nullable=True, index=True)
    ip_address = Column(String(64), nullable=False)
    user_agent = Column(String(512), nullable=False)

    device_type = Column(String(16), nullable=True)
    device_name = Column(String(128), nullable=True)
    device_os = Column(String(128), nullable=True)
    device_browser = Column(String(128), nullable=True)

    country = Column(String(64), nullable=True)
    city = Column(String(128), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    expires_at = Column(DateTime, nullable=False, index=True)
    last_active_at = Column(DateTime, nullable=False, default=utcnow)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_user_sessions_user_active", "user_id", "is_active"),
    )

    @property
    def device(self):
        return {
            "type": self.device_type,
            "name": self.device_name,
            "os": self.device_os,
            "browser": self.device_browser,
        }

    @property
    def location(self):
        if self.country is None and self.city is None:
            return None
        return {
            "country": self.country,
            "city": self.city,
            "latitude": self.latitude,
            "longitude": self.longitude,
        }
