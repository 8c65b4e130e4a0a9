import hashlib
import logging
from datetime import datetime
from typing import Optional, List, Dict

from sqlalchemy.orm import Session
from user_agents import parse as parse_user_agent

from gatekeeper.models.audit import UserSession
from gatekeeper.services.audit_channel import AuditChannel
from gatekeeper.services.audit_service import RequestContext
from gatekeeper.services.geolocation import GeoLocator
from gatekeeper.utils.clock import utcnow

logger = logging.getLogger(__name__)


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def describe_device(user_agent: Optional[str]) -> Dict[str, str]:
    """Classify a user agent string into device type/name/os/browser"""
    if not user_agent or user_agent == "unknown":
        return {"type": "other", "name": "unknown", "os": "unknown", "browser": "unknown"}

    ua = parse_user_agent(user_agent)
    if ua.is_mobile:
        device_type = "mobile"
    elif ua.is_tablet:
        device_type = "tablet"
    elif ua.is_pc:
        device_type = "desktop"
    else:
        device_type = "other"

    name = ua.device.model or ua.device.brand or ua.device.family or "unknown"
    os_name = f"{ua.os.family or 'unknown'} {ua.os.version_string or ''}".strip()
    browser = f"{ua.browser.family or 'unknown'} {ua.browser.version_string or ''}".strip()
    return {"type": device_type, "name": name, "os": os_name, "browser": browser}


class SessionTracker:
    """
    Tracks issued token pairs as UserSession rows.

    create/invalidate/rotate run on the request's database session because the
    caller needs their result. touch() only bumps last_active_at and goes
    through the audit channel.
    """

    def __init__(self, channel: AuditChannel, geolocator: Optional[GeoLocator] = None):
        self.channel = channel
        self.geolocator = geolocator or GeoLocator()

    def create_session(
        self,
        db: Session,
        user_id: str,
        access_token: str,
        refresh_token: Optional[str],
        context: RequestContext,
        expires_at: datetime,
    ) -> UserSession:
        device = describe_device(context.user_agent)
        location = self.geolocator.lookup(context.ip_address) or {}
        now = utcnow()
        session = UserSession(
            user_id=user_id,
            token_hash=token_digest(access_token),
            refresh_token_hash=token_digest(refresh_token) if refresh_token else None,
            ip_address=context.ip_address or "unknown",
            user_agent=context.user_agent or "unknown",
            device_type=device["type"],
            device_name=device["name"],
            device_os=device["os"],
            device_browser=device["browser"],
            country=location.get("country"),
            city=location.get("city"),
            latitude=location.get("latitude"),
            longitude=location.get("longitude"),
            expires_at=expires_at,
            last_active_at=now,
            is_active=True,
            created_at=now,
        )
        db.add(session)
        db.commit()
        db.refresh(session)
        return session

    def touch(self, token: str) -> None:
        digest = token_digest(token)

        def _touch(db: Session) -> None:
            db.query(UserSession).filter(
                UserSession.token_hash == digest,
                UserSession.is_active.is_(True),
            ).update({UserSession.last_active_at: utcnow()}, synchronize_session=False)

        self.channel.submit("session activity", _touch)

    def find_by_token(self, db: Session, token: str) -> Optional[UserSession]:
        return db.query(UserSession).filter(UserSession.token_hash == token_digest(token)).first()

    def find_by_refresh_token(self, db: Session, refresh_token: str) -> Optional[UserSession]:
        return db.query(UserSession).filter(
            UserSession.refresh_token_hash == token_digest(refresh_token)
        ).first()

    def is_valid(self, db: Session, token: str, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        session = db.query(UserSession).filter(
            UserSession.token_hash == token_digest(token),
            UserSession.is_active.is_(True),
            UserSession.expires_at > now,
        ).first()
        return session is not None

    def invalidate(self, db: Session, token: str) -> bool:
        updated = db.query(UserSession).filter(
            UserSession.token_hash == token_digest(token),
            UserSession.is_active.is_(True),
        ).update({UserSession.is_active: False}, synchronize_session=False)
        db.commit()
        return updated > 0

    def deactivate(self, db: Session, session: UserSession) -> None:
        session.is_active = False
        db.commit()

    def invalidate_all(self, db: Session, user_id: str, except_token: Optional[str] = None) -> int:
        query = db.query(UserSession).filter(
            UserSession.user_id == user_id,
            UserSession.is_active.is_(True),
        )
        if except_token:
            query = query.filter(UserSession.token_hash != token_digest(except_token))
        updated = query.update({UserSession.is_active: False}, synchronize_session=False)
        db.commit()
        logger.info(f"Invalidated {updated} sessions for user {user_id}")
        return updated

    def rotate(
        self,
        db: Session,
        session: UserSession,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> UserSession:
        """Swap the token pair of an existing session after a refresh"""
        session.token_hash = token_digest(access_token)
        session.refresh_token_hash = token_digest(refresh_token)
        session.expires_at = expires_at
        session.last_active_at = utcnow()
        db.commit()
        db.refresh(session)
        return session

    def active_sessions(self, db: Session, user_id: str) -> List[UserSession]:
        return db.query(UserSession).filter(
            UserSession.user_id == user_id,
            UserSession.is_active.is_(True),
        ).order_by(UserSession.last_active_at.desc()).all()

    def expire_stale(self, db: Session, now: Optional[datetime] = None) -> int:
        """Deactivate sessions whose refresh token lifetime has passed"""
        now = now or utcnow()
        updated = db.query(UserSession).filter(
            UserSession.is_active.is_(True),
            UserSession.expires_at <= now,
        ).update({UserSession.is_active: False}, synchronize_session=False)
        db.commit()
        return updated
