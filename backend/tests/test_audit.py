import pytest
from sqlalchemy.orm import Session

from gatekeeper.core.database import Base, build_engine, build_session_factory
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
from gatekeeper.services.audit_service import AuditService, RequestContext
from gatekeeper.services.geolocation import GeoLocator


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'audit.db'}")
    Base.metadata.create_all(bind=engine)
    return build_session_factory(engine)


@pytest.fixture
def geo_table(tmp_path):
    path = tmp_path / "geoip.csv"
    path.write_text(
        "network,country,city,latitude,longitude\n"
        "81.2.69.0/24,GB,London,51.5142,-0.0931\n"
    )
    return str(path)


def test_inline_drain_delivers_jobs(session_factory):
    channel = AuditChannel(session_factory)
    service = AuditService(channel)

    service.log_audit("u1", AuditAction.USER_LOGOUT, context=RequestContext("10.0.0.1", "pytest"))
    channel.drain()

    db = session_factory()
    entry = db.query(AuditLog).one()
    assert entry.user_id == "u1"
    assert entry.action == "user_logout"
    assert entry.severity == "info"
    assert entry.status == "success"
    assert entry.ip_address == "10.0.0.1"
    db.close()


def test_worker_thread_delivers_jobs(session_factory):
    channel = AuditChannel(session_factory)
    channel.start()
    try:
        service = AuditService(channel)
        for _ in range(3):
            service.log_audit(None, AuditAction.USER_LOGIN_FAILED, AuditSeverity.WARNING,
                              status=AuditStatus.FAILURE)
        channel.drain(timeout=5)
    finally:
        channel.stop()

    db = session_factory()
    assert db.query(AuditLog).count() == 3
    db.close()


def test_full_queue_drops_instead_of_blocking(session_factory):
    channel = AuditChannel(session_factory, max_size=1)

    assert channel.submit("first", lambda db: None)
    assert not channel.submit("second", lambda db: None)
    assert channel.dropped == 1


def test_failing_job_does_not_stop_the_next_one(session_factory):
    channel = AuditChannel(session_factory)

    def broken(db: Session):
        raise RuntimeError("boom")

    channel.submit("broken", broken)
    AuditService(channel).log_audit("u1", AuditAction.PROFILE_UPDATED)
    channel.drain()

    db = session_factory()
    assert db.query(AuditLog).count() == 1
    db.close()


def test_invalid_action_is_swallowed(session_factory):
    channel = AuditChannel(session_factory)
    AuditService(channel).log_audit("u1", "not_an_action")
    channel.drain()

    db = session_factory()
    assert db.query(AuditLog).count() == 0
    db.close()


def test_security_event_gets_location(session_factory, geo_table):
    channel = AuditChannel(session_factory)
    service = AuditService(channel, GeoLocator(geo_table))

    service.log_security_event(
        SecurityEventType.BRUTE_FORCE_ATTEMPT,
        SecuritySeverity.HIGH,
        user_id="u1",
        context=RequestContext("81.2.69.160", "pytest"),
        details={"attempts": 5},
    )
    channel.drain()

    db = session_factory()
    event = db.query(SecurityEvent).one()
    assert event.event_type == "brute_force_attempt"
    assert event.resolved is False
    assert event.country == "GB"
    assert event.city == "London"
    assert event.latitude == pytest.approx(51.5142)
    assert event.longitude == pytest.approx(-0.0931)
    assert event.details == {"attempts": 5}
    db.close()
