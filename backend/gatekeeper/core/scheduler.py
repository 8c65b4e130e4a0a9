"""
Background scheduler for periodic tasks.

This module manages background jobs that run on a schedule:
- Expire stale sessions: Runs every SESSION_SWEEP_MINUTES
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import sessionmaker

from gatekeeper.services.session_service import SessionTracker

logger = logging.getLogger(__name__)


def expire_stale_sessions_job(session_factory: sessionmaker, sessions: SessionTracker) -> int:
    """
    Background job to deactivate expired sessions.

    Rows are kept for audit; only is_active is flipped.
    """
    db = session_factory()
    try:
        expired = sessions.expire_stale(db)
        if expired:
            logger.info(f"Session sweep completed: deactivated {expired} expired sessions")
        return expired
    except Exception as e:
        logger.error(f"Error in expire_stale_sessions_job: {str(e)}")
        db.rollback()
        return 0
    finally:
        db.close()


def build_scheduler(session_factory: sessionmaker, sessions: SessionTracker,
                    interval_minutes: int = 15) -> BackgroundScheduler:
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        expire_stale_sessions_job,
        trigger=IntervalTrigger(minutes=interval_minutes),
        args=[session_factory, sessions],
        id="expire_stale_sessions",
        name="Expire stale sessions",
        replace_existing=True
    )
    return scheduler


def start_scheduler(scheduler: BackgroundScheduler) -> None:
    """Start the scheduler; called when the FastAPI app starts."""
    if not scheduler.running:
        scheduler.start()
        logger.info("Background scheduler started. Session sweep scheduled.")


def stop_scheduler(scheduler: BackgroundScheduler) -> None:
    """Stop the scheduler; called when the FastAPI app shuts down."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Background scheduler stopped.")
