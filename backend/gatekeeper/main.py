import logging
import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from gatekeeper.api.routes import admin, auth
from gatekeeper.core.config import Settings, settings as default_settings
from gatekeeper.core.database import Base, build_engine, build_session_factory
from gatekeeper.core.errors import register_exception_handlers
from gatekeeper.core.lockout import LockoutPolicy
from gatekeeper.core.logging_setup import configure_logging
from gatekeeper.core.rate_limit import configure_rate_limiting
from gatekeeper.core.scheduler import build_scheduler, start_scheduler, stop_scheduler
from gatekeeper.core.security import PasswordHasher, TokenIssuer
from gatekeeper.services.audit_channel import AuditChannel
from gatekeeper.services.audit_service import AuditService
from gatekeeper.services.email_service import EmailService
from gatekeeper.services.geolocation import GeoLocator
from gatekeeper.services.security_monitor import security_monitor
from gatekeeper.services.session_service import SessionTracker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage app lifecycle events.

    Startup: create missing tables, start the audit writer and the session sweep
    Shutdown: stop both, flushing queued audit writes
    """
    # Creates tables if they don't exist; use migrations for schema changes
    Base.metadata.create_all(bind=app.state.engine)
    app.state.audit_channel.start()
    if app.state.scheduler is not None:
        start_scheduler(app.state.scheduler)
    yield
    if app.state.scheduler is not None:
        stop_scheduler(app.state.scheduler)
    app.state.audit_channel.stop()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    engine = build_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Authentication and account security service",
        version=settings.VERSION,
        lifespan=lifespan,
    )

    geolocator = GeoLocator(settings.GEOIP_TABLE_PATH)
    channel = AuditChannel(session_factory, settings.AUDIT_QUEUE_SIZE)
    sessions = SessionTracker(channel, geolocator)

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.tokens = TokenIssuer(settings)
    app.state.hasher = PasswordHasher(settings.BCRYPT_ROUNDS)
    app.state.lockout_policy = LockoutPolicy(
        max_attempts=settings.MAX_LOGIN_ATTEMPTS,
        lock_duration=timedelta(minutes=settings.LOCK_TIME_MINUTES),
    )
    app.state.audit_channel = channel
    app.state.audit = AuditService(channel, geolocator)
    app.state.sessions = sessions
    app.state.email = EmailService(settings)
    configure_rate_limiting(app, settings)
    app.state.scheduler = (
        build_scheduler(session_factory, sessions, settings.SESSION_SWEEP_MINUTES)
        if settings.SCHEDULER_ENABLED else None
    )

    # CORS middleware - allows the frontend to call the API with auth headers
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        if request.url.path != "/health":
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.info(f"{request.method} {request.url.path} - Status: {response.status_code} - {elapsed_ms:.0f}ms")
        return response

    register_exception_handlers(app)

    # Every API request is screened for injection patterns before routing
    monitored = [Depends(security_monitor)]
    app.include_router(auth.router, prefix=settings.API_PREFIX, dependencies=monitored)
    app.include_router(admin.router, prefix=settings.API_PREFIX, dependencies=monitored)

    @app.get("/")
    async def root():
        """Root endpoint - API information"""
        return {"message": settings.PROJECT_NAME, "version": settings.VERSION}

    @app.get("/health")
    async def health():
        """Health check endpoint - used by monitoring/deployment tools"""
        return {"status": "healthy", "version": settings.VERSION}

    return app


app = create_app()
