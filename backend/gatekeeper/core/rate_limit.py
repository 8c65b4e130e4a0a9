"""
Per-client request limits for the unauthenticated auth endpoints.

Counters live in slowapi's in-memory storage, so each worker process
enforces its own window.
"""

from fastapi import FastAPI, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from gatekeeper.core.config import Settings

_auth_limit = "100/900 seconds"


def client_address(request: Request) -> str:
    """First X-Forwarded-For hop when behind a proxy, else the socket peer"""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return get_remote_address(request)


def auth_limit() -> str:
    return _auth_limit


limiter = Limiter(key_func=client_address)


def configure_rate_limiting(app: FastAPI, settings: Settings) -> None:
    """Apply the app's limit settings and start from empty counters"""
    global _auth_limit
    _auth_limit = f"{settings.RATE_LIMIT_MAX}/{settings.RATE_LIMIT_WINDOW_SECONDS} seconds"
    limiter.enabled = settings.RATE_LIMIT_ENABLED
    limiter.reset()
    app.state.limiter = limiter
