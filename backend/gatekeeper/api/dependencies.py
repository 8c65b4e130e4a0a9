from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from gatekeeper.core.config import Settings
from gatekeeper.core.database import get_db
from gatekeeper.core.errors import ForbiddenError, UnauthenticatedError
from gatekeeper.core.lockout import LockoutPolicy
from gatekeeper.core.security import PasswordHasher, TokenIssuer, TokenKind
from gatekeeper.models.user import UserRole
from gatekeeper.services.audit_service import AuditService, RequestContext
from gatekeeper.services.email_service import EmailService
from gatekeeper.services.session_service import SessionTracker

# Extracts the bearer token from the Authorization header
# tokenUrl tells FastAPI where to find the login endpoint for Swagger UI
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/v1/auth/login", auto_error=False)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_tokens(request: Request) -> TokenIssuer:
    return request.app.state.tokens


def get_hasher(request: Request) -> PasswordHasher:
    return request.app.state.hasher


def get_lockout_policy(request: Request) -> LockoutPolicy:
    return request.app.state.lockout_policy


def get_audit(request: Request) -> AuditService:
    return request.app.state.audit


def get_sessions(request: Request) -> SessionTracker:
    return request.app.state.sessions


def get_email(request: Request) -> EmailService:
    return request.app.state.email


def get_request_context(request: Request) -> RequestContext:
    return RequestContext.from_request(request)


@dataclass(frozen=True)
class CurrentUser:
    """Identity taken from a verified access token's claims."""
    user_id: str
    email: str
    role: str
    two_factor_enabled: bool
    two_factor_verified: bool
    email_verified: bool
    token: str

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


async def get_token_claims(
    token: Optional[str] = Depends(oauth2_scheme),
    tokens: TokenIssuer = Depends(get_tokens),
    sessions: SessionTracker = Depends(get_sessions),
    settings: Settings = Depends(get_settings),
    db: Session = Depends(get_db),
) -> CurrentUser:
    """
    Authenticate the request from its bearer token, without the 2FA gate.

    Claims are trusted without reading the user row. With
    ENFORCE_SESSION_REVOCATION the token must also belong to an active,
    unexpired session, so logout and admin revocation apply immediately.
    """
    if token is None:
        raise UnauthenticatedError("Authentication invalid")

    # Raises InvalidTokenError / ExpiredTokenError
    payload = tokens.verify(token, TokenKind.ACCESS)

    if settings.ENFORCE_SESSION_REVOCATION and not sessions.is_valid(db, token):
        raise UnauthenticatedError("Session has expired or been revoked. Please log in again.")

    sessions.touch(token)

    return CurrentUser(
        user_id=payload["sub"],
        email=payload.get("email", ""),
        role=payload.get("role", UserRole.USER.value),
        two_factor_enabled=bool(payload.get("two_factor_enabled")),
        two_factor_verified=bool(payload.get("two_factor_verified")),
        email_verified=bool(payload.get("email_verified")),
        token=token,
    )


async def get_current_user(claims: CurrentUser = Depends(get_token_claims)) -> CurrentUser:
    """Authenticated caller; tokens still waiting on a 2FA code are refused."""
    if claims.two_factor_enabled and not claims.two_factor_verified:
        raise UnauthenticatedError("Two-factor authentication required")
    return claims


def authorize_roles(*roles: str):
    """Build a dependency that admits only the given roles"""
    async def dependency(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.role not in roles:
            raise ForbiddenError("Not authorized to access this route")
        return current_user
    return dependency


require_admin = authorize_roles(UserRole.ADMIN.value)


async def require_verified_email(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.email_verified:
        raise ForbiddenError("Please verify your email address first")
    return current_user
