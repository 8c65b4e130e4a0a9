from datetime import date
from typing import Annotated, List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from pydantic import AfterValidator, BaseModel, EmailStr, Field, field_validator
from sqlalchemy.orm import Session

from gatekeeper.api.dependencies import (
    CurrentUser,
    get_audit,
    get_current_user,
    get_email,
    get_hasher,
    get_lockout_policy,
    get_request_context,
    get_sessions,
    get_settings,
    get_token_claims,
    get_tokens,
    require_verified_email,
)
from gatekeeper.api.schemas import SessionResponse, UserDetail, UserSummary
from gatekeeper.core.config import Settings
from gatekeeper.core.database import get_db
from gatekeeper.core.errors import (
    BadRequestError,
    ConflictError,
    NotFoundError,
    TooManyRequestsError,
    UnauthenticatedError,
)
from gatekeeper.core.lockout import LockoutPolicy
from gatekeeper.core.rate_limit import auth_limit, limiter
from gatekeeper.core.security import (
    PasswordHasher,
    TokenIssuer,
    TokenKind,
    check_one_time_token_expiry,
    hash_one_time_token,
    totp_provisioning_uri,
)
from gatekeeper.models.audit import (
    AuditAction,
    AuditSeverity,
    AuditStatus,
    SecurityEventType,
    SecuritySeverity,
)
from gatekeeper.models.user import User
from gatekeeper.services.audit_service import AuditService, RequestContext
from gatekeeper.services.email_service import EmailService
from gatekeeper.services.session_service import SessionTracker
from gatekeeper.utils.clock import utcnow

router = APIRouter(prefix="/auth", tags=["auth"])

USER_NOT_FOUND_MESSAGE = "User not found"
URL_PATTERN = r"^(https?://)?([\da-z.-]+)\.([a-z.]{2,6})([/\w .-]*)*/?$"
PHONE_PATTERN = r"^(\+\d{1,3}[- ]?)?\d{10}$"


def _lowercase_email(value: str) -> str:
    return value.strip().lower()


NormalizedEmail = Annotated[EmailStr, AfterValidator(_lowercase_email)]


class RegisterRequest(BaseModel):
    name: str = Field(min_length=3, max_length=50)
    email: NormalizedEmail
    password: str = Field(min_length=6, max_length=128)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if len(value) < 3:
            raise ValueError("Name must be at least 3 characters long")
        return value


class LoginRequest(BaseModel):
    email: NormalizedEmail
    password: str = Field(min_length=1)


class EmailRequest(BaseModel):
    email: NormalizedEmail


class TokenRequest(BaseModel):
    token: str = Field(min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=6, max_length=128)


class TwoFactorCodeRequest(BaseModel):
    token: str = Field(min_length=6, max_length=8)


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    bio: Optional[str] = Field(default=None, max_length=500)
    location: Optional[str] = None
    website: Optional[str] = Field(default=None, pattern=URL_PATTERN)
    company: Optional[str] = None
    job_title: Optional[str] = None
    phone_number: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    date_of_birth: Optional[date] = None
    avatar_url: Optional[str] = None
    skills: Optional[List[str]] = None
    interests: Optional[List[str]] = None
    preferred_language: Optional[str] = None
    timezone: Optional[str] = None


class UpdateProfileRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=3, max_length=50)
    profile: Optional[ProfileUpdate] = None


class PreferencesUpdate(BaseModel):
    email_notifications: Optional[bool] = None
    marketing_emails: Optional[bool] = None
    two_factor_method: Optional[Literal["app", "sms", "email"]] = None
    theme: Optional[Literal["light", "dark", "system"]] = None


class UpdatePreferencesRequest(BaseModel):
    preferences: PreferencesUpdate


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1)
    new_password: str = Field(min_length=6, max_length=128)


class DeleteAccountRequest(BaseModel):
    password: str = Field(min_length=1)


def _load_user(db: Session, user_id: str) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise NotFoundError(USER_NOT_FOUND_MESSAGE)
    return user


def _load_user_by_email(db: Session, email: str) -> User:
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        raise NotFoundError(USER_NOT_FOUND_MESSAGE)
    return user


def _record_failed_attempt(
    db: Session,
    user: User,
    policy: LockoutPolicy,
    settings: Settings,
    audit: AuditService,
    context: RequestContext,
    reason: str,
) -> None:
    """Advance the lockout counters after a wrong password or 2FA code"""
    now = utcnow()
    before = user.lockout_state
    after = policy.register_failure(before, now)
    user.apply_lockout(after)
    db.commit()

    audit.log_audit(
        user.id,
        AuditAction.USER_LOGIN_FAILED,
        AuditSeverity.WARNING,
        context,
        {"email": user.email, "reason": reason, "attempts": after.login_attempts},
        AuditStatus.FAILURE,
    )

    if after.login_attempts >= settings.BRUTE_FORCE_ALERT_THRESHOLD:
        audit.log_security_event(
            SecurityEventType.BRUTE_FORCE_ATTEMPT,
            SecuritySeverity.HIGH if after.login_attempts >= policy.max_attempts else SecuritySeverity.MEDIUM,
            user.id,
            context,
            {"email": user.email, "attempts": after.login_attempts},
        )

    if policy.newly_locked(before, after, now):
        audit.log_audit(
            user.id,
            AuditAction.ACCOUNT_LOCKED,
            AuditSeverity.WARNING,
            context,
            {"email": user.email, "lock_until": after.lock_until.isoformat()},
        )


def _reject_if_locked(user: User, policy: LockoutPolicy) -> None:
    now = utcnow()
    state = user.lockout_state
    if state.is_locked(now):
        minutes = policy.minutes_remaining(state, now)
        raise TooManyRequestsError(
            f"Account locked due to too many failed login attempts. Try again in {minutes} minutes.",
            headers={"Retry-After": str(minutes * 60)},
        )


# REST api
# -----------------------------

@router.post("/register", status_code=status.HTTP_201_CREATED)
@limiter.limit(auth_limit)
async def register(
    request: Request,
    payload: RegisterRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    tokens: TokenIssuer = Depends(get_tokens),
    hasher: PasswordHasher = Depends(get_hasher),
    sessions: SessionTracker = Depends(get_sessions),
    email_service: EmailService = Depends(get_email),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    """Register a new user and send the verification email"""
    # Explicit check gives a clear message; a racing duplicate still hits the
    # unique index and is mapped to 409 by the central handler
    if db.query(User).filter(User.email == payload.email).first():
        raise ConflictError("Email already in use")

    user = User(name=payload.name, email=payload.email)
    user.set_password(hasher, payload.password)
    verification_token = user.issue_verification_token(tokens)
    db.add(user)
    db.commit()
    db.refresh(user)

    background_tasks.add_task(email_service.send_verification_email, user.email, user.name, verification_token)

    access_token = user.issue_access_token(tokens)
    refresh_token = tokens.issue_refresh_token(user.id)
    sessions.create_session(db, user.id, access_token, refresh_token, context, tokens.session_expiry())

    audit.log_audit(user.id, AuditAction.USER_REGISTERED, AuditSeverity.INFO, context,
                    {"name": user.name, "email": user.email})

    return {
        "success": True,
        "message": "Registration successful. Please verify your email.",
        "data": {
            "user": UserSummary.model_validate(user),
            "token": access_token,
            "refresh_token": refresh_token,
        },
    }


@router.post("/login")
@limiter.limit(auth_limit)
async def login(
    request: Request,
    payload: LoginRequest,
    db: Session = Depends(get_db),
    tokens: TokenIssuer = Depends(get_tokens),
    hasher: PasswordHasher = Depends(get_hasher),
    policy: LockoutPolicy = Depends(get_lockout_policy),
    sessions: SessionTracker = Depends(get_sessions),
    settings: Settings = Depends(get_settings),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    """Login with email and password"""
    user = db.query(User).filter(User.email == payload.email).first()
    if user is None:
        audit.log_audit(None, AuditAction.USER_LOGIN_FAILED, AuditSeverity.WARNING, context,
                        {"email": payload.email, "reason": "Unknown email"}, AuditStatus.FAILURE)
        raise UnauthenticatedError("Invalid credentials")

    # Locked accounts are refused before the hash comparison and keep their counters
    _reject_if_locked(user, policy)

    if not user.verify_password(hasher, payload.password):
        _record_failed_attempt(db, user, policy, settings, audit, context, "Invalid password")
        raise UnauthenticatedError("Invalid credentials")

    user.apply_lockout(policy.register_success())
    user.last_login = utcnow()
    db.commit()

    access_token = user.issue_access_token(tokens)
    refresh_token = tokens.issue_refresh_token(user.id)
    session = sessions.create_session(
        db, user.id, access_token, refresh_token, context, tokens.session_expiry())

    audit.log_audit(user.id, AuditAction.USER_LOGIN_SUCCESS, AuditSeverity.INFO, context,
                    {"email": user.email, "session_id": session.id})

    two_factor_required = bool(user.is_two_factor_enabled)
    return {
        "success": True,
        "message": "Please complete two-factor authentication" if two_factor_required else "Login successful",
        "data": {
            "user": UserSummary.model_validate(user),
            "token": access_token,
            "refresh_token": refresh_token,
            "two_factor_required": two_factor_required,
        },
    }


@router.post("/logout")
async def logout(
    current_user: CurrentUser = Depends(get_token_claims),
    db: Session = Depends(get_db),
    sessions: SessionTracker = Depends(get_sessions),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    """End the session the bearer token belongs to"""
    sessions.invalidate(db, current_user.token)
    audit.log_audit(current_user.user_id, AuditAction.USER_LOGOUT, AuditSeverity.INFO, context)
    return {"success": True, "message": "Logout successful"}


@router.post("/refresh-token")
async def refresh_token(
    payload: RefreshRequest,
    db: Session = Depends(get_db),
    tokens: TokenIssuer = Depends(get_tokens),
    sessions: SessionTracker = Depends(get_sessions),
    settings: Settings = Depends(get_settings),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    """Exchange a refresh token for a new token pair"""
    claims = tokens.verify(payload.refresh_token, TokenKind.REFRESH)

    user = db.query(User).filter(User.id == claims["sub"]).first()
    if user is None:
        raise UnauthenticatedError("Invalid refresh token")

    session = sessions.find_by_refresh_token(db, payload.refresh_token)
    session_usable = session is not None and session.is_active and session.expires_at > utcnow()
    if settings.ENFORCE_SESSION_REVOCATION and not session_usable:
        raise UnauthenticatedError("Session has expired or been revoked. Please log in again.")

    # Claims are rebuilt from the user row, so role changes apply from here on
    two_factor_verified = bool(claims.get("two_factor_verified")) and bool(user.is_two_factor_enabled)
    new_access_token = user.issue_access_token(tokens, two_factor_verified=two_factor_verified)
    new_refresh_token = tokens.issue_refresh_token(user.id, two_factor_verified=two_factor_verified)

    if session_usable:
        sessions.rotate(db, session, new_access_token, new_refresh_token, tokens.session_expiry())
    else:
        sessions.create_session(db, user.id, new_access_token, new_refresh_token, context,
                                tokens.session_expiry())

    audit.log_audit(user.id, AuditAction.TOKEN_REFRESHED, AuditSeverity.INFO, context)

    return {
        "success": True,
        "message": "Token refreshed",
        "data": {"token": new_access_token, "refresh_token": new_refresh_token},
    }


@router.post("/verify-email")
async def verify_email(
    payload: TokenRequest,
    db: Session = Depends(get_db),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    """Mark the email verified using the token from the verification email"""
    hashed = hash_one_time_token(payload.token)
    user = db.query(User).filter(User.verification_token_hash == hashed).first()
    if user is None:
        raise BadRequestError("Invalid or already used verification token")

    check_one_time_token_expiry(
        user.verification_token_expires,
        message="Verification token has expired. Please request a new one.",
    )

    user.is_email_verified = True
    user.clear_verification_token()
    db.commit()

    audit.log_audit(user.id, AuditAction.EMAIL_VERIFICATION_COMPLETED, AuditSeverity.INFO, context,
                    {"email": user.email})

    return {"success": True, "message": "Email verified successfully"}


@router.post("/resend-verification")
@limiter.limit(auth_limit)
async def resend_verification(
    request: Request,
    payload: EmailRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    tokens: TokenIssuer = Depends(get_tokens),
    email_service: EmailService = Depends(get_email),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    user = _load_user_by_email(db, payload.email)
    if user.is_email_verified:
        raise BadRequestError("Email is already verified")

    verification_token = user.issue_verification_token(tokens)
    db.commit()

    background_tasks.add_task(email_service.send_verification_email, user.email, user.name, verification_token)

    audit.log_audit(user.id, AuditAction.EMAIL_VERIFICATION_REQUESTED, AuditSeverity.INFO, context,
                    {"email": user.email})

    return {"success": True, "message": "Verification email sent"}


@router.post("/forgot-password")
@limiter.limit(auth_limit)
async def forgot_password(
    request: Request,
    payload: EmailRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    tokens: TokenIssuer = Depends(get_tokens),
    email_service: EmailService = Depends(get_email),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    user = _load_user_by_email(db, payload.email)

    reset_token = user.issue_password_reset_token(tokens)
    db.commit()

    background_tasks.add_task(email_service.send_password_reset_email, user.email, user.name, reset_token)

    audit.log_audit(user.id, AuditAction.PASSWORD_RESET_REQUESTED, AuditSeverity.WARNING, context,
                    {"email": user.email})

    return {"success": True, "message": "Password reset email sent"}


@router.post("/reset-password")
async def reset_password(
    payload: ResetPasswordRequest,
    db: Session = Depends(get_db),
    hasher: PasswordHasher = Depends(get_hasher),
    sessions: SessionTracker = Depends(get_sessions),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    """Set a new password using the token from the reset email"""
    hashed = hash_one_time_token(payload.token)
    user = db.query(User).filter(User.reset_password_token_hash == hashed).first()
    if user is None:
        raise BadRequestError("Invalid or already used reset token")

    check_one_time_token_expiry(
        user.reset_password_expires,
        message="Password reset token has expired. Please request a new one.",
    )

    user.set_password(hasher, payload.password)
    user.clear_password_reset_token()
    db.commit()

    # Anyone holding the old password's sessions is signed out
    sessions.invalidate_all(db, user.id)

    audit.log_audit(user.id, AuditAction.PASSWORD_RESET_COMPLETED, AuditSeverity.WARNING, context,
                    {"email": user.email})

    return {"success": True, "message": "Password reset successful"}


@router.post("/setup-2fa")
async def setup_two_factor(
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    email_service: EmailService = Depends(get_email),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    """Generate a TOTP secret; 2FA is enabled once a code is verified"""
    user = _load_user(db, current_user.user_id)
    if user.is_two_factor_enabled:
        raise BadRequestError("Two-factor authentication is already enabled")

    secret = user.generate_two_factor_secret()
    db.commit()

    audit.log_audit(user.id, AuditAction.TWO_FACTOR_SETUP, AuditSeverity.WARNING, context,
                    {"email": user.email})

    background_tasks.add_task(email_service.send_two_factor_setup_email, user.email, user.name, secret)

    return {
        "success": True,
        "message": "Two-factor authentication setup initiated",
        "data": {
            "secret": secret,
            "otpauth_url": totp_provisioning_uri(secret, user.email, settings.TOTP_ISSUER),
        },
    }


@router.post("/verify-2fa")
async def verify_two_factor(
    payload: TwoFactorCodeRequest,
    claims: CurrentUser = Depends(get_token_claims),
    db: Session = Depends(get_db),
    tokens: TokenIssuer = Depends(get_tokens),
    policy: LockoutPolicy = Depends(get_lockout_policy),
    sessions: SessionTracker = Depends(get_sessions),
    settings: Settings = Depends(get_settings),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    """
    Confirm a TOTP code for the bearer of a login (or setup) token.

    The first successful code enables 2FA. The response carries a token pair
    marked as 2FA-verified that replaces the pending pair in the session.
    """
    user = _load_user(db, claims.user_id)
    if not user.two_factor_secret:
        raise BadRequestError("Two-factor authentication not set up")

    _reject_if_locked(user, policy)

    if not user.verify_two_factor_code(payload.token):
        _record_failed_attempt(db, user, policy, settings, audit, context, "Invalid two-factor token")
        raise UnauthenticatedError("Invalid two-factor token")

    if not user.is_two_factor_enabled:
        user.is_two_factor_enabled = True
        audit.log_audit(user.id, AuditAction.TWO_FACTOR_ENABLED, AuditSeverity.WARNING, context,
                        {"email": user.email})
    user.apply_lockout(policy.register_success())
    db.commit()

    audit.log_audit(user.id, AuditAction.TWO_FACTOR_VERIFIED, AuditSeverity.INFO, context,
                    {"email": user.email})

    access_token = user.issue_access_token(tokens, two_factor_verified=True)
    new_refresh_token = tokens.issue_refresh_token(user.id, two_factor_verified=True)
    session = sessions.find_by_token(db, claims.token)
    if session is not None and session.is_active:
        sessions.rotate(db, session, access_token, new_refresh_token, tokens.session_expiry())
    else:
        sessions.create_session(db, user.id, access_token, new_refresh_token, context,
                                tokens.session_expiry())

    return {
        "success": True,
        "message": "Two-factor authentication verified",
        "data": {"token": access_token, "refresh_token": new_refresh_token},
    }


@router.post("/disable-2fa")
async def disable_two_factor(
    payload: TwoFactorCodeRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    user = _load_user(db, current_user.user_id)
    if not user.is_two_factor_enabled:
        raise BadRequestError("Two-factor authentication is not enabled")

    if not user.verify_two_factor_code(payload.token):
        raise UnauthenticatedError("Invalid two-factor token")

    user.is_two_factor_enabled = False
    user.two_factor_secret = None
    db.commit()

    audit.log_audit(user.id, AuditAction.TWO_FACTOR_DISABLED, AuditSeverity.CRITICAL, context,
                    {"email": user.email})

    return {"success": True, "message": "Two-factor authentication disabled"}


@router.get("/me")
async def get_me(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Get current user information"""
    user = _load_user(db, current_user.user_id)
    return {"success": True, "data": {"user": UserDetail.model_validate(user)}}


@router.get("/sessions")
async def list_my_sessions(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    sessions: SessionTracker = Depends(get_sessions),
):
    active = sessions.active_sessions(db, current_user.user_id)
    return {
        "success": True,
        "count": len(active),
        "data": {"sessions": [SessionResponse.model_validate(s) for s in active]},
    }


@router.patch("/update-profile")
async def update_profile(
    payload: UpdateProfileRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    profile_changes = payload.profile.model_dump(exclude_unset=True, mode="json") if payload.profile else {}
    if payload.name is None and not profile_changes:
        raise BadRequestError("No update data provided")

    user = _load_user(db, current_user.user_id)
    if payload.name is not None:
        user.name = payload.name.strip()
    if profile_changes:
        # Assign a new dict so the JSON column is flagged dirty
        user.profile = {**(user.profile or {}), **profile_changes}
    db.commit()
    db.refresh(user)

    audit.log_audit(user.id, AuditAction.PROFILE_UPDATED, AuditSeverity.INFO, context,
                    {"fields": sorted(profile_changes) + (["name"] if payload.name is not None else [])})

    return {
        "success": True,
        "message": "Profile updated successfully",
        "data": {"user": UserDetail.model_validate(user)},
    }


@router.patch("/update-preferences")
async def update_preferences(
    payload: UpdatePreferencesRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    changes = payload.preferences.model_dump(exclude_unset=True)
    if not changes:
        raise BadRequestError("Preferences data is required")

    user = _load_user(db, current_user.user_id)
    user.preferences = {**(user.preferences or {}), **changes}
    db.commit()
    db.refresh(user)

    audit.log_audit(user.id, AuditAction.PREFERENCES_UPDATED, AuditSeverity.INFO, context,
                    {"fields": sorted(changes)})

    return {
        "success": True,
        "message": "Preferences updated successfully",
        "data": {"preferences": user.preferences},
    }


@router.patch("/change-password")
async def change_password(
    payload: ChangePasswordRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    hasher: PasswordHasher = Depends(get_hasher),
    sessions: SessionTracker = Depends(get_sessions),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    user = _load_user(db, current_user.user_id)
    if not user.verify_password(hasher, payload.current_password):
        raise UnauthenticatedError("Current password is incorrect")

    user.set_password(hasher, payload.new_password)
    db.commit()

    # Keep the caller signed in, sign out everywhere else
    sessions.invalidate_all(db, user.id, except_token=current_user.token)

    audit.log_audit(user.id, AuditAction.PASSWORD_CHANGED, AuditSeverity.WARNING, context)

    return {"success": True, "message": "Password changed successfully"}


@router.delete("/account")
async def delete_account(
    payload: DeleteAccountRequest,
    current_user: CurrentUser = Depends(require_verified_email),
    db: Session = Depends(get_db),
    hasher: PasswordHasher = Depends(get_hasher),
    sessions: SessionTracker = Depends(get_sessions),
    audit: AuditService = Depends(get_audit),
    context: RequestContext = Depends(get_request_context),
):
    """Permanently delete the caller's account"""
    user = _load_user(db, current_user.user_id)
    if not user.verify_password(hasher, payload.password):
        raise UnauthenticatedError("Invalid password")

    audit.log_audit(user.id, AuditAction.USER_DELETED, AuditSeverity.WARNING, context,
                    {"email": user.email, "deleted_by": user.id})

    sessions.invalidate_all(db, user.id)
    db.delete(user)
    db.commit()

    return {"success": True, "message": "Account deleted successfully"}
