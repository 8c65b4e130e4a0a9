import uuid
from enum import Enum
from typing import Optional

from sqlalchemy import Column, String, DateTime, Boolean, Integer, JSON
from sqlalchemy.orm import validates

from gatekeeper.core.database import Base
from gatekeeper.core.lockout import LockoutState
from gatekeeper.core.security import (
    PasswordHasher,
    TokenIssuer,
    generate_totp_secret,
    verify_totp,
)
from gatekeeper.utils.clock import utcnow


class UserRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


DEFAULT_PREFERENCES = {
    "email_notifications": True,
    "marketing_emails": False,
    "two_factor_method": "app",
    "theme": "system",
}


def new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """
    An account.

    Stores credentials (password hash, TOTP secret), lockout counters and the
    hashes of outstanding email-verification and password-reset tokens. Raw
    token values are never stored.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(50), nullable=False)
    # Email is unique and indexed for fast lookups during login
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    role = Column(String(16), nullable=False, default=UserRole.USER.value)

    is_email_verified = Column(Boolean, nullable=False, default=False)
    verification_token_hash = Column(String(64), index=True, nullable=True)
    verification_token_expires = Column(DateTime, nullable=True)
    reset_password_token_hash = Column(String(64), index=True, nullable=True)
    reset_password_expires = Column(DateTime, nullable=True)

    two_factor_secret = Column(String(64), nullable=True)
    is_two_factor_enabled = Column(Boolean, nullable=False, default=False)

    login_attempts = Column(Integer, nullable=False, default=0)
    lock_until = Column(DateTime, nullable=True)
    last_login = Column(DateTime, nullable=True)

    profile = Column(JSON, nullable=False, default=dict)
    preferences = Column(JSON, nullable=False, default=lambda: dict(DEFAULT_PREFERENCES))

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=True, onupdate=utcnow)

    @validates("email")
    def normalize_email(self, key, value):
        return value.strip().lower() if value else value

    @validates("role")
    def validate_role(self, key, value):
        if value not in {role.value for role in UserRole}:
            raise ValueError(f"{value} is not supported")
        return value

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    def set_password(self, hasher: PasswordHasher, password: str) -> None:
        self.hashed_password = hasher.hash(password)

    def verify_password(self, hasher: PasswordHasher, password: str) -> bool:
        return hasher.verify(password, self.hashed_password)

    @property
    def lockout_state(self) -> LockoutState:
        return LockoutState(login_attempts=self.login_attempts or 0, lock_until=self.lock_until)

    def apply_lockout(self, state: LockoutState) -> None:
        self.login_attempts = state.login_attempts
        self.lock_until = state.lock_until

    def issue_verification_token(self, issuer: TokenIssuer) -> str:
        token = issuer.issue_verification_token()
        self.verification_token_hash = token.hashed
        self.verification_token_expires = token.expires_at
        return token.raw

    def clear_verification_token(self) -> None:
        self.verification_token_hash = None
        self.verification_token_expires = None

    def issue_password_reset_token(self, issuer: TokenIssuer) -> str:
        token = issuer.issue_password_reset_token()
        self.reset_password_token_hash = token.hashed
        self.reset_password_expires = token.expires_at
        return token.raw

    def clear_password_reset_token(self) -> None:
        self.reset_password_token_hash = None
        self.reset_password_expires = None

    def generate_two_factor_secret(self) -> str:
        self.two_factor_secret = generate_totp_secret()
        return self.two_factor_secret

    def verify_two_factor_code(self, code: Optional[str]) -> bool:
        return verify_totp(self.two_factor_secret, code)

    def issue_access_token(self, issuer: TokenIssuer, two_factor_verified: bool = False) -> str:
        return issuer.issue_access_token(
            user_id=self.id,
            email=self.email,
            role=self.role,
            two_factor_enabled=bool(self.is_two_factor_enabled),
            two_factor_verified=two_factor_verified,
            email_verified=bool(self.is_email_verified),
        )
