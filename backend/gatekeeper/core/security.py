import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

import pyotp
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from gatekeeper.core.config import Settings
from gatekeeper.core.errors import ExpiredTokenError, InvalidTokenError
from gatekeeper.utils.clock import utcnow


class PasswordHasher:
    """bcrypt password hashing through passlib."""

    def __init__(self, rounds: int = 12):
        # 'deprecated="auto"' lets passlib flag hashes made with retired schemes
        self._context = CryptContext(
            schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)

    def hash(self, password: str) -> str:
        # bcrypt generates a salt per call, so equal passwords hash differently
        return self._context.hash(password)

    def verify(self, plain_password: str, hashed_password: Optional[str]) -> bool:
        """Constant-time comparison of a password against a stored hash"""
        if not hashed_password:
            return False
        return self._context.verify(plain_password, hashed_password)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class OneTimeToken:
    """A random token for email links.

    ``raw`` goes to the user out-of-band; only ``hashed`` and ``expires_at``
    are persisted.
    """
    raw: str
    hashed: str
    expires_at: datetime


def hash_one_time_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def check_one_time_token_expiry(expires_at: Optional[datetime], now: Optional[datetime] = None,
                                message: Optional[str] = None) -> None:
    """Raise ExpiredTokenError if a stored one-time token is past its expiry"""
    now = now or utcnow()
    if expires_at is None or expires_at <= now:
        raise ExpiredTokenError(message)


class TokenIssuer:
    """
    Issues and verifies the service's tokens.

    Access tokens carry the claims authorization needs (role, 2FA and email
    verification state) so basic checks need no user lookup. A consequence is
    that role changes only apply once the client refreshes its token.
    Refresh tokens are signed with a separate secret.
    """

    def __init__(self, settings: Settings):
        self._algorithm = settings.JWT_ALGORITHM
        self._secrets = {
            TokenKind.ACCESS: settings.JWT_SECRET,
            TokenKind.REFRESH: settings.REFRESH_TOKEN_SECRET,
        }
        self.access_token_lifetime = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        self.refresh_token_lifetime = timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
        self.verification_token_lifetime = timedelta(hours=settings.VERIFICATION_TOKEN_EXPIRE_HOURS)
        self.password_reset_lifetime = timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES)

    def _encode(self, claims: dict, kind: TokenKind, lifetime: timedelta) -> str:
        to_encode = claims.copy()
        now = datetime.now(timezone.utc)
        # jti keeps two tokens minted in the same second distinct
        to_encode.update({
            "type": kind.value,
            "iat": now,
            "exp": now + lifetime,
            "jti": uuid.uuid4().hex,
        })
        return jwt.encode(to_encode, self._secrets[kind], algorithm=self._algorithm)

    def issue_access_token(
        self,
        user_id: str,
        email: str,
        role: str,
        two_factor_enabled: bool,
        two_factor_verified: bool,
        email_verified: bool,
    ) -> str:
        claims = {
            "sub": str(user_id),
            "email": email,
            "role": role,
            "two_factor_enabled": two_factor_enabled,
            "two_factor_verified": two_factor_verified,
            "email_verified": email_verified,
        }
        return self._encode(claims, TokenKind.ACCESS, self.access_token_lifetime)

    def issue_refresh_token(self, user_id: str, two_factor_verified: bool = False) -> str:
        claims = {"sub": str(user_id), "two_factor_verified": two_factor_verified}
        return self._encode(claims, TokenKind.REFRESH, self.refresh_token_lifetime)

    def session_expiry(self) -> datetime:
        """A session lives as long as its refresh token"""
        return utcnow() + self.refresh_token_lifetime

    def verify(self, token: str, kind: TokenKind) -> dict:
        """Decode a token of the given kind.

        Raises ExpiredTokenError when the signature is good but the token has
        expired, and InvalidTokenError for everything else.
        """
        try:
            payload = jwt.decode(token, self._secrets[kind], algorithms=[self._algorithm])
        except ExpiredSignatureError:
            raise ExpiredTokenError("Your token has expired. Please log in again.")
        except JWTError:
            raise InvalidTokenError()

        if payload.get("type") != kind.value or not payload.get("sub"):
            raise InvalidTokenError()
        return payload

    @staticmethod
    def _one_time_token(lifetime: timedelta) -> OneTimeToken:
        raw = secrets.token_hex(32)
        return OneTimeToken(raw=raw, hashed=hash_one_time_token(raw), expires_at=utcnow() + lifetime)

    def issue_verification_token(self) -> OneTimeToken:
        return self._one_time_token(self.verification_token_lifetime)

    def issue_password_reset_token(self) -> OneTimeToken:
        return self._one_time_token(self.password_reset_lifetime)


def generate_totp_secret() -> str:
    return pyotp.random_base32()


def totp_provisioning_uri(secret: str, email: str, issuer: str) -> str:
    return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=issuer)


def verify_totp(secret: Optional[str], code: str) -> bool:
    if not secret or not code:
        return False
    # valid_window=1 tolerates one 30s step of clock drift
    return pyotp.TOTP(secret).verify(code.strip(), valid_window=1)
