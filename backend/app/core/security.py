"""Security utilities - JWT, password hashing, secret digests"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any
import hashlib
import secrets

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from app.config import settings

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password

    Returns:
        bool: True if password matches
    """
    try:
        return bcrypt.checkpw(
            plain_password.encode('utf-8'),
            hashed_password.encode('utf-8')
        )
    except ValueError:
        # Malformed stored hash, or input over bcrypt's 72-byte limit
        return False


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt

    Args:
        password: Plain text password

    Returns:
        str: Hashed password
    """
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt(rounds=settings.BCRYPT_ROUNDS)
    ).decode('utf-8')


# Compared against when the email is unknown so both login failures cost one bcrypt check.
DUMMY_PASSWORD_HASH = get_password_hash(secrets.token_urlsafe(16))


def hash_secret(value: str) -> str:
    """SHA-256 hex digest for high-entropy secrets (reset secrets, refresh tokens)."""
    return hashlib.sha256(value.encode('utf-8')).hexdigest()


def generate_reset_secret() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(32)


class TokenFailure(str, Enum):
    """Why a presented token did not decode"""
    INVALID = "invalid"
    EXPIRED = "expired"
    WRONG_TYPE = "wrong_type"


@dataclass(frozen=True)
class TokenClaims:
    """Claims embedded in both access and refresh tokens"""
    user_id: int
    role: str
    token_version: int
    token_type: str
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenDecodeResult:
    """Outcome of decoding a token: claims on success, a failure reason otherwise"""
    claims: Optional[TokenClaims] = None
    failure: Optional[TokenFailure] = None

    @property
    def ok(self) -> bool:
        return self.claims is not None


def _secret_for(token_type: str) -> str:
    if token_type == ACCESS_TOKEN_TYPE:
        return settings.ACCESS_TOKEN_SECRET
    if token_type == REFRESH_TOKEN_TYPE:
        return settings.REFRESH_TOKEN_SECRET
    raise ValueError(f"Unknown token type: {token_type}")


def _create_token(
    data: Dict[str, Any],
    token_type: str,
    expires_delta: timedelta,
) -> str:
    now = utcnow()
    to_encode = data.copy()
    to_encode.update({
        "typ": token_type,
        "iat": now,
        "exp": now + expires_delta,
        "jti": secrets.token_urlsafe(32)  # Unique token ID
    })
    return jwt.encode(to_encode, _secret_for(token_type), algorithm=settings.ALGORITHM)


def token_claims_for(user) -> Dict[str, Any]:
    """Identity claims shared by access and refresh tokens."""
    return {"sub": str(user.id), "role": user.role, "ver": user.token_version}


def create_access_token(user, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create JWT access token signed with the access secret

    Args:
        user: User identity (id, role, token_version)
        expires_delta: Token lifetime, defaults to ACCESS_TOKEN_EXPIRE_MINUTES

    Returns:
        str: Encoded JWT token
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    return _create_token(token_claims_for(user), ACCESS_TOKEN_TYPE, expires_delta)


def create_refresh_token(user, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create JWT refresh token signed with the refresh secret

    Args:
        user: User identity (id, role, token_version)
        expires_delta: Token lifetime, defaults to REFRESH_TOKEN_EXPIRE_DAYS

    Returns:
        str: Encoded JWT token
    """
    if expires_delta is None:
        expires_delta = timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
    return _create_token(token_claims_for(user), REFRESH_TOKEN_TYPE, expires_delta)


def decode_token(token: str, token_type: str) -> TokenDecodeResult:
    """
    Decode and verify a JWT of the given type

    Signature, expiry and the ``typ`` claim are all checked. Never raises for
    a bad token; the failure reason is carried in the result.

    Args:
        token: JWT token string
        token_type: "access" or "refresh"

    Returns:
        TokenDecodeResult: claims or failure reason
    """
    try:
        payload = jwt.decode(token, _secret_for(token_type), algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError:
        return TokenDecodeResult(failure=TokenFailure.EXPIRED)
    except JWTError:
        return TokenDecodeResult(failure=TokenFailure.INVALID)

    if payload.get("typ") != token_type:
        return TokenDecodeResult(failure=TokenFailure.WRONG_TYPE)

    try:
        claims = TokenClaims(
            user_id=int(payload["sub"]),
            role=str(payload["role"]),
            token_version=int(payload["ver"]),
            token_type=payload["typ"],
            jti=str(payload["jti"]),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError):
        return TokenDecodeResult(failure=TokenFailure.INVALID)

    return TokenDecodeResult(claims=claims)


def decode_access_token(token: str) -> TokenDecodeResult:
    return decode_token(token, ACCESS_TOKEN_TYPE)


def decode_refresh_token(token: str) -> TokenDecodeResult:
    return decode_token(token, REFRESH_TOKEN_TYPE)
