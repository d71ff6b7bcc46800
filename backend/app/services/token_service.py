"""Access/refresh token issuance and access-token verification."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from app.core.exceptions import TokenInvalidError, TokenInvalidatedError
from app.core.security import (
    TokenClaims,
    create_access_token,
    create_refresh_token,
    decode_access_token,
    decode_refresh_token,
    hash_secret,
)
from app.models.security import RefreshToken
from app.models.user import User


@dataclass(frozen=True)
class AuthContext:
    """Authenticated identity handed to route handlers."""

    user: User
    claims: TokenClaims

    @property
    def user_id(self) -> int:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role


class TokenService:
    """Mint token pairs and check presented access tokens."""

    @staticmethod
    def issue_access_token(user: User) -> str:
        return create_access_token(user)

    @staticmethod
    def issue_token_pair(
        db: Session,
        user: User,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[str, str, RefreshToken]:
        """
        Mint an access/refresh pair and stage the refresh session record.

        The record's expiry is copied from the signed ``exp`` claim. Only
        flushes; the caller owns the transaction.
        """
        access_token = create_access_token(user)
        refresh_token = create_refresh_token(user)

        decoded = decode_refresh_token(refresh_token)
        if not decoded.ok:
            raise TokenInvalidError()

        record = RefreshToken(
            user_id=user.id,
            token_hash=hash_secret(refresh_token),
            expires_at=decoded.claims.expires_at,
            ip_address=ip_address[:64] if ip_address else None,
            user_agent=user_agent[:512] if user_agent else None,
        )
        db.add(record)
        db.flush()
        return access_token, refresh_token, record

    @staticmethod
    def verify_access_token(db: Session, token: str) -> AuthContext:
        """
        Resolve a bearer token to its user.

        Raises:
            TokenInvalidError: bad signature, malformed, wrong type, expired or unknown user
            TokenInvalidatedError: token predates the user's current revocation counter
        """
        result = decode_access_token(token)
        if not result.ok:
            raise TokenInvalidError()

        claims = result.claims
        user = db.query(User).filter(User.id == claims.user_id).first()
        if not user:
            raise TokenInvalidError()

        if claims.token_version != user.token_version:
            raise TokenInvalidatedError()

        return AuthContext(user=user, claims=claims)


token_service = TokenService()
