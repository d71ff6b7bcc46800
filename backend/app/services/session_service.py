"""Session lifecycle: register, login with rotation, refresh, logout, revoke-all."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.exceptions import (
    RefreshTokenExpiredError,
    TokenInvalidatedError,
    TokenInvalidError,
    UnknownRefreshTokenError,
    UserNotFoundError,
)
from app.core.security import TokenFailure, as_utc, decode_refresh_token, hash_secret, utcnow
from app.models.security import RefreshToken
from app.models.user import User
from app.schemas.user import RegisterRequest, UserCreate
from app.services.token_service import token_service
from app.services.user_service import user_service

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedSession:
    """Tokens handed back to the client after register/login."""

    user: User
    access_token: str
    refresh_token: str
    refresh_expires_at: datetime


@dataclass(frozen=True)
class RefreshedAccess:
    user: User
    access_token: str


class SessionService:
    """
    Refresh-token session manager.

    A refresh token moves Issued -> Active -> (Rotated | Expired | Revoked)
    -> Deleted. Rotation happens at login only; ``refresh`` mints a new
    access token and leaves the refresh token untouched (fixed session).
    """

    @staticmethod
    def _start_session(
        db: Session,
        user: User,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> IssuedSession:
        # Row lock serializes concurrent logins of the same user (no-op on SQLite)
        locked = (
            db.query(User)
            .filter(User.id == user.id)
            .with_for_update()
            .populate_existing()
            .one()
        )

        removed = (
            db.query(RefreshToken)
            .filter(RefreshToken.user_id == locked.id)
            .delete(synchronize_session=False)
        )
        locked.last_login = utcnow()
        access_token, refresh_token, record = token_service.issue_token_pair(
            db, locked, ip_address=ip_address, user_agent=user_agent
        )
        refresh_expires_at = record.expires_at
        db.commit()
        db.refresh(locked)

        if removed:
            logger.info(f"Rotated {removed} refresh token(s) for user id={locked.id}")
        return IssuedSession(
            user=locked,
            access_token=access_token,
            refresh_token=refresh_token,
            refresh_expires_at=refresh_expires_at,
        )

    @staticmethod
    def register(
        db: Session,
        data: RegisterRequest,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        """
        Create a customer account and open its first session.

        Raises:
            DuplicateEmailError: If the email is already registered
        """
        user = user_service.create_user(
            db,
            UserCreate(name=data.name, email=data.email, password=data.password),
            commit=False,
        )
        return SessionService._start_session(db, user, ip_address, user_agent)

    @staticmethod
    def login(
        db: Session,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        """
        Authenticate and open a new session, deleting every earlier refresh
        token of the user in the same transaction.

        Raises:
            InvalidCredentialsError: Unknown email or wrong password
        """
        user = user_service.authenticate_user(db, email, password)
        session = SessionService._start_session(db, user, ip_address, user_agent)
        logger.info(f"User logged in: id={user.id}")
        return session

    @staticmethod
    def refresh(db: Session, refresh_token: str) -> RefreshedAccess:
        """
        Exchange a stored, unexpired refresh token for a new access token.

        Raises:
            UnknownRefreshTokenError: No session record for this token
            RefreshTokenExpiredError: Record past its expiry (record is deleted)
            TokenInvalidError: Signature or claims do not validate
            TokenInvalidatedError: Token predates a revocation counter bump
        """
        record = (
            db.query(RefreshToken)
            .filter(RefreshToken.token_hash == hash_secret(refresh_token))
            .first()
        )
        if not record:
            raise UnknownRefreshTokenError()

        if as_utc(record.expires_at) <= utcnow():
            db.delete(record)
            db.commit()
            raise RefreshTokenExpiredError()

        result = decode_refresh_token(refresh_token)
        if not result.ok:
            if result.failure == TokenFailure.EXPIRED:
                db.delete(record)
                db.commit()
                raise RefreshTokenExpiredError()
            raise TokenInvalidError()

        claims = result.claims
        if claims.user_id != record.user_id:
            raise TokenInvalidError()

        user = user_service.get_user_by_id(db, record.user_id)
        if not user:
            raise TokenInvalidError()

        if claims.token_version != user.token_version:
            db.delete(record)
            db.commit()
            raise TokenInvalidatedError()

        return RefreshedAccess(user=user, access_token=token_service.issue_access_token(user))

    @staticmethod
    def logout(db: Session, refresh_token: Optional[str]) -> bool:
        """Delete the session record for this token. Unknown tokens are fine."""
        if not refresh_token:
            return False
        deleted = (
            db.query(RefreshToken)
            .filter(RefreshToken.token_hash == hash_secret(refresh_token))
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted > 0

    @staticmethod
    def revoke_all_sessions(db: Session, user_id: int) -> int:
        """
        Log a user out everywhere.

        Bumps the revocation counter, which kills every outstanding access
        token, and deletes every refresh record. Returns the number of
        refresh records removed.
        """
        if user_service.bump_token_version(db, user_id) != 1:
            db.rollback()
            raise UserNotFoundError()

        removed = (
            db.query(RefreshToken)
            .filter(RefreshToken.user_id == user_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        db.expire_all()

        logger.info(f"Revoked all sessions for user id={user_id} ({removed} refresh token(s))")
        return removed

    @staticmethod
    def purge_expired(db: Session, now: Optional[datetime] = None) -> int:
        """Eagerly delete refresh records past their expiry."""
        cutoff = now or utcnow()
        removed = (
            db.query(RefreshToken)
            .filter(RefreshToken.expires_at <= cutoff)
            .delete(synchronize_session=False)
        )
        db.commit()
        if removed:
            logger.info(f"Purged {removed} expired refresh token(s)")
        return removed


session_service = SessionService()
