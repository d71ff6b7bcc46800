"""Single-use password reset tokens."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.config import settings
from app.core.exceptions import EmailDeliveryError, ResetTokenInvalidError, UserNotFoundError
from app.core.security import generate_reset_secret, get_password_hash, hash_secret, utcnow
from app.models.security import RefreshToken
from app.models.user import User
from app.services.email_service import EmailService, email_service
from app.services.user_service import user_service

logger = logging.getLogger(__name__)


def build_reset_url(secret: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/auth/reset-password/{secret}"


class PasswordResetService:
    """
    Issue and redeem reset secrets.

    Only the SHA-256 digest of a secret is stored on the user row, next to
    its expiry. Every write to those two columns is a single conditional
    UPDATE so concurrent requests cannot redeem one secret twice.
    """

    @staticmethod
    def _clear_reset_token(db: Session, user_id: int, token_hash: str) -> None:
        db.execute(
            update(User)
            .where(User.id == user_id, User.reset_token_hash == token_hash)
            .values(reset_token_hash=None, reset_token_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    @staticmethod
    def request_reset(db: Session, email: str, mailer: Optional[EmailService] = None) -> None:
        """
        Store a new reset secret for ``email`` and mail the link.

        Args:
            db: Database session
            email: Account email (any case)
            mailer: Mail capability, defaults to the configured SMTP sender

        Raises:
            UserNotFoundError: No account for this email
            EmailDeliveryError: Mail failed; the stored secret was already cleared
        """
        mailer = mailer or email_service

        user = user_service.get_user_by_email(db, email)
        if not user:
            raise UserNotFoundError()
        user_id, to_email, name = user.id, user.email, user.name

        secret = generate_reset_secret()
        token_hash = hash_secret(secret)
        expires_at = utcnow() + timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES)

        db.execute(
            update(User)
            .where(User.id == user_id)
            .values(reset_token_hash=token_hash, reset_token_expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        db.commit()

        try:
            delivered = mailer.send_password_reset(to_email, name, build_reset_url(secret))
        except Exception as exc:
            logger.error(f"Password reset mail raised for user id={user_id}: {exc}")
            PasswordResetService._clear_reset_token(db, user_id, token_hash)
            raise EmailDeliveryError() from exc

        if not delivered:
            logger.error(f"Password reset mail not delivered for user id={user_id}")
            PasswordResetService._clear_reset_token(db, user_id, token_hash)
            raise EmailDeliveryError()

        logger.info(f"Password reset issued for user id={user_id}")

    @staticmethod
    def consume_reset(db: Session, secret: str, new_password: str) -> User:
        """
        Redeem a reset secret and set a new password.

        Raises:
            ResetTokenInvalidError: Unknown, already used or expired secret
        """
        if not secret:
            raise ResetTokenInvalidError()

        token_hash = hash_secret(secret)
        now = utcnow()
        user = (
            db.query(User)
            .filter(User.reset_token_hash == token_hash, User.reset_token_expires_at > now)
            .first()
        )
        if not user:
            raise ResetTokenInvalidError()

        user_id = user.id
        values = {
            "password_hash": get_password_hash(new_password),
            "reset_token_hash": None,
            "reset_token_expires_at": None,
            "updated_at": now,
        }
        revoke = settings.PASSWORD_RESET_REVOKES_SESSIONS
        if revoke:
            values["token_version"] = User.token_version + 1

        result = db.execute(
            update(User)
            .where(
                User.id == user_id,
                User.reset_token_hash == token_hash,
                User.reset_token_expires_at > now,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Redeemed concurrently between the lookup and the update
            db.rollback()
            raise ResetTokenInvalidError()

        if revoke:
            db.query(RefreshToken).filter(RefreshToken.user_id == user_id).delete(
                synchronize_session=False
            )
        db.commit()
        db.expire_all()

        logger.info(f"Password reset completed for user id={user_id}")
        return user_service.get_user_by_id(db, user_id)


password_reset_service = PasswordResetService()
