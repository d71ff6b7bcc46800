"""User service - credential store operations"""

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import List, Optional
from app.models.user import User
from app.schemas.user import UserCreate, UserResponse
from app.core.security import (
    DUMMY_PASSWORD_HASH,
    get_password_hash,
    utcnow,
    verify_password,
)
from app.core.exceptions import (
    AuthorizationError,
    InvalidCredentialsError,
    DuplicateEmailError,
    UserNotFoundError,
)
import logging

logger = logging.getLogger(__name__)


class UserService:
    """Service for user management"""

    @staticmethod
    def create_user(db: Session, user_data: UserCreate, *, commit: bool = True) -> User:
        """
        Create new user

        Args:
            db: Database session
            user_data: User creation data (email already normalized)
            commit: Commit immediately, or only flush for a caller-owned transaction

        Returns:
            Created user

        Raises:
            DuplicateEmailError: If the email is already registered
        """
        email = user_data.email.strip().lower()
        if db.query(User.id).filter(User.email == email).first():
            raise DuplicateEmailError()

        user = User(
            name=user_data.name,
            email=email,
            password_hash=get_password_hash(user_data.password),
            role=user_data.role.value,
            token_version=0,
        )
        db.add(user)
        try:
            db.flush()
        except IntegrityError:
            # Lost a race against a concurrent registration; the unique index decides
            db.rollback()
            raise DuplicateEmailError()

        if commit:
            db.commit()
            db.refresh(user)

        logger.info(f"Created user: id={user.id} (role: {user.role})")
        return user

    @staticmethod
    def authenticate_user(db: Session, email: str, password: str) -> User:
        """
        Check an email/password pair

        Unknown email and wrong password raise the same error after the same
        amount of bcrypt work.

        Args:
            db: Database session
            email: Email (any case)
            password: Plain password

        Returns:
            Authenticated user
        """
        user = UserService.get_user_by_email(db, email)
        if not user:
            verify_password(password, DUMMY_PASSWORD_HASH)
            raise InvalidCredentialsError()

        if not verify_password(password, user.password_hash):
            logger.info(f"Failed login for user id={user.id}")
            raise InvalidCredentialsError()

        return user

    @staticmethod
    def get_user_by_id(db: Session, user_id: int) -> Optional[User]:
        """Get user by ID"""
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_user_by_email(db: Session, email: str) -> Optional[User]:
        """Get user by email, case-insensitively"""
        return db.query(User).filter(User.email == email.strip().lower()).first()

    @staticmethod
    def bump_token_version(db: Session, user_id: int) -> int:
        """
        Increment the revocation counter in one UPDATE statement.

        Does not commit. Returns the number of rows updated.
        """
        result = db.execute(
            update(User)
            .where(User.id == user_id)
            .values(token_version=User.token_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    def get_all_users(db: Session, role: Optional[str] = None) -> List[UserResponse]:
        """
        Get all users, optionally filtered by role

        Args:
            db: Database session
            role: Optional role filter

        Returns:
            List of users
        """
        query = db.query(User)

        if role:
            query = query.filter(User.role == role)

        users = query.order_by(User.id.asc()).all()
        return [UserResponse.model_validate(user) for user in users]

    @staticmethod
    def delete_user(db: Session, user_id: int) -> bool:
        """
        Delete user together with all of their sessions

        Args:
            db: Database session
            user_id: User ID

        Returns:
            True if deleted
        """
        user = db.query(User).filter(User.id == user_id).first()

        if not user:
            raise UserNotFoundError()

        if user.role == "admin":
            raise AuthorizationError("Cannot delete admin user")

        db.delete(user)
        db.commit()

        logger.info(f"Deleted user: id={user_id}")
        return True


# Singleton instance
user_service = UserService()
