"""User management routes (admin only)"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional

from app.core.database import get_db
from app.schemas.response import APIResponse
from app.schemas.user import UserResponse, UserRole
from app.services.user_service import user_service
from app.services.session_service import session_service
from app.api.deps import get_current_admin_user
from app.models.user import User

router = APIRouter()


@router.get("/", response_model=List[UserResponse])
def get_all_users(
    role: Optional[UserRole] = None,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """
    Get all users (admin only)

    Args:
        role: Optional role filter
        current_user: Current admin user
        db: Database session

    Returns:
        List of users
    """
    return user_service.get_all_users(db, role.value if role else None)


@router.post("/{user_id}/revoke-sessions", response_model=APIResponse)
def revoke_user_sessions(
    user_id: int,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """Force-logout a user from every device (admin only)"""
    removed = session_service.revoke_all_sessions(db, user_id)
    return APIResponse(
        message=f"Sessions revoked for user {user_id}",
        data={"sessions_revoked": removed},
    )


@router.delete("/{user_id}", response_model=APIResponse, status_code=status.HTTP_200_OK)
def delete_user(
    user_id: int,
    current_user: User = Depends(get_current_admin_user),
    db: Session = Depends(get_db)
):
    """
    Delete user and their sessions (admin only)

    Args:
        user_id: User ID to delete
        current_user: Current admin user
        db: Database session

    Returns:
        Success message
    """
    user_service.delete_user(db, user_id)
    return APIResponse(message=f"User {user_id} deleted successfully")
