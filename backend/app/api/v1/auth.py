"""Authentication routes"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.orm import Session

from app.api.deps import (
    auth_rate_limit,
    get_client_ip,
    get_current_user,
    get_refresh_cookie,
)
from app.config import settings
from app.core.database import get_db
from app.core.exceptions import ValidationError
from app.core.security import utcnow
from app.models.user import User
from app.schemas.response import APIResponse
from app.schemas.user import (
    AccessTokenResponse,
    ForgotPasswordRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    UserLogin,
    UserResponse,
)
from app.services.password_reset_service import password_reset_service
from app.services.session_service import IssuedSession, session_service

router = APIRouter()


def _set_refresh_cookie(response: Response, token: str, expires_at: datetime) -> None:
    max_age = max(0, int((expires_at - utcnow()).total_seconds()))
    response.set_cookie(
        key=settings.REFRESH_COOKIE_NAME,
        value=token,
        max_age=max_age,
        path=settings.REFRESH_COOKIE_PATH,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
    )


def _clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.REFRESH_COOKIE_NAME,
        path=settings.REFRESH_COOKIE_PATH,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
    )


def _token_response(session: IssuedSession, response: Response, message: str) -> TokenResponse:
    _set_refresh_cookie(response, session.refresh_token, session.refresh_expires_at)
    return TokenResponse(
        message=message,
        access_token=session.access_token,
        token_type="bearer",
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(session.user),
    )


@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(auth_rate_limit)],
)
def register(
    payload: RegisterRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db)
):
    """
    Register a customer account and open its first session

    Returns:
        Access token and user summary; refresh token as HTTP-only cookie
    """
    session = session_service.register(
        db,
        payload,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _token_response(session, response, "Registration successful")


@router.post(
    "/login",
    response_model=TokenResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(auth_rate_limit)],
)
def login(
    credentials: UserLogin,
    request: Request,
    response: Response,
    db: Session = Depends(get_db)
):
    """
    Login endpoint - authenticate user, rotate sessions, return tokens

    Args:
        credentials: Email and password
        db: Database session

    Returns:
        Access token and user info; refresh token as HTTP-only cookie
    """
    session = session_service.login(
        db,
        credentials.email,
        credentials.password,
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _token_response(session, response, "Login successful")


@router.post("/refresh", response_model=AccessTokenResponse)
def refresh_token(
    refresh_cookie: Optional[str] = Depends(get_refresh_cookie),
    db: Session = Depends(get_db),
):
    """
    Mint a new access token from the refresh cookie

    The refresh token itself is not rotated.
    """
    if not refresh_cookie:
        raise ValidationError(
            "No refresh token provided",
            details={"field": settings.REFRESH_COOKIE_NAME},
        )

    refreshed = session_service.refresh(db, refresh_cookie)
    return AccessTokenResponse(
        access_token=refreshed.access_token,
        token_type="bearer",
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@router.post("/logout", response_model=APIResponse)
def logout(
    response: Response,
    refresh_cookie: Optional[str] = Depends(get_refresh_cookie),
    db: Session = Depends(get_db)
):
    """Delete the session behind the refresh cookie; safe to repeat"""
    session_service.logout(db, refresh_cookie)
    _clear_refresh_cookie(response)
    return APIResponse(message="Logged out successfully")


@router.post("/logout-all", response_model=APIResponse)
def logout_all(
    response: Response,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Invalidate every access and refresh token of the current user"""
    removed = session_service.revoke_all_sessions(db, current_user.id)
    _clear_refresh_cookie(response)
    return APIResponse(message="Logged out from all devices", data={"sessions_revoked": removed})


@router.post("/forgot-password", response_model=APIResponse)
def forgot_password(
    payload: ForgotPasswordRequest,
    db: Session = Depends(get_db)
):
    """Send a password reset link valid for a short window"""
    password_reset_service.request_reset(db, payload.email)
    return APIResponse(message="Password reset email sent successfully")


@router.put("/reset-password/{token}", response_model=APIResponse)
def reset_password(
    token: str,
    payload: ResetPasswordRequest,
    db: Session = Depends(get_db)
):
    """Redeem a reset secret and set a new password"""
    password_reset_service.consume_reset(db, token, payload.password)
    return APIResponse(message="Password reset successful")


@router.get("/me", response_model=UserResponse)
def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    """
    Get current user information

    Args:
        current_user: Current authenticated user

    Returns:
        User information
    """
    return UserResponse.model_validate(current_user)
