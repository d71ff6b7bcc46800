"""Pydantic schemas for API validation"""

from app.schemas.user import (
    UserCreate,
    UserResponse,
    UserLogin,
    RegisterRequest,
    ForgotPasswordRequest,
    ResetPasswordRequest,
    TokenResponse,
    AccessTokenResponse,
)
from app.schemas.response import APIResponse, ErrorResponse

__all__ = [
    "UserCreate", "UserResponse", "UserLogin", "RegisterRequest",
    "ForgotPasswordRequest", "ResetPasswordRequest", "TokenResponse", "AccessTokenResponse",
    "APIResponse", "ErrorResponse"
]
