"""User and authentication schemas"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional
from datetime import datetime
from enum import Enum
import re

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# bcrypt only reads the first 72 bytes and newer releases refuse longer input
PASSWORD_MAX_BYTES = 72


def _normalize_email(value: str) -> str:
    value = value.strip().lower()
    if not _EMAIL_RE.match(value):
        raise ValueError("Valid email required")
    return value


def _check_password_length(value: str) -> str:
    if len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(f"Password cannot be longer than {PASSWORD_MAX_BYTES} bytes")
    return value


class UserRole(str, Enum):
    """User role enumeration"""
    CUSTOMER = "customer"
    ADMIN = "admin"
    VENDOR = "vendor"


class UserLogin(BaseModel):
    """User login schema"""
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=1)

    @field_validator('email')
    @classmethod
    def email_format(cls, v):
        return _normalize_email(v)


class RegisterRequest(BaseModel):
    """Public registration payload; role is never client-chosen"""
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=6)

    @field_validator('password')
    @classmethod
    def password_length(cls, v):
        return _check_password_length(v)

    @field_validator('name')
    @classmethod
    def name_not_blank(cls, v):
        if not v.strip():
            raise ValueError('Name is required')
        return v.strip()

    @field_validator('email')
    @classmethod
    def email_format(cls, v):
        return _normalize_email(v)


class UserCreate(RegisterRequest):
    """User creation schema (internal and admin bootstrap)"""
    role: UserRole = UserRole.CUSTOMER


class ForgotPasswordRequest(BaseModel):
    """Forgot-password payload"""
    email: str = Field(..., max_length=255)

    @field_validator('email')
    @classmethod
    def email_format(cls, v):
        return _normalize_email(v)


class ResetPasswordRequest(BaseModel):
    """New password for a reset"""
    password: str = Field(..., min_length=6)

    @field_validator('password')
    @classmethod
    def password_length(cls, v):
        return _check_password_length(v)


class UserResponse(BaseModel):
    """User summary; never carries the password hash"""
    id: int
    name: str
    email: str
    role: str
    is_verified: bool
    created_at: Optional[datetime]
    last_login: Optional[datetime]

    class Config:
        from_attributes = True


class TokenResponse(BaseModel):
    """Access token + user summary; the refresh token travels as a cookie"""
    success: bool = True
    message: str
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserResponse


class AccessTokenResponse(BaseModel):
    """Access token minted from a refresh cookie"""
    success: bool = True
    access_token: str
    token_type: str = "bearer"
    expires_in: int
