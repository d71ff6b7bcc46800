"""Custom exception classes for the application"""

from typing import Optional, Dict, Any


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, status_code=401)


class InvalidCredentialsError(AuthenticationError):
    """Invalid email or password"""
    def __init__(self):
        super().__init__("Invalid email or password")


class TokenInvalidError(AuthenticationError):
    """Bad signature, malformed, expired or wrong-type token"""
    def __init__(self):
        super().__init__("Not authorized")


class TokenInvalidatedError(AuthenticationError):
    """Token was issued before the user's revocation counter was bumped"""
    def __init__(self):
        super().__init__("Not authorized")


class UnknownRefreshTokenError(AuthenticationError):
    """Refresh token has no stored session record"""
    def __init__(self):
        super().__init__("Invalid or expired refresh token")


class RefreshTokenExpiredError(AuthenticationError):
    """Stored session record is past its expiry"""
    def __init__(self):
        super().__init__("Invalid or expired refresh token")


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404)


class UserNotFoundError(ResourceNotFoundError):
    """No user matches the given identity"""
    def __init__(self):
        super().__init__("User")


# Validation Errors
class ValidationError(BaseAPIException):
    """Validation error"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=400, details=details)


# Business Logic Errors
class BusinessLogicError(BaseAPIException):
    """Business logic error"""
    def __init__(self, message: str):
        super().__init__(message, status_code=400)


class DuplicateEmailError(BusinessLogicError):
    """Email already registered"""
    def __init__(self):
        super().__init__("User already exists")


class ResetTokenInvalidError(BusinessLogicError):
    """Reset secret unknown, already used or expired"""
    def __init__(self):
        super().__init__("Invalid or expired reset token")


# System Errors
class DependencyError(BaseAPIException):
    """An external collaborator (mail, database) failed"""
    def __init__(self, message: str = "A required service is unavailable"):
        super().__init__(message, status_code=500)


class EmailDeliveryError(DependencyError):
    """Outbound mail could not be delivered"""
    def __init__(self):
        super().__init__("Email could not be sent, please try again later")


class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    def __init__(
        self,
        message: str = "Rate limit exceeded. Please try again later.",
        retry_after: Optional[int] = None,
    ):
        details = {"retry_after": retry_after} if retry_after is not None else None
        super().__init__(message, status_code=429, details=details)
        self.retry_after = retry_after
