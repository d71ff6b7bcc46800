"""API dependencies - authentication, authorization and admission checks"""

from fastapi import Depends, Request, Response
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Callable, Optional

from app.config import settings
from app.core.database import get_db
from app.core.exceptions import AuthenticationError, AuthorizationError, RateLimitExceededError
from app.models.user import User
from app.services.rate_limiter import rate_controller
from app.services.token_service import AuthContext, token_service

# HTTP Bearer token scheme; missing header is reported by us, not as a 403
security = HTTPBearer(auto_error=False)


def get_client_ip(request: Request) -> str:
    """
    Client address used as the rate-limit key

    With TRUST_PROXY_HEADERS one proxy hop is trusted: the right-most
    X-Forwarded-For entry is the address the proxy saw.
    """
    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("X-Forwarded-For", "")
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        if hops:
            return hops[-1]
    return request.client.host if request.client else "unknown"


def get_auth_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> AuthContext:
    """
    Verify the bearer access token

    Args:
        credentials: HTTP Bearer credentials
        db: Database session

    Returns:
        Authenticated identity

    Raises:
        AuthenticationError: If the token is missing, invalid or invalidated
    """
    if not credentials or not credentials.credentials:
        raise AuthenticationError("Not authorized, no token provided")
    return token_service.verify_access_token(db, credentials.credentials)


def get_current_user(context: AuthContext = Depends(get_auth_context)) -> User:
    """Current authenticated user"""
    return context.user


def require_roles(*roles: str) -> Callable[..., User]:
    """
    Build a dependency that only admits users holding one of ``roles``

    Raises:
        AuthorizationError: If the user's role is not listed
    """
    def _check(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            raise AuthorizationError(f"User role '{current_user.role}' not authorized")
        return current_user

    return _check


get_current_admin_user = require_roles("admin")


def auth_rate_limit(request: Request, response: Response) -> None:
    """Stricter admission check for register/login"""
    client = get_client_ip(request)
    decision = rate_controller.check_auth(client)
    if not decision.allowed:
        raise RateLimitExceededError(
            "Too many login/register attempts. Please try again later.",
            retry_after=decision.retry_after,
        )
    response.headers["RateLimit-Limit"] = str(decision.limit)
    response.headers["RateLimit-Remaining"] = str(decision.remaining)


def get_refresh_cookie(request: Request) -> Optional[str]:
    """Refresh token from its HTTP-only cookie"""
    value = request.cookies.get(settings.REFRESH_COOKIE_NAME)
    return value or None
