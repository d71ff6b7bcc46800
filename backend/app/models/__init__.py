"""Database models"""

from app.models.user import User
from app.models.security import RefreshToken

__all__ = ["User", "RefreshToken"]
