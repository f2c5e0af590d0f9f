"""Core functionality for AnthonChat."""

from .config import get_settings
from .database import get_db, get_session_maker
# Import Base from models to avoid circular imports
from models.base import Base
from .security import (
    get_current_user,
    require_bot_secret,
    create_access_token,
    verify_password,
    get_password_hash,
)

__all__ = [
    "get_settings",
    "Base",
    "get_db",
    "get_session_maker",
    "get_current_user",
    "require_bot_secret",
    "create_access_token",
    "verify_password",
    "get_password_hash",
]
