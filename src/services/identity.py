"""Local identity provider backed by the users table."""

import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import redact_email
from core.exceptions import DuplicateIdentityError, IdentityProviderError
from core.security import get_password_hash, verify_password
from models.user import User

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


class IdentityProvider:
    """Create and authenticate users.

    The unique index on ``users.email`` is the authoritative duplicate guard;
    callers may pre-check with ``email_exists`` for a friendlier redirect.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_user_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(func.lower(User.email) == normalize_email(email))
        )
        return result.scalar_one_or_none()

    async def email_exists(self, email: str) -> bool:
        return await self.get_user_by_email(email) is not None

    async def sign_up(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        user = User(
            email=normalize_email(email),
            hashed_password=get_password_hash(password),
            first_name=first_name,
            last_name=last_name,
        )
        self.db.add(user)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.info(f"Signup rejected, email already registered: {redact_email(email)}")
            raise DuplicateIdentityError() from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Identity creation failed for {redact_email(email)}: {e}")
            raise IdentityProviderError("Could not create account, please try again") from e
        return user

    async def authenticate(self, email: str, password: str) -> Optional[User]:
        user = await self.get_user_by_email(email)
        if user is None or not user.is_active:
            return None
        if not verify_password(password, user.hashed_password):
            return None
        return user

    async def set_signup_source(self, user_id: str, source: str) -> None:
        user = await self.db.get(User, user_id)
        if user is None:
            raise IdentityProviderError(f"User {user_id} not found")
        user.signup_source = source
        await self.db.commit()
