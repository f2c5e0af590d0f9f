"""User model."""

from sqlalchemy import Column, String, Boolean
from sqlalchemy.orm import relationship

from .base import Base, TimestampMixin, UUIDMixin


class SignupSource:
    """Where a user came from when they signed up."""
    CHAT = "chat"
    WEBSITE = "website"


class User(UUIDMixin, TimestampMixin, Base):
    """Identity record. Never hard-deleted."""
    __tablename__ = "users"

    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    nickname = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    onboarding_complete = Column(Boolean, default=False, nullable=False)

    # Null until the billing customer has been synced and attached
    stripe_customer_id = Column(String(255), unique=True, nullable=True)

    signup_source = Column(String(20), nullable=True)

    channels = relationship("UserChannel", back_populates="user", cascade="all, delete-orphan")
    subscription = relationship("Subscription", back_populates="user", uselist=False)

    def __repr__(self):
        return f"<User {self.id}>"
