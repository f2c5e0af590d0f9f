"""Channel, UserChannel and LinkNonce models.

A user links a messaging account to their web account out of band:

1. The web client asks for a nonce for a channel (POST /api/link/start).
2. The user sends "/link <nonce>" to that channel's bot, or opens the deep link.
3. The bot confirms the nonce with the resolved external identifier
   (POST /api/link/confirm); the nonce flips to "done" and a UserChannel row
   is written.

Bots can also mint a registration nonce for a chat user who has no web
account yet; that nonce already carries the external identifier and is
consumed by signup.
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, DateTime, Boolean, ForeignKey, UniqueConstraint,
    Enum as SQLAlchemyEnum, Index,
)
from sqlalchemy.orm import relationship

from .base import Base, UUIDMixin


class LinkMethod(str, Enum):
    """How the user completes linking on the channel side."""
    DEEP_LINK = "deep_link"
    COMMAND = "command"


class NonceStatus(str, Enum):
    """Lifecycle of a link nonce."""
    PENDING = "pending"
    DONE = "done"
    EXPIRED = "expired"


class Channel(Base):
    """Messaging platform definition. Static reference data."""
    __tablename__ = "channels"

    id = Column(String(50), primary_key=True)  # telegram, whatsapp
    name = Column(String(100), nullable=False, unique=True)
    icon_url = Column(String(500), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    mandatory = Column(Boolean, default=False, nullable=False)
    link_method = Column(SQLAlchemyEnum(LinkMethod), default=LinkMethod.DEEP_LINK, nullable=False)


class UserChannel(UUIDMixin, Base):
    """A verified association between a user and an external channel account."""
    __tablename__ = "user_channels"
    __table_args__ = (
        UniqueConstraint("user_id", "channel_id", name="uq_user_channel"),
        UniqueConstraint("channel_id", "link", name="uq_channel_link"),
    )

    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    channel_id = Column(String(50), ForeignKey("channels.id"), nullable=False)

    # Platform-specific identifier: @username, chat id, phone number
    link = Column(String(255), nullable=False)

    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User", back_populates="channels")
    channel = relationship("Channel")


class LinkNonce(UUIDMixin, Base):
    """Short-lived, single-use token for one pending linking attempt."""
    __tablename__ = "link_nonces"
    __table_args__ = (
        Index("idx_link_nonces_expires", "expires_at"),
        Index("idx_link_nonces_channel_link", "channel_id", "link"),
    )

    nonce = Column(String(36), unique=True, nullable=False, index=True)
    channel_id = Column(String(50), ForeignKey("channels.id"), nullable=False)

    # Null for registration nonces minted by a bot before the user exists
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True)

    status = Column(SQLAlchemyEnum(NonceStatus), default=NonceStatus.PENDING, nullable=False)
    link = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or datetime.utcnow())
