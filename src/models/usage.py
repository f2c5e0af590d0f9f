"""Per-period usage counters, written by the metering service."""

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from .base import Base, UUIDMixin


class UsageRecord(UUIDMixin, Base):
    """Tokens and requests used through one user channel in one period."""
    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("user_channel_id", "period_start", name="uq_usage_channel_period"),
    )

    user_channel_id = Column(String(36), ForeignKey("user_channels.id"), nullable=False, index=True)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    tokens_used = Column(Integer, default=0, nullable=False)
    requests_used = Column(Integer, default=0, nullable=False)

    user_channel = relationship("UserChannel")
