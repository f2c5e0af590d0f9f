"""Usage totals for the current billing period."""

from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models.channel_link import UserChannel
from models.subscription import Subscription, Tier
from models.usage import UsageRecord
from schemas.billing import UsageResponse


class UsageService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_current_usage(self, user_id: str, now: Optional[datetime] = None) -> UsageResponse:
        """Sum usage across the user's channels inside the live subscription period.

        Without a live subscription the totals are zero and limits are unset.
        """
        now = now or datetime.utcnow()
        result = await self.db.execute(
            select(Subscription, Tier)
            .join(Tier, Tier.id == Subscription.tier_id, isouter=True)
            .where(Subscription.user_id == user_id)
        )
        row = result.first()
        if row is None or not row[0].is_live:
            return UsageResponse()

        subscription, tier = row
        period_start = subscription.current_period_start
        period_end = subscription.current_period_end

        query = (
            select(
                func.coalesce(func.sum(UsageRecord.tokens_used), 0),
                func.coalesce(func.sum(UsageRecord.requests_used), 0),
            )
            .join(UserChannel, UserChannel.id == UsageRecord.user_channel_id)
            .where(UserChannel.user_id == user_id)
        )
        if period_start is not None:
            query = query.where(UsageRecord.period_start >= period_start)
        if period_end is not None:
            query = query.where(UsageRecord.period_start < period_end)
        tokens, requests = (await self.db.execute(query)).one()

        return UsageResponse(
            period_start=period_start,
            period_end=period_end,
            tokens_used=int(tokens),
            requests_used=int(requests),
            max_tokens=tier.max_tokens if tier else None,
            max_requests=tier.max_requests if tier else None,
            tier=tier.slug if tier else None,
        )
