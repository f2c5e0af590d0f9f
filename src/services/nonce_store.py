"""Persistence for link nonces.

Every transition out of ``pending`` is a conditional UPDATE on the nonce row,
so concurrent confirmations converge: exactly one caller observes rowcount 1.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import redact_nonce
from core.exceptions import NonceStorageError
from models.channel_link import LinkNonce, NonceStatus

logger = logging.getLogger(__name__)

NONCE_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


class NonceRejection:
    """Reasons a nonce fails validation."""
    MALFORMED = "malformed"
    NOT_FOUND = "not_found"
    CHANNEL_MISMATCH = "channel_mismatch"
    EXPIRED = "expired"
    USED = "used"


@dataclass
class NonceValidation:
    is_valid: bool
    reason: Optional[str] = None
    record: Optional[LinkNonce] = None


def is_valid_nonce_format(nonce: Optional[str]) -> bool:
    return bool(nonce) and bool(NONCE_PATTERN.match(nonce))


class NonceStore:
    """Create, look up and transition ``LinkNonce`` rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        channel_id: str,
        ttl_seconds: int,
        user_id: Optional[str] = None,
        link: Optional[str] = None,
    ) -> LinkNonce:
        now = datetime.utcnow()
        record = LinkNonce(
            nonce=str(uuid.uuid4()),
            channel_id=channel_id,
            user_id=user_id,
            link=link,
            status=NonceStatus.PENDING,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        self.db.add(record)
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to store link nonce for channel {channel_id}: {e}")
            raise NonceStorageError() from e
        return record

    async def get(self, nonce: str) -> Optional[LinkNonce]:
        if not is_valid_nonce_format(nonce):
            return None
        result = await self.db.execute(select(LinkNonce).where(LinkNonce.nonce == nonce))
        return result.scalar_one_or_none()

    async def validate(self, nonce: str, channel_id: str) -> NonceValidation:
        """A nonce is valid only while pending, unexpired and on its own channel."""
        if not is_valid_nonce_format(nonce):
            return NonceValidation(False, NonceRejection.MALFORMED)

        record = await self.get(nonce)
        if record is None:
            return NonceValidation(False, NonceRejection.NOT_FOUND)
        if record.channel_id != channel_id:
            return NonceValidation(False, NonceRejection.CHANNEL_MISMATCH, record)
        if record.status == NonceStatus.DONE:
            return NonceValidation(False, NonceRejection.USED, record)
        if record.status == NonceStatus.EXPIRED or record.is_expired():
            return NonceValidation(False, NonceRejection.EXPIRED, record)
        return NonceValidation(True, None, record)

    async def mark_done(
        self,
        nonce: str,
        link: str,
        user_id: Optional[str] = None,
        commit: bool = True,
    ) -> bool:
        """Flip a live pending nonce to done. Returns False if someone else won.

        With ``commit=False`` the UPDATE stays in the caller's transaction, so
        a later failure can roll the nonce back to pending.
        """
        now = datetime.utcnow()
        values = {"status": NonceStatus.DONE, "link": link, "completed_at": now}
        if user_id is not None:
            values["user_id"] = user_id
        result = await self.db.execute(
            update(LinkNonce)
            .where(
                LinkNonce.nonce == nonce,
                LinkNonce.status == NonceStatus.PENDING,
                LinkNonce.expires_at > now,
            )
            .values(**values)
        )
        if commit:
            await self.db.commit()
        won = result.rowcount == 1
        if not won:
            logger.info(f"Nonce {redact_nonce(nonce)} was not pending, completion skipped")
        return won

    async def expire(self, nonce: str) -> bool:
        """Mark a pending nonce whose TTL has passed as expired."""
        result = await self.db.execute(
            update(LinkNonce)
            .where(
                LinkNonce.nonce == nonce,
                LinkNonce.status == NonceStatus.PENDING,
                LinkNonce.expires_at <= datetime.utcnow(),
            )
            .values(status=NonceStatus.EXPIRED)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def find_pending_registration(self, channel_id: str, link: str) -> Optional[LinkNonce]:
        """A live registration nonce (no user yet) already issued for this handle."""
        result = await self.db.execute(
            select(LinkNonce)
            .where(
                LinkNonce.channel_id == channel_id,
                LinkNonce.link == link,
                LinkNonce.user_id.is_(None),
                LinkNonce.status == NonceStatus.PENDING,
                LinkNonce.expires_at > datetime.utcnow(),
            )
            .order_by(LinkNonce.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def purge_expired(self) -> int:
        result = await self.db.execute(
            delete(LinkNonce).where(LinkNonce.expires_at <= datetime.utcnow())
        )
        await self.db.commit()
        count = result.rowcount or 0
        if count:
            logger.info(f"Purged {count} expired link nonces")
        return count
