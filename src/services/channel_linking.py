"""Channel linking: post-action strategy and UserChannel persistence.

``determine_strategy`` is a pure table lookup deciding where a user goes after
signup or login given whether channel params were supplied and whether the
link attempt worked. ``ChannelLinkingService`` owns the writes: consuming a
nonce and upserting the (user, channel) row.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import AuditEventType, AuditTrail
from core.exceptions import ChannelAlreadyLinkedError, InvalidNonceError
from models.channel_link import LinkNonce, UserChannel
from services.nonce_store import NonceRejection, NonceStore
from services.redirects import RedirectPaths

logger = logging.getLogger(__name__)

INVALID_LINK_ERROR = "Invalid or expired channel link"


class UserState(str, Enum):
    NEW_USER = "new_user"
    EXISTING_LOGGED_IN = "existing_logged_in"
    EXISTING_LOGGED_OUT = "existing_logged_out"


@dataclass
class LinkingResult:
    success: bool
    error: Optional[str] = None
    reason: Optional[str] = None
    user_channel_id: Optional[str] = None


@dataclass
class FallbackOption:
    type: str
    label: str
    path: Optional[str] = None


@dataclass
class LinkingStrategy:
    redirect_path: str
    skip_onboarding: bool
    channel_error: bool = False
    requires_authentication: bool = False
    fallback_options: List[FallbackOption] = field(default_factory=list)


def fallback_options(error: Optional[str]) -> List[FallbackOption]:
    """What the UI can offer after a failed link attempt."""
    if not error:
        return []
    return [
        FallbackOption("retry", "Try again", RedirectPaths.CHANNELS),
        FallbackOption("new_link", "Request a new link from the bot"),
        FallbackOption("manual_setup", "Link the channel from your dashboard", RedirectPaths.CHANNELS),
        FallbackOption("contact_support", "Contact support"),
    ]


def determine_strategy(
    user_state: UserState,
    has_channel_params: bool,
    linking_result: Optional[LinkingResult] = None,
) -> LinkingStrategy:
    """Decide the redirect after signup/login. No I/O."""
    succeeded = bool(linking_result and linking_result.success)

    if user_state == UserState.NEW_USER:
        if not has_channel_params:
            return LinkingStrategy(RedirectPaths.SIGNUP_COMPLETE, skip_onboarding=False)
        if succeeded:
            return LinkingStrategy(RedirectPaths.DASHBOARD, skip_onboarding=True)
        error = linking_result.error if linking_result else INVALID_LINK_ERROR
        return LinkingStrategy(
            RedirectPaths.SIGNUP_COMPLETE,
            skip_onboarding=False,
            channel_error=True,
            fallback_options=fallback_options(error or INVALID_LINK_ERROR),
        )

    if user_state == UserState.EXISTING_LOGGED_IN:
        failed = has_channel_params and not succeeded
        return LinkingStrategy(
            RedirectPaths.DASHBOARD,
            skip_onboarding=True,
            channel_error=failed,
            fallback_options=fallback_options(linking_result.error) if failed and linking_result else [],
        )

    return LinkingStrategy(
        RedirectPaths.LOGIN,
        skip_onboarding=False,
        requires_authentication=True,
    )


class ChannelLinkingService:
    """Writes UserChannel rows and consumes the nonces that authorize them."""

    def __init__(self, db: AsyncSession, audit: Optional[AuditTrail] = None):
        self.db = db
        self.audit = audit or AuditTrail()
        self.nonces = NonceStore(db)

    determine_strategy = staticmethod(determine_strategy)

    async def find_link_owner(self, channel_id: str, link: str) -> Optional[UserChannel]:
        result = await self.db.execute(
            select(UserChannel).where(
                UserChannel.channel_id == channel_id,
                UserChannel.link == link,
            )
        )
        return result.scalar_one_or_none()

    async def get_user_channel(self, user_id: str, channel_id: str) -> Optional[UserChannel]:
        result = await self.db.execute(
            select(UserChannel).where(
                UserChannel.user_id == user_id,
                UserChannel.channel_id == channel_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_user_channels(self, user_id: str) -> List[UserChannel]:
        result = await self.db.execute(
            select(UserChannel)
            .where(UserChannel.user_id == user_id)
            .order_by(UserChannel.created_at)
        )
        return list(result.scalars().all())

    async def attach_user_channel(self, user_id: str, channel_id: str, link: str) -> UserChannel:
        """Upsert the verified (user, channel) row.

        Repeated or concurrent calls for the same user and channel leave a
        single row behind.
        """
        try:
            user_channel = await self._stage_user_channel(user_id, channel_id, link)
            await self.db.commit()
        except IntegrityError:
            # Lost a race with another writer; the row it wrote is the answer
            await self.db.rollback()
            existing = await self.get_user_channel(user_id, channel_id)
            if existing is not None and existing.link == link:
                return existing
            owner = await self.find_link_owner(channel_id, link)
            if owner is not None and owner.user_id != user_id:
                raise ChannelAlreadyLinkedError(channel_id)
            raise

        self._record_linked(user_channel)
        return user_channel

    async def _stage_user_channel(self, user_id: str, channel_id: str, link: str) -> UserChannel:
        """Insert or update the (user, channel) row and flush without committing."""
        owner = await self.find_link_owner(channel_id, link)
        if owner is not None and owner.user_id != user_id:
            raise ChannelAlreadyLinkedError(channel_id)

        now = datetime.utcnow()
        user_channel = await self.get_user_channel(user_id, channel_id)
        if user_channel is None:
            user_channel = UserChannel(
                user_id=user_id,
                channel_id=channel_id,
                link=link,
                verified_at=now,
            )
            self.db.add(user_channel)
        else:
            user_channel.link = link
            user_channel.verified_at = user_channel.verified_at or now
        await self.db.flush()
        return user_channel

    def _record_linked(self, user_channel: UserChannel) -> None:
        self.audit.record(
            AuditEventType.CHANNEL_LINKED,
            "user_channel",
            "attach",
            user_id=user_channel.user_id,
            resource_id=user_channel.id,
            channel_id=user_channel.channel_id,
            link=user_channel.link,
        )

    async def consume_nonce(self, user_id: str, record: LinkNonce, link: str) -> UserChannel:
        """Claim a validated nonce for ``user_id`` and attach its channel.

        The nonce transition and the UserChannel write commit together. If
        either fails both are rolled back and the nonce stays pending.
        Raises ChannelAlreadyLinkedError when the external account belongs
        to someone else.
        """
        channel_id = record.channel_id
        owner = await self.find_link_owner(channel_id, link)
        if owner is not None and owner.user_id != user_id:
            raise ChannelAlreadyLinkedError(channel_id)

        try:
            if not await self.nonces.mark_done(record.nonce, link, user_id=user_id, commit=False):
                raise InvalidNonceError(NonceRejection.USED)
            user_channel = await self._stage_user_channel(user_id, channel_id, link)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        self._record_linked(user_channel)
        return user_channel

    async def link_channel_with_nonce(self, user_id: str, channel_id: str, nonce: str) -> LinkingResult:
        """Link a channel during signup/login using a bot-issued nonce.

        Never raises: every failure comes back as an unsuccessful result.
        """
        try:
            validation = await self.nonces.validate(nonce, channel_id)
            if not validation.is_valid:
                self._record_failure(user_id, channel_id, nonce, validation.reason)
                return LinkingResult(False, INVALID_LINK_ERROR, validation.reason)

            record = validation.record
            if record.user_id is not None and record.user_id != user_id:
                self._record_failure(user_id, channel_id, nonce, "owned_by_other_user")
                return LinkingResult(False, INVALID_LINK_ERROR, "owned_by_other_user")
            if not record.link:
                self._record_failure(user_id, channel_id, nonce, "unresolved")
                return LinkingResult(False, INVALID_LINK_ERROR, "unresolved")

            user_channel = await self.consume_nonce(user_id, record, record.link)
        except ChannelAlreadyLinkedError as e:
            self._record_failure(user_id, channel_id, nonce, "already_linked")
            return LinkingResult(False, e.message, "already_linked")
        except InvalidNonceError:
            self._record_failure(user_id, channel_id, nonce, "used")
            return LinkingResult(False, INVALID_LINK_ERROR, "used")
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Channel linking failed for user {user_id} on {channel_id}: {e}")
            return LinkingResult(False, "Channel linking failed", "storage")

        return LinkingResult(True, user_channel_id=user_channel.id)

    def _record_failure(self, user_id: str, channel_id: str, nonce: str, reason: Optional[str]) -> None:
        self.audit.record(
            AuditEventType.NONCE_VALIDATED,
            "link_nonce",
            "consume",
            success=False,
            user_id=user_id,
            reason=reason,
            channel_id=channel_id,
            nonce=nonce,
        )
