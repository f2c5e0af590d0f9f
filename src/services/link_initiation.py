"""Link initiation: nonce issuance, status, validation and bot confirmation."""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import quote, urlencode

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import AuditEventType, AuditTrail
from core.config import Settings, get_settings
from core.exceptions import (
    BadRequestError,
    ChannelInactiveError,
    ChannelNotConfiguredError,
    ChannelNotFoundError,
    InvalidNonceError,
    LinkExpiredError,
    NotFoundError,
)
from models.channel_link import Channel, NonceStatus, UserChannel
from services.channel_linking import ChannelLinkingService
from services.nonce_store import NonceRejection, NonceStore

logger = logging.getLogger(__name__)

# Handle formats accepted from the bots
HANDLE_PATTERNS = {
    "telegram": re.compile(r"^(@\w{5,32}|\d+)$"),
    "whatsapp": re.compile(r"^\+?\d{10,15}$"),
}


@dataclass
class LinkStart:
    nonce: str
    deep_link: str
    command: str


@dataclass
class LinkStatus:
    status: str
    link: Optional[str] = None


@dataclass
class RegistrationLink:
    nonce: str
    signup_url: str
    expires_at: datetime
    reused: bool = False


def link_command(nonce: str) -> str:
    return f"/link {nonce}"


def build_deep_link(channel_id: str, bot_handle: str, nonce: str) -> str:
    """Deep link that opens the bot with the nonce pre-filled."""
    if channel_id == "telegram":
        return f"https://t.me/{bot_handle.lstrip('@')}?start={nonce}"
    if channel_id == "whatsapp":
        phone = re.sub(r"\D", "", bot_handle)
        return f"https://wa.me/{phone}?text={quote(link_command(nonce), safe='')}"
    raise ChannelNotConfiguredError(channel_id)


class LinkInitiationService:
    """Issue nonces for channels and drive them to a terminal state."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        audit: Optional[AuditTrail] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = audit or AuditTrail()
        self.nonces = NonceStore(db)
        self.linking = ChannelLinkingService(db, self.audit)

    async def get_active_channel(self, channel_id: str) -> Channel:
        result = await self.db.execute(select(Channel).where(Channel.id == channel_id))
        channel = result.scalar_one_or_none()
        if channel is None:
            raise ChannelNotFoundError(channel_id)
        if not channel.is_active:
            raise ChannelInactiveError(channel_id)
        return channel

    def _bot_handle(self, channel_id: str) -> str:
        handle = self.settings.bot_handle_for(channel_id)
        if not handle:
            raise ChannelNotConfiguredError(channel_id)
        return handle

    async def start_verification(self, channel_id: str, user_id: Optional[str] = None) -> LinkStart:
        """Create a pending nonce and the deep link / command to deliver it."""
        await self.get_active_channel(channel_id)
        bot_handle = self._bot_handle(channel_id)

        record = await self.nonces.create(
            channel_id,
            ttl_seconds=self.settings.LINK_NONCE_TTL_SECONDS,
            user_id=user_id,
        )
        self.audit.record(
            AuditEventType.NONCE_GENERATED,
            "link_nonce",
            "start",
            user_id=user_id,
            channel_id=channel_id,
            nonce=record.nonce,
        )
        return LinkStart(
            nonce=record.nonce,
            deep_link=build_deep_link(channel_id, bot_handle, record.nonce),
            command=link_command(record.nonce),
        )

    async def get_status(self, nonce: str, user_id: str) -> LinkStatus:
        record = await self.nonces.get(nonce)
        if record is None or record.user_id != user_id:
            raise NotFoundError("Verification not found")

        if record.status == NonceStatus.DONE:
            return LinkStatus("done", record.link)
        if record.status == NonceStatus.EXPIRED or record.is_expired():
            await self.nonces.expire(nonce)
            raise LinkExpiredError()
        return LinkStatus("pending")

    async def validate(self, nonce: str, channel_id: str) -> bool:
        validation = await self.nonces.validate(nonce, channel_id)
        return validation.is_valid

    async def confirm_link(self, nonce: str, link: str) -> UserChannel:
        """Bot-side completion: the user delivered ``nonce`` from account ``link``."""
        record = await self.nonces.get(nonce)
        if record is None:
            raise InvalidNonceError(NonceRejection.NOT_FOUND)

        validation = await self.nonces.validate(nonce, record.channel_id)
        if not validation.is_valid:
            raise InvalidNonceError(validation.reason)
        if record.user_id is None:
            # Registration nonces are consumed by signup, not by the bot
            raise InvalidNonceError("registration_nonce")

        user_channel = await self.linking.consume_nonce(record.user_id, record, link)
        self.audit.record(
            AuditEventType.CHANNEL_VERIFICATION,
            "link_nonce",
            "confirm",
            user_id=record.user_id,
            resource_id=user_channel.id,
            channel_id=record.channel_id,
            nonce=nonce,
        )
        return user_channel

    async def create_registration_link(self, channel_id: str, user_handle: str) -> RegistrationLink:
        """Signup URL for a chat user who does not have a web account yet."""
        await self.get_active_channel(channel_id)
        pattern = HANDLE_PATTERNS.get(channel_id)
        if pattern is None or not pattern.match(user_handle):
            raise BadRequestError(f"Invalid handle format for {channel_id}")

        existing = await self.nonces.find_pending_registration(channel_id, user_handle)
        if existing is not None:
            record, reused = existing, True
        else:
            record = await self.nonces.create(
                channel_id,
                ttl_seconds=self.settings.REGISTRATION_NONCE_TTL_SECONDS,
                link=user_handle,
            )
            reused = False
            self.audit.record(
                AuditEventType.NONCE_GENERATED,
                "link_nonce",
                "registration",
                channel_id=channel_id,
                nonce=record.nonce,
            )

        query = urlencode({"link": record.nonce, "channel": channel_id})
        return RegistrationLink(
            nonce=record.nonce,
            signup_url=f"{self.settings.FRONTEND_URL.rstrip('/')}/signup?{query}",
            expires_at=record.expires_at,
            reused=reused,
        )
