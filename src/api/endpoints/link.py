"""Channel linking endpoints.

Web users start a verification and poll its status; the messaging bots
confirm nonces delivered on their channel and mint registration links for
chat users without an account.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import AuditTrail
from core.config import Settings, get_settings
from core.database import get_db
from core.security import get_current_user, require_bot_secret
from schemas.channel_link import (
    ConfirmLinkRequest,
    ConfirmLinkResponse,
    LinkStatusResponse,
    RegistrationLinkRequest,
    RegistrationLinkResponse,
    StartLinkRequest,
    StartLinkResponse,
    UserChannelResponse,
    ValidateLinkRequest,
    ValidateLinkResponse,
)
from services.channel_linking import ChannelLinkingService
from services.link_initiation import LinkInitiationService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/start", response_model=StartLinkResponse)
async def start_link(
    body: StartLinkRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    current_user=Depends(get_current_user),
):
    """Create a nonce for ``channel_id`` and return how to deliver it to the bot."""
    service = LinkInitiationService(db, settings, AuditTrail())
    start = await service.start_verification(body.channel_id, user_id=current_user.id)
    return StartLinkResponse(nonce=start.nonce, deep_link=start.deep_link, command=start.command)


@router.get("/status/{nonce}", response_model=LinkStatusResponse, response_model_exclude_none=True)
async def link_status(
    nonce: str,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    current_user=Depends(get_current_user),
):
    """Poll a nonce: ``pending`` or ``done`` with the linked account; 410 once expired."""
    service = LinkInitiationService(db, settings, AuditTrail())
    status = await service.get_status(nonce, current_user.id)
    return LinkStatusResponse(status=status.status, link=status.link)


@router.post("/validate", response_model=ValidateLinkResponse)
async def validate_link(
    body: ValidateLinkRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    service = LinkInitiationService(db, settings, AuditTrail())
    return ValidateLinkResponse(is_valid=await service.validate(body.nonce, body.channel_id))


@router.post("/confirm", response_model=ConfirmLinkResponse, dependencies=[Depends(require_bot_secret)])
async def confirm_link(
    body: ConfirmLinkRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Called by a bot once the user sent the nonce from account ``link``."""
    service = LinkInitiationService(db, settings, AuditTrail())
    user_channel = await service.confirm_link(body.nonce, body.link)
    return ConfirmLinkResponse(success=True, user_channel_id=user_channel.id)


@router.post(
    "/registration",
    response_model=RegistrationLinkResponse,
    dependencies=[Depends(require_bot_secret)],
)
async def registration_link(
    body: RegistrationLinkRequest,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    service = LinkInitiationService(db, settings, AuditTrail())
    registration = await service.create_registration_link(body.channel_id, body.user_handle)
    message = (
        "Use the link we sent earlier to finish signing up."
        if registration.reused
        else "Open this link to create your account."
    )
    return RegistrationLinkResponse(
        nonce=registration.nonce,
        signup_url=registration.signup_url,
        expires_at=registration.expires_at,
        message=message,
    )


@router.get("/channels", response_model=List[UserChannelResponse])
async def list_channels(
    db: AsyncSession = Depends(get_db),
    current_user=Depends(get_current_user),
):
    """Verified channel links of the current user."""
    return await ChannelLinkingService(db).list_user_channels(current_user.id)
