"""Schemas for channel account linking."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class StartLinkRequest(BaseModel):
    """Request a nonce for a specific channel."""
    channel_id: str = Field(..., description="Channel to link: telegram, whatsapp")


class StartLinkResponse(BaseModel):
    """Nonce plus the two ways the user can hand it to the bot."""
    model_config = ConfigDict(populate_by_name=True)

    nonce: str
    deep_link: str = Field(..., alias="deepLink")
    command: str


class LinkStatusResponse(BaseModel):
    """Current state of a nonce; ``link`` is set once it is done."""
    status: str
    link: Optional[str] = None


class ValidateLinkRequest(BaseModel):
    """Check a nonce against the channel it is supposed to belong to."""
    model_config = ConfigDict(populate_by_name=True)

    nonce: str
    channel_id: str = Field(..., alias="channelId")


class ValidateLinkResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(..., alias="isValid")


class ConfirmLinkRequest(BaseModel):
    """Sent by a bot once the user delivered the nonce on the channel."""
    nonce: str
    link: str = Field(..., min_length=1, max_length=255, description="Resolved external account id")


class ConfirmLinkResponse(BaseModel):
    success: bool
    user_channel_id: str


class RegistrationLinkRequest(BaseModel):
    """Sent by a bot for a chat user who has no web account yet."""
    channel_id: str
    user_handle: str = Field(..., min_length=1, max_length=255)


class RegistrationLinkResponse(BaseModel):
    nonce: str
    signup_url: str
    expires_at: datetime
    message: str


class UserChannelResponse(BaseModel):
    """A verified channel link."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    channel_id: str
    link: str
    verified_at: Optional[datetime] = None
