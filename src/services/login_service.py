"""Login with optional channel linking for existing accounts."""

import logging
from typing import Any, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import AuditEventType, AuditTrail
from core.config import Settings, get_settings
from core.exceptions import SignupRedirect
from schemas.auth import FormState, LoginForm
from services.channel_linking import ChannelLinkingService, UserState, determine_strategy
from services.identity import IdentityProvider
from services.redirects import build_dashboard_redirect_url
from services.signup_orchestrator import GENERIC_ERROR, form_errors

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"


class LoginService:
    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        audit: Optional[AuditTrail] = None,
        identity: Optional[IdentityProvider] = None,
        linking: Optional[ChannelLinkingService] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.audit = audit or AuditTrail()
        self.identity = identity or IdentityProvider(db)
        self.linking = linking or ChannelLinkingService(db, self.audit)

    async def log_in(self, data: Mapping[str, Any]) -> FormState:
        """Authenticate, link a pending channel if one came along, redirect."""
        try:
            try:
                form = LoginForm.model_validate(dict(data))
            except PydanticValidationError as e:
                return form_errors(e)

            user = await self.identity.authenticate(form.email, form.password)
            if user is None:
                self.audit.record(
                    AuditEventType.USER_LOGIN, "user", "login",
                    success=False, reason="invalid_credentials", email=form.email,
                )
                return FormState.failure(INVALID_CREDENTIALS)

            user_id = user.id
            self.audit.record(AuditEventType.USER_LOGIN, "user", "login", user_id=user_id)

            linking_result = None
            if form.present:
                linking_result = await self.linking.link_channel_with_nonce(user_id, form.channel, form.link)

            strategy = determine_strategy(UserState.EXISTING_LOGGED_IN, form.present, linking_result)
            url = build_dashboard_redirect_url(
                channel=form.channel,
                channel_linked=linking_result.success if linking_result else None,
                channel_error=strategy.channel_error,
                locale=form.locale,
                settings=self.settings,
            )
            raise SignupRedirect(url, user_id=user_id)
        except SignupRedirect:
            raise
        except Exception as e:
            logger.error(f"Unexpected login failure: {e}", exc_info=True)
            return FormState.failure(GENERIC_ERROR)
