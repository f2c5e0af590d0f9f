"""Tests for channel link strategy and UserChannel persistence."""

from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from core.audit import AuditEventType
from core.exceptions import ChannelAlreadyLinkedError
from models.channel_link import NonceStatus, UserChannel
from services.channel_linking import (
    INVALID_LINK_ERROR,
    ChannelLinkingService,
    LinkingResult,
    UserState,
    determine_strategy,
)
from services.nonce_store import NonceRejection, NonceStore
from services.redirects import RedirectPaths


@pytest.fixture
def linking(db_session, audit):
    return ChannelLinkingService(db_session, audit)


async def count_user_channels(db_session, **filters) -> int:
    query = select(func.count()).select_from(UserChannel)
    for name, value in filters.items():
        query = query.where(getattr(UserChannel, name) == value)
    return (await db_session.execute(query)).scalar_one()


class TestDetermineStrategy:
    def test_new_user_without_params_goes_to_signup_complete(self):
        strategy = determine_strategy(UserState.NEW_USER, False)
        assert strategy.redirect_path == RedirectPaths.SIGNUP_COMPLETE
        assert not strategy.skip_onboarding
        assert not strategy.channel_error

    def test_new_user_linked_skips_onboarding(self):
        strategy = determine_strategy(UserState.NEW_USER, True, LinkingResult(True))
        assert strategy.redirect_path == RedirectPaths.DASHBOARD
        assert strategy.skip_onboarding

    def test_new_user_link_failure_offers_fallbacks(self):
        strategy = determine_strategy(UserState.NEW_USER, True, LinkingResult(False, INVALID_LINK_ERROR))
        assert strategy.redirect_path == RedirectPaths.SIGNUP_COMPLETE
        assert strategy.channel_error
        assert {option.type for option in strategy.fallback_options} >= {"retry", "manual_setup"}

    def test_logged_in_user_always_lands_on_dashboard(self):
        ok = determine_strategy(UserState.EXISTING_LOGGED_IN, True, LinkingResult(True))
        failed = determine_strategy(UserState.EXISTING_LOGGED_IN, True, LinkingResult(False, INVALID_LINK_ERROR))
        plain = determine_strategy(UserState.EXISTING_LOGGED_IN, False)

        assert ok.redirect_path == failed.redirect_path == plain.redirect_path == RedirectPaths.DASHBOARD
        assert not ok.channel_error
        assert failed.channel_error
        assert not plain.channel_error

    def test_logged_out_user_must_authenticate(self):
        strategy = determine_strategy(UserState.EXISTING_LOGGED_OUT, True)
        assert strategy.redirect_path == RedirectPaths.LOGIN
        assert strategy.requires_authentication


class TestLinkChannelWithNonce:
    async def test_registration_nonce_links_channel(self, db_session, linking, user, audit):
        record = await NonceStore(db_session).create("telegram", ttl_seconds=600, link="@alice_chat")

        result = await linking.link_channel_with_nonce(user.id, "telegram", record.nonce)

        assert result.success
        channel = await linking.get_user_channel(user.id, "telegram")
        assert channel.link == "@alice_chat"
        assert channel.verified_at is not None
        assert result.user_channel_id == channel.id
        assert audit.of_type(AuditEventType.CHANNEL_LINKED)

    async def test_nonce_is_single_use(self, db_session, linking, user):
        record = await NonceStore(db_session).create("telegram", ttl_seconds=600, link="@alice_chat")

        first = await linking.link_channel_with_nonce(user.id, "telegram", record.nonce)
        second = await linking.link_channel_with_nonce(user.id, "telegram", record.nonce)

        assert first.success
        assert not second.success
        assert second.reason == NonceRejection.USED
        assert await count_user_channels(db_session, user_id=user.id) == 1

    async def test_malformed_nonce_fails_without_raising(self, linking, user):
        result = await linking.link_channel_with_nonce(user.id, "telegram", "definitely not a nonce")
        assert not result.success
        assert result.error == INVALID_LINK_ERROR
        assert result.reason == NonceRejection.MALFORMED

    async def test_channel_mismatch(self, db_session, linking, user):
        record = await NonceStore(db_session).create("telegram", ttl_seconds=600, link="@alice_chat")
        result = await linking.link_channel_with_nonce(user.id, "whatsapp", record.nonce)
        assert result.reason == NonceRejection.CHANNEL_MISMATCH

    async def test_nonce_of_another_user_is_refused(self, db_session, linking, user, other_user):
        record = await NonceStore(db_session).create(
            "telegram", ttl_seconds=600, user_id=other_user.id, link="@bob_chat"
        )
        result = await linking.link_channel_with_nonce(user.id, "telegram", record.nonce)
        assert not result.success
        assert result.reason == "owned_by_other_user"

    async def test_account_linked_to_someone_else_keeps_nonce(self, db_session, linking, user, other_user):
        await linking.attach_user_channel(other_user.id, "telegram", "@shared_chat")
        store = NonceStore(db_session)
        record = await store.create("telegram", ttl_seconds=600, link="@shared_chat")

        result = await linking.link_channel_with_nonce(user.id, "telegram", record.nonce)

        assert not result.success
        assert result.reason == "already_linked"
        assert (await store.get(record.nonce)).status == NonceStatus.PENDING
        assert await count_user_channels(db_session, user_id=user.id) == 0

    async def test_failed_channel_write_keeps_nonce_for_retry(self, db_session, linking, user):
        user_id = user.id
        store = NonceStore(db_session)
        nonce = (await store.create("telegram", ttl_seconds=600, link="@alice_chat")).nonce
        conflict = IntegrityError("INSERT INTO user_channels", {}, Exception("duplicate key"))

        with patch.object(linking, "_stage_user_channel", side_effect=conflict):
            failed = await linking.link_channel_with_nonce(user_id, "telegram", nonce)

        assert not failed.success
        assert failed.reason == "storage"
        assert (await store.get(nonce)).status == NonceStatus.PENDING
        assert await count_user_channels(db_session, user_id=user_id) == 0

        retried = await linking.link_channel_with_nonce(user_id, "telegram", nonce)

        assert retried.success
        assert (await store.get(nonce)).status == NonceStatus.DONE
        assert await count_user_channels(db_session, user_id=user_id) == 1


class TestAttachUserChannel:
    async def test_attach_is_idempotent(self, db_session, linking, user):
        first = await linking.attach_user_channel(user.id, "telegram", "@alice_chat")
        second = await linking.attach_user_channel(user.id, "telegram", "@alice_chat")

        assert first.id == second.id
        assert await count_user_channels(db_session, user_id=user.id, channel_id="telegram") == 1

    async def test_relinking_replaces_the_account(self, db_session, linking, user):
        await linking.attach_user_channel(user.id, "telegram", "@old_handle")
        updated = await linking.attach_user_channel(user.id, "telegram", "@new_handle")

        assert updated.link == "@new_handle"
        assert await count_user_channels(db_session, user_id=user.id) == 1

    async def test_account_owned_by_another_user(self, linking, user, other_user):
        await linking.attach_user_channel(other_user.id, "telegram", "@bob_chat")

        with pytest.raises(ChannelAlreadyLinkedError):
            await linking.attach_user_channel(user.id, "telegram", "@bob_chat")

    async def test_list_user_channels(self, linking, user):
        await linking.attach_user_channel(user.id, "telegram", "@alice_chat")
        await linking.attach_user_channel(user.id, "whatsapp", "+393331234567")

        channels = await linking.list_user_channels(user.id)

        assert {c.channel_id for c in channels} == {"telegram", "whatsapp"}
