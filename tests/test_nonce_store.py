"""Tests for link nonce persistence."""

import uuid

import pytest
from sqlalchemy import func, select

from models.channel_link import LinkNonce, NonceStatus
from services.nonce_store import NonceRejection, NonceStore, is_valid_nonce_format


@pytest.fixture
def store(db_session):
    return NonceStore(db_session)


class TestNonceFormat:
    def test_uuid4_is_accepted(self):
        assert is_valid_nonce_format(str(uuid.uuid4()))

    @pytest.mark.parametrize("value", [None, "", "not-a-uuid", "12345678-1234-1234-1234-1234567890", "/link abc"])
    def test_malformed_values_are_rejected(self, value):
        assert not is_valid_nonce_format(value)


class TestValidate:
    async def test_fresh_nonce_is_valid(self, store):
        record = await store.create("telegram", ttl_seconds=300)

        validation = await store.validate(record.nonce, "telegram")

        assert validation.is_valid
        assert validation.record.nonce == record.nonce

    async def test_malformed_nonce(self, store):
        validation = await store.validate("abc", "telegram")
        assert not validation.is_valid
        assert validation.reason == NonceRejection.MALFORMED

    async def test_unknown_nonce(self, store):
        validation = await store.validate(str(uuid.uuid4()), "telegram")
        assert validation.reason == NonceRejection.NOT_FOUND

    async def test_channel_mismatch(self, store):
        record = await store.create("telegram", ttl_seconds=300)
        validation = await store.validate(record.nonce, "whatsapp")
        assert validation.reason == NonceRejection.CHANNEL_MISMATCH

    async def test_expired_nonce(self, store):
        record = await store.create("telegram", ttl_seconds=-1)
        validation = await store.validate(record.nonce, "telegram")
        assert validation.reason == NonceRejection.EXPIRED

    async def test_used_nonce(self, store):
        record = await store.create("telegram", ttl_seconds=300)
        assert await store.mark_done(record.nonce, "@alice_chat")

        validation = await store.validate(record.nonce, "telegram")

        assert validation.reason == NonceRejection.USED


class TestTransitions:
    async def test_only_first_completion_wins(self, store, user):
        record = await store.create("telegram", ttl_seconds=300, user_id=user.id)

        assert await store.mark_done(record.nonce, "@alice_chat") is True
        assert await store.mark_done(record.nonce, "@someone_else") is False

        stored = await store.get(record.nonce)
        assert stored.status == NonceStatus.DONE
        assert stored.link == "@alice_chat"
        assert stored.completed_at is not None

    async def test_expired_nonce_cannot_be_completed(self, store):
        record = await store.create("telegram", ttl_seconds=-1)
        assert await store.mark_done(record.nonce, "@alice_chat") is False

    async def test_expire_only_touches_stale_pending_nonces(self, store):
        live = await store.create("telegram", ttl_seconds=300)
        stale = await store.create("telegram", ttl_seconds=-1)

        assert await store.expire(live.nonce) is False
        assert await store.expire(stale.nonce) is True
        assert await store.expire(stale.nonce) is False

    async def test_find_pending_registration(self, store, user):
        registration = await store.create("telegram", ttl_seconds=600, link="@chat_user")
        await store.create("telegram", ttl_seconds=600, user_id=user.id, link="@chat_user")
        await store.create("telegram", ttl_seconds=-1, link="@other_chat")

        found = await store.find_pending_registration("telegram", "@chat_user")

        assert found.nonce == registration.nonce
        assert await store.find_pending_registration("telegram", "@other_chat") is None
        assert await store.find_pending_registration("whatsapp", "@chat_user") is None

    async def test_purge_expired(self, store, db_session):
        await store.create("telegram", ttl_seconds=-1)
        await store.create("telegram", ttl_seconds=-1)
        keep = await store.create("telegram", ttl_seconds=300)

        assert await store.purge_expired() == 2

        remaining = await db_session.execute(select(func.count()).select_from(LinkNonce))
        assert remaining.scalar_one() == 1
        assert await store.get(keep.nonce) is not None
