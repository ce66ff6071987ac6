"""Tests for the chat aggregate."""

from datetime import datetime

import pytest
from sqlalchemy import func, select

from msgbridge.db.messages import MessageData
from msgbridge.db.models import MessageDirection, RelationDirection, SyncRelation
from msgbridge.db.relations import RelationData
from msgbridge.errors import ValidationError


class TestUpsertChat:
    @pytest.mark.asyncio
    async def test_creates_once(self, db):
        """Upserting the same (session, address) twice yields one chat."""
        first = await db.chats.upsert_chat("S1", "5511999@s.whatsapp.net", name="Alice")
        second = await db.chats.upsert_chat("S1", "5511999@s.whatsapp.net")

        assert first.id == second.id
        assert second.name == "Alice"

    @pytest.mark.asyncio
    async def test_only_given_attributes_are_merged(self, db):
        chat = await db.chats.upsert_chat("S1", "a@s.whatsapp.net", name="Alice", is_pinned=True)
        chat = await db.chats.upsert_chat("S1", "a@s.whatsapp.net", is_archived=True)

        assert chat.name == "Alice"
        assert chat.is_pinned is True
        assert chat.is_archived is True

    @pytest.mark.asyncio
    async def test_metadata_merged_key_by_key(self, db):
        await db.chats.upsert_chat("S1", "a@s.whatsapp.net", extra={"lang": "pt"})
        chat = await db.chats.upsert_chat("S1", "a@s.whatsapp.net", extra={"tier": "gold"})

        assert chat.extra == {"lang": "pt", "tier": "gold"}

    @pytest.mark.asyncio
    async def test_group_inferred_from_address(self, db):
        chat = await db.chats.upsert_chat("S1", "123-456@g.us")
        assert chat.is_group is True

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, db):
        a = await db.chats.upsert_chat("S1", "a@s.whatsapp.net")
        b = await db.chats.upsert_chat("S2", "a@s.whatsapp.net")

        assert a.id != b.id
        assert await db.chats.get_chat("S3", "a@s.whatsapp.net") is None

    @pytest.mark.asyncio
    async def test_counters_cannot_be_supplied(self, db):
        with pytest.raises(ValidationError):
            await db.chats.upsert_chat("S1", "a@s.whatsapp.net", unread_count=5)

    @pytest.mark.asyncio
    async def test_blank_address_rejected(self, db):
        with pytest.raises(ValidationError):
            await db.chats.upsert_chat("S1", "  ")


class TestNarrowMutations:
    @pytest.mark.asyncio
    async def test_last_activity_never_moves_backwards(self, db):
        chat = await db.chats.upsert_chat("S1", "a@s.whatsapp.net")

        assert await db.chats.touch_last_activity(chat.id, datetime(2026, 10, 2))
        assert not await db.chats.touch_last_activity(chat.id, datetime(2026, 10, 1))

        chat = await db.chats.get_by_id(chat.id)
        assert chat.last_activity_at == datetime(2026, 10, 2)

    @pytest.mark.asyncio
    async def test_unread_counter(self, db):
        chat = await db.chats.upsert_chat("S1", "a@s.whatsapp.net")
        await db.chats.increment_unread(chat.id)
        await db.chats.increment_unread(chat.id, by=2)
        assert (await db.chats.get_by_id(chat.id)).unread_count == 3

        await db.chats.set_unread_count(chat.id, 0)
        assert (await db.chats.get_by_id(chat.id)).unread_count == 0

        with pytest.raises(ValidationError):
            await db.chats.set_unread_count(chat.id, -1)

    @pytest.mark.asyncio
    async def test_flags(self, db):
        chat = await db.chats.upsert_chat("S1", "a@s.whatsapp.net")
        await db.chats.set_archived(chat.id, True)
        await db.chats.set_pinned(chat.id, True)
        await db.chats.set_muted(chat.id, True)

        chat = await db.chats.get_by_id(chat.id)
        assert (chat.is_archived, chat.is_pinned, chat.is_muted) == (True, True, True)

    @pytest.mark.asyncio
    async def test_unknown_chat_returns_false(self, db):
        assert await db.chats.set_pinned(999, True) is False


class TestListChats:
    @pytest.mark.asyncio
    async def test_most_recent_first_and_archived_hidden(self, db):
        old = await db.chats.upsert_chat("S1", "old@s.whatsapp.net")
        new = await db.chats.upsert_chat("S1", "new@s.whatsapp.net")
        idle = await db.chats.upsert_chat("S1", "idle@s.whatsapp.net")
        archived = await db.chats.upsert_chat("S1", "arch@s.whatsapp.net", is_archived=True)
        await db.chats.touch_last_activity(old.id, datetime(2026, 10, 1))
        await db.chats.touch_last_activity(new.id, datetime(2026, 10, 5))

        chats = await db.chats.list_chats("S1")
        assert [c.id for c in chats] == [new.id, old.id, idle.id]

        with_archived = await db.chats.list_chats("S1", include_archived=True)
        assert archived.id in [c.id for c in with_archived]


class TestDeleteChat:
    @pytest.mark.asyncio
    async def test_cascades_to_messages_and_relations(self, db):
        """Deleting a chat leaves no orphaned message or relation."""
        chat = await db.chats.upsert_chat("S1", "a@s.whatsapp.net")
        other = await db.chats.upsert_chat("S1", "b@s.whatsapp.net")
        stored = await db.messages.upsert_message(
            MessageData("S1", chat.id, "wa-1", MessageDirection.FROM_OTHER, datetime(2026, 10, 1), text="hi")
        )
        quoting = await db.messages.upsert_message(
            MessageData(
                "S1", other.id, "wa-2", MessageDirection.FROM_ME, datetime(2026, 10, 1), text="fwd",
                quoted_remote_id="wa-1",
            )
        )
        assert quoting.message.quoted_message_id == stored.message.id
        await db.relations.create_or_update(
            RelationData("S1", stored.message.id, RelationDirection.OUTBOUND, echo_token="ek-1")
        )

        assert await db.chats.delete_chat(chat.id) is True

        assert await db.chats.get_by_id(chat.id) is None
        assert await db.messages.get_by_id(stored.message.id) is None
        async with db.db_manager.get_session() as session:
            assert await session.scalar(select(func.count(SyncRelation.id))) == 0

        survivor = await db.messages.get_by_id(quoting.message.id)
        assert survivor.quoted_message_id is None

    @pytest.mark.asyncio
    async def test_missing_chat(self, db):
        assert await db.chats.delete_chat(12345) is False
