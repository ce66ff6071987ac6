"""Tests for the message store: idempotent ingestion and mutable-field merges."""

from datetime import datetime

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from msgbridge.db import DatabaseAdapter
from msgbridge.db.messages import MessageData, status_advances
from msgbridge.db.models import ContentType, Message, MessageDirection, MessageStatus
from msgbridge.errors import ValidationError


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, event, session_id, data):
        self.events.append((event, session_id, data))


def _data(chat_id, remote_id="wa-100", text="hello", direction=MessageDirection.FROM_OTHER, **kwargs):
    return MessageData(
        session_id="S1",
        chat_id=chat_id,
        remote_message_id=remote_id,
        direction=direction,
        timestamp=kwargs.pop("timestamp", datetime(2026, 10, 1, 12, 0)),
        text=text,
        **kwargs,
    )


@pytest_asyncio.fixture
async def chat(db):
    return await db.chats.upsert_chat("S1", "+551199999@remote")


class TestIdempotentIngestion:
    @pytest.mark.asyncio
    async def test_same_event_many_times_is_one_row(self, db, chat):
        results = [await db.messages.upsert_message(_data(chat.id)) for _ in range(5)]

        assert [r.created for r in results] == [True, False, False, False, False]
        assert len({r.message.id for r in results}) == 1
        async with db.db_manager.get_session() as session:
            assert await session.scalar(select(func.count(Message.id))) == 1

    @pytest.mark.asyncio
    async def test_unread_counted_once_for_incoming(self, db, chat):
        for _ in range(3):
            await db.messages.upsert_message(_data(chat.id))
        await db.messages.upsert_message(_data(chat.id, "wa-101", direction=MessageDirection.FROM_ME))

        chat = await db.chats.get_by_id(chat.id)
        assert chat.unread_count == 1
        assert chat.last_activity_at == datetime(2026, 10, 1, 12, 0)

    @pytest.mark.asyncio
    async def test_duplicate_does_not_report_content_change(self, db, chat):
        await db.messages.upsert_message(_data(chat.id))
        result = await db.messages.upsert_message(_data(chat.id))
        assert result.content_changed is False

    @pytest.mark.asyncio
    async def test_metadata_stored_on_first_insert(self, db, chat):
        result = await db.messages.upsert_message(_data(chat.id, extra={"forwarded": True}))

        assert result.created is True
        stored = await db.messages.get_by_id(result.message.id)
        assert stored.extra == {"forwarded": True}

    @pytest.mark.asyncio
    async def test_message_cannot_move_between_chats(self, db, chat):
        other = await db.chats.upsert_chat("S1", "other@remote")
        await db.messages.upsert_message(_data(chat.id))
        with pytest.raises(ValidationError):
            await db.messages.upsert_message(_data(other.id))

    @pytest.mark.asyncio
    async def test_invalid_input_rejected_before_write(self, db, chat):
        with pytest.raises(ValidationError):
            await db.messages.upsert_message(_data(chat.id, remote_id=" "))
        with pytest.raises(ValidationError):
            await db.messages.upsert_message(_data(chat.id, text=None))
        with pytest.raises(ValidationError):
            await db.messages.upsert_message(_data(chat.id, content_type=ContentType.MEDIA, text=None))
        assert await db.messages.list_by_chat(chat.id) == []


class TestMerge:
    @pytest.mark.asyncio
    async def test_edit_updates_text_and_edited_at(self, db, chat):
        await db.messages.upsert_message(_data(chat.id))
        result = await db.messages.upsert_message(
            _data(chat.id, text="hello, edited", edited_at=datetime(2026, 10, 1, 12, 5))
        )

        assert result.content_changed is True
        assert result.message.text == "hello, edited"
        assert result.message.edited_at == datetime(2026, 10, 1, 12, 5)
        chat = await db.chats.get_by_id(chat.id)
        assert chat.last_activity_at == datetime(2026, 10, 1, 12, 5)

    @pytest.mark.asyncio
    async def test_status_only_moves_forward(self, db, chat):
        await db.messages.upsert_message(_data(chat.id, status=MessageStatus.DELIVERED))
        result = await db.messages.upsert_message(_data(chat.id, status=MessageStatus.SENT))
        assert result.message.status is MessageStatus.DELIVERED

        result = await db.messages.upsert_message(_data(chat.id, status=MessageStatus.READ))
        assert result.message.status is MessageStatus.READ
        assert result.content_changed is False

    @pytest.mark.asyncio
    async def test_reaction_set_and_removed(self, db, chat):
        await db.messages.upsert_message(_data(chat.id))
        result = await db.messages.upsert_message(_data(chat.id, reaction="👍"))
        assert result.message.reaction == "👍"

        # None leaves it alone, "" removes it
        result = await db.messages.upsert_message(_data(chat.id))
        assert result.message.reaction == "👍"
        result = await db.messages.upsert_message(_data(chat.id, reaction=""))
        assert result.message.reaction is None

    @pytest.mark.asyncio
    async def test_soft_delete_via_upsert(self, db, chat):
        await db.messages.upsert_message(_data(chat.id))
        result = await db.messages.upsert_message(_data(chat.id, is_deleted=True))
        assert result.message.is_deleted is True
        assert result.message.deleted_at is not None


class TestQueries:
    @pytest.mark.asyncio
    async def test_lookups(self, db, chat):
        stored = (await db.messages.upsert_message(_data(chat.id))).message

        assert (await db.messages.get_by_remote_id("S1", "wa-100")).id == stored.id
        assert (await db.messages.get_by_id(stored.id)).remote_message_id == "wa-100"
        assert await db.messages.get_by_remote_id("S2", "wa-100") is None
        assert await db.messages.get_by_id(9999) is None

    @pytest.mark.asyncio
    async def test_list_newest_first_with_window(self, db, chat):
        for n in range(1, 5):
            await db.messages.upsert_message(_data(chat.id, f"wa-{n}", timestamp=datetime(2026, 10, n)))

        listed = await db.messages.list_by_chat(chat.id)
        assert [m.remote_message_id for m in listed] == ["wa-4", "wa-3", "wa-2", "wa-1"]

        window = await db.messages.list_by_chat(chat.id, start=datetime(2026, 10, 2), end=datetime(2026, 10, 3))
        assert [m.remote_message_id for m in window] == ["wa-3", "wa-2"]

        page = await db.messages.list_by_chat(chat.id, limit=2, offset=2)
        assert [m.remote_message_id for m in page] == ["wa-2", "wa-1"]

    @pytest.mark.asyncio
    async def test_mark_deleted_hides_from_listing(self, db, chat):
        stored = (await db.messages.upsert_message(_data(chat.id))).message
        deleted = await db.messages.mark_deleted(stored.id)

        assert deleted.is_deleted is True
        assert await db.messages.list_by_chat(chat.id) == []
        assert (await db.messages.get_by_id(stored.id)).is_deleted is True
        assert await db.messages.mark_deleted(9999) is None


class TestNarrowHelpers:
    @pytest.mark.asyncio
    async def test_assign_remote_id(self, db, chat):
        provisional = (await db.messages.upsert_message(_data(chat.id, "mirror:conv-1:cw-56"))).message
        await db.messages.upsert_message(_data(chat.id, "wa-taken"))

        assert await db.messages.assign_remote_id(provisional.id, "wa-out-1") is True
        assert (await db.messages.get_by_remote_id("S1", "wa-out-1")).id == provisional.id
        assert await db.messages.assign_remote_id(provisional.id, "wa-taken") is False

    @pytest.mark.asyncio
    async def test_mark_chat_read(self, db, chat):
        await db.messages.upsert_message(_data(chat.id, "wa-1"))
        await db.messages.upsert_message(_data(chat.id, "wa-2"))
        await db.messages.upsert_message(_data(chat.id, "wa-3", direction=MessageDirection.FROM_ME))

        assert await db.messages.mark_chat_read(chat.id) == 2
        assert (await db.chats.get_by_id(chat.id)).unread_count == 0
        message = await db.messages.get_by_remote_id("S1", "wa-1")
        assert message.status is MessageStatus.READ

    @pytest.mark.asyncio
    async def test_update_status(self, db, chat):
        stored = (await db.messages.upsert_message(_data(chat.id))).message
        assert await db.messages.update_status(stored.id, MessageStatus.SENT) is True
        assert await db.messages.update_status(stored.id, MessageStatus.PENDING) is False

    @pytest.mark.asyncio
    async def test_set_reaction(self, db, chat):
        stored = (await db.messages.upsert_message(_data(chat.id))).message

        assert await db.messages.set_reaction(stored.id, "👍") is True
        assert (await db.messages.get_by_id(stored.id)).reaction == "👍"
        assert await db.messages.set_reaction(stored.id, "") is True
        assert (await db.messages.get_by_id(stored.id)).reaction is None
        assert await db.messages.set_reaction(9999, "👍") is False


class TestNotifications:
    @pytest.mark.asyncio
    async def test_notifies_on_create_and_change_only(self, db):
        notifier = RecordingNotifier()
        adapter = DatabaseAdapter(db.db_manager, notifier)
        chat = await adapter.chats.upsert_chat("S1", "a@remote")

        await adapter.messages.upsert_message(_data(chat.id))
        await adapter.messages.upsert_message(_data(chat.id))
        await adapter.messages.upsert_message(_data(chat.id, text="edited"))

        assert [e[0] for e in notifier.events] == ["message.upserted", "message.upserted"]
        assert notifier.events[-1][2]["text"] == "edited"

    @pytest.mark.asyncio
    async def test_chat_deletion_notified(self, db):
        notifier = RecordingNotifier()
        adapter = DatabaseAdapter(db.db_manager, notifier)
        chat = await adapter.chats.upsert_chat("S1", "a@remote")
        await adapter.chats.delete_chat(chat.id)

        assert notifier.events[0][0] == "chat.deleted"
        assert notifier.events[0][2]["address"] == "a@remote"


class TestStatusAdvances:
    def test_forward_only(self):
        assert status_advances(MessageStatus.PENDING, MessageStatus.SENT)
        assert not status_advances(MessageStatus.READ, MessageStatus.DELIVERED)
        assert not status_advances(MessageStatus.SENT, MessageStatus.SENT)

    def test_failed(self):
        assert status_advances(MessageStatus.SENT, MessageStatus.FAILED)
        assert not status_advances(MessageStatus.READ, MessageStatus.FAILED)
        assert status_advances(MessageStatus.FAILED, MessageStatus.SENT)
