"""
Chat aggregate: per-conversation summary rows.

unread_count and last_activity_at are only ever changed by the narrow,
single-statement mutations below (the message store calls them in the same
transaction as the message write). upsert_chat never touches them.
"""

import logging
from datetime import datetime

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError
from .base import DatabaseManager
from .models import Chat, Message, SyncRelation, utcnow
from .utils import _strip_tz, dialect_insert

logger = logging.getLogger(__name__)

# Attributes a caller may set through upsert_chat
_MERGEABLE = ("name", "is_group", "is_archived", "is_pinned", "is_muted")


def _require(value: str | None, field: str) -> str:
    if not value or not value.strip():
        raise ValidationError(f"{field} is required")
    return value.strip()


async def touch_last_activity(session: AsyncSession, chat_id: int, timestamp: datetime) -> bool:
    """Move last_activity_at forward to ``timestamp``; never moves it backwards."""
    timestamp = _strip_tz(timestamp)
    result = await session.execute(
        update(Chat)
        .where(Chat.id == chat_id)
        .where(or_(Chat.last_activity_at.is_(None), Chat.last_activity_at < timestamp))
        .values(last_activity_at=timestamp)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def increment_unread(session: AsyncSession, chat_id: int, by: int = 1) -> None:
    await session.execute(
        update(Chat)
        .where(Chat.id == chat_id)
        .values(unread_count=Chat.unread_count + by)
        .execution_options(synchronize_session=False)
    )


class ChatStore:
    """Chats of all sessions, keyed by (session_id, address)."""

    def __init__(self, db: DatabaseManager, notifier=None):
        self.db = db
        self.notifier = notifier

    async def upsert_chat(self, session_id: str, address: str, **attrs) -> Chat:
        """
        Create the chat if missing, then merge only the attributes given.

        Args:
            session_id: Owning session
            address: Remote conversation address
            **attrs: Any of name, is_group, is_archived, is_pinned, is_muted,
                     extra (merged key by key into the stored metadata)

        Returns:
            The canonical chat row
        """
        session_id = _require(session_id, "session_id")
        address = _require(address, "address")
        unknown = set(attrs) - set(_MERGEABLE) - {"extra"}
        if unknown:
            raise ValidationError(f"unknown chat attributes: {', '.join(sorted(unknown))}")

        is_group = attrs.get("is_group")
        if is_group is None:
            is_group = address.endswith("@g.us")

        async with self.db.get_session() as session:
            stmt = (
                dialect_insert(self.db.dialect_name, Chat.__table__)
                .values(
                    session_id=session_id,
                    address=address,
                    name=attrs.get("name"),
                    is_group=is_group,
                    metadata={},
                )
                .on_conflict_do_nothing(index_elements=["session_id", "address"])
            )
            await session.execute(stmt)

            chat = await self._select(session, session_id, address)
            for field in _MERGEABLE:
                value = attrs.get(field)
                if value is not None:
                    setattr(chat, field, value)
            if attrs.get("extra"):
                # Reassign so the JSON column is flagged dirty
                chat.extra = {**(chat.extra or {}), **attrs["extra"]}
            await session.flush()
            return chat

    async def _select(self, session: AsyncSession, session_id: str, address: str) -> Chat:
        result = await session.execute(select(Chat).where(Chat.session_id == session_id, Chat.address == address))
        return result.scalar_one()

    async def get_chat(self, session_id: str, address: str) -> Chat | None:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Chat).where(Chat.session_id == session_id, Chat.address == address)
            )
            return result.scalar_one_or_none()

    async def get_by_id(self, chat_id: int) -> Chat | None:
        async with self.db.get_session() as session:
            return await session.get(Chat, chat_id)

    async def get_by_mirror_conversation(self, session_id: str, conversation_id: str) -> Chat | None:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Chat)
                .where(Chat.session_id == session_id, Chat.mirror_conversation_id == conversation_id)
                .order_by(Chat.id)
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def list_chats(
        self,
        session_id: str,
        include_archived: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Chat]:
        """Chats of a session, most recent activity first."""
        query = select(Chat).where(Chat.session_id == session_id)
        if not include_archived:
            query = query.where(Chat.is_archived.is_(False))
        query = query.order_by(Chat.last_activity_at.desc().nulls_last(), Chat.id.desc()).limit(limit).offset(offset)
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def _set_field(self, chat_id: int, **values) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(Chat).where(Chat.id == chat_id).values(**values).execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def set_unread_count(self, chat_id: int, count: int) -> bool:
        if count < 0:
            raise ValidationError("unread count cannot be negative")
        return await self._set_field(chat_id, unread_count=count)

    async def increment_unread(self, chat_id: int, by: int = 1) -> None:
        async with self.db.get_session() as session:
            await increment_unread(session, chat_id, by)

    async def touch_last_activity(self, chat_id: int, timestamp: datetime) -> bool:
        async with self.db.get_session() as session:
            return await touch_last_activity(session, chat_id, timestamp)

    async def set_archived(self, chat_id: int, archived: bool) -> bool:
        return await self._set_field(chat_id, is_archived=archived)

    async def set_pinned(self, chat_id: int, pinned: bool) -> bool:
        return await self._set_field(chat_id, is_pinned=pinned)

    async def set_muted(self, chat_id: int, muted: bool) -> bool:
        return await self._set_field(chat_id, is_muted=muted)

    async def set_mirror_conversation(self, chat_id: int, conversation_id: str) -> bool:
        return await self._set_field(chat_id, mirror_conversation_id=conversation_id)

    async def delete_chat(self, chat_id: int) -> bool:
        """
        Delete a chat and everything hanging off it.

        This includes:
        - Sync relations of the chat's messages
        - All messages in the chat
        - The chat record
        """
        async with self.db.get_session() as session:
            chat = await session.get(Chat, chat_id)
            if chat is None:
                return False
            session_id, address = chat.session_id, chat.address

            message_ids = select(Message.id).where(Message.chat_id == chat_id)
            relations = await session.execute(
                delete(SyncRelation)
                .where(SyncRelation.local_message_id.in_(message_ids))
                .execution_options(synchronize_session=False)
            )
            # Quotes from other chats must not dangle
            await session.execute(
                update(Message)
                .where(Message.quoted_message_id.in_(message_ids), Message.chat_id != chat_id)
                .values(quoted_message_id=None)
                .execution_options(synchronize_session=False)
            )
            messages = await session.execute(
                delete(Message).where(Message.chat_id == chat_id).execution_options(synchronize_session=False)
            )
            await session.delete(chat)

        logger.info(
            f"Deleted chat {session_id}/{address}: {messages.rowcount} messages, "
            f"{relations.rowcount} sync relations"
        )
        if self.notifier:
            self.notifier.notify("chat.deleted", session_id, {"address": address, "deleted_at": utcnow().isoformat() + "Z"})
        return True
