"""
Message store.

(session_id, remote_message_id) is the idempotency key: delivering the same
platform event any number of times yields one row, later deliveries only
merge the mutable fields (content edits, status, reaction, soft delete).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ValidationError
from . import chats
from .base import DatabaseManager
from .models import Chat, ContentType, Message, MessageDirection, MessageStatus, utcnow
from .serializers import message_to_dict
from .utils import _strip_tz, dialect_insert

logger = logging.getLogger(__name__)

# Delivery status only moves forward; FAILED may replace anything but READ
_STATUS_RANK = {
    MessageStatus.PENDING: 0,
    MessageStatus.SENT: 1,
    MessageStatus.DELIVERED: 2,
    MessageStatus.READ: 3,
}

_CONTENT_FIELDS = ("text", "media_url", "media_mime_type", "media_size", "media_filename")


def status_advances(current: MessageStatus, new: MessageStatus) -> bool:
    if new == current:
        return False
    if new is MessageStatus.FAILED:
        return current is not MessageStatus.READ
    if current is MessageStatus.FAILED:
        return True
    return _STATUS_RANK[new] > _STATUS_RANK[current]


@dataclass
class MessageData:
    """A message as observed, ready to be written."""

    session_id: str
    chat_id: int
    remote_message_id: str
    direction: MessageDirection
    timestamp: datetime
    content_type: ContentType = ContentType.TEXT
    text: str | None = None
    media_url: str | None = None
    media_mime_type: str | None = None
    media_size: int | None = None
    media_filename: str | None = None
    sender_address: str | None = None
    sender_name: str | None = None
    quoted_remote_id: str | None = None
    status: MessageStatus | None = None
    edited_at: datetime | None = None
    is_deleted: bool = False
    reaction: str | None = None  # None = unchanged, "" = removed
    extra: dict = field(default_factory=dict)

    def validate(self) -> None:
        if not self.session_id:
            raise ValidationError("session_id is required")
        if not self.remote_message_id or not self.remote_message_id.strip():
            raise ValidationError("remote_message_id is required")
        if self.chat_id is None:
            raise ValidationError("chat_id is required")
        if self.timestamp is None:
            raise ValidationError("timestamp is required")
        if self.content_type is ContentType.TEXT and self.text is None and not self.is_deleted:
            raise ValidationError("text messages need text")
        if self.content_type is ContentType.MEDIA and not (self.media_url or self.media_filename):
            raise ValidationError("media messages need a media url or filename")


@dataclass
class UpsertResult:
    message: Message
    created: bool
    content_changed: bool


class MessageStore:
    """Messages of all sessions, keyed by (session_id, remote_message_id)."""

    def __init__(self, db: DatabaseManager, notifier=None):
        self.db = db
        self.notifier = notifier

    async def upsert_message(self, data: MessageData) -> UpsertResult:
        """
        Insert the message if unseen, otherwise merge mutable fields into it.

        The chat's last activity (and unread counter, for new messages from
        others) is updated in the same transaction.

        Returns:
            UpsertResult with the canonical row
        """
        data.validate()
        timestamp = _strip_tz(data.timestamp)

        async with self.db.get_session() as session:
            quoted_id = None
            if data.quoted_remote_id:
                quoted = await self._select_remote(session, data.session_id, data.quoted_remote_id)
                quoted_id = quoted.id if quoted else None

            stmt = (
                dialect_insert(self.db.dialect_name, Message.__table__)
                .values(
                    session_id=data.session_id,
                    chat_id=data.chat_id,
                    remote_message_id=data.remote_message_id,
                    direction=data.direction.value,
                    content_type=data.content_type.value,
                    text=data.text,
                    media_url=data.media_url,
                    media_mime_type=data.media_mime_type,
                    media_size=data.media_size,
                    media_filename=data.media_filename,
                    sender_address=data.sender_address,
                    sender_name=data.sender_name,
                    quoted_message_id=quoted_id,
                    status=(data.status or MessageStatus.PENDING).value,
                    timestamp=timestamp,
                    edited_at=_strip_tz(data.edited_at),
                    is_deleted=data.is_deleted,
                    deleted_at=utcnow() if data.is_deleted else None,
                    reaction=data.reaction or None,
                    metadata=data.extra or {},
                )
                .on_conflict_do_nothing(index_elements=["session_id", "remote_message_id"])
                .returning(Message.__table__.c.id)
            )
            created = (await session.execute(stmt)).scalar_one_or_none() is not None
            message = await self._select_remote(session, data.session_id, data.remote_message_id)

            if message.chat_id != data.chat_id:
                raise ValidationError(
                    f"message {data.remote_message_id} already belongs to chat {message.chat_id}, not {data.chat_id}"
                )

            if created:
                content_changed = True
                await chats.touch_last_activity(session, data.chat_id, timestamp)
                if data.direction is MessageDirection.FROM_OTHER:
                    await chats.increment_unread(session, data.chat_id)
            else:
                content_changed = self._merge(message, data, quoted_id)
                if content_changed:
                    await chats.touch_last_activity(session, data.chat_id, message.edited_at or timestamp)

            await session.flush()

        if created:
            logger.debug(f"Stored message {data.session_id}/{data.remote_message_id}")
        if (created or content_changed) and self.notifier:
            self.notifier.notify("message.upserted", data.session_id, message_to_dict(message))
        return UpsertResult(message=message, created=created, content_changed=content_changed)

    def _merge(self, message: Message, data: MessageData, quoted_id: int | None) -> bool:
        """Apply mutable fields of ``data`` onto an existing row. Returns True on content change."""
        content_changed = False
        for name in _CONTENT_FIELDS:
            value = getattr(data, name)
            if value is not None and value != getattr(message, name):
                setattr(message, name, value)
                content_changed = True
        if content_changed:
            message.edited_at = _strip_tz(data.edited_at) or utcnow()
        elif data.edited_at and message.edited_at is None:
            message.edited_at = _strip_tz(data.edited_at)

        if data.status is not None and status_advances(message.status, data.status):
            message.status = data.status
        if data.reaction is not None:
            message.reaction = data.reaction or None
        if data.is_deleted and not message.is_deleted:
            message.is_deleted = True
            message.deleted_at = utcnow()
        if quoted_id is not None and message.quoted_message_id is None:
            message.quoted_message_id = quoted_id
        if data.sender_name and not message.sender_name:
            message.sender_name = data.sender_name
        if data.extra:
            message.extra = {**(message.extra or {}), **data.extra}
        return content_changed

    async def _select_remote(self, session: AsyncSession, session_id: str, remote_message_id: str) -> Message | None:
        result = await session.execute(
            select(Message).where(Message.session_id == session_id, Message.remote_message_id == remote_message_id)
        )
        return result.scalar_one_or_none()

    async def get_by_remote_id(self, session_id: str, remote_message_id: str) -> Message | None:
        async with self.db.get_session() as session:
            return await self._select_remote(session, session_id, remote_message_id)

    async def get_by_id(self, message_id: int) -> Message | None:
        async with self.db.get_session() as session:
            return await session.get(Message, message_id)

    async def mark_deleted(self, message_id: int) -> Message | None:
        """Soft-delete a message. It stays queryable by id but leaves listings."""
        async with self.db.get_session() as session:
            message = await session.get(Message, message_id)
            if message is None:
                return None
            if not message.is_deleted:
                message.is_deleted = True
                message.deleted_at = utcnow()
                await session.flush()

        if self.notifier:
            self.notifier.notify("message.deleted", message.session_id, message_to_dict(message))
        return message

    async def list_by_chat(
        self,
        chat_id: int,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Message]:
        """Messages of a chat, newest first, soft-deleted rows excluded."""
        query = select(Message).where(Message.chat_id == chat_id, Message.is_deleted.is_(False))
        if start:
            query = query.where(Message.timestamp >= _strip_tz(start))
        if end:
            query = query.where(Message.timestamp <= _strip_tz(end))
        query = query.order_by(Message.timestamp.desc(), Message.id.desc()).limit(limit).offset(offset)

        async with self.db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def update_status(self, message_id: int, status: MessageStatus) -> bool:
        """Advance delivery status. Returns False if it would move backwards."""
        async with self.db.get_session() as session:
            message = await session.get(Message, message_id)
            if message is None or not status_advances(message.status, status):
                return False
            message.status = status
            return True

    async def set_reaction(self, message_id: int, reaction: str | None) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(Message)
                .where(Message.id == message_id)
                .values(reaction=reaction or None)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def assign_remote_id(self, message_id: int, remote_message_id: str) -> bool:
        """
        Replace a provisional remote id with the one the platform assigned.

        Returns False if another row already owns that remote id.
        """
        try:
            async with self.db.get_session() as session:
                message = await session.get(Message, message_id)
                if message is None:
                    return False
                taken = await self._select_remote(session, message.session_id, remote_message_id)
                if taken is not None and taken.id != message_id:
                    logger.warning(
                        f"Remote id {remote_message_id} already stored as message {taken.id}, "
                        f"keeping provisional id on {message_id}"
                    )
                    return False
                message.remote_message_id = remote_message_id
            return True
        except IntegrityError:
            logger.warning(f"Lost race assigning remote id {remote_message_id} to message {message_id}")
            return False

    async def mark_chat_read(self, chat_id: int) -> int:
        """Mark every inbound message of the chat read and reset its unread counter."""
        async with self.db.get_session() as session:
            result = await session.execute(
                update(Message)
                .where(
                    Message.chat_id == chat_id,
                    Message.direction == MessageDirection.FROM_OTHER,
                    Message.status != MessageStatus.READ,
                    Message.is_deleted.is_(False),
                )
                .values(status=MessageStatus.READ)
                .execution_options(synchronize_session=False)
            )
            await session.execute(
                update(Chat).where(Chat.id == chat_id).values(unread_count=0).execution_options(synchronize_session=False)
            )
            return result.rowcount
