"""
Database adapter bundling the stores over one DatabaseManager.
"""

import logging

from sqlalchemy import func, select

from .base import DatabaseManager
from .chats import ChatStore
from .messages import MessageStore
from .models import Chat, Message, SyncRelation
from .policies import PolicyStore
from .relations import RelationStore

logger = logging.getLogger(__name__)


class DatabaseAdapter:
    """Entry point to every store. Pass a notifier to get mutation webhooks."""

    def __init__(self, db_manager: DatabaseManager, notifier=None):
        self.db_manager = db_manager
        self.chats = ChatStore(db_manager, notifier)
        self.messages = MessageStore(db_manager, notifier)
        self.relations = RelationStore(db_manager)
        self.policies = PolicyStore(db_manager)

    async def get_statistics(self, session_id: str) -> dict:
        """Counts of chats, messages and relations (by status) for a session."""
        async with self.db_manager.get_session() as session:
            chat_count = await session.scalar(select(func.count(Chat.id)).where(Chat.session_id == session_id))
            message_count = await session.scalar(
                select(func.count(Message.id)).where(Message.session_id == session_id)
            )
            unread = await session.scalar(
                select(func.coalesce(func.sum(Chat.unread_count), 0)).where(Chat.session_id == session_id)
            )
            relation_count = await session.scalar(
                select(func.count(SyncRelation.id)).where(SyncRelation.session_id == session_id)
            )

        return {
            "session_id": session_id,
            "chats": chat_count or 0,
            "messages": message_count or 0,
            "unread": unread or 0,
            "relations": relation_count or 0,
            "relations_by_status": await self.relations.count_by_status(session_id),
        }

    async def close(self) -> None:
        await self.db_manager.close()
