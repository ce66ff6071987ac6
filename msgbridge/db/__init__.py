"""
Persistence for the bridge: chats, messages, sync relations and per-session
policies, on SQLite or PostgreSQL through async SQLAlchemy.

    db = await create_adapter()
    chat = await db.chats.upsert_chat("S1", "5511999999999@s.whatsapp.net", name="Alice")
    result = await db.messages.upsert_message(data)

The database is chosen by DATABASE_URL, or by DB_TYPE with DB_PATH (SQLite,
default /data/msgbridge.db) or the POSTGRES_* variables.
"""

from .adapter import DatabaseAdapter
from .base import DatabaseManager, init_database
from .models import (
    Authority,
    Base,
    BridgePolicy,
    Chat,
    ContentType,
    ErrorKind,
    Message,
    MessageDirection,
    MessageStatus,
    RelationDirection,
    SyncRelation,
    SyncStatus,
)

__all__ = [
    # Tables
    "Base",
    "Chat",
    "Message",
    "SyncRelation",
    "BridgePolicy",
    # Enums
    "Authority",
    "ContentType",
    "ErrorKind",
    "MessageDirection",
    "MessageStatus",
    "RelationDirection",
    "SyncStatus",
    # Engine
    "DatabaseManager",
    "init_database",
    # Stores
    "DatabaseAdapter",
    "create_adapter",
]


async def create_adapter(database_url: str | None = None, notifier=None) -> DatabaseAdapter:
    """Open the database (creating SQLite tables if needed) and return the stores over it."""
    db_manager = await init_database(database_url)
    return DatabaseAdapter(db_manager, notifier)
