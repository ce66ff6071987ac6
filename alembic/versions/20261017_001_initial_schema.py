"""Initial schema: chats, messages, sync_relations, bridge_policies.

Revision ID: 001
Revises:
Create Date: 2026-10-17

Enum-like columns (direction, status, content_type, error_kind, authority)
are plain VARCHAR(32); the ORM validates the values.
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Create all bridge tables."""
    op.create_table(
        "chats",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("address", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("is_group", sa.Boolean(), server_default="0", nullable=False),
        sa.Column("last_activity_at", sa.DateTime(), nullable=True),
        sa.Column("unread_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("is_archived", sa.Boolean(), server_default="0", nullable=False),
        sa.Column("is_pinned", sa.Boolean(), server_default="0", nullable=False),
        sa.Column("is_muted", sa.Boolean(), server_default="0", nullable=False),
        sa.Column("mirror_conversation_id", sa.String(64), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("session_id", "address", name="uq_chats_session_address"),
    )
    op.create_index("idx_chats_session_activity", "chats", ["session_id", "last_activity_at"])
    op.create_index("idx_chats_mirror_conversation", "chats", ["session_id", "mirror_conversation_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("chat_id", sa.Integer(), nullable=False),
        sa.Column("remote_message_id", sa.String(255), nullable=False),
        sa.Column("direction", sa.String(32), nullable=False),
        sa.Column("content_type", sa.String(32), nullable=False),
        sa.Column("text", sa.Text(), nullable=True),
        sa.Column("media_url", sa.Text(), nullable=True),
        sa.Column("media_mime_type", sa.String(100), nullable=True),
        sa.Column("media_size", sa.BigInteger(), nullable=True),
        sa.Column("media_filename", sa.String(255), nullable=True),
        sa.Column("sender_address", sa.String(255), nullable=True),
        sa.Column("sender_name", sa.String(255), nullable=True),
        sa.Column("quoted_message_id", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("edited_at", sa.DateTime(), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), server_default="0", nullable=False),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        sa.Column("reaction", sa.String(32), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["chat_id"], ["chats.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["quoted_message_id"], ["messages.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("session_id", "remote_message_id", name="uq_messages_session_remote"),
    )
    # WHERE chat_id = ? ORDER BY timestamp DESC LIMIT 50
    op.create_index("idx_messages_chat_timestamp_desc", "messages", ["chat_id", sa.text("timestamp DESC")])
    op.create_index("idx_messages_quoted", "messages", ["quoted_message_id"])

    op.create_table(
        "sync_relations",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("local_message_id", sa.Integer(), nullable=False),
        sa.Column("mirror_conversation_id", sa.String(64), nullable=True),
        sa.Column("mirror_message_id", sa.String(64), nullable=True),
        sa.Column("direction", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("echo_token", sa.String(64), nullable=True),
        sa.Column("source_token", sa.String(255), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.String(32), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("next_retry_at", sa.DateTime(), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["local_message_id"], ["messages.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("local_message_id", name="uq_sync_relations_local_message"),
        sa.UniqueConstraint(
            "session_id", "mirror_conversation_id", "mirror_message_id", name="uq_sync_relations_mirror_message"
        ),
    )
    op.create_index("idx_sync_relations_echo", "sync_relations", ["session_id", "echo_token"])
    op.create_index("idx_sync_relations_source", "sync_relations", ["session_id", "source_token"])
    op.create_index("idx_sync_relations_status", "sync_relations", ["session_id", "status", "created_at"])

    op.create_table(
        "bridge_policies",
        sa.Column("session_id", sa.String(64), nullable=False),
        sa.Column("enabled", sa.Boolean(), server_default="1", nullable=False),
        sa.Column("excluded_addresses", sa.JSON(), nullable=True),
        sa.Column("auto_create_chat", sa.Boolean(), server_default="1", nullable=False),
        sa.Column("import_history", sa.Boolean(), server_default="0", nullable=False),
        sa.Column("history_window_days", sa.Integer(), server_default="0", nullable=False),
        sa.Column("authority", sa.String(32), nullable=False, server_default="platform"),
        sa.Column("mirror_url", sa.String(500), nullable=True),
        sa.Column("mirror_account_id", sa.String(64), nullable=True),
        sa.Column("mirror_inbox_id", sa.String(64), nullable=True),
        sa.Column("mirror_token", sa.String(255), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("session_id"),
    )


def downgrade() -> None:
    """Drop all bridge tables."""
    op.drop_table("bridge_policies")
    op.drop_index("idx_sync_relations_status", table_name="sync_relations")
    op.drop_index("idx_sync_relations_source", table_name="sync_relations")
    op.drop_index("idx_sync_relations_echo", table_name="sync_relations")
    op.drop_table("sync_relations")
    op.drop_index("idx_messages_quoted", table_name="messages")
    op.drop_index("idx_messages_chat_timestamp_desc", table_name="messages")
    op.drop_table("messages")
    op.drop_index("idx_chats_mirror_conversation", table_name="chats")
    op.drop_index("idx_chats_session_activity", table_name="chats")
    op.drop_table("chats")
