"""
SQLAlchemy ORM models for the message bridge.

Four tables:
- chats: one row per (session, remote conversation address)
- messages: one row per (session, remote message id)
- sync_relations: local message <-> mirror system message mapping
- bridge_policies: per-session mirroring settings (read-only for the engine)

Status, direction and type columns are closed enums stored as their string
values, so a row can never carry a value the code does not handle.
"""

import enum
from datetime import UTC, datetime, timedelta

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (all columns are naive UTC)."""
    return datetime.now(UTC).replace(tzinfo=None)


class MessageDirection(str, enum.Enum):
    FROM_ME = "from-me"
    FROM_OTHER = "from-other"


class ContentType(str, enum.Enum):
    TEXT = "text"
    MEDIA = "media"
    SYSTEM = "system"


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class RelationDirection(str, enum.Enum):
    OUTBOUND = "outbound-to-mirror"
    INBOUND = "inbound-from-mirror"


class SyncStatus(str, enum.Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class ErrorKind(str, enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class Authority(str, enum.Enum):
    """Which side wins when both have edited the same mirrored message."""

    PLATFORM = "platform"
    MIRROR = "mirror"


def _enum(enum_cls: type[enum.Enum]) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Chat(Base):
    """Chats table - direct and group conversations of a session."""

    __tablename__ = "chats"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    address: Mapped[str] = mapped_column(String(255), nullable=False)  # e.g. 5511999999999@s.whatsapp.net
    name: Mapped[str | None] = mapped_column(String(255))
    is_group: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime)
    unread_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    is_muted: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    # Cached after the mirror client first resolves a conversation for this chat
    mirror_conversation_id: Mapped[str | None] = mapped_column(String(64))
    extra: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("session_id", "address", name="uq_chats_session_address"),
        # Listing: WHERE session_id = ? ORDER BY last_activity_at DESC
        Index("idx_chats_session_activity", "session_id", "last_activity_at"),
        Index("idx_chats_mirror_conversation", "session_id", "mirror_conversation_id"),
    )

    def __repr__(self) -> str:
        return f"<Chat {self.id} {self.session_id}/{self.address}>"


class Message(Base):
    """Messages table - every message observed in a session."""

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    chat_id: Mapped[int] = mapped_column(Integer, ForeignKey("chats.id", ondelete="CASCADE"), nullable=False)
    # Assigned by the messaging platform; the natural idempotency key
    remote_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    direction: Mapped[MessageDirection] = mapped_column(_enum(MessageDirection), nullable=False)
    content_type: Mapped[ContentType] = mapped_column(_enum(ContentType), nullable=False, default=ContentType.TEXT)
    text: Mapped[str | None] = mapped_column(Text)
    media_url: Mapped[str | None] = mapped_column(Text)
    media_mime_type: Mapped[str | None] = mapped_column(String(100))
    media_size: Mapped[int | None] = mapped_column(BigInteger)
    media_filename: Mapped[str | None] = mapped_column(String(255))
    sender_address: Mapped[str | None] = mapped_column(String(255))
    sender_name: Mapped[str | None] = mapped_column(String(255))
    quoted_message_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("messages.id", ondelete="SET NULL"))
    status: Mapped[MessageStatus] = mapped_column(_enum(MessageStatus), nullable=False, default=MessageStatus.PENDING)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    edited_at: Mapped[datetime | None] = mapped_column(DateTime)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime)
    reaction: Mapped[str | None] = mapped_column(String(32))
    extra: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("session_id", "remote_message_id", name="uq_messages_session_remote"),
        # Composite index for fast pagination: WHERE chat_id = ? ORDER BY timestamp DESC
        Index("idx_messages_chat_timestamp_desc", "chat_id", timestamp.desc()),
        Index("idx_messages_quoted", "quoted_message_id"),
    )

    @property
    def from_me(self) -> bool:
        return self.direction is MessageDirection.FROM_ME

    def __repr__(self) -> str:
        return f"<Message {self.id} {self.session_id}/{self.remote_message_id}>"


class SyncRelation(Base):
    """Sync relations table - maps a local message to its mirror system copy.

    A local message has at most one relation, ever. The echo/source tokens let
    the bridge recognise its own relays when the mirror system reflects them
    back.
    """

    __tablename__ = "sync_relations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False)
    local_message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    mirror_conversation_id: Mapped[str | None] = mapped_column(String(64))
    mirror_message_id: Mapped[str | None] = mapped_column(String(64))
    direction: Mapped[RelationDirection] = mapped_column(_enum(RelationDirection), nullable=False)
    status: Mapped[SyncStatus] = mapped_column(_enum(SyncStatus), nullable=False, default=SyncStatus.PENDING)
    echo_token: Mapped[str | None] = mapped_column(String(64))
    source_token: Mapped[str | None] = mapped_column(String(255))  # WAID:<remote message id>
    last_error: Mapped[str | None] = mapped_column(Text)
    error_kind: Mapped[ErrorKind | None] = mapped_column(_enum(ErrorKind))
    retry_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime)
    # Only for fields specific to one mirror implementation
    extra: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("local_message_id", name="uq_sync_relations_local_message"),
        # NULLs are distinct, so the pair is only enforced once both ids exist
        UniqueConstraint(
            "session_id", "mirror_conversation_id", "mirror_message_id", name="uq_sync_relations_mirror_message"
        ),
        Index("idx_sync_relations_echo", "session_id", "echo_token"),
        Index("idx_sync_relations_source", "session_id", "source_token"),
        # Retry sweep: WHERE session_id = ? AND status = 'failed' ORDER BY created_at
        Index("idx_sync_relations_status", "session_id", "status", "created_at"),
    )

    @property
    def has_mirror_ids(self) -> bool:
        return self.mirror_conversation_id is not None and self.mirror_message_id is not None

    def __repr__(self) -> str:
        return f"<SyncRelation {self.id} msg={self.local_message_id} {self.status.value}>"


class BridgePolicy(Base):
    """Bridge policies table - per-session mirroring settings."""

    __tablename__ = "bridge_policies"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, server_default="1")
    # Exact addresses, or suffixes starting with "@" (e.g. "@g.us" for all groups)
    excluded_addresses: Mapped[list] = mapped_column(JSON, default=list)
    auto_create_chat: Mapped[bool] = mapped_column(Boolean, default=True, server_default="1")
    import_history: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    history_window_days: Mapped[int] = mapped_column(Integer, default=0, server_default="0")  # 0 = no limit
    authority: Mapped[Authority] = mapped_column(_enum(Authority), nullable=False, default=Authority.PLATFORM)
    mirror_url: Mapped[str | None] = mapped_column(String(500))
    mirror_account_id: Mapped[str | None] = mapped_column(String(64))
    mirror_inbox_id: Mapped[str | None] = mapped_column(String(64))
    mirror_token: Mapped[str | None] = mapped_column(String(255))
    # A resolved mirror conversation is reused instead of opening a new one
    reopen_conversation: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    conversation_pending: Mapped[bool] = mapped_column(Boolean, default=True, server_default="1")
    # Appended to agent replies before they reach the platform
    sign_messages: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    sign_delimiter: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, server_default=func.now())

    # The platform's status feed is never a conversation worth mirroring
    ALWAYS_EXCLUDED = ("status@broadcast",)

    def is_excluded(self, address: str) -> bool:
        if address in self.ALWAYS_EXCLUDED:
            return True
        for entry in self.excluded_addresses or []:
            if entry.startswith("@"):
                if address.endswith(entry):
                    return True
            elif entry == address:
                return True
        return False

    def allows_history(self, timestamp: datetime, now: datetime | None = None) -> bool:
        """Whether a history-sync message with this timestamp may be mirrored."""
        if not self.import_history:
            return False
        if not self.history_window_days:
            return True
        now = now or utcnow()
        return timestamp >= now - timedelta(days=self.history_window_days)

    def __repr__(self) -> str:
        return f"<BridgePolicy {self.session_id} enabled={self.enabled}>"
