"""
Inbound events and the single place where raw payloads become typed objects.

Anything that fails here raises DecodeError before a single row is written.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime

from .db.models import ContentType, MessageDirection, MessageStatus
from .db.utils import _strip_tz
from .errors import DecodeError


def parse_timestamp(value, source: str = "payload", name: str = "timestamp") -> datetime:
    """Accept a datetime, epoch seconds/milliseconds or an ISO-8601 string; return naive UTC."""
    if isinstance(value, datetime):
        return _strip_tz(value)
    if isinstance(value, bool):
        raise DecodeError(source, name, "expected a time, got a boolean")
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, UTC).replace(tzinfo=None)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return _strip_tz(datetime.fromisoformat(text))
        except ValueError:
            raise DecodeError(source, name, f"not an ISO-8601 time: {value!r}")
    raise DecodeError(source, name, "missing")


def _str(payload: dict, key: str, source: str, required: bool = False) -> str | None:
    value = payload.get(key)
    if value is None or value == "":
        if required:
            raise DecodeError(source, key, "missing")
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise DecodeError(source, key, f"expected a string, got {type(value).__name__}")
    return str(value).strip()


def _enum(enum_cls, value, source: str, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise DecodeError(source, name, f"{value!r} is not one of {allowed}")


@dataclass
class LocalMessageEvent:
    """A message observed on the messaging platform by a session."""

    session_id: str
    remote_message_id: str
    chat_address: str
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
    chat_name: str | None = None
    quoted_remote_id: str | None = None
    status: MessageStatus | None = None
    edited_at: datetime | None = None
    deleted: bool = False
    reaction: str | None = None
    is_history: bool = False
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, session_id: str, payload: dict) -> "LocalMessageEvent":
        source = "session event"
        if not isinstance(payload, dict):
            raise DecodeError(source, "payload", "expected an object")
        if not session_id:
            raise DecodeError(source, "session_id", "missing")

        if "direction" in payload:
            direction = _enum(MessageDirection, payload["direction"], source, "direction")
        else:
            direction = MessageDirection.FROM_ME if payload.get("from_me") else MessageDirection.FROM_OTHER

        media = payload.get("media") or {}
        if not isinstance(media, dict):
            raise DecodeError(source, "media", "expected an object")
        content_type = _enum(
            ContentType, payload.get("type") or ("media" if media else "text"), source, "type"
        )
        media_size = media.get("size")
        if media_size is not None and (isinstance(media_size, bool) or not isinstance(media_size, int)):
            raise DecodeError(source, "media.size", "expected an integer")

        status = payload.get("status")
        edited_at = payload.get("edited_at")
        extra = payload.get("metadata") or {}
        if not isinstance(extra, dict):
            raise DecodeError(source, "metadata", "expected an object")

        event = cls(
            session_id=session_id,
            remote_message_id=_str(payload, "id", source, required=True),
            chat_address=_str(payload, "chat", source, required=True),
            direction=direction,
            timestamp=parse_timestamp(payload.get("timestamp"), source),
            content_type=content_type,
            text=payload.get("text"),
            media_url=media.get("url"),
            media_mime_type=media.get("mime_type"),
            media_size=media_size,
            media_filename=media.get("filename"),
            sender_address=_str(payload, "sender", source),
            sender_name=_str(payload, "sender_name", source),
            chat_name=_str(payload, "chat_name", source),
            quoted_remote_id=_str(payload, "quoted_id", source),
            status=_enum(MessageStatus, status, source, "status") if status else None,
            edited_at=parse_timestamp(edited_at, source, "edited_at") if edited_at else None,
            deleted=bool(payload.get("deleted", False)),
            reaction=payload.get("reaction"),
            is_history=bool(payload.get("history", False)),
            extra=extra,
        )
        if event.text is not None and not isinstance(event.text, str):
            raise DecodeError(source, "text", "expected a string")
        if event.content_type is ContentType.TEXT and event.text is None and not event.deleted:
            raise DecodeError(source, "text", "missing for a text message")
        return event


@dataclass
class MirrorMessageEvent:
    """A message created on the mirror system side (e.g. an agent reply)."""

    session_id: str
    conversation_id: str
    message_id: str
    content: str | None
    metadata: dict = field(default_factory=dict)
    chat_address: str | None = None
    sender_name: str | None = None
    attachment_url: str | None = None
    attachment_type: str | None = None
    timestamp: datetime | None = None

    @property
    def echo_token(self) -> str | None:
        return self.metadata.get("echo_id") or None

    @property
    def source_token(self) -> str | None:
        return self.metadata.get("source_id") or None

    @property
    def provisional_remote_id(self) -> str:
        """Local remote id used until the platform assigns a real one."""
        return f"mirror:{self.conversation_id}:{self.message_id}"

    @classmethod
    def from_payload(cls, session_id: str, payload: dict) -> "MirrorMessageEvent":
        source = "mirror event"
        if not isinstance(payload, dict):
            raise DecodeError(source, "payload", "expected an object")
        metadata = payload.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise DecodeError(source, "metadata", "expected an object")
        timestamp = payload.get("timestamp")
        event = cls(
            session_id=session_id,
            conversation_id=_str(payload, "conversation_id", source, required=True),
            message_id=_str(payload, "message_id", source, required=True),
            content=payload.get("content"),
            metadata=metadata,
            chat_address=_str(payload, "chat", source),
            sender_name=_str(payload, "sender_name", source),
            attachment_url=_str(payload, "attachment_url", source),
            attachment_type=_str(payload, "attachment_type", source),
            timestamp=parse_timestamp(timestamp, source) if timestamp else None,
        )
        if not event.content and not event.attachment_url:
            raise DecodeError(source, "content", "message has no content or attachment")
        return event


@dataclass
class RetrySweep:
    """Retry sweep of one session, queued on its worker so it is ordered with live events."""

    session_id: str
    batch: int | None = None
