"""Plain-dict views of the ORM rows, for webhooks and the HTTP API."""

from datetime import datetime

from .models import BridgePolicy, Chat, Message, SyncRelation


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() + "Z" if dt else None


def chat_to_dict(chat: Chat) -> dict:
    return {
        "id": chat.id,
        "session_id": chat.session_id,
        "address": chat.address,
        "name": chat.name,
        "is_group": chat.is_group,
        "last_activity_at": _iso(chat.last_activity_at),
        "unread_count": chat.unread_count,
        "is_archived": chat.is_archived,
        "is_pinned": chat.is_pinned,
        "is_muted": chat.is_muted,
        "mirror_conversation_id": chat.mirror_conversation_id,
        "metadata": chat.extra or {},
    }


def message_to_dict(message: Message) -> dict:
    media = None
    if message.media_url or message.media_filename:
        media = {
            "url": message.media_url,
            "mime_type": message.media_mime_type,
            "size": message.media_size,
            "filename": message.media_filename,
        }
    return {
        "id": message.id,
        "session_id": message.session_id,
        "chat_id": message.chat_id,
        "remote_message_id": message.remote_message_id,
        "direction": message.direction.value,
        "content_type": message.content_type.value,
        "text": message.text,
        "media": media,
        "sender_address": message.sender_address,
        "sender_name": message.sender_name,
        "quoted_message_id": message.quoted_message_id,
        "status": message.status.value,
        "timestamp": _iso(message.timestamp),
        "edited_at": _iso(message.edited_at),
        "is_deleted": message.is_deleted,
        "deleted_at": _iso(message.deleted_at),
        "reaction": message.reaction,
        "metadata": message.extra or {},
    }


def relation_to_dict(relation: SyncRelation) -> dict:
    return {
        "id": relation.id,
        "session_id": relation.session_id,
        "local_message_id": relation.local_message_id,
        "mirror_conversation_id": relation.mirror_conversation_id,
        "mirror_message_id": relation.mirror_message_id,
        "direction": relation.direction.value,
        "status": relation.status.value,
        "echo_token": relation.echo_token,
        "source_token": relation.source_token,
        "last_error": relation.last_error,
        "error_kind": relation.error_kind.value if relation.error_kind else None,
        "retry_count": relation.retry_count,
        "next_retry_at": _iso(relation.next_retry_at),
        "last_sync_at": _iso(relation.last_sync_at),
        "created_at": _iso(relation.created_at),
    }


def policy_to_dict(policy: BridgePolicy) -> dict:
    # mirror_token is a secret
    return {
        "session_id": policy.session_id,
        "enabled": policy.enabled,
        "excluded_addresses": list(policy.excluded_addresses or []),
        "auto_create_chat": policy.auto_create_chat,
        "import_history": policy.import_history,
        "history_window_days": policy.history_window_days,
        "authority": policy.authority.value,
        "mirror_url": policy.mirror_url,
        "mirror_account_id": policy.mirror_account_id,
        "mirror_inbox_id": policy.mirror_inbox_id,
        "reopen_conversation": policy.reopen_conversation,
        "conversation_pending": policy.conversation_pending,
        "sign_messages": policy.sign_messages,
        "sign_delimiter": policy.sign_delimiter,
    }
