"""
Reconciliation engine.

Keeps the local message store and the mirror system consistent in both
directions:

- local message observed: store it, then create (or update in place) its
  mirror copy, tracked by an outbound relation
- mirror message observed: drop it if it is our own relay reflected back,
  otherwise store it locally, record an inbound relation and deliver it
  through the session gateway
- retry sweep: re-run failed relations whose backoff has elapsed

The local write always commits before the mirror system is called, and a
failed external call only ever marks the relation failed.
"""

import enum
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import Config
from .db.adapter import DatabaseAdapter
from .db.messages import MessageData
from .db.models import (
    Authority,
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
    utcnow,
)
from .db.relations import RelationData
from .errors import ExternalError
from .events import LocalMessageEvent, MirrorMessageEvent, RetrySweep
from .gateway import SessionGateway
from .locks import KeyedLock
from .mirror import ChatwootClient, MirrorClient, MirrorContent, format_reply

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    CREATED = "created"  # a new mirror message (or local message, for inbound) exists
    UPDATED = "updated"  # an existing mirror message was updated in place
    UNCHANGED = "unchanged"  # duplicate delivery, nothing to send
    SKIPPED = "skipped"  # policy says no
    ECHO = "echo"  # our own relay reflected back
    FAILED = "failed"  # relation recorded as failed


@dataclass
class ReconcileResult:
    outcome: Outcome
    message_id: int | None = None
    relation_id: int | None = None
    mirror_message_id: str | None = None
    detail: str | None = None


def source_token_for(remote_message_id: str) -> str:
    return f"WAID:{remote_message_id}"


def _new_echo_token() -> str:
    return f"ek-{uuid.uuid4().hex}"


class ReconciliationEngine:
    """
    Bridge between one database and any number of sessions' mirror inboxes.

    Args:
        db: Database adapter
        gateway: Send primitive of the session layer
        config: Runtime configuration (retry ceiling and backoff)
        mirror_factory: Builds a MirrorClient from a session's policy.
                        Defaults to a ChatwootClient.
        token_factory: Mints echo tokens
        clock: Returns the current naive UTC time
    """

    # A pending relation untouched this long belongs to an attempt that died
    STALE_PENDING = timedelta(minutes=10)

    def __init__(
        self,
        db: DatabaseAdapter,
        gateway: SessionGateway,
        config: Config,
        mirror_factory: Callable[[BridgePolicy], MirrorClient] | None = None,
        token_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.config = config
        self._mirror_factory = mirror_factory or self._chatwoot_for
        self._token_factory = token_factory or _new_echo_token
        self._now = clock or utcnow
        self._locks = KeyedLock()
        self._mirrors: dict[tuple, MirrorClient] = {}

    def _chatwoot_for(self, policy: BridgePolicy) -> MirrorClient:
        return ChatwootClient.from_policy(policy, timeout=self.config.mirror_timeout)

    def _mirror_for(self, policy: BridgePolicy) -> MirrorClient:
        # Keyed on the connection settings so a policy change gets a fresh client
        key = (
            policy.session_id,
            policy.mirror_url,
            policy.mirror_account_id,
            policy.mirror_inbox_id,
            policy.mirror_token,
            policy.reopen_conversation,
            policy.conversation_pending,
        )
        client = self._mirrors.get(key)
        if client is None:
            client = self._mirrors[key] = self._mirror_factory(policy)
        return client

    async def handle(self, event) -> ReconcileResult:
        """Dispatch a decoded event to the matching flow (the session worker's handler)."""
        if isinstance(event, LocalMessageEvent):
            return await self.on_local_message(event)
        elif isinstance(event, MirrorMessageEvent):
            return await self.on_mirror_message(event)
        elif isinstance(event, RetrySweep):
            return await self.retry_failed(event.session_id, event.batch)
        raise TypeError(f"unsupported event type: {type(event).__name__}")

    # Local -> mirror

    async def on_local_message(self, event: LocalMessageEvent) -> ReconcileResult:
        """Store a message observed on the platform and mirror it."""
        chat_attrs = {"name": event.chat_name} if event.chat_name else {}
        chat = await self.db.chats.upsert_chat(event.session_id, event.chat_address, **chat_attrs)
        stored = await self.db.messages.upsert_message(
            MessageData(
                session_id=event.session_id,
                chat_id=chat.id,
                remote_message_id=event.remote_message_id,
                direction=event.direction,
                timestamp=event.timestamp,
                content_type=event.content_type,
                text=event.text,
                media_url=event.media_url,
                media_mime_type=event.media_mime_type,
                media_size=event.media_size,
                media_filename=event.media_filename,
                sender_address=event.sender_address,
                sender_name=event.sender_name,
                quoted_remote_id=event.quoted_remote_id,
                status=event.status,
                edited_at=event.edited_at,
                is_deleted=event.deleted,
                reaction=event.reaction,
                extra=event.extra,
            )
        )
        message = stored.message

        policy = await self.db.policies.get(event.session_id)
        reason = self._skip_reason(policy, chat, message, event.is_history)
        if reason:
            logger.debug(f"Not mirroring {event.session_id}/{event.remote_message_id}: {reason}")
            return ReconcileResult(Outcome.SKIPPED, message_id=message.id, detail=reason)

        async with self._locks(f"local:{message.id}"):
            relation = await self.db.relations.find_by_local_message(message.id)
            if relation is not None:
                return await self._resync(policy, chat, message, relation, stored.content_changed)
            if message.is_deleted:
                return ReconcileResult(Outcome.SKIPPED, message_id=message.id, detail="deleted before mirroring")
            return await self._mirror_new(policy, chat, message)

    def _skip_reason(
        self, policy: BridgePolicy | None, chat: Chat, message: Message, is_history: bool
    ) -> str | None:
        if policy is None:
            return "no bridge policy"
        if not policy.enabled:
            return "mirroring disabled"
        if policy.is_excluded(chat.address):
            return "chat excluded"
        if message.content_type is ContentType.SYSTEM:
            return "system message"
        if is_history and not policy.allows_history(message.timestamp, now=self._now()):
            return "history import not allowed"
        return None

    async def _resync(
        self,
        policy: BridgePolicy,
        chat: Chat,
        message: Message,
        relation: SyncRelation,
        content_changed: bool,
    ) -> ReconcileResult:
        status = relation.status
        if status is SyncStatus.PENDING:
            # Left pending by an interrupted attempt; re-delivery resumes it
            logger.info(f"Resuming interrupted sync of relation {relation.id}")
            return await self._attempt(policy, chat, message, relation)
        if not content_changed:
            return ReconcileResult(
                Outcome.UNCHANGED,
                message_id=message.id,
                relation_id=relation.id,
                mirror_message_id=relation.mirror_message_id,
            )
        if relation.direction is RelationDirection.INBOUND and policy.authority is Authority.MIRROR:
            return ReconcileResult(
                Outcome.SKIPPED, message_id=message.id, relation_id=relation.id, detail="mirror is authoritative"
            )

        if status is SyncStatus.SYNCED or status is SyncStatus.FAILED:
            relation = await self.db.relations.update_status(relation.id, SyncStatus.PENDING)
        else:
            raise ValueError(f"unhandled sync status: {status!r}")

        logger.info(f"Re-syncing edited message {message.session_id}/{message.remote_message_id}")
        return await self._push(policy, chat, message, relation)

    async def _attempt(
        self, policy: BridgePolicy, chat: Chat, message: Message, relation: SyncRelation
    ) -> ReconcileResult:
        """Run the external half of a pending relation in its own direction."""
        direction = relation.direction
        if direction is RelationDirection.OUTBOUND:
            return await self._push(policy, chat, message, relation)
        elif direction is RelationDirection.INBOUND:
            return await self._deliver(chat, message, relation)
        raise ValueError(f"unhandled relation direction: {direction!r}")

    async def _mirror_new(self, policy: BridgePolicy, chat: Chat, message: Message) -> ReconcileResult:
        relation, created = await self.db.relations.create_or_update(
            RelationData(
                session_id=message.session_id,
                local_message_id=message.id,
                direction=RelationDirection.OUTBOUND,
                status=SyncStatus.PENDING,
                mirror_conversation_id=chat.mirror_conversation_id,
                echo_token=self._token_factory(),
                source_token=source_token_for(message.remote_message_id),
            )
        )
        if not created:
            logger.debug(f"Relation for message {message.id} appeared concurrently, merging")
        return await self._push(policy, chat, message, relation)

    async def _conversation_for(self, mirror: MirrorClient, chat: Chat) -> str:
        if chat.mirror_conversation_id:
            return chat.mirror_conversation_id
        conversation_id = await mirror.resolve_conversation(chat)
        await self.db.chats.set_mirror_conversation(chat.id, conversation_id)
        chat.mirror_conversation_id = conversation_id
        return conversation_id

    async def _push(self, policy: BridgePolicy, chat: Chat, message: Message, relation: SyncRelation) -> ReconcileResult:
        """Create or update the mirror copy of ``message``; relation must be pending."""
        try:
            mirror = self._mirror_for(policy)
            conversation_id = relation.mirror_conversation_id or await self._conversation_for(mirror, chat)
            content = MirrorContent.from_message(message, chat)
            if relation.mirror_message_id:
                await mirror.update_message(conversation_id, relation.mirror_message_id, content)
                mirror_message_id = relation.mirror_message_id
                outcome = Outcome.UPDATED
            else:
                mirror_message_id = await mirror.create_message(
                    conversation_id,
                    content,
                    {"echo_id": relation.echo_token, "source_id": relation.source_token},
                )
                outcome = Outcome.CREATED
        except ExternalError as e:
            return await self._fail(relation, e)
        except Exception as e:
            logger.error(f"Unexpected error mirroring message {message.id}: {e}", exc_info=True)
            return await self._fail(relation, e)

        relation = await self.db.relations.update_status(
            relation.id,
            SyncStatus.SYNCED,
            mirror_conversation_id=conversation_id,
            mirror_message_id=mirror_message_id,
        )
        logger.info(
            f"Mirrored {message.session_id}/{message.remote_message_id} -> "
            f"{conversation_id}/{mirror_message_id} ({outcome.value})"
        )
        return ReconcileResult(
            outcome, message_id=message.id, relation_id=relation.id, mirror_message_id=mirror_message_id
        )

    async def _fail(self, relation: SyncRelation, error: Exception) -> ReconcileResult:
        # Only classified external errors can heal on their own
        transient = isinstance(error, ExternalError) and not error.permanent
        kind = ErrorKind.TRANSIENT if transient else ErrorKind.PERMANENT
        next_retry_at = None
        if kind is ErrorKind.TRANSIENT:
            delay = self.config.backoff_for(relation.retry_count + 1)
            next_retry_at = self._now() + timedelta(seconds=delay)
        relation = await self.db.relations.update_status(
            relation.id, SyncStatus.FAILED, error=str(error), error_kind=kind, next_retry_at=next_retry_at
        )
        if kind is ErrorKind.PERMANENT:
            logger.error(f"Relation {relation.id} failed permanently, needs operator action: {error}")
        else:
            logger.warning(f"Relation {relation.id} failed (attempt {relation.retry_count}): {error}")
        return ReconcileResult(
            Outcome.FAILED,
            message_id=relation.local_message_id,
            relation_id=relation.id,
            mirror_message_id=relation.mirror_message_id,
            detail=str(error),
        )

    # Mirror -> local

    async def on_mirror_message(self, event: MirrorMessageEvent) -> ReconcileResult:
        """Relay a message created on the mirror side to the platform, unless it is an echo."""
        policy = await self.db.policies.get(event.session_id)
        if policy is None or not policy.enabled:
            return ReconcileResult(Outcome.SKIPPED, detail="mirroring disabled")

        lock_key = f"mirror:{event.session_id}:{event.conversation_id}:{event.message_id}"
        async with self._locks(lock_key):
            echo = await self._find_echo(event)
            if echo is not None:
                logger.debug(
                    f"Discarding echo of message {echo.local_message_id} "
                    f"({event.conversation_id}/{event.message_id})"
                )
                return ReconcileResult(
                    Outcome.ECHO,
                    message_id=echo.local_message_id,
                    relation_id=echo.id,
                    mirror_message_id=event.message_id,
                )

            chat = await self._resolve_chat(policy, event)
            if chat is None:
                logger.warning(
                    f"No chat for mirror conversation {event.conversation_id} in session {event.session_id}, "
                    f"dropping message {event.message_id}"
                )
                return ReconcileResult(Outcome.SKIPPED, detail="no chat for conversation")
            if policy.is_excluded(chat.address):
                return ReconcileResult(Outcome.SKIPPED, detail="chat excluded")

            stored = await self.db.messages.upsert_message(
                MessageData(
                    session_id=event.session_id,
                    chat_id=chat.id,
                    remote_message_id=event.provisional_remote_id,
                    direction=MessageDirection.FROM_OTHER,
                    timestamp=event.timestamp or self._now(),
                    content_type=ContentType.MEDIA if event.attachment_url else ContentType.TEXT,
                    text=format_reply(event.content, policy),
                    media_url=event.attachment_url,
                    sender_name=event.sender_name,
                    status=MessageStatus.PENDING,
                    extra={"mirror_origin": True},
                )
            )
            message = stored.message
            relation, _ = await self.db.relations.create_or_update(
                RelationData(
                    session_id=event.session_id,
                    local_message_id=message.id,
                    direction=RelationDirection.INBOUND,
                    status=SyncStatus.SYNCED,
                    mirror_conversation_id=event.conversation_id,
                    mirror_message_id=event.message_id,
                )
            )

        async with self._locks(f"local:{message.id}"):
            return await self._deliver(chat, message, relation)

    async def _find_echo(self, event: MirrorMessageEvent) -> SyncRelation | None:
        relations = self.db.relations
        if event.echo_token:
            relation = await relations.find_by_echo_token(event.session_id, event.echo_token)
            if relation is not None:
                return relation
        if event.source_token:
            relation = await relations.find_by_source_token(event.session_id, event.source_token)
            if relation is not None:
                return relation
        return await relations.find_by_mirror_message(event.session_id, event.conversation_id, event.message_id)

    async def _resolve_chat(self, policy: BridgePolicy, event: MirrorMessageEvent) -> Chat | None:
        chat = await self.db.chats.get_by_mirror_conversation(event.session_id, event.conversation_id)
        if chat is not None or not event.chat_address:
            return chat

        chat = await self.db.chats.get_chat(event.session_id, event.chat_address)
        if chat is None:
            if not policy.auto_create_chat:
                return None
            chat = await self.db.chats.upsert_chat(event.session_id, event.chat_address)
            logger.info(f"Created chat {event.session_id}/{event.chat_address} for mirror conversation")
        if not chat.mirror_conversation_id:
            await self.db.chats.set_mirror_conversation(chat.id, event.conversation_id)
            chat.mirror_conversation_id = event.conversation_id
        return chat

    async def _deliver(self, chat: Chat, message: Message, relation: SyncRelation) -> ReconcileResult:
        try:
            remote_id = await self.gateway.send(message.session_id, chat.address, message.text, message.media_url)
        except Exception as e:
            if not isinstance(e, ExternalError):
                logger.error(f"Unexpected error delivering message {message.id}: {e}", exc_info=True)
            await self.db.messages.update_status(message.id, MessageStatus.FAILED)
            return await self._fail(relation, e)

        if relation.status is not SyncStatus.SYNCED:
            relation = await self.db.relations.update_status(relation.id, SyncStatus.SYNCED)
        await self.db.messages.update_status(message.id, MessageStatus.SENT)
        if remote_id != message.remote_message_id:
            await self.db.messages.assign_remote_id(message.id, remote_id)
        logger.info(
            f"Delivered mirror message {relation.mirror_conversation_id}/{relation.mirror_message_id} "
            f"to {chat.session_id}/{chat.address} as {remote_id}"
        )
        return ReconcileResult(
            Outcome.CREATED,
            message_id=message.id,
            relation_id=relation.id,
            mirror_message_id=relation.mirror_message_id,
        )

    # Retry sweep

    async def retry_failed(self, session_id: str, batch: int | None = None) -> list[ReconcileResult]:
        """
        Re-attempt the oldest due, transient failures of a session.

        Relations past MAX_SYNC_RETRIES stay failed for an operator. Mirror
        ids already recorded are reused, so a retry updates rather than
        duplicates. Relations stuck in pending (an attempt that died midway)
        are resumed once they are older than STALE_PENDING; each resumption
        counts as a failed attempt against the same ceiling.

        Runs on the session's worker (see RetrySweep) so deliveries made here
        are ordered with the session's live events.
        """
        policy = await self.db.policies.get(session_id)
        if policy is None or not policy.enabled:
            return []

        limit = batch or self.config.retry_batch_size
        now = self._now()
        due = await self.db.relations.list_failed(
            session_id,
            limit=limit,
            retryable_only=True,
            now=now,
            max_retries=self.config.max_sync_retries,
        )
        stale = await self.db.relations.list_stale_pending(session_id, before=now - self.STALE_PENDING, limit=limit)

        results = []
        for candidate in [*due, *stale][:limit]:
            async with self._locks(f"local:{candidate.local_message_id}"):
                result = await self._retry_one(policy, candidate.id)
            if result is not None:
                results.append(result)

        if results:
            recovered = sum(1 for r in results if r.outcome is not Outcome.FAILED)
            logger.info(f"Retry sweep for {session_id}: {recovered}/{len(results)} relations recovered")
        return results

    async def _retry_one(self, policy: BridgePolicy, relation_id: int) -> ReconcileResult | None:
        # Re-read under the lock; a live event may have resolved it meanwhile
        relation = await self.db.relations.get(relation_id)
        if relation is None or relation.status is SyncStatus.SYNCED:
            return None
        message = await self.db.messages.get_by_id(relation.local_message_id)
        chat = await self.db.chats.get_by_id(message.chat_id)
        if relation.status is SyncStatus.PENDING:
            relation = await self.db.relations.update_status(
                relation.id,
                SyncStatus.FAILED,
                error="sync attempt interrupted",
                error_kind=ErrorKind.TRANSIENT,
                next_retry_at=self._now(),
            )
            if relation.retry_count > self.config.max_sync_retries:
                logger.error(f"Relation {relation.id} interrupted {relation.retry_count} times, giving up")
                return ReconcileResult(
                    Outcome.FAILED,
                    message_id=relation.local_message_id,
                    relation_id=relation.id,
                    detail=relation.last_error,
                )
        relation = await self.db.relations.update_status(relation.id, SyncStatus.PENDING)
        return await self._attempt(policy, chat, message, relation)

    async def close(self) -> None:
        for client in self._mirrors.values():
            await client.close()
        self._mirrors.clear()
