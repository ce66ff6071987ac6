"""
Synchronization relation store.

A relation links one local message to at most one mirror system message.
Duplicates are structurally impossible: the table is unique on
local_message_id and on (session, mirror conversation, mirror message), and
create_or_update additionally serializes callers per natural key inside the
process so concurrent reconciliations merge instead of racing.

Status transitions:

    pending -> synced | failed
    failed  -> pending           (retry sweep)
    synced  -> pending           (local edit re-sync, mirror ids kept)
    synced  -> failed            (a mirror reply could not be delivered to the platform)

Relations are never deleted by a transition, only by chat deletion
(cascade) or an explicit purge.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConflictError, InvalidTransitionError, ValidationError
from ..locks import KeyedLock
from .base import DatabaseManager
from .models import ErrorKind, RelationDirection, SyncRelation, SyncStatus, utcnow
from .utils import _strip_tz, dialect_insert

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.PENDING: frozenset({SyncStatus.PENDING, SyncStatus.SYNCED, SyncStatus.FAILED}),
    SyncStatus.FAILED: frozenset({SyncStatus.FAILED, SyncStatus.PENDING}),
    SyncStatus.SYNCED: frozenset({SyncStatus.SYNCED, SyncStatus.PENDING, SyncStatus.FAILED}),
}


@dataclass
class RelationData:
    session_id: str
    local_message_id: int
    direction: RelationDirection
    status: SyncStatus = SyncStatus.PENDING
    mirror_conversation_id: str | None = None
    mirror_message_id: str | None = None
    echo_token: str | None = None
    source_token: str | None = None
    last_error: str | None = None
    error_kind: ErrorKind | None = None
    extra: dict = field(default_factory=dict)

    @property
    def has_mirror_ids(self) -> bool:
        return self.mirror_conversation_id is not None and self.mirror_message_id is not None

    def lock_key(self) -> str:
        if self.direction is RelationDirection.INBOUND and self.has_mirror_ids:
            return f"mirror:{self.session_id}:{self.mirror_conversation_id}:{self.mirror_message_id}"
        return f"local:{self.local_message_id}"


class RelationStore:
    """Local message <-> mirror message relations."""

    def __init__(self, db: DatabaseManager):
        self.db = db
        self._locks = KeyedLock()

    # Lookups

    async def get(self, relation_id: int) -> SyncRelation | None:
        async with self.db.get_session() as session:
            return await session.get(SyncRelation, relation_id)

    async def find_by_local_message(self, local_message_id: int) -> SyncRelation | None:
        async with self.db.get_session() as session:
            return await self._by_local(session, local_message_id)

    async def find_by_mirror_message(
        self, session_id: str, mirror_conversation_id: str, mirror_message_id: str
    ) -> SyncRelation | None:
        async with self.db.get_session() as session:
            return await self._by_mirror(session, session_id, mirror_conversation_id, mirror_message_id)

    async def find_by_echo_token(self, session_id: str, token: str) -> SyncRelation | None:
        return await self._find_one(SyncRelation.session_id == session_id, SyncRelation.echo_token == token)

    async def find_by_source_token(self, session_id: str, token: str) -> SyncRelation | None:
        return await self._find_one(SyncRelation.session_id == session_id, SyncRelation.source_token == token)

    async def _find_one(self, *criteria) -> SyncRelation | None:
        async with self.db.get_session() as session:
            result = await session.execute(select(SyncRelation).where(*criteria).order_by(SyncRelation.id).limit(1))
            return result.scalar_one_or_none()

    async def _by_local(self, session: AsyncSession, local_message_id: int) -> SyncRelation | None:
        result = await session.execute(select(SyncRelation).where(SyncRelation.local_message_id == local_message_id))
        return result.scalar_one_or_none()

    async def _by_mirror(
        self, session: AsyncSession, session_id: str, conversation_id: str, message_id: str
    ) -> SyncRelation | None:
        result = await session.execute(
            select(SyncRelation).where(
                SyncRelation.session_id == session_id,
                SyncRelation.mirror_conversation_id == conversation_id,
                SyncRelation.mirror_message_id == message_id,
            )
        )
        return result.scalar_one_or_none()

    async def _lookup(self, session: AsyncSession, data: RelationData) -> SyncRelation | None:
        if data.direction is RelationDirection.INBOUND and data.has_mirror_ids:
            existing = await self._by_mirror(
                session, data.session_id, data.mirror_conversation_id, data.mirror_message_id
            )
            if existing is not None:
                return existing
        return await self._by_local(session, data.local_message_id)

    # Writes

    async def create_or_update(self, data: RelationData) -> tuple[SyncRelation, bool]:
        """
        Insert the relation, or merge onto the existing one for the same key.

        Outbound relations are keyed by local message, inbound ones by the
        mirror message pair. A uniqueness conflict (another process won the
        insert) is resolved by re-reading and merging.

        Returns:
            (relation, created)
        """
        if not data.session_id:
            raise ValidationError("session_id is required")
        if data.local_message_id is None:
            raise ValidationError("local_message_id is required")

        async with self._locks(data.lock_key()):
            try:
                return await self._create_or_update(data)
            except IntegrityError:
                logger.debug(f"Relation insert conflict for {data.lock_key()}, re-reading")
                return await self._create_or_update(data)

    async def _create_or_update(self, data: RelationData) -> tuple[SyncRelation, bool]:
        async with self.db.get_session() as session:
            existing = await self._lookup(session, data)
            if existing is None:
                stmt = (
                    dialect_insert(self.db.dialect_name, SyncRelation.__table__)
                    .values(
                        session_id=data.session_id,
                        local_message_id=data.local_message_id,
                        mirror_conversation_id=data.mirror_conversation_id,
                        mirror_message_id=data.mirror_message_id,
                        direction=data.direction.value,
                        status=data.status.value,
                        echo_token=data.echo_token,
                        source_token=data.source_token,
                        last_error=data.last_error,
                        error_kind=data.error_kind.value if data.error_kind else None,
                        retry_count=1 if data.status is SyncStatus.FAILED else 0,
                        last_sync_at=utcnow() if data.status is SyncStatus.SYNCED else None,
                        metadata=data.extra or {},
                    )
                    .on_conflict_do_nothing()
                    .returning(SyncRelation.__table__.c.id)
                )
                new_id = (await session.execute(stmt)).scalar_one_or_none()
                if new_id is not None:
                    return await session.get(SyncRelation, new_id), True

                existing = await self._lookup(session, data)
                if existing is None:
                    raise ConflictError(
                        f"mirror message {data.mirror_conversation_id}/{data.mirror_message_id} "
                        f"is already related to another local message"
                    )

            self._merge(existing, data)
            await session.flush()
            return existing, False

    def _merge(self, relation: SyncRelation, data: RelationData) -> None:
        if relation.local_message_id != data.local_message_id:
            raise ConflictError(
                f"relation {relation.id} belongs to local message {relation.local_message_id}, "
                f"not {data.local_message_id}"
            )
        if data.has_mirror_ids:
            if not relation.has_mirror_ids:
                relation.mirror_conversation_id = data.mirror_conversation_id
                relation.mirror_message_id = data.mirror_message_id
            elif (relation.mirror_conversation_id, relation.mirror_message_id) != (
                data.mirror_conversation_id,
                data.mirror_message_id,
            ):
                logger.warning(
                    f"Relation {relation.id} already mirrors {relation.mirror_conversation_id}/"
                    f"{relation.mirror_message_id}, ignoring {data.mirror_conversation_id}/{data.mirror_message_id}"
                )
        elif data.mirror_conversation_id and not relation.mirror_conversation_id:
            relation.mirror_conversation_id = data.mirror_conversation_id

        relation.echo_token = relation.echo_token or data.echo_token
        relation.source_token = relation.source_token or data.source_token

        # Last write wins on status
        relation.status = data.status
        if data.status is SyncStatus.SYNCED:
            relation.last_error = None
            relation.error_kind = None
            relation.next_retry_at = None
            relation.last_sync_at = utcnow()
        elif data.status is SyncStatus.FAILED:
            relation.last_error = data.last_error
            relation.error_kind = data.error_kind or ErrorKind.TRANSIENT
            relation.retry_count += 1
        if data.extra:
            relation.extra = {**(relation.extra or {}), **data.extra}

    async def update_status(
        self,
        relation_id: int,
        status: SyncStatus,
        error: str | None = None,
        error_kind: ErrorKind | None = None,
        next_retry_at: datetime | None = None,
        mirror_conversation_id: str | None = None,
        mirror_message_id: str | None = None,
    ) -> SyncRelation | None:
        """
        Narrow status transition, enforcing the sync state machine.

        Moving to FAILED records the error and bumps retry_count; moving to
        SYNCED clears failure detail and, if given, stores mirror ids that
        were not yet known.

        Raises:
            InvalidTransitionError: if the transition is not allowed
        """
        async with self.db.get_session() as session:
            relation = await session.get(SyncRelation, relation_id, with_for_update=not self.db.is_sqlite)
            if relation is None:
                return None
            if status not in ALLOWED_TRANSITIONS[relation.status]:
                raise InvalidTransitionError(relation_id, relation.status, status)

            relation.status = status
            if status is SyncStatus.FAILED:
                relation.last_error = error
                relation.error_kind = error_kind or ErrorKind.TRANSIENT
                relation.retry_count += 1
                relation.next_retry_at = _strip_tz(next_retry_at)
            elif status is SyncStatus.SYNCED:
                if mirror_conversation_id and not relation.mirror_conversation_id:
                    relation.mirror_conversation_id = mirror_conversation_id
                if mirror_message_id and not relation.mirror_message_id:
                    relation.mirror_message_id = mirror_message_id
                relation.last_error = None
                relation.error_kind = None
                relation.next_retry_at = None
                relation.last_sync_at = utcnow()
            elif status is SyncStatus.PENDING:
                if mirror_conversation_id and not relation.mirror_conversation_id:
                    relation.mirror_conversation_id = mirror_conversation_id
            await session.flush()
            return relation

    async def list_failed(
        self,
        session_id: str,
        limit: int = 100,
        retryable_only: bool = False,
        now: datetime | None = None,
        max_retries: int | None = None,
    ) -> list[SyncRelation]:
        """
        Failed relations of a session, oldest first.

        With retryable_only, permanent failures, relations still backing off
        and those past max_retries are left out.
        """
        query = select(SyncRelation).where(
            SyncRelation.session_id == session_id, SyncRelation.status == SyncStatus.FAILED
        )
        if retryable_only:
            now = _strip_tz(now) or utcnow()
            query = query.where(
                or_(SyncRelation.error_kind.is_(None), SyncRelation.error_kind != ErrorKind.PERMANENT),
                or_(SyncRelation.next_retry_at.is_(None), SyncRelation.next_retry_at <= now),
            )
            if max_retries is not None:
                query = query.where(SyncRelation.retry_count <= max_retries)
        query = query.order_by(SyncRelation.created_at.asc(), SyncRelation.id.asc()).limit(limit)

        async with self.db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_stale_pending(self, session_id: str, before: datetime, limit: int = 100) -> list[SyncRelation]:
        """Pending relations not touched since ``before``, oldest first."""
        query = (
            select(SyncRelation)
            .where(
                SyncRelation.session_id == session_id,
                SyncRelation.status == SyncStatus.PENDING,
                SyncRelation.updated_at < _strip_tz(before),
            )
            .order_by(SyncRelation.updated_at.asc(), SyncRelation.id.asc())
            .limit(limit)
        )
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def count_by_status(self, session_id: str) -> dict[str, int]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(SyncRelation.status, func.count(SyncRelation.id))
                .where(SyncRelation.session_id == session_id)
                .group_by(SyncRelation.status)
            )
            counts = {status.value: 0 for status in SyncStatus}
            for status, count in result.all():
                counts[status.value] = count
            return counts

    async def purge(self, session_id: str) -> int:
        """Administrative purge of every relation of a session."""
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(SyncRelation)
                .where(SyncRelation.session_id == session_id)
                .execution_options(synchronize_session=False)
            )
        logger.warning(f"Purged {result.rowcount} sync relations of session {session_id}")
        return result.rowcount
