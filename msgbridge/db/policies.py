"""
Bridge policy store.

The reconciliation engine only reads policies; they are written by the
operator through the API or CLI. A session without a policy row is not
mirrored at all.
"""

import logging

from sqlalchemy import select

from ..errors import ValidationError
from .base import DatabaseManager
from .models import Authority, BridgePolicy

logger = logging.getLogger(__name__)

_FIELDS = (
    "enabled",
    "excluded_addresses",
    "auto_create_chat",
    "import_history",
    "history_window_days",
    "authority",
    "mirror_url",
    "mirror_account_id",
    "mirror_inbox_id",
    "mirror_token",
    "reopen_conversation",
    "conversation_pending",
    "sign_messages",
    "sign_delimiter",
)

# Chatwoot addresses accounts and inboxes by number
_NUMERIC_IDS = ("mirror_account_id", "mirror_inbox_id")


class PolicyStore:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get(self, session_id: str) -> BridgePolicy | None:
        async with self.db.get_session() as session:
            return await session.get(BridgePolicy, session_id)

    async def list_policies(self, enabled_only: bool = False) -> list[BridgePolicy]:
        query = select(BridgePolicy).order_by(BridgePolicy.session_id)
        if enabled_only:
            query = query.where(BridgePolicy.enabled.is_(True))
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def upsert(self, session_id: str, **settings) -> BridgePolicy:
        """Create or update the policy of a session with the given settings."""
        if not session_id:
            raise ValidationError("session_id is required")
        unknown = set(settings) - set(_FIELDS)
        if unknown:
            raise ValidationError(f"unknown policy settings: {', '.join(sorted(unknown))}")
        if "authority" in settings and not isinstance(settings["authority"], Authority):
            try:
                settings["authority"] = Authority(settings["authority"])
            except ValueError:
                raise ValidationError(f"invalid authority: {settings['authority']!r}")
        if settings.get("history_window_days", 0) < 0:
            raise ValidationError("history_window_days cannot be negative")
        for name in _NUMERIC_IDS:
            value = settings.get(name)
            if value is None:
                continue
            value = str(value).strip()
            if not value.isdigit():
                raise ValidationError(f"{name} must be a number, got {settings[name]!r}")
            settings[name] = value
        if "excluded_addresses" in settings:
            settings["excluded_addresses"] = [a.strip() for a in settings["excluded_addresses"] or [] if a.strip()]

        async with self.db.get_session() as session:
            policy = await session.get(BridgePolicy, session_id)
            if policy is None:
                policy = BridgePolicy(session_id=session_id, excluded_addresses=[])
                session.add(policy)
                logger.info(f"Created bridge policy for session {session_id}")
            for name, value in settings.items():
                if value is not None:
                    setattr(policy, name, value)
            await session.flush()
            return policy

    async def delete(self, session_id: str) -> bool:
        async with self.db.get_session() as session:
            policy = await session.get(BridgePolicy, session_id)
            if policy is None:
                return False
            await session.delete(policy)
            return True
