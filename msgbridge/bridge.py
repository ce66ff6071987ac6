"""
Wiring of the bridge: database, collaborators, engine and session workers.
"""

import logging

from .config import Config
from .db import DatabaseAdapter, create_adapter
from .events import LocalMessageEvent, RetrySweep
from .gateway import HttpSessionGateway, SessionGateway, UnavailableGateway
from .mirror import parse_webhook
from .notify import NullNotifier, WebhookNotifier
from .reconcile import ReconcileResult, ReconciliationEngine
from .worker import SessionWorkerPool

logger = logging.getLogger(__name__)


class Bridge:
    def __init__(
        self,
        config: Config,
        db: DatabaseAdapter,
        engine: ReconciliationEngine,
        gateway: SessionGateway,
        notifier,
    ):
        self.config = config
        self.db = db
        self.engine = engine
        self.gateway = gateway
        self.notifier = notifier
        self.workers = SessionWorkerPool(engine.handle)

    @classmethod
    async def create(
        cls,
        config: Config,
        database_url: str | None = None,
        gateway: SessionGateway | None = None,
        notifier=None,
        **engine_options,
    ) -> "Bridge":
        """
        Build a bridge from configuration.

        Collaborators default to the HTTP implementations configured in the
        environment; tests pass fakes. Extra keyword arguments go to
        ReconciliationEngine (mirror_factory, token_factory, clock).
        """
        if notifier is None:
            notifier = (
                WebhookNotifier(
                    config.webhook_url, timeout=config.webhook_timeout, max_attempts=config.webhook_max_attempts
                )
                if config.webhook_url
                else NullNotifier()
            )
        if gateway is None:
            if config.session_gateway_url:
                gateway = HttpSessionGateway(config.session_gateway_url, timeout=config.mirror_timeout)
            else:
                logger.warning("SESSION_GATEWAY_URL not set, mirror replies will fail until it is configured")
                gateway = UnavailableGateway()

        db = await create_adapter(database_url or config.database_url, notifier=notifier)
        engine = ReconciliationEngine(db, gateway, config, **engine_options)
        return cls(config, db, engine, gateway, notifier)

    async def submit_local(self, session_id: str, payload: dict, wait: bool = True) -> ReconcileResult | None:
        """
        Decode a session event and queue it on the session's worker.

        Raises:
            DecodeError: before anything is queued, if the payload is malformed
        """
        event = LocalMessageEvent.from_payload(session_id, payload)
        future = await self.workers.submit(session_id, event)
        return await future if wait else None

    async def submit_mirror(self, session_id: str, payload: dict, wait: bool = True) -> ReconcileResult | None:
        """Decode a mirror webhook; events that are not relayable return None."""
        event = parse_webhook(session_id, payload)
        if event is None:
            logger.debug(f"Ignoring mirror webhook {payload.get('event')} for session {session_id}")
            return None
        future = await self.workers.submit(session_id, event)
        return await future if wait else None

    async def retry_session(self, session_id: str, batch: int | None = None) -> list[ReconcileResult]:
        """
        Run the retry sweep of one session on its worker.

        The sweep waits behind events already queued for the session, and
        events arriving meanwhile wait for it, so the platform report of a
        reply delivered by the sweep finds the reply already stored under
        its platform id.
        """
        future = await self.workers.submit(session_id, RetrySweep(session_id, batch))
        return await future

    async def close(self) -> None:
        await self.workers.stop()
        await self.engine.close()
        await self.gateway.close()
        await self.notifier.close()
        await self.db.close()
