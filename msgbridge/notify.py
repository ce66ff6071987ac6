"""
Fire-and-forget webhook notifications of chat and message mutations.

notify() never blocks the caller and never raises: the store write that
triggered it is already committed, and a dead webhook endpoint must not
change that. Delivery is retried in the background with exponential backoff.
"""

import asyncio
import logging

import httpx

from .db.models import utcnow

logger = logging.getLogger(__name__)


class WebhookNotifier:
    """POSTs {"event", "session_id", "data", "sent_at"} to a configured URL."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._tasks: set[asyncio.Task] = set()

    def notify(self, event: str, session_id: str, data: dict) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(event, session_id, data))
        except RuntimeError:
            logger.warning(f"No event loop, dropping {event} notification for session {session_id}")
            return
        # Keep a reference until done so the task is not garbage collected mid-flight
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: str, session_id: str, data: dict) -> None:
        body = {"event": event, "session_id": session_id, "data": data, "sent_at": utcnow().isoformat() + "Z"}
        delay = self.retry_delay
        for attempt in range(1, self.max_attempts + 1):
            try:
                if await self._post(event, session_id, body):
                    return
            except Exception as e:
                logger.error(f"Unexpected webhook error for {event}: {e}", exc_info=True)
                return
            if attempt < self.max_attempts:
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_retry_delay)
        logger.warning(f"Giving up on webhook {event} for session {session_id} after {self.max_attempts} attempts")

    async def _post(self, event: str, session_id: str, body: dict) -> bool:
        """One delivery attempt. False means worth retrying."""
        try:
            response = await self._client.post(self.url, json=body)
        except httpx.HTTPError as e:
            logger.warning(f"Webhook {event} for session {session_id} failed: {e}")
            return False
        if response.status_code >= 500 or response.status_code == 429:
            logger.warning(f"Webhook {event} for session {session_id} got HTTP {response.status_code}")
            return False
        if response.is_error:
            # The receiver rejected this body; sending it again will not help
            logger.warning(f"Webhook {event} for session {session_id} rejected with HTTP {response.status_code}")
        return True

    async def drain(self) -> None:
        """Wait for in-flight notifications."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self._client.aclose()


class NullNotifier:
    """Notifier used when WEBHOOK_URL is not set."""

    def notify(self, event: str, session_id: str, data: dict) -> None:
        logger.debug(f"{event} for session {session_id}")

    async def drain(self) -> None:
        pass

    async def close(self) -> None:
        pass
