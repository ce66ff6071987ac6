"""
Per-session ordered workers.

Events of one session are handled strictly in arrival order by a single
task; different sessions are handled in parallel. A failing event is logged
and handed back to whoever submitted it, the worker moves on.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class SessionWorkerPool:
    def __init__(self, handler: Callable[[Any], Awaitable[Any]], max_queue_size: int = 1000):
        """
        Args:
            handler: Coroutine function called with each event
            max_queue_size: Per-session backlog; submit() waits when it is full
        """
        self.handler = handler
        self.max_queue_size = max_queue_size
        self._queues: dict[str, asyncio.Queue] = {}
        self._workers: dict[str, asyncio.Task] = {}
        self._stopping = False

    def _ensure_worker(self, session_id: str) -> asyncio.Queue:
        queue = self._queues.get(session_id)
        if queue is None:
            queue = self._queues[session_id] = asyncio.Queue(maxsize=self.max_queue_size)

        task = self._workers.get(session_id)
        if task is not None and task.done():
            try:
                exc = task.exception()
                if exc:
                    logger.error(f"Worker for session {session_id} died with error: {exc}")
            except asyncio.CancelledError:
                pass
            logger.warning(f"Worker for session {session_id} died, restarting...")
            task = None
        if task is None:
            self._workers[session_id] = asyncio.create_task(
                self._run(session_id, queue), name=f"session_worker:{session_id}"
            )
        return queue

    async def submit(self, session_id: str, event) -> asyncio.Future:
        """
        Queue an event behind the session's earlier events.

        Returns a future resolving to the handler's result (or raising its
        error). Callers that do not need the result may ignore it.
        """
        if self._stopping:
            raise RuntimeError("worker pool is stopping")
        queue = self._ensure_worker(session_id)
        future = asyncio.get_running_loop().create_future()
        # Mark the exception retrieved for callers that never await
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        await queue.put((event, future))
        return future

    async def _run(self, session_id: str, queue: asyncio.Queue) -> None:
        logger.debug(f"Worker for session {session_id} started")
        while True:
            event, future = await queue.get()
            try:
                result = await self.handler(event)
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                logger.error(f"Session {session_id}: failed to handle {type(event).__name__}: {e}", exc_info=True)
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                queue.task_done()

    async def join(self, session_id: str | None = None) -> None:
        """Wait until the queued events (of one session, or all) are handled."""
        queues = [self._queues[session_id]] if session_id else list(self._queues.values())
        for queue in queues:
            await queue.join()

    def backlog(self) -> dict[str, int]:
        return {session_id: queue.qsize() for session_id, queue in self._queues.items()}

    async def stop(self) -> None:
        """Cancel all workers. Events still queued are dropped with their futures cancelled."""
        self._stopping = True
        for task in self._workers.values():
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers.values(), return_exceptions=True)
        for queue in self._queues.values():
            while not queue.empty():
                _, future = queue.get_nowait()
                future.cancel()
                queue.task_done()
        self._workers.clear()
        self._queues.clear()
        logger.info("Session workers stopped")
