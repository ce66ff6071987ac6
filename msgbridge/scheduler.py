"""
Cron-driven retry sweep.

Every tick walks the enabled session policies and queues a retry of what
is due on each session's worker, behind the events already waiting there.
"""

import asyncio
import logging
import signal

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from .config import Config

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "retry_sweep"
_CRON_FIELDS = ("minute", "hour", "day", "month", "day_of_week")


def build_trigger(schedule: str) -> CronTrigger:
    """Five-field cron expression to a CronTrigger."""
    fields = schedule.split()
    if len(fields) != len(_CRON_FIELDS):
        raise ValueError(f"Retry schedule '{schedule}' must have five fields: {' '.join(_CRON_FIELDS)}")
    return CronTrigger(**dict(zip(_CRON_FIELDS, fields)))


class RetryScheduler:
    """
    Runs the retry sweep on config.retry_schedule.

    With handle_signals=True (standalone `msgbridge schedule`) SIGINT and
    SIGTERM stop the loop; under uvicorn the server owns the signals.
    """

    def __init__(self, config: Config, bridge, handle_signals: bool = False):
        self.config = config
        self.bridge = bridge
        self.scheduler = AsyncIOScheduler()
        self.running = False
        self._sweeping = asyncio.Lock()

        if handle_signals:
            for signum in (signal.SIGINT, signal.SIGTERM):
                signal.signal(signum, self._on_signal)

    def _on_signal(self, signum, frame):
        logger.info(f"Signal {signum} received, stopping retry scheduler")
        self.stop()

    async def run_sweep(self) -> dict[str, int]:
        """
        One pass over all enabled sessions.

        Returns the number of relations attempted per session. A session
        that raises is logged and left out; the others still run. If the
        previous pass has not finished, nothing is done and {} is returned.
        """
        if self._sweeping.locked():
            logger.info("Retry sweep already in progress, skipping tick")
            return {}

        attempted = {}
        async with self._sweeping:
            policies = await self.bridge.db.policies.list_policies(enabled_only=True)
            for policy in policies:
                sid = policy.session_id
                try:
                    attempted[sid] = len(await self.bridge.retry_session(sid))
                except Exception as e:
                    logger.error(f"Retry sweep for session {sid} raised: {e}", exc_info=True)
        return attempted

    async def _tick(self):
        try:
            attempted = await self.run_sweep()
        except Exception as e:
            logger.error(f"Retry sweep tick failed: {e}", exc_info=True)
            return
        if any(attempted.values()):
            logger.info(f"Retry sweep: {sum(attempted.values())} relations over {len(attempted)} sessions")

    def start(self):
        trigger = build_trigger(self.config.retry_schedule)
        self.scheduler.add_job(
            self._tick,
            trigger=trigger,
            id=SWEEP_JOB_ID,
            name="Retry failed sync relations",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self.running = True
        logger.info(f"Retry scheduler started ({self.config.retry_schedule})")

    def stop(self):
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        self.running = False
        logger.info("Retry scheduler stopped")

    async def run_forever(self):
        """Schedule the sweep, run one pass right away, then idle until stopped."""
        self.start()
        await self._tick()
        try:
            while self.running:
                await asyncio.sleep(1)
        finally:
            self.stop()
