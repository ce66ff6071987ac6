"""Tests for the retry sweep scheduler."""

import asyncio
import unittest
from unittest.mock import AsyncMock, Mock

import pytest
from apscheduler.triggers.cron import CronTrigger

from msgbridge.scheduler import RetryScheduler, build_trigger


class TestBuildTrigger(unittest.TestCase):
    def test_five_fields(self):
        trigger = build_trigger("*/5 * * * *")
        self.assertIsInstance(trigger, CronTrigger)
        fields = {f.name: str(f) for f in trigger.fields}
        self.assertEqual(fields["minute"], "*/5")
        self.assertEqual(fields["hour"], "*")

    def test_wrong_field_count(self):
        with self.assertRaises(ValueError):
            build_trigger("* * *")


def _policy(session_id):
    policy = Mock()
    policy.session_id = session_id
    return policy


def _bridge(*session_ids):
    bridge = Mock()
    bridge.db.policies.list_policies = AsyncMock(return_value=[_policy(s) for s in session_ids])
    bridge.retry_session = AsyncMock(return_value=[])
    return bridge


class TestRunSweep:
    @pytest.mark.asyncio
    async def test_sweeps_every_enabled_session(self, config):
        bridge = _bridge("S1", "S2")
        bridge.retry_session.side_effect = lambda session_id: [object()] * (2 if session_id == "S1" else 0)

        attempted = await RetryScheduler(config, bridge).run_sweep()

        assert attempted == {"S1": 2, "S2": 0}
        bridge.db.policies.list_policies.assert_awaited_once_with(enabled_only=True)

    @pytest.mark.asyncio
    async def test_one_failing_session_does_not_stop_the_sweep(self, config):
        bridge = _bridge("S1", "S2")

        async def retry(session_id):
            if session_id == "S1":
                raise RuntimeError("database is locked")
            return [object()]

        bridge.retry_session.side_effect = retry

        attempted = await RetryScheduler(config, bridge).run_sweep()

        assert attempted == {"S2": 1}

    @pytest.mark.asyncio
    async def test_overlapping_sweep_is_skipped(self, config):
        bridge = _bridge("S1")
        release = asyncio.Event()

        async def retry(session_id):
            await release.wait()
            return []

        bridge.retry_session.side_effect = retry
        scheduler = RetryScheduler(config, bridge)

        first = asyncio.create_task(scheduler.run_sweep())
        await asyncio.sleep(0)
        assert await scheduler.run_sweep() == {}

        release.set()
        assert await first == {"S1": 0}

    @pytest.mark.asyncio
    async def test_start_and_stop(self, config):
        scheduler = RetryScheduler(config, _bridge())

        scheduler.start()
        try:
            job = scheduler.scheduler.get_job("retry_sweep")
            assert job is not None
            assert job.max_instances == 1
        finally:
            scheduler.stop()
        assert scheduler.running is False
