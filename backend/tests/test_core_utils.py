"""
Tests for backoff, per-key locks and timestamp parsing.
"""
import asyncio
from datetime import datetime, timezone

import pytest


class TestExponentialBackoff:

    def test_delay_grows_and_caps(self):
        from skillsync.core.retry import ExponentialBackoff

        backoff = ExponentialBackoff(base_delay=1.0, max_delay=10.0, jitter=False)

        assert [backoff.next_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_jitter_stays_within_range(self):
        from skillsync.core.retry import ExponentialBackoff

        backoff = ExponentialBackoff(base_delay=4.0, max_delay=60.0, jitter_range=0.25)

        for _ in range(50):
            assert 3.0 <= backoff.next_delay(0) <= 5.0

    def test_retry_after_wins(self):
        from skillsync.core.retry import ExponentialBackoff

        backoff = ExponentialBackoff(base_delay=1.0, jitter=False)

        assert backoff.next_delay(3, retry_after=42.0) == 42.0
        assert backoff.next_delay(0, retry_after=-5) == 0.0

    def test_should_retry_bounded(self):
        from skillsync.core.retry import ExponentialBackoff

        backoff = ExponentialBackoff(max_retries=2)

        assert backoff.should_retry(0)
        assert backoff.should_retry(1)
        assert not backoff.should_retry(2)


class TestKeyedLock:

    @pytest.mark.asyncio
    async def test_same_key_serialized(self):
        from skillsync.core.locks import KeyedLock

        locks = KeyedLock()
        events = []

        async def worker(name):
            async with locks.hold("k"):
                events.append(f"{name}-in")
                await asyncio.sleep(0.01)
                events.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert events in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        from skillsync.core.locks import KeyedLock

        locks = KeyedLock()
        inside = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with locks.hold("a"):
                inside.set()
                await release.wait()

        task = asyncio.create_task(holder())
        await inside.wait()
        async with locks.hold("b"):
            assert locks.is_locked("a")
        release.set()
        await task

    @pytest.mark.asyncio
    async def test_unused_locks_dropped(self):
        from skillsync.core.locks import KeyedLock

        locks = KeyedLock()
        async with locks.hold("x"):
            assert len(locks) == 1

        assert len(locks) == 0
        assert not locks.is_locked("x")


class TestParseTimestamp:

    def test_iso_with_z(self):
        from skillsync.core.clock import parse_timestamp

        assert parse_timestamp("2026-01-02T03:04:05Z") == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_jira_offset_without_colon(self):
        from skillsync.core.clock import parse_timestamp

        parsed = parse_timestamp("2026-01-02T03:04:05.000+0000")

        assert parsed == datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_slack_epoch_string(self):
        from skillsync.core.clock import parse_timestamp

        parsed = parse_timestamp("1767225600.000100")

        assert parsed.year == 2026
        assert parsed.tzinfo is not None

    def test_naive_treated_as_utc(self):
        from skillsync.core.clock import parse_timestamp

        assert parse_timestamp(datetime(2026, 1, 1)).tzinfo == timezone.utc

    @pytest.mark.parametrize("value", [None, ""])
    def test_empty(self, value):
        from skillsync.core.clock import parse_timestamp

        assert parse_timestamp(value) is None
