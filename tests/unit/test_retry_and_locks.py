"""
Unit tests for the retry policy and per-key locks.
"""

import asyncio

import pytest

from fieldsync.core.config import QueueSettings
from fieldsync.core.exceptions import PersistenceFailed, PersistenceUnavailable, ValidationFailed
from fieldsync.core.locks import KeyedLock
from fieldsync.services.retry import RetryPolicy, is_retryable


class TestRetryPolicy:
    """Tests for exponential backoff."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_delay_is_capped(self):
        policy = RetryPolicy(initial_delay=10.0, max_delay=30.0)
        assert policy.delay_for(5) == 30.0

    def test_exhausted_after_max_retries(self):
        policy = RetryPolicy(max_retries=3)
        assert not policy.exhausted(3)
        assert policy.exhausted(4)

    def test_only_unavailable_is_retryable(self):
        assert is_retryable(PersistenceUnavailable("down"))
        assert not is_retryable(PersistenceFailed("constraint"))
        assert not is_retryable(ValidationFailed("bad"))

    def test_from_settings(self):
        policy = RetryPolicy.from_settings(
            QueueSettings(max_retries=5, initial_delay_seconds=0.5, max_delay_seconds=8, backoff_factor=3)
        )
        assert policy == RetryPolicy(max_retries=5, initial_delay=0.5, max_delay=8, backoff_factor=3)

    def test_settings_reject_cap_below_initial_delay(self):
        with pytest.raises(ValueError):
            QueueSettings(initial_delay_seconds=10, max_delay_seconds=1)


class TestKeyedLock:
    """Tests for per-key serialization."""

    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        trace = []

        async def worker(name):
            async with locks.hold("E1"):
                trace.append(f"{name}-in")
                await asyncio.sleep(0)
                trace.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert trace == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_keys_do_not_wait(self):
        locks = KeyedLock()
        entered = asyncio.Event()

        async def holder():
            async with locks.hold("E1"):
                await entered.wait()

        task = asyncio.create_task(holder())
        await asyncio.sleep(0)
        async with locks.hold("E2"):
            entered.set()
        await task

    @pytest.mark.asyncio
    async def test_locks_are_dropped_when_idle(self):
        locks = KeyedLock()
        async with locks.hold("E1"):
            assert locks.locked("E1")
        assert len(locks) == 0
        assert not locks.locked("E1")
