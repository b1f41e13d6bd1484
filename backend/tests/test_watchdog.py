"""Tests for the cleanup watchdog."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from chatmodels import SummarizationState
from groupchat.errors import StorageUnavailable

CHAT_ID = "chat-1"
ALICE = "alice"


class TestSweep:
    """Test a single watchdog pass."""

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, runtime):
        assert await runtime.watchdog.sweep() == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_reclaims_reservations_and_resets_stuck_jobs(self, runtime, store):
        await runtime.ledger.check_and_reserve(ALICE, 500)
        assert await store.try_schedule_summarization(CHAT_ID, "job-1", ALICE, 0)

        later = datetime.now(timezone.utc) + timedelta(hours=1)
        assert await runtime.watchdog.sweep(later) == (0, 1, 1)

        assert (await runtime.ledger.get_account(ALICE)).reserved == 0
        status = await store.get_summarization_status(CHAT_ID)
        assert status.state == SummarizationState.IDLE

    @pytest.mark.asyncio
    async def test_recent_work_is_left_alone(self, runtime, store):
        await runtime.ledger.check_and_reserve(ALICE, 500)
        assert await store.try_schedule_summarization(CHAT_ID, "job-1", ALICE, 0)

        assert await runtime.watchdog.sweep() == (0, 0, 0)

        status = await store.get_summarization_status(CHAT_ID)
        assert status.state == SummarizationState.SCHEDULED

    @pytest.mark.asyncio
    async def test_pending_settlement_is_charged_before_reclaim(self, runtime, store):
        """A completed call whose reconcile failed is charged, not reclaimed."""
        check = await runtime.ledger.check_and_reserve(ALICE, 500)
        original = store.reconcile_tokens

        async def unavailable(usage, default_quota):
            raise StorageUnavailable("connection reset")

        store.reconcile_tokens = unavailable
        runtime.ledger.reconcile_attempts = 1
        with pytest.raises(StorageUnavailable):
            await runtime.ledger.reconcile_with_retry(ALICE, check.call_id, 300, 100)
        store.reconcile_tokens = original

        later = datetime.now(timezone.utc) + timedelta(hours=1)
        assert await runtime.watchdog.sweep(later) == (1, 0, 0)

        account = await runtime.ledger.get_account(ALICE)
        assert account.used == 400
        assert account.reserved == 0
        assert runtime.ledger.pending_calls == []


class TestLifecycle:
    """Test starting and stopping the background loop."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, runtime):
        runtime.watchdog.interval_seconds = 0.01
        runtime.watchdog.start()
        await asyncio.sleep(0.05)

        await runtime.watchdog.stop()

        assert runtime.watchdog._task is None

    @pytest.mark.asyncio
    async def test_stop_without_start(self, runtime):
        await runtime.watchdog.stop()
