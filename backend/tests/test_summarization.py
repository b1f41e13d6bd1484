"""Tests for the summarization orchestrator."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from chatmodels import ContextMode, CostCategory, SummarizationState
from groupchat.errors import (
    SummarizationDisabled,
    SummarizationFailed,
    SummarizationInProgress,
)
from groupchat.runtime import build_runtime
from groupchat.services.llm_mock import MockProvider
from groupchat.services.summarization import SUMMARY_SYSTEM_PROMPT, build_summary_prompt

CHAT_ID = "chat-1"
ALICE = "alice"


async def _state(store) -> SummarizationState:
    return (await store.get_summarization_status(CHAT_ID)).state


async def _trigger_and_run(runtime, scheduler):
    job_id = await runtime.orchestrator.trigger(CHAT_ID, ALICE)
    assert job_id is not None
    assert scheduler.calls[-1] == (CHAT_ID, job_id, ALICE)
    return await runtime.orchestrator.run_job(CHAT_ID, job_id, ALICE)


class TestTrigger:
    """Test scheduling and the at-most-one-job rule."""

    @pytest.mark.asyncio
    async def test_trigger_condition_without_summary(self, runtime, configure_chat, add_messages):
        await configure_chat()
        await add_messages(20)

        assert not await runtime.orchestrator.needs_new_summary(
            CHAT_ID, ContextMode.ALL_MESSAGES, None
        )

        await add_messages(1, start=21)
        assert await runtime.orchestrator.needs_new_summary(
            CHAT_ID, ContextMode.ALL_MESSAGES, None
        )

    @pytest.mark.asyncio
    async def test_trigger_schedules_job(self, runtime, store, scheduler, configure_chat):
        await configure_chat()

        job_id = await runtime.orchestrator.trigger(CHAT_ID, ALICE)

        status = await store.get_summarization_status(CHAT_ID)
        assert status.state == SummarizationState.SCHEDULED
        assert status.job_id == job_id
        assert status.user_id == ALICE
        assert status.base_version == 0
        assert scheduler.calls == [(CHAT_ID, job_id, ALICE)]

    @pytest.mark.asyncio
    async def test_trigger_is_noop_without_summary_context(self, runtime, scheduler, configure_chat):
        await configure_chat(use_summary=False)

        assert await runtime.orchestrator.trigger(CHAT_ID, ALICE) is None
        assert scheduler.calls == []

    @pytest.mark.asyncio
    async def test_simultaneous_triggers_schedule_one_job(self, runtime, store, scheduler, configure_chat):
        await configure_chat()

        results = await asyncio.gather(
            runtime.orchestrator.trigger(CHAT_ID, ALICE),
            runtime.orchestrator.trigger(CHAT_ID, "bob"),
        )

        job_ids = [r for r in results if r is not None]
        assert len(job_ids) == 1
        assert len(scheduler.calls) == 1
        assert (await store.get_summarization_status(CHAT_ID)).job_id == job_ids[0]

    @pytest.mark.asyncio
    async def test_scheduler_failure_returns_chat_to_idle(self, store, provider, configure_chat):
        async def broken_scheduler(chat_id, job_id, user_id):
            raise RuntimeError("queue down")

        runtime = build_runtime(store=store, provider=provider, scheduler=broken_scheduler)
        await configure_chat()

        with pytest.raises(RuntimeError):
            await runtime.orchestrator.trigger(CHAT_ID, ALICE)

        assert await _state(store) == SummarizationState.IDLE

    @pytest.mark.asyncio
    async def test_in_process_scheduler_runs_job(self, store, provider, configure_chat, add_messages):
        runtime = build_runtime(store=store, provider=provider)
        runtime.orchestrator.on_created = None
        await configure_chat()
        await add_messages(25)

        await runtime.orchestrator.trigger(CHAT_ID, ALICE)
        await runtime.orchestrator.drain()

        latest = await runtime.summary_store.latest(CHAT_ID)
        assert latest is not None
        assert latest.version == 1
        assert await _state(store) == SummarizationState.IDLE


class TestRunJob:
    """Test job execution."""

    @pytest.mark.asyncio
    async def test_condenses_all_but_retained_tail(self, runtime, store, scheduler, configure_chat, add_messages):
        await configure_chat()
        messages = await add_messages(25)

        summary = await _trigger_and_run(runtime, scheduler)

        assert summary.version == 1
        assert summary.covered_message_count == 15
        assert summary.watermark_message_id == messages[14].id
        assert summary.text == "Summary of 15 messages."
        assert summary.tokens_spent > 0
        assert await _state(store) == SummarizationState.IDLE
        assert runtime.orchestrator.on_created.calls == [(ALICE, CHAT_ID, 1)]

    @pytest.mark.asyncio
    async def test_run_is_billed_as_summarization(self, runtime, scheduler, configure_chat, add_messages):
        await configure_chat()
        await add_messages(25)

        summary = await _trigger_and_run(runtime, scheduler)

        report = await runtime.ledger.get_usage(ALICE)
        assert [u.category for u in report.recent_usage] == [CostCategory.SUMMARIZATION]
        assert report.account.used == summary.tokens_spent
        assert report.account.reserved == 0

    @pytest.mark.asyncio
    async def test_covered_count_accumulates_and_prompt_carries_previous_summary(
        self, runtime, provider, scheduler, configure_chat, add_messages
    ):
        await configure_chat()
        messages = await add_messages(25)
        first = await _trigger_and_run(runtime, scheduler)

        messages += await add_messages(10, start=26)
        second = await _trigger_and_run(runtime, scheduler)

        assert second.version == 2
        assert second.covered_message_count == 25
        assert second.watermark_message_id == messages[24].id
        assert first.text in provider.calls[-1].system_prompt

    @pytest.mark.asyncio
    async def test_prunes_old_versions(self, runtime, scheduler, configure_chat, add_messages):
        runtime.orchestrator.policy.keep_versions = 2
        await configure_chat()
        await add_messages(25)
        await _trigger_and_run(runtime, scheduler)
        for start in (26, 36):
            await add_messages(10, start=start)
            await _trigger_and_run(runtime, scheduler)

        history = await runtime.summary_store.history(CHAT_ID)
        assert [s.version for s in history] == [3, 2]

    @pytest.mark.asyncio
    async def test_aborts_when_version_moved(self, runtime, store, provider, configure_chat, add_messages):
        await configure_chat()
        messages = await add_messages(25)
        job_id = await runtime.orchestrator.trigger(CHAT_ID, ALICE)

        # Another writer lands a version after the job was scheduled
        await runtime.summary_store.append(CHAT_ID, "manual", 5, messages[4].id)

        assert await runtime.orchestrator.run_job(CHAT_ID, job_id, ALICE) is None
        assert (await runtime.summary_store.latest(CHAT_ID)).version == 1
        assert provider.calls == []
        assert await _state(store) == SummarizationState.IDLE

    @pytest.mark.asyncio
    async def test_unscheduled_or_redelivered_job_is_skipped(self, runtime, scheduler, configure_chat, add_messages):
        await configure_chat()
        await add_messages(25)

        assert await runtime.orchestrator.run_job(CHAT_ID, "unknown-job", ALICE) is None

        job_id = await runtime.orchestrator.trigger(CHAT_ID, ALICE)
        assert await runtime.orchestrator.run_job(CHAT_ID, job_id, ALICE) is not None
        assert await runtime.orchestrator.run_job(CHAT_ID, job_id, ALICE) is None
        assert (await runtime.summary_store.latest(CHAT_ID)).version == 1

    @pytest.mark.asyncio
    async def test_provider_failure_returns_to_idle(self, runtime, store, provider, configure_chat, add_messages):
        provider.fail = True
        await configure_chat()
        await add_messages(25)
        job_id = await runtime.orchestrator.trigger(CHAT_ID, ALICE)

        assert await runtime.orchestrator.run_job(CHAT_ID, job_id, ALICE) is None

        assert await runtime.summary_store.latest(CHAT_ID) is None
        assert await _state(store) == SummarizationState.IDLE
        assert len(runtime.orchestrator.on_failed.calls) == 1
        account = await runtime.ledger.get_account(ALICE)
        assert account.used == 0
        assert account.reserved == 0

    @pytest.mark.asyncio
    async def test_quota_exceeded_fails_without_calling_provider(
        self, runtime, store, provider, configure_chat, add_messages
    ):
        runtime.ledger.default_quota = 10
        await configure_chat()
        await add_messages(25)
        job_id = await runtime.orchestrator.trigger(CHAT_ID, ALICE)

        assert await runtime.orchestrator.run_job(CHAT_ID, job_id, ALICE) is None

        assert provider.calls == []
        assert await _state(store) == SummarizationState.IDLE
        user_id, chat_id, error = runtime.orchestrator.on_failed.calls[0]
        assert (user_id, chat_id) == (ALICE, CHAT_ID)
        assert "token limit" in error

    @pytest.mark.asyncio
    async def test_nothing_to_summarize_fails_quietly(self, runtime, store, configure_chat, add_messages):
        await configure_chat()
        await add_messages(8)
        job_id = await runtime.orchestrator.trigger(CHAT_ID, ALICE)

        assert await runtime.orchestrator.run_job(CHAT_ID, job_id, ALICE) is None
        assert await _state(store) == SummarizationState.IDLE
        assert await store.count_messages(CHAT_ID) == 8


class TestForce:
    """Test manual summarization."""

    @pytest.mark.asyncio
    async def test_force_runs_synchronously(self, runtime, scheduler, configure_chat, add_messages):
        await configure_chat()
        await add_messages(25)

        summary = await runtime.orchestrator.force(CHAT_ID, ALICE)

        assert summary.version == 1
        assert scheduler.calls == []

    @pytest.mark.asyncio
    async def test_force_requires_summary_context(self, runtime, configure_chat):
        await configure_chat(use_summary=False)

        with pytest.raises(SummarizationDisabled):
            await runtime.orchestrator.force(CHAT_ID, ALICE)

    @pytest.mark.asyncio
    async def test_force_while_job_in_flight(self, runtime, configure_chat, add_messages):
        await configure_chat()
        await add_messages(25)
        await runtime.orchestrator.trigger(CHAT_ID, ALICE)

        with pytest.raises(SummarizationInProgress):
            await runtime.orchestrator.force(CHAT_ID, ALICE)

    @pytest.mark.asyncio
    async def test_force_failure_raises_and_returns_to_idle(self, runtime, store, provider, configure_chat, add_messages):
        provider.fail = True
        await configure_chat()
        await add_messages(25)

        with pytest.raises(SummarizationFailed):
            await runtime.orchestrator.force(CHAT_ID, ALICE)

        assert await _state(store) == SummarizationState.IDLE


class TestMaintenance:
    """Test stale state recovery and prompt building."""

    @pytest.mark.asyncio
    async def test_reset_stale(self, runtime, store, configure_chat):
        await configure_chat()
        await runtime.orchestrator.trigger(CHAT_ID, ALICE)

        assert await runtime.orchestrator.reset_stale(
            datetime.now(timezone.utc) - timedelta(minutes=15)
        ) == []

        reset = await runtime.orchestrator.reset_stale(
            datetime.now(timezone.utc) + timedelta(seconds=1)
        )

        assert reset == [CHAT_ID]
        assert await _state(store) == SummarizationState.IDLE

    def test_first_prompt_has_no_previous_summary(self):
        assert build_summary_prompt(None) == SUMMARY_SYSTEM_PROMPT


class GatedProvider(MockProvider):
    """Mock provider whose first send blocks until released."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def send(self, messages, system_prompt, model=None):
        if not self.started.is_set():
            self.started.set()
            await self.release.wait()
        return await super().send(messages, system_prompt, model)


class SlowProvider(MockProvider):
    """Mock provider that never answers in time."""

    async def send(self, messages, system_prompt, model=None):
        await asyncio.sleep(10)
        return await super().send(messages, system_prompt, model)


class TestStaleJobs:
    """Test jobs that outlive their scheduling slot."""

    @pytest.mark.asyncio
    async def test_job_reset_as_stale_cannot_commit(self, store, scheduler, configure_chat, add_messages):
        """A newer job committing first makes the reset job's result a no-op."""
        provider = GatedProvider()
        runtime = build_runtime(store=store, provider=provider, scheduler=scheduler)
        runtime.orchestrator.on_created = None
        await configure_chat()
        await add_messages(25)

        assert await store.try_schedule_summarization(CHAT_ID, "job-a", ALICE, 0)
        stale_job = asyncio.create_task(runtime.orchestrator.run_job(CHAT_ID, "job-a", ALICE))
        await provider.started.wait()

        reset = await runtime.orchestrator.reset_stale(
            datetime.now(timezone.utc) + timedelta(seconds=1)
        )
        assert reset == [CHAT_ID]
        newer = await runtime.orchestrator.force(CHAT_ID, ALICE)
        assert newer.version == 1

        provider.release.set()
        assert await stale_job is None

        history = await runtime.summary_store.history(CHAT_ID)
        assert [s.id for s in history] == [newer.id]
        assert await _state(store) == SummarizationState.IDLE

    @pytest.mark.asyncio
    async def test_provider_timeout_fails_and_releases_tokens(self, runtime, store, configure_chat, add_messages):
        runtime.orchestrator.provider = SlowProvider()
        runtime.orchestrator.llm_timeout = 0.01
        await configure_chat()
        await add_messages(25)

        with pytest.raises(SummarizationFailed, match="did not respond"):
            await runtime.orchestrator.force(CHAT_ID, ALICE)

        assert await runtime.summary_store.latest(CHAT_ID) is None
        assert await _state(store) == SummarizationState.IDLE
        account = await runtime.ledger.get_account(ALICE)
        assert account.reserved == 0
        assert account.used == 0


class TestBackgroundJobs:
    """Test in-process jobs that nobody awaits."""

    @pytest.mark.asyncio
    async def test_job_error_is_logged(self, runtime, store, configure_chat, add_messages, caplog):
        runtime.orchestrator.scheduler = runtime.orchestrator._run_in_background
        await configure_chat()
        messages = await add_messages(25)
        await runtime.summary_store.append(CHAT_ID, "earlier", 5, messages[4].id)
        # Watermark disappears from storage: the job cannot resolve it
        del store._messages_by_id[messages[4].id]

        with caplog.at_level(logging.ERROR, logger="groupchat.services.summarization"):
            assert await runtime.orchestrator.trigger(CHAT_ID, ALICE) is not None
            await runtime.orchestrator.drain()
            await asyncio.sleep(0)

        assert "Background summarization job failed" in caplog.text
        assert "InvariantViolation" in caplog.text
        assert runtime.orchestrator._background == set()
        assert await _state(store) == SummarizationState.IDLE
