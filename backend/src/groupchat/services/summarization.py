"""Background summarization of chat history.

Condenses older messages into a new summary version so the context sent to
the assistant stays small. At most one job per chat is scheduled or running
at a time; the guard is a persisted state flag, since a job may be scheduled
by one process and executed by another (DBOS queue).

State machine, per chat:

    idle --trigger()--> scheduled --run_job()--> summarizing --> idle

Failures are logged and published to the paying user's event stream; they
are never posted into the chat.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable

from chatmodels import (
    ContextMode,
    CostCategory,
    Message,
    Summary,
    SummarizationPolicy,
)
from groupchat.db import Store
from groupchat.errors import (
    InvariantViolation,
    ProviderUnavailable,
    QuotaExceeded,
    SummarizationDisabled,
    SummarizationFailed,
    SummarizationInProgress,
    SummaryVersionConflict,
)
from groupchat.services.context_selector import ContextSelector
from groupchat.services.llm import LLMProvider, format_transcript
from groupchat.services.summary_store import SummaryStore
from groupchat.services.token_estimator import estimate, estimate_messages
from groupchat.services.token_ledger import TokenLedger
from groupchat.sse import notify_summary_created, notify_summary_failed

logger = logging.getLogger(__name__)

# (chat_id, job_id, user_id)
Scheduler = Callable[[str, str, str], Awaitable[None]]
SummaryCreatedHook = Callable[[str, str, int], Awaitable[None]]
SummaryFailedHook = Callable[[str, str, str], Awaitable[None]]

SUMMARY_SYSTEM_PROMPT = """You summarize group chat history so the conversation can continue without it.

Summarize the conversation concisely, preserving key information:
- Who said what that matters (names, preferences, decisions)
- Key topics discussed
- Any commitments or action items
- Context needed to continue the conversation naturally

Write a concise summary (2-4 paragraphs) that captures the essential context."""


def build_summary_prompt(previous: Summary | None) -> str:
    """System prompt for a run, folding in the summary it supersedes."""
    if previous is None:
        return SUMMARY_SYSTEM_PROMPT
    return (
        f"{SUMMARY_SYSTEM_PROMPT}\n\n"
        f"Previous summary:\n{previous.text}\n\n"
        "Rewrite it as a single summary that also incorporates the new messages."
    )


class SummarizationOrchestrator:
    """Decides when to summarize and runs summarization jobs."""

    def __init__(
        self,
        store: Store,
        summary_store: SummaryStore,
        selector: ContextSelector,
        ledger: TokenLedger,
        provider: LLMProvider,
        policy: SummarizationPolicy | None = None,
        scheduler: Scheduler | None = None,
        model: str | None = None,
        output_budget: int = 800,
        llm_timeout: float = 120.0,
        on_created: SummaryCreatedHook | None = notify_summary_created,
        on_failed: SummaryFailedHook | None = notify_summary_failed,
    ):
        self.store = store
        self.summary_store = summary_store
        self.selector = selector
        self.ledger = ledger
        self.provider = provider
        self.policy = policy or SummarizationPolicy()
        self.scheduler = scheduler or self._run_in_background
        self.model = model
        self.output_budget = output_budget
        self.llm_timeout = llm_timeout
        self.on_created = on_created
        self.on_failed = on_failed
        self._background: set[asyncio.Task] = set()

    # ============= Trigger =============

    async def needs_new_summary(
        self, chat_id: str, mode: ContextMode, latest: Summary | None
    ) -> bool:
        """Whether the backlog after the authoritative watermark warrants a run."""
        watermark = (
            await self.summary_store.watermark_message(latest) if latest else None
        )
        unsummarized = await self.selector.count_after(chat_id, mode, watermark)
        return self.policy.needs_new_summary(unsummarized, latest is not None)

    async def trigger(self, chat_id: str, user_id: str) -> str | None:
        """Schedule a job unless one is already in flight.

        Returns the job id, or None when the chat is not idle or does not
        use summaries. user_id is whose quota pays for the run.
        """
        ctx = await self.selector.context_settings(chat_id)
        if not ctx.use_summary or ctx.mode == ContextMode.NONE:
            return None
        return await self._schedule(chat_id, user_id)

    async def _schedule(self, chat_id: str, user_id: str) -> str | None:
        latest = await self.summary_store.latest(chat_id)
        base_version = latest.version if latest else 0
        job_id = str(uuid.uuid4())

        if not await self.store.try_schedule_summarization(
            chat_id, job_id, user_id, base_version
        ):
            logger.debug(f"Summarization already in flight for chat {chat_id}")
            return None

        try:
            await self.scheduler(chat_id, job_id, user_id)
        except Exception:
            await self.store.finish_summarization(chat_id, job_id)
            raise

        logger.info(
            f"Scheduled summarization job {job_id} for chat {chat_id} "
            f"(base v{base_version})"
        )
        return job_id

    async def _run_in_background(self, chat_id: str, job_id: str, user_id: str) -> None:
        """Fire-and-forget scheduler used when no durable queue is configured."""
        task = asyncio.create_task(self.run_job(chat_id, job_id, user_id))
        self._background.add(task)
        task.add_done_callback(self._job_done)

    def _job_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background summarization job failed: {exc!r}", exc_info=exc)

    async def drain(self) -> None:
        """Wait for in-process background jobs to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ============= Jobs =============

    async def run_job(
        self,
        chat_id: str,
        job_id: str,
        user_id: str,
        raise_failures: bool = False,
    ) -> Summary | None:
        """Execute a scheduled job. The chat always ends up idle again."""
        status = await self.store.begin_summarization(chat_id, job_id)
        if status is None:
            logger.info(f"Summarization job {job_id} for chat {chat_id} is not scheduled, skipping")
            return None

        try:
            return await self._summarize(chat_id, user_id, status.base_version)
        except SummarizationFailed as e:
            logger.warning(f"Summarization failed for chat {chat_id}: {e}")
            if self.on_failed:
                await self.on_failed(user_id, chat_id, str(e))
            if raise_failures:
                raise
            return None
        except InvariantViolation:
            logger.exception(f"Summarization job {job_id} hit an invariant violation")
            raise
        finally:
            await self.store.finish_summarization(chat_id, job_id)

    async def _summarize(
        self, chat_id: str, user_id: str, base_version: int
    ) -> Summary | None:
        latest = await self.summary_store.latest(chat_id)
        current_version = latest.version if latest else 0
        if current_version != base_version:
            logger.info(
                f"Chat {chat_id} summary moved from v{base_version} to "
                f"v{current_version} since scheduling, aborting"
            )
            return None

        ctx = await self.selector.context_settings(chat_id)
        watermark = (
            await self.summary_store.watermark_message(latest) if latest else None
        )
        pending = await self.selector.select_after(chat_id, ctx.mode, watermark)
        batch = self._batch(pending)
        if not batch:
            raise SummarizationFailed(
                f"Nothing to summarize: {len(pending)} messages after the watermark, "
                f"{self.policy.retain_tail} kept verbatim"
            )

        logger.info(
            f"Summarizing {len(batch)} messages of chat {chat_id} "
            f"(previous v{current_version})"
        )

        system_prompt = build_summary_prompt(latest)
        estimated = estimate(system_prompt) + estimate_messages(batch) + self.output_budget
        try:
            async with self.ledger.reserve(
                user_id, estimated, CostCategory.SUMMARIZATION, chat_id
            ) as call:
                try:
                    response = await asyncio.wait_for(
                        self.provider.send(batch, system_prompt, model=self.model),
                        timeout=self.llm_timeout,
                    )
                except asyncio.TimeoutError as e:
                    raise SummarizationFailed(
                        f"Provider did not respond within {self.llm_timeout:g}s"
                    ) from e
                except ProviderUnavailable as e:
                    raise SummarizationFailed(f"Provider unavailable: {e}") from e
                result = await call.settle(
                    response.input_tokens,
                    response.output_tokens,
                    prompt_text=f"{system_prompt}\n\n{format_transcript(batch)}",
                    completion_text=response.text,
                )
        except QuotaExceeded as e:
            raise SummarizationFailed(str(e)) from e

        covered = (latest.covered_message_count if latest else 0) + len(batch)
        try:
            summary = await self.summary_store.append(
                chat_id,
                response.text,
                covered,
                batch[-1].id,
                result.charged_tokens,
                base_version=base_version,
            )
        except SummaryVersionConflict as e:
            # A newer job committed first, e.g. after this one was reset as stale
            logger.warning(f"Discarding summary for chat {chat_id}: {e}")
            return None

        if self.policy.keep_versions:
            await self.summary_store.prune(chat_id, self.policy.keep_versions)

        if self.on_created:
            await self.on_created(user_id, chat_id, summary.version)
        return summary

    def _batch(self, pending: list[Message]) -> list[Message]:
        """Everything after the watermark except the newest retain_tail messages."""
        if self.policy.retain_tail <= 0:
            return pending
        return pending[: -self.policy.retain_tail]

    # ============= Manual and maintenance =============

    async def force(self, chat_id: str, user_id: str) -> Summary | None:
        """Run a job now, under the same at-most-once rule as trigger()."""
        ctx = await self.selector.context_settings(chat_id)
        if not ctx.use_summary or ctx.mode == ContextMode.NONE:
            raise SummarizationDisabled(f"Chat {chat_id} does not use summaries")

        latest = await self.summary_store.latest(chat_id)
        job_id = str(uuid.uuid4())
        if not await self.store.try_schedule_summarization(
            chat_id, job_id, user_id, latest.version if latest else 0
        ):
            raise SummarizationInProgress(
                f"A summarization job is already running for chat {chat_id}"
            )

        logger.info(f"Forced summarization job {job_id} for chat {chat_id}")
        return await self.run_job(chat_id, job_id, user_id, raise_failures=True)

    async def reset_stale(self, older_than: datetime | None = None) -> list[str]:
        """Return chats stuck in scheduled/summarizing to idle."""
        chat_ids = await self.store.reset_stale_summarizations(
            older_than or datetime.now(timezone.utc)
        )
        for chat_id in chat_ids:
            logger.warning(f"Reset stale summarization state for chat {chat_id}")
        return chat_ids
