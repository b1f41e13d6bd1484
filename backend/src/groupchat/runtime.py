"""Service wiring - one set of services per process, built from settings."""

import logging
from dataclasses import dataclass
from datetime import timedelta

from groupchat.config import settings
from groupchat.db import Store, db
from groupchat.services.chat_handler import ChatHandler
from groupchat.services.context_assembler import ContextAssembler
from groupchat.services.context_selector import ContextSelector
from groupchat.services.llm import LLMProvider, create_provider
from groupchat.services.summarization import Scheduler, SummarizationOrchestrator
from groupchat.services.summary_store import SummaryStore
from groupchat.services.token_ledger import TokenLedger
from groupchat.services.watchdog import Watchdog
from groupchat.services.wikipedia import WikipediaClient

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """The services of one deployment."""

    store: Store
    provider: LLMProvider
    ledger: TokenLedger
    selector: ContextSelector
    summary_store: SummaryStore
    orchestrator: SummarizationOrchestrator
    assembler: ContextAssembler
    handler: ChatHandler
    watchdog: Watchdog


def _default_scheduler() -> Scheduler | None:
    if settings.job_backend == "dbos":
        from groupchat.workflows.summarization import enqueue_summarization

        return enqueue_summarization
    # None makes the orchestrator run jobs as in-process background tasks
    return None


def build_runtime(
    store: Store | None = None,
    provider: LLMProvider | None = None,
    scheduler: Scheduler | None = None,
) -> Runtime:
    """Build every service from settings. Arguments override the defaults."""
    store = store if store is not None else db
    provider = provider or create_provider()
    policy = settings.summarization_policy()

    ledger = TokenLedger(
        store,
        default_quota=settings.token_default_quota,
        low_water_mark=settings.token_low_water_mark,
        reservation_ttl=timedelta(seconds=settings.token_reservation_ttl_seconds),
        cost_per_1k_input_cents=settings.cost_per_1k_input_cents,
        cost_per_1k_output_cents=settings.cost_per_1k_output_cents,
        reconcile_attempts=settings.token_reconcile_attempts,
        reconcile_backoff_seconds=settings.token_reconcile_backoff_seconds,
    )
    selector = ContextSelector(store)
    summary_store = SummaryStore(store)
    orchestrator = SummarizationOrchestrator(
        store,
        summary_store,
        selector,
        ledger,
        provider,
        policy=policy,
        scheduler=scheduler or _default_scheduler(),
        model=settings.claude_summary_model,
        output_budget=settings.summary_output_budget,
        llm_timeout=settings.llm_timeout_seconds,
    )
    assembler = ContextAssembler(
        selector,
        summary_store,
        orchestrator,
        policy=policy,
        max_messages=settings.context_max_messages,
    )
    handler = ChatHandler(
        store,
        assembler,
        ledger,
        orchestrator,
        provider,
        wikipedia=WikipediaClient(
            settings.wikipedia_api_url, timeout=settings.wikipedia_timeout_seconds
        ),
        assistant_user_id=settings.assistant_user_id,
        system_user_id=settings.system_user_id,
        response_budget=settings.token_response_budget,
        llm_timeout=settings.llm_timeout_seconds,
        model=settings.claude_model,
    )
    watchdog = Watchdog(
        ledger,
        orchestrator,
        stale_after=timedelta(seconds=settings.summarization_stale_seconds),
        interval_seconds=settings.watchdog_interval_seconds,
    )
    logger.info(
        f"Built runtime (storage={settings.storage_backend}, "
        f"jobs={settings.job_backend}, llm={settings.llm_backend})"
    )
    return Runtime(
        store=store,
        provider=provider,
        ledger=ledger,
        selector=selector,
        summary_store=summary_store,
        orchestrator=orchestrator,
        assembler=assembler,
        handler=handler,
        watchdog=watchdog,
    )


# Singleton runtime instance
_runtime: Runtime | None = None


def get_runtime() -> Runtime:
    """Get the process-wide runtime, building it on first use."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    """Replace the process-wide runtime (tests, alternative wiring)."""
    global _runtime
    _runtime = runtime
