"""Assemble the context sent to the assistant for one call.

The result is recomputed on every call and never cached. Its token_estimate
is what the ledger pre-check consumes, since no provider figure exists
before the call is made.
"""

import logging

from chatmodels import (
    AssemblyResult,
    ContextMode,
    ContextPreview,
    ContextSettings,
    Message,
    SummarizationPolicy,
)
from groupchat.services.context_selector import ContextSelector
from groupchat.services.summarization import SummarizationOrchestrator
from groupchat.services.summary_store import SummaryStore
from groupchat.services.token_estimator import estimate, estimate_messages

logger = logging.getLogger(__name__)


class ContextAssembler:
    """Combines the selected window with the authoritative summary."""

    def __init__(
        self,
        selector: ContextSelector,
        summary_store: SummaryStore,
        orchestrator: SummarizationOrchestrator,
        policy: SummarizationPolicy | None = None,
        max_messages: int = 50,
    ):
        self.selector = selector
        self.summary_store = summary_store
        self.orchestrator = orchestrator
        self.policy = policy or orchestrator.policy
        self.max_messages = max_messages

    async def assemble(self, chat_id: str, max_messages: int | None = None) -> AssemblyResult:
        ctx = await self.selector.context_settings(chat_id)
        if max_messages is None:
            max_messages = self.max_messages
        return await self._assemble(ctx, max_messages)

    async def _assemble(self, ctx: ContextSettings, max_messages: int) -> AssemblyResult:
        if ctx.mode == ContextMode.NONE:
            return AssemblyResult.empty()

        window = await self.selector.select(ctx.chat_id, ctx.mode, max_messages)
        messages = window
        summary = None
        needs_new_summary = False

        if ctx.use_summary and len(window) > self.policy.min_corpus:
            summary = await self.summary_store.latest(ctx.chat_id)
            if summary is not None:
                watermark = await self.summary_store.watermark_message(summary)
                messages = self._after_watermark(window, watermark)
            needs_new_summary = await self.orchestrator.needs_new_summary(
                ctx.chat_id, ctx.mode, summary
            )

        token_estimate = estimate_messages(messages)
        if summary is not None:
            token_estimate += estimate(summary.text)

        logger.debug(
            f"Assembled chat {ctx.chat_id}: {len(messages)} of {len(window)} messages, "
            f"summary v{summary.version if summary else 0}, ~{token_estimate} tokens"
        )
        return AssemblyResult(
            messages=messages,
            summary=summary,
            token_estimate=token_estimate,
            needs_new_summary=needs_new_summary,
            total_message_count=len(window),
        )

    def _after_watermark(self, window: list[Message], watermark: Message) -> list[Message]:
        fresh = [m for m in window if m.sort_key > watermark.sort_key]
        if len(fresh) >= self.policy.min_fresh_messages:
            return fresh
        # Too little after the watermark, keep the tail rather than starve the context
        if self.policy.retain_tail <= 0:
            return fresh
        return window[-self.policy.retain_tail:]

    async def preview(self, chat_id: str) -> ContextPreview:
        """The current assembly plus a human-readable rendering for display."""
        ctx = await self.selector.context_settings(chat_id)
        assembly = await self._assemble(ctx, self.max_messages)
        return ContextPreview(assembly=assembly, text=render_preview(ctx, assembly))


def render_preview(ctx: ContextSettings, assembly: AssemblyResult) -> str:
    sections = []

    if assembly.summary is not None:
        summary = assembly.summary
        sections.append(
            "=== CONVERSATION SUMMARY ===\n"
            f"(v{summary.version}, covers {summary.covered_message_count} messages)\n"
            f"{summary.text}"
        )

    lines = [f"=== RECENT MESSAGES ({len(assembly.messages)}) ==="]
    for msg in assembly.messages:
        lines.append(
            f"[{msg.created_at.strftime('%Y-%m-%d %H:%M')}] {msg.author_id}: {msg.content}"
        )
    sections.append("\n".join(lines))

    sections.append(
        "=== CONTEXT STATISTICS ===\n"
        f"Mode: {ctx.mode.value}\n"
        f"Using summary: {'yes' if assembly.summary else 'no'}\n"
        f"Messages in window: {assembly.total_message_count}\n"
        f"Messages included: {len(assembly.messages)}\n"
        f"Estimated tokens: {assembly.token_estimate}\n"
        f"Needs new summary: {'yes' if assembly.needs_new_summary else 'no'}"
    )
    return "\n\n".join(sections)
