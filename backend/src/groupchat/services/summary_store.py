"""Versioned, append-only chat summaries."""

import logging

from chatmodels import Message, Summary, SummaryStats
from groupchat.db import Store
from groupchat.errors import InvariantViolation

logger = logging.getLogger(__name__)


class SummaryStore:
    """Summary versions of each chat.

    Versions come from a per-chat sequence incremented in the same
    transaction as the insert, so concurrent appends never share a version.
    Only the highest version (the authoritative summary) feeds context.
    """

    def __init__(self, store: Store):
        self.store = store

    async def latest(self, chat_id: str) -> Summary | None:
        return await self.store.get_latest_summary(chat_id)

    async def history(self, chat_id: str) -> list[Summary]:
        """All retained versions, newest first."""
        return await self.store.list_summaries(chat_id)

    async def append(
        self,
        chat_id: str,
        text: str,
        covered_message_count: int,
        watermark_message_id: str,
        tokens_spent: int = 0,
        base_version: int | None = None,
    ) -> Summary:
        """Store a new version.

        Raises InvariantViolation if the watermark is not a message of the
        chat or would move behind the current authoritative watermark, and
        SummaryVersionConflict if base_version is given and is no longer the
        newest version.
        """
        summary = await self.store.append_summary(
            chat_id,
            text,
            covered_message_count,
            watermark_message_id,
            tokens_spent,
            base_version=base_version,
        )
        logger.info(
            f"Stored summary v{summary.version} for chat {chat_id} "
            f"({covered_message_count} messages, watermark {watermark_message_id})"
        )
        return summary

    async def prune(self, chat_id: str, keep_versions: int) -> int:
        """Delete all but the newest versions. The authoritative one always stays."""
        deleted = await self.store.delete_old_summaries(chat_id, max(1, keep_versions))
        if deleted:
            logger.info(f"Pruned {deleted} old summaries for chat {chat_id}")
        return deleted

    async def watermark_message(self, summary: Summary) -> Message:
        message = await self.store.get_message(summary.watermark_message_id)
        if message is None or message.chat_id != summary.chat_id:
            raise InvariantViolation(
                f"Watermark {summary.watermark_message_id} of summary "
                f"v{summary.version} not found in chat {summary.chat_id}"
            )
        return message

    async def stats(self, chat_id: str) -> SummaryStats:
        summaries = await self.history(chat_id)
        if not summaries:
            return SummaryStats()
        return SummaryStats(
            total_summaries=len(summaries),
            total_tokens_spent=sum(s.tokens_spent for s in summaries),
            total_messages_summarized=summaries[0].covered_message_count,
            latest_summary_at=summaries[0].created_at,
        )
