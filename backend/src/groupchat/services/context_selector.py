"""Pick which prior messages of a chat may be shown to the assistant."""

import logging

from chatmodels import ContextMode, ContextSettings, Message
from groupchat.db import Store

logger = logging.getLogger(__name__)


class ContextSelector:
    """Mode-aware message windows over the message store.

    command_only keeps assistant replies and user messages that addressed
    the assistant; all_messages keeps everything; none keeps nothing.
    """

    def __init__(self, store: Store):
        self.store = store

    async def select(
        self, chat_id: str, mode: ContextMode, limit: int = 50
    ) -> list[Message]:
        """The newest `limit` qualifying messages, in chronological order."""
        if mode == ContextMode.NONE or limit <= 0:
            return []

        newest = await self.store.list_messages(
            chat_id,
            command_only=mode == ContextMode.COMMAND_ONLY,
            limit=limit,
            newest_first=True,
        )
        newest.reverse()
        return newest

    async def select_after(
        self, chat_id: str, mode: ContextMode, watermark: Message | None
    ) -> list[Message]:
        """Every qualifying message strictly after the watermark, chronological."""
        if mode == ContextMode.NONE:
            return []
        return await self.store.list_messages(
            chat_id,
            command_only=mode == ContextMode.COMMAND_ONLY,
            after=watermark,
        )

    async def count_after(
        self, chat_id: str, mode: ContextMode, watermark: Message | None
    ) -> int:
        """How many qualifying messages exist after the watermark."""
        if mode == ContextMode.NONE:
            return 0
        return await self.store.count_messages(
            chat_id,
            command_only=mode == ContextMode.COMMAND_ONLY,
            after=watermark,
        )

    async def context_settings(self, chat_id: str) -> ContextSettings:
        """Stored settings, or the defaults for a chat that never saved any."""
        stored = await self.store.get_context_settings(chat_id)
        return stored or ContextSettings(chat_id=chat_id)
