"""Unit tests for the context selector."""

import pytest

from chatmodels import ContextMode, MessageKind
from groupchat.services.context_selector import ContextSelector

CHAT_ID = "chat-1"


@pytest.fixture
def selector(store):
    return ContextSelector(store)


async def _mixed_chat(store):
    """Plain chatter, a command, the reply to it and a system notice."""
    plain = await store.create_message(CHAT_ID, "alice", "anyone up for lunch?")
    command = await store.create_message(
        CHAT_ID, "bob", "/ask where should we eat?", is_command=True
    )
    reply = await store.create_message(
        CHAT_ID, "assistant", "Try the noodle place.", kind=MessageKind.ASSISTANT
    )
    notice = await store.create_message(
        CHAT_ID, "system", "Please provide a topic.", kind=MessageKind.SYSTEM
    )
    return plain, command, reply, notice


class TestSelect:
    """Test mode-aware windows."""

    @pytest.mark.asyncio
    async def test_mode_none_selects_nothing(self, selector, store, add_messages):
        await add_messages(5)

        assert await selector.select(CHAT_ID, ContextMode.NONE) == []

    @pytest.mark.asyncio
    async def test_command_only_keeps_commands_and_replies(self, selector, store):
        plain, command, reply, notice = await _mixed_chat(store)

        selected = await selector.select(CHAT_ID, ContextMode.COMMAND_ONLY)

        assert [m.id for m in selected] == [command.id, reply.id]

    @pytest.mark.asyncio
    async def test_all_messages_keeps_everything(self, selector, store):
        messages = await _mixed_chat(store)

        selected = await selector.select(CHAT_ID, ContextMode.ALL_MESSAGES)

        assert [m.id for m in selected] == [m.id for m in messages]

    @pytest.mark.asyncio
    async def test_limit_keeps_newest_in_chronological_order(self, selector, add_messages):
        messages = await add_messages(10)

        selected = await selector.select(CHAT_ID, ContextMode.ALL_MESSAGES, limit=3)

        assert [m.id for m in selected] == [m.id for m in messages[-3:]]

    @pytest.mark.asyncio
    async def test_fewer_than_limit_returns_all(self, selector, add_messages):
        messages = await add_messages(4)

        selected = await selector.select(CHAT_ID, ContextMode.ALL_MESSAGES, limit=50)

        assert [m.id for m in selected] == [m.id for m in messages]

    @pytest.mark.asyncio
    async def test_other_chats_are_not_selected(self, selector, add_messages):
        await add_messages(3, chat_id="chat-2")

        assert await selector.select(CHAT_ID, ContextMode.ALL_MESSAGES) == []


class TestSelectAfter:
    """Test watermark-relative selection."""

    @pytest.mark.asyncio
    async def test_strictly_after_watermark(self, selector, add_messages):
        messages = await add_messages(8)

        after = await selector.select_after(CHAT_ID, ContextMode.ALL_MESSAGES, messages[4])

        assert [m.id for m in after] == [m.id for m in messages[5:]]
        assert await selector.count_after(CHAT_ID, ContextMode.ALL_MESSAGES, messages[4]) == 3

    @pytest.mark.asyncio
    async def test_no_watermark_selects_everything(self, selector, add_messages):
        messages = await add_messages(60)

        after = await selector.select_after(CHAT_ID, ContextMode.ALL_MESSAGES, None)

        assert len(after) == len(messages)

    @pytest.mark.asyncio
    async def test_respects_mode(self, selector, store):
        plain, command, reply, notice = await _mixed_chat(store)

        after = await selector.select_after(CHAT_ID, ContextMode.COMMAND_ONLY, plain)

        assert [m.id for m in after] == [command.id, reply.id]


class TestContextSettings:
    """Test settings defaults."""

    @pytest.mark.asyncio
    async def test_defaults_for_unconfigured_chat(self, selector):
        ctx = await selector.context_settings(CHAT_ID)

        assert ctx.mode == ContextMode.COMMAND_ONLY
        assert ctx.use_summary is False

    @pytest.mark.asyncio
    async def test_stored_settings_win(self, selector, configure_chat):
        await configure_chat(mode=ContextMode.NONE, use_summary=True)

        ctx = await selector.context_settings(CHAT_ID)

        assert ctx.mode == ContextMode.NONE
        assert ctx.use_summary is True
