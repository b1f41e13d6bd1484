"""Shared fixtures: in-process store, mock LM provider, wired services."""

import os

# Set up environment before importing groupchat
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("LLM_BACKEND", "mock")
os.environ.setdefault("JOB_BACKEND", "inline")

from datetime import timedelta

import pytest

from chatmodels import ContextMode, ContextSettings, MessageKind
from groupchat.db.memory import MemoryDatabase
from groupchat.runtime import build_runtime
from groupchat.services.llm_mock import MockProvider
from groupchat.services.token_ledger import TokenLedger

CHAT_ID = "chat-1"
ALICE = "alice"
BOB = "bob"


class Recorder:
    """Async callable that remembers its calls."""

    def __init__(self):
        self.calls: list[tuple] = []

    async def __call__(self, *args):
        self.calls.append(args)


@pytest.fixture
def store():
    return MemoryDatabase()


@pytest.fixture
def provider():
    return MockProvider()


@pytest.fixture
def scheduler():
    """Records scheduled jobs instead of running them."""
    return Recorder()


@pytest.fixture
def runtime(store, provider, scheduler):
    rt = build_runtime(store=store, provider=provider, scheduler=scheduler)
    rt.ledger.on_low_balance = Recorder()
    rt.orchestrator.on_created = Recorder()
    rt.orchestrator.on_failed = Recorder()
    return rt


@pytest.fixture
def add_messages(store):
    """Append numbered messages ("message 1", "message 2", ...) to a chat."""

    async def _add(
        count: int,
        chat_id: str = CHAT_ID,
        author_id: str = ALICE,
        kind: MessageKind = MessageKind.USER,
        is_command: bool = False,
        start: int = 1,
    ):
        return [
            await store.create_message(
                chat_id, author_id, f"message {i}", kind=kind, is_command=is_command
            )
            for i in range(start, start + count)
        ]

    return _add


@pytest.fixture
def configure_chat(store):
    """Add Alice and Bob to the chat and save its context settings."""

    async def _configure(
        mode: ContextMode = ContextMode.ALL_MESSAGES,
        use_summary: bool = True,
        chat_id: str = CHAT_ID,
    ):
        await store.add_chat_member(chat_id, ALICE)
        await store.add_chat_member(chat_id, BOB)
        return await store.save_context_settings(
            ContextSettings(chat_id=chat_id, mode=mode, use_summary=use_summary)
        )

    return _configure


@pytest.fixture
def ledger(store):
    """A small-quota ledger: 1000 tokens, low-balance warning below 100."""
    return TokenLedger(
        store,
        default_quota=1000,
        low_water_mark=100,
        reservation_ttl=timedelta(minutes=10),
        on_low_balance=Recorder(),
    )
