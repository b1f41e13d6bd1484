"""Tests for the server-sent event bus and stream."""

import json

import pytest

from groupchat.services.token_ledger import TokenLedger
from groupchat.sse import EventType, SSEEvent, event_bus, event_stream, notify_low_balance

ALICE = "alice"
BOB = "bob"


class FakeRequest:
    """Stands in for a Starlette request that stays connected."""

    def __init__(self):
        self.disconnected = False

    async def is_disconnected(self) -> bool:
        return self.disconnected


class TestEventBus:
    """Test publishing to subscribed users."""

    @pytest.mark.asyncio
    async def test_low_balance_reaches_subscriber(self, store):
        """A reconcile that drops below the water mark is pushed to the user."""
        ledger = TokenLedger(store, default_quota=1000, low_water_mark=100)
        queue = await event_bus.subscribe_user(ALICE)
        try:
            check = await ledger.check_and_reserve(ALICE, 950)
            await ledger.reconcile(ALICE, check.call_id, 900, 50)

            event = queue.get_nowait()
        finally:
            await event_bus.unsubscribe_user(ALICE, queue)

        assert event.event == EventType.LOW_BALANCE
        assert event.data == {"remaining": 50, "quota": 1000}
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_events_go_only_to_their_user(self):
        queue = await event_bus.subscribe_user(BOB)
        try:
            await notify_low_balance(ALICE, 10, 1000)
        finally:
            await event_bus.unsubscribe_user(BOB, queue)

        assert queue.empty()

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self):
        await notify_low_balance(ALICE, 10, 1000)

    def test_encode(self):
        event = SSEEvent(event=EventType.LOW_BALANCE, data={"remaining": 5}, id="abc")

        assert event.encode() == (
            "id: abc\n"
            "event: tokens:low_balance\n"
            'data: {"remaining": 5}\n'
            "\n"
        )


class TestEventStream:
    """Test the per-user SSE generator."""

    @pytest.mark.asyncio
    async def test_stream_yields_connected_then_published_events(self):
        stream = event_stream(ALICE, FakeRequest(), heartbeat_interval=5)

        connected = await stream.__anext__()
        assert "event: connected" in connected

        await notify_low_balance(ALICE, 42, 1000)
        pushed = await stream.__anext__()
        await stream.aclose()

        assert "event: tokens:low_balance" in pushed
        data_line = next(line for line in pushed.splitlines() if line.startswith("data: "))
        assert json.loads(data_line[len("data: "):]) == {"remaining": 42, "quota": 1000}
        assert ALICE not in event_bus._user_queues

    @pytest.mark.asyncio
    async def test_idle_stream_sends_heartbeat(self):
        stream = event_stream(ALICE, FakeRequest(), heartbeat_interval=0.01)

        await stream.__anext__()
        heartbeat = await stream.__anext__()
        await stream.aclose()

        assert "event: heartbeat" in heartbeat
