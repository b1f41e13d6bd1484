"""Periodic cleanup of work that never reached a terminal step."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from groupchat.services.summarization import SummarizationOrchestrator
from groupchat.services.token_ledger import TokenLedger

logger = logging.getLogger(__name__)


class Watchdog:
    """Settles pending calls, reclaims abandoned reservations, unsticks summarization."""

    def __init__(
        self,
        ledger: TokenLedger,
        orchestrator: SummarizationOrchestrator,
        stale_after: timedelta = timedelta(minutes=15),
        interval_seconds: float = 60.0,
    ):
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.stale_after = stale_after
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    async def sweep(self, now: datetime | None = None) -> tuple[int, int, int]:
        """One pass. Returns (pending calls settled, reservations reclaimed, chats reset).

        Pending settlements go first so their reservations are charged
        rather than reclaimed.
        """
        now = now or datetime.now(timezone.utc)
        settled = await self.ledger.settle_pending()
        reclaimed = await self.ledger.reclaim_expired(now)
        reset = await self.orchestrator.reset_stale(now - self.stale_after)
        if settled or reclaimed or reset:
            logger.info(
                f"Watchdog settled {len(settled)} pending calls, "
                f"reclaimed {len(reclaimed)} reservations, "
                f"reset {len(reset)} summarization states"
            )
        return len(settled), len(reclaimed), len(reset)

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Watchdog sweep failed: {e}")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info(f"Watchdog started (every {self.interval_seconds:g}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
