"""Per-user monthly token quota.

Every LM call goes through the same two steps:

1. check_and_reserve() before the call, using the assembler's estimate.
   Denied requests must not reach the provider.
2. reconcile() exactly once after the call with the provider's authoritative
   usage. Reconciliation is keyed by the call id, so a redelivered post-call
   hook charges nothing the second time.

Calls that never reach the provider's answer are released with zero usage
(release()). A completed call is never released: its reconciliation is
retried with backoff, then kept pending for the watchdog, and its
reservation stays in place until it is charged or reclaimed.

Purchased tokens raise the available amount on top of the monthly quota.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable

from chatmodels import (
    CostCategory,
    PurchaseResult,
    ReconcileResult,
    TokenAccount,
    TokenCheck,
    TokenPurchase,
    TokenReservation,
    TokenUsage,
    TokenUsageReport,
    current_period,
    period_start,
)
from groupchat.db import Store
from groupchat.errors import QuotaExceeded, StorageUnavailable
from groupchat.services.token_estimator import estimate
from groupchat.sse import notify_low_balance

logger = logging.getLogger(__name__)

LowBalanceHook = Callable[[str, int, int], Awaitable[None]]


class MeteredCall:
    """A reserved LM call waiting for its actual usage."""

    def __init__(
        self,
        ledger: "TokenLedger",
        user_id: str,
        check: TokenCheck,
        category: CostCategory,
        chat_id: str | None,
    ):
        self.ledger = ledger
        self.user_id = user_id
        self.check = check
        self.category = category
        self.chat_id = chat_id
        self.completed = False
        self.result: ReconcileResult | None = None

    @property
    def call_id(self) -> str:
        return self.check.call_id  # type: ignore[return-value]

    async def settle(
        self,
        input_tokens: int | None,
        output_tokens: int | None,
        prompt_text: str = "",
        completion_text: str = "",
    ) -> ReconcileResult:
        """Reconcile with provider usage, estimating only the figures it did not report.

        From here on the call counts as completed and is never released,
        even if reconciliation keeps failing.
        """
        if input_tokens is None:
            input_tokens = estimate(prompt_text)
        if output_tokens is None:
            output_tokens = estimate(completion_text)
        self.completed = True
        self.result = await self.ledger.reconcile_with_retry(
            self.user_id,
            self.call_id,
            input_tokens,
            output_tokens,
            category=self.category,
            chat_id=self.chat_id,
        )
        return self.result


class TokenLedger:
    """Quota checks, reservations and post-call reconciliation."""

    def __init__(
        self,
        store: Store,
        *,
        default_quota: int = 100_000,
        low_water_mark: int = 1000,
        reservation_ttl: timedelta = timedelta(minutes=10),
        cost_per_1k_input_cents: float = 0.14,
        cost_per_1k_output_cents: float = 0.28,
        reconcile_attempts: int = 3,
        reconcile_backoff_seconds: float = 0.5,
        on_low_balance: LowBalanceHook | None = notify_low_balance,
    ):
        self.store = store
        self.default_quota = default_quota
        self.low_water_mark = low_water_mark
        self.reservation_ttl = reservation_ttl
        self.cost_per_1k_input_cents = cost_per_1k_input_cents
        self.cost_per_1k_output_cents = cost_per_1k_output_cents
        self.reconcile_attempts = max(1, reconcile_attempts)
        self.reconcile_backoff_seconds = reconcile_backoff_seconds
        self.on_low_balance = on_low_balance
        # call_id -> reconcile() arguments of completed calls not yet charged
        self._pending: dict[str, dict[str, Any]] = {}

    async def get_account(self, user_id: str) -> TokenAccount:
        """Current-period account, created on first use with the user's monthly limit."""
        return await self.store.get_token_account(
            user_id, current_period(), self.default_quota
        )

    async def check_and_reserve(
        self,
        user_id: str,
        estimated_tokens: int,
        category: CostCategory = CostCategory.CHAT,
        chat_id: str | None = None,
    ) -> TokenCheck:
        """Approve or deny a call and hold its estimated tokens.

        A missing account is created with the default quota first, never
        treated as a denial.
        """
        if estimated_tokens < 0:
            raise ValueError("estimated_tokens must be non-negative")

        now = datetime.now(timezone.utc)
        reservation = TokenReservation(
            call_id=str(uuid.uuid4()),
            user_id=user_id,
            period=current_period(now),
            tokens=estimated_tokens,
            category=category,
            chat_id=chat_id,
            created_at=now,
            expires_at=now + self.reservation_ttl,
        )
        check = await self.store.reserve_tokens(reservation, self.default_quota)

        if check.allowed:
            logger.debug(
                f"Reserved {estimated_tokens} tokens for {user_id} "
                f"(call {check.call_id}, {check.remaining} remaining)"
            )
        else:
            logger.info(
                f"Denied {estimated_tokens} tokens for {user_id}: "
                f"{check.remaining} of {check.quota} remaining"
            )
        return check

    async def reconcile(
        self,
        user_id: str,
        call_id: str,
        input_tokens: int,
        output_tokens: int,
        category: CostCategory = CostCategory.CHAT,
        chat_id: str | None = None,
    ) -> ReconcileResult:
        """Charge the authoritative usage of a completed call. Idempotent per call_id."""
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError("token counts must be non-negative")

        usage = TokenUsage(
            call_id=call_id,
            user_id=user_id,
            period=current_period(),
            chat_id=chat_id,
            category=category,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            cost_cents=self.cost_cents(input_tokens, output_tokens),
        )
        result = await self.store.reconcile_tokens(usage, self.default_quota)

        if result.duplicate:
            logger.info(f"Call {call_id} already reconciled, ignoring duplicate")
            return result

        logger.debug(
            f"Reconciled call {call_id} for {user_id}: {result.charged_tokens} tokens "
            f"({category.value}), {result.remaining} remaining"
        )
        if 0 < result.remaining < self.low_water_mark and self.on_low_balance:
            await self.on_low_balance(user_id, result.remaining, result.quota)
        return result

    async def release(
        self,
        user_id: str,
        call_id: str,
        category: CostCategory = CostCategory.CHAT,
        chat_id: str | None = None,
    ) -> ReconcileResult:
        """Terminal zero-usage reconciliation for a call that never completed."""
        return await self.reconcile(
            user_id, call_id, 0, 0, category=category, chat_id=chat_id
        )

    async def reconcile_with_retry(
        self,
        user_id: str,
        call_id: str,
        input_tokens: int,
        output_tokens: int,
        category: CostCategory = CostCategory.CHAT,
        chat_id: str | None = None,
    ) -> ReconcileResult:
        """reconcile() with exponential backoff while storage is unavailable.

        If every attempt fails the call stays pending for settle_pending()
        and the last error is raised.
        """
        kwargs = dict(
            user_id=user_id,
            call_id=call_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            category=category,
            chat_id=chat_id,
        )
        self._pending[call_id] = kwargs

        attempt = 1
        while True:
            try:
                result = await self.reconcile(**kwargs)
            except StorageUnavailable as e:
                logger.warning(
                    f"Reconciling call {call_id} failed: {e} "
                    f"(attempt {attempt}/{self.reconcile_attempts})"
                )
                if attempt >= self.reconcile_attempts:
                    raise
                await asyncio.sleep(self.reconcile_backoff_seconds * 2 ** (attempt - 1))
                attempt += 1
            else:
                self._pending.pop(call_id, None)
                return result

    async def settle_pending(self) -> list[ReconcileResult]:
        """Retry completed calls whose reconciliation failed earlier."""
        settled: list[ReconcileResult] = []
        for call_id, kwargs in list(self._pending.items()):
            try:
                result = await self.reconcile(**kwargs)
            except StorageUnavailable as e:
                logger.warning(f"Call {call_id} is still unreconciled: {e}")
                continue
            self._pending.pop(call_id, None)
            settled.append(result)
        return settled

    @property
    def pending_calls(self) -> list[str]:
        return list(self._pending)

    @asynccontextmanager
    async def reserve(
        self,
        user_id: str,
        estimated_tokens: int,
        category: CostCategory = CostCategory.CHAT,
        chat_id: str | None = None,
    ) -> AsyncIterator[MeteredCall]:
        """Reserve for the duration of a block.

        Raises QuotaExceeded when denied. If the block exits before the call
        completed (error, timeout, cancellation) the reservation is released.
        """
        check = await self.check_and_reserve(user_id, estimated_tokens, category, chat_id)
        if not check.allowed:
            raise QuotaExceeded(check.remaining, check.quota)

        call = MeteredCall(self, user_id, check, category, chat_id)
        try:
            yield call
        finally:
            if not call.completed:
                await asyncio.shield(
                    self.release(user_id, call.call_id, category=category, chat_id=chat_id)
                )

    async def reclaim_expired(self, now: datetime | None = None) -> list[TokenReservation]:
        """Drop reservations whose calls never reconciled."""
        reclaimed = await self.store.reclaim_expired_reservations(
            now or datetime.now(timezone.utc)
        )
        for reservation in reclaimed:
            logger.warning(
                f"Reclaimed abandoned reservation {reservation.call_id} "
                f"({reservation.tokens} tokens) for {reservation.user_id}"
            )
        return reclaimed

    async def add_purchased_tokens(
        self,
        user_id: str,
        tokens_added: int,
        amount_paid_cents: int,
        payment_provider: str,
        payment_id: str,
    ) -> PurchaseResult:
        """Credit bought tokens. Idempotent per (payment_provider, payment_id)."""
        if tokens_added <= 0:
            raise ValueError("tokens_added must be positive")
        if amount_paid_cents < 0:
            raise ValueError("amount_paid_cents must be non-negative")

        purchase = TokenPurchase(
            user_id=user_id,
            tokens_added=tokens_added,
            amount_paid_cents=amount_paid_cents,
            payment_provider=payment_provider,
            payment_id=payment_id,
        )
        result = await self.store.add_token_purchase(
            purchase, current_period(), self.default_quota
        )
        if result.duplicate:
            logger.info(f"Payment {payment_provider}/{payment_id} already credited, ignoring")
        else:
            logger.info(
                f"Credited {tokens_added} purchased tokens to {user_id} "
                f"({result.account.remaining} remaining)"
            )
        return result

    async def set_monthly_limit(self, user_id: str, monthly_limit: int) -> TokenAccount:
        """Change a user's monthly limit, starting with the current period."""
        if monthly_limit < 0:
            raise ValueError("monthly_limit must be non-negative")
        account = await self.store.set_monthly_limit(
            user_id, current_period(), monthly_limit, self.default_quota
        )
        logger.info(f"Monthly limit for {user_id} set to {monthly_limit}")
        return account

    async def get_usage(self, user_id: str, limit: int = 10) -> TokenUsageReport:
        """Current account, recent calls, this period's purchases and lifetime use."""
        account = await self.get_account(user_id)
        recent = await self.store.list_token_usage(user_id, limit)
        purchases = await self.store.list_token_purchases(user_id, period_start())
        lifetime = await self.store.get_lifetime_tokens_used(user_id)
        return TokenUsageReport(
            account=account,
            recent_usage=recent,
            monthly_purchases=purchases,
            lifetime_used=lifetime,
        )

    def cost_cents(self, input_tokens: int, output_tokens: int) -> int | None:
        """Approximate provider cost in US cents."""
        if not input_tokens and not output_tokens:
            return None
        return round(
            (input_tokens / 1000) * self.cost_per_1k_input_cents
            + (output_tokens / 1000) * self.cost_per_1k_output_cents
        )
