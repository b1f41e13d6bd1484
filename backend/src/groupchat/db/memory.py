"""In-process store with the same interface as the PostgreSQL client.

Used for local development (STORAGE_BACKEND=memory) and tests. Per-chat and
per-user asyncio locks stand in for the row locks the SQL backend takes.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from chatmodels import (
    ContextSettings,
    Message,
    MessageKind,
    PurchaseResult,
    ReconcileResult,
    Summary,
    SummarizationState,
    SummarizationStatus,
    TokenAccount,
    TokenCheck,
    TokenPurchase,
    TokenReservation,
    TokenUsage,
)
from groupchat.errors import InvariantViolation, SummaryVersionConflict

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryDatabase:
    """Dictionary-backed store for a single process."""

    def __init__(self):
        self._memberships: set[tuple[str, str]] = set()
        self._messages: dict[str, list[Message]] = defaultdict(list)
        self._messages_by_id: dict[str, Message] = {}
        self._last_created_at: datetime | None = None
        self._context_settings: dict[str, ContextSettings] = {}
        self._summaries: dict[str, list[Summary]] = defaultdict(list)
        self._summary_sequences: dict[str, int] = {}
        self._summarization: dict[str, SummarizationStatus] = {}
        self._accounts: dict[tuple[str, str], TokenAccount] = {}
        self._reservations: dict[str, TokenReservation] = {}
        self._usage: dict[str, TokenUsage] = {}
        self._monthly_limits: dict[str, int] = {}
        self._purchased: dict[str, int] = {}
        self._purchases: dict[tuple[str, str], TokenPurchase] = {}
        self._lifetime_used: dict[str, int] = {}
        self._chat_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._user_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def connect(self):
        logger.info("Using in-process memory store")

    async def disconnect(self):
        pass

    async def ensure_tables_exist(self):
        pass

    # ============= Membership Operations =============

    async def add_chat_member(self, chat_id: str, user_id: str, role: str | None = None):
        self._memberships.add((chat_id, user_id))

    async def is_chat_member(self, chat_id: str, user_id: str) -> bool:
        return (chat_id, user_id) in self._memberships

    # ============= Message Operations =============

    def _next_timestamp(self) -> datetime:
        # Strictly increasing, so insertion order is the chat order
        now = _utcnow()
        if self._last_created_at is not None and now <= self._last_created_at:
            now = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = now
        return now

    async def create_message(
        self,
        chat_id: str,
        author_id: str,
        content: str,
        kind: MessageKind = MessageKind.USER,
        is_command: bool = False,
    ) -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            chat_id=chat_id,
            author_id=author_id,
            content=content,
            kind=kind,
            is_command=is_command,
            created_at=self._next_timestamp(),
        )
        self._messages[chat_id].append(message)
        self._messages_by_id[message.id] = message
        return message

    async def get_message(self, message_id: str) -> Message | None:
        return self._messages_by_id.get(message_id)

    def _filter_messages(
        self, chat_id: str, command_only: bool, after: Message | None
    ) -> list[Message]:
        messages = sorted(self._messages.get(chat_id, []), key=lambda m: m.sort_key)
        if command_only:
            messages = [m for m in messages if m.in_command_context]
        if after is not None:
            messages = [m for m in messages if m.sort_key > after.sort_key]
        return messages

    async def list_messages(
        self,
        chat_id: str,
        *,
        command_only: bool = False,
        after: Message | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[Message]:
        messages = self._filter_messages(chat_id, command_only, after)
        if newest_first:
            messages.reverse()
        if limit is not None:
            messages = messages[:limit]
        return messages

    async def count_messages(
        self,
        chat_id: str,
        *,
        command_only: bool = False,
        after: Message | None = None,
    ) -> int:
        return len(self._filter_messages(chat_id, command_only, after))

    # ============= Context Settings Operations =============

    async def get_context_settings(self, chat_id: str) -> ContextSettings | None:
        stored = self._context_settings.get(chat_id)
        return stored.model_copy() if stored else None

    async def save_context_settings(self, context_settings: ContextSettings) -> ContextSettings:
        context_settings.updated_at = _utcnow()
        self._context_settings[context_settings.chat_id] = context_settings.model_copy()
        return context_settings

    # ============= Summary Operations =============

    async def get_latest_summary(self, chat_id: str) -> Summary | None:
        summaries = self._summaries.get(chat_id)
        if not summaries:
            return None
        return max(summaries, key=lambda s: s.version)

    async def list_summaries(self, chat_id: str) -> list[Summary]:
        return sorted(self._summaries.get(chat_id, []), key=lambda s: s.version, reverse=True)

    async def append_summary(
        self,
        chat_id: str,
        text: str,
        covered_message_count: int,
        watermark_message_id: str,
        tokens_spent: int,
        base_version: int | None = None,
    ) -> Summary:
        async with self._chat_locks[chat_id]:
            last_version = self._summary_sequences.get(chat_id, 0)
            if base_version is not None and last_version != base_version:
                raise SummaryVersionConflict(
                    f"Chat {chat_id} is at summary v{last_version}, expected v{base_version}"
                )

            watermark = self._messages_by_id.get(watermark_message_id)
            if watermark is None or watermark.chat_id != chat_id:
                raise InvariantViolation(
                    f"Watermark {watermark_message_id} is not a message of chat {chat_id}"
                )

            previous = await self.get_latest_summary(chat_id)
            if previous is not None:
                previous_watermark = self._messages_by_id.get(previous.watermark_message_id)
                if previous_watermark and watermark.sort_key < previous_watermark.sort_key:
                    raise InvariantViolation(
                        f"Watermark {watermark_message_id} rewinds past {previous_watermark.id}"
                    )

            version = last_version + 1
            summary = Summary(
                chat_id=chat_id,
                text=text,
                covered_message_count=covered_message_count,
                watermark_message_id=watermark_message_id,
                tokens_spent=tokens_spent,
                version=version,
            )
            self._summary_sequences[chat_id] = version
            self._summaries[chat_id].append(summary)
            return summary

    async def delete_old_summaries(self, chat_id: str, keep_versions: int) -> int:
        async with self._chat_locks[chat_id]:
            ordered = await self.list_summaries(chat_id)
            kept, dropped = ordered[:keep_versions], ordered[keep_versions:]
            self._summaries[chat_id] = kept
            return len(dropped)

    # ============= Summarization State Operations =============

    async def get_summarization_status(self, chat_id: str) -> SummarizationStatus:
        status = self._summarization.get(chat_id)
        if status is None:
            return SummarizationStatus(chat_id=chat_id)
        return status.model_copy()

    async def try_schedule_summarization(
        self, chat_id: str, job_id: str, user_id: str, base_version: int
    ) -> bool:
        async with self._chat_locks[chat_id]:
            current = self._summarization.get(chat_id)
            if current is not None and current.state != SummarizationState.IDLE:
                return False
            self._summarization[chat_id] = SummarizationStatus(
                chat_id=chat_id,
                state=SummarizationState.SCHEDULED,
                job_id=job_id,
                user_id=user_id,
                base_version=base_version,
            )
            return True

    async def begin_summarization(self, chat_id: str, job_id: str) -> SummarizationStatus | None:
        async with self._chat_locks[chat_id]:
            current = self._summarization.get(chat_id)
            if (
                current is None
                or current.job_id != job_id
                or current.state != SummarizationState.SCHEDULED
            ):
                return None
            current.state = SummarizationState.SUMMARIZING
            current.updated_at = _utcnow()
            return current.model_copy()

    async def finish_summarization(self, chat_id: str, job_id: str):
        async with self._chat_locks[chat_id]:
            current = self._summarization.get(chat_id)
            if current is None or current.job_id != job_id:
                return
            current.state = SummarizationState.IDLE
            current.job_id = None
            current.updated_at = _utcnow()

    async def reset_stale_summarizations(self, older_than: datetime) -> list[str]:
        reset: list[str] = []
        for chat_id, status in self._summarization.items():
            if status.state != SummarizationState.IDLE and status.updated_at < older_than:
                status.state = SummarizationState.IDLE
                status.job_id = None
                status.updated_at = _utcnow()
                reset.append(chat_id)
        return reset

    # ============= Token Operations =============

    def _account(self, user_id: str, period: str, default_quota: int) -> TokenAccount:
        key = (user_id, period)
        if key not in self._accounts:
            self._accounts[key] = TokenAccount(
                user_id=user_id,
                period=period,
                quota=self._monthly_limits.get(user_id, default_quota),
            )
        account = self._accounts[key]
        account.purchased = self._purchased.get(user_id, 0)
        return account

    async def get_token_account(
        self, user_id: str, period: str, default_quota: int
    ) -> TokenAccount:
        async with self._user_locks[user_id]:
            return self._account(user_id, period, default_quota).model_copy()

    async def set_monthly_limit(
        self, user_id: str, period: str, monthly_limit: int, default_quota: int
    ) -> TokenAccount:
        async with self._user_locks[user_id]:
            self._monthly_limits[user_id] = monthly_limit
            account = self._account(user_id, period, default_quota)
            account.quota = monthly_limit
            account.updated_at = _utcnow()
            return account.model_copy()

    async def add_token_purchase(
        self, purchase: TokenPurchase, period: str, default_quota: int
    ) -> PurchaseResult:
        async with self._user_locks[purchase.user_id]:
            key = (purchase.payment_provider, purchase.payment_id)
            existing = self._purchases.get(key)
            if existing is not None:
                account = self._account(purchase.user_id, period, default_quota)
                return PurchaseResult(
                    purchase=existing, account=account.model_copy(), duplicate=True
                )

            self._purchases[key] = purchase
            self._purchased[purchase.user_id] = (
                self._purchased.get(purchase.user_id, 0) + purchase.tokens_added
            )
            account = self._account(purchase.user_id, period, default_quota)
            account.updated_at = _utcnow()
            return PurchaseResult(purchase=purchase, account=account.model_copy())

    async def list_token_purchases(self, user_id: str, since: datetime) -> list[TokenPurchase]:
        purchases = [
            p
            for p in self._purchases.values()
            if p.user_id == user_id and p.created_at >= since
        ]
        purchases.sort(key=lambda p: p.created_at, reverse=True)
        return purchases

    async def get_lifetime_tokens_used(self, user_id: str) -> int:
        return self._lifetime_used.get(user_id, 0)

    async def reserve_tokens(
        self, reservation: TokenReservation, default_quota: int
    ) -> TokenCheck:
        async with self._user_locks[reservation.user_id]:
            account = self._account(reservation.user_id, reservation.period, default_quota)
            if not account.can_reserve(reservation.tokens):
                return TokenCheck(
                    allowed=False, remaining=account.remaining, quota=account.available
                )
            account.reserved += reservation.tokens
            account.updated_at = _utcnow()
            self._reservations[reservation.call_id] = reservation
            return TokenCheck(
                allowed=True,
                remaining=account.remaining,
                quota=account.available,
                call_id=reservation.call_id,
            )

    async def reconcile_tokens(self, usage: TokenUsage, default_quota: int) -> ReconcileResult:
        async with self._user_locks[usage.user_id]:
            existing = self._usage.get(usage.call_id)
            if existing is not None:
                account = self._account(usage.user_id, existing.period, default_quota)
                return ReconcileResult(
                    call_id=usage.call_id,
                    charged_tokens=0,
                    used=account.used,
                    remaining=account.remaining,
                    quota=account.available,
                    duplicate=True,
                )

            reservation = self._reservations.pop(usage.call_id, None)
            if reservation is not None:
                usage.period = reservation.period
            account = self._account(usage.user_id, usage.period, default_quota)
            if reservation is not None:
                account.reserved = max(0, account.reserved - reservation.tokens)
            account.used += usage.total_tokens
            account.updated_at = _utcnow()
            self._lifetime_used[usage.user_id] = (
                self._lifetime_used.get(usage.user_id, 0) + usage.total_tokens
            )
            self._usage[usage.call_id] = usage
            return ReconcileResult(
                call_id=usage.call_id,
                charged_tokens=usage.total_tokens,
                used=account.used,
                remaining=account.remaining,
                quota=account.available,
            )

    async def reclaim_expired_reservations(self, now: datetime) -> list[TokenReservation]:
        expired = [r for r in self._reservations.values() if r.expires_at < now]
        reclaimed: list[TokenReservation] = []
        for reservation in expired:
            async with self._user_locks[reservation.user_id]:
                if self._reservations.pop(reservation.call_id, None) is None:
                    continue
                account = self._accounts.get((reservation.user_id, reservation.period))
                if account is not None:
                    account.reserved = max(0, account.reserved - reservation.tokens)
                reclaimed.append(reservation)
        return reclaimed

    async def list_token_usage(self, user_id: str, limit: int = 10) -> list[TokenUsage]:
        usage = [u for u in self._usage.values() if u.user_id == user_id]
        usage.sort(key=lambda u: u.created_at, reverse=True)
        return usage[:limit]
