"""PostgreSQL client for chat, summary and token persistence."""

import uuid
import asyncpg
from datetime import datetime, timezone
from contextlib import asynccontextmanager

from chatmodels import (
    ContextMode,
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
    CostCategory,
)
from groupchat.config import settings
from groupchat.errors import InvariantViolation, StorageUnavailable, SummaryVersionConflict


SCHEMA_SQL = """
-- Membership is managed by the chat service; read here for authorization
CREATE TABLE IF NOT EXISTS chat_memberships (
    chat_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    role TEXT,
    joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (chat_id, user_id)
);

-- Messages (append-only, ordered by created_at then id)
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL,
    author_id TEXT NOT NULL,
    content TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'user',
    is_command BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
);
CREATE INDEX IF NOT EXISTS idx_messages_chat_time ON messages(chat_id, created_at, id);

-- Context settings (one row per chat)
CREATE TABLE IF NOT EXISTS chat_context_settings (
    chat_id TEXT PRIMARY KEY,
    mode TEXT NOT NULL DEFAULT 'command_only',
    use_summary BOOLEAN NOT NULL DEFAULT FALSE,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- Summaries (immutable, versioned per chat)
CREATE TABLE IF NOT EXISTS summaries (
    id TEXT PRIMARY KEY,
    chat_id TEXT NOT NULL,
    text TEXT NOT NULL,
    covered_message_count INTEGER NOT NULL,
    watermark_message_id TEXT NOT NULL REFERENCES messages(id),
    tokens_spent INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    version INTEGER NOT NULL,
    UNIQUE (chat_id, version)
);
CREATE INDEX IF NOT EXISTS idx_summaries_chat_version ON summaries(chat_id, version DESC);

-- Per-chat version sequence; survives pruning
CREATE TABLE IF NOT EXISTS summary_sequences (
    chat_id TEXT PRIMARY KEY,
    last_version INTEGER NOT NULL
);

-- Summarization state flag (at most one job in flight per chat)
CREATE TABLE IF NOT EXISTS summarization_state (
    chat_id TEXT PRIMARY KEY,
    state TEXT NOT NULL DEFAULT 'idle',
    job_id TEXT,
    user_id TEXT,
    base_version INTEGER NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_summarization_state_state ON summarization_state(state, updated_at);

-- Token accounts (one per user per billing period)
CREATE TABLE IF NOT EXISTS token_accounts (
    user_id TEXT NOT NULL,
    period TEXT NOT NULL,
    quota BIGINT NOT NULL,
    used BIGINT NOT NULL DEFAULT 0,
    reserved BIGINT NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (user_id, period)
);

-- Outstanding reservations
CREATE TABLE IF NOT EXISTS token_reservations (
    call_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    period TEXT NOT NULL,
    tokens BIGINT NOT NULL,
    category TEXT NOT NULL,
    chat_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    expires_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_token_reservations_expires ON token_reservations(expires_at);

-- Usage history; call_id is the reconciliation idempotency key
CREATE TABLE IF NOT EXISTS token_usage (
    call_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    period TEXT NOT NULL,
    chat_id TEXT,
    category TEXT NOT NULL,
    input_tokens BIGINT NOT NULL DEFAULT 0,
    output_tokens BIGINT NOT NULL DEFAULT 0,
    total_tokens BIGINT NOT NULL DEFAULT 0,
    cost_cents INTEGER,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_token_usage_user_time ON token_usage(user_id, created_at DESC);

-- Per-user limits and balances that outlive a billing period
CREATE TABLE IF NOT EXISTS token_balances (
    user_id TEXT PRIMARY KEY,
    monthly_limit BIGINT,
    purchased_tokens BIGINT NOT NULL DEFAULT 0,
    total_tokens_used BIGINT NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- Purchase history; (payment_provider, payment_id) is the idempotency key
CREATE TABLE IF NOT EXISTS token_purchases (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    tokens_added BIGINT NOT NULL,
    amount_paid_cents INTEGER NOT NULL,
    payment_provider TEXT NOT NULL,
    payment_id TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (payment_provider, payment_id)
);
CREATE INDEX IF NOT EXISTS idx_token_purchases_user_time ON token_purchases(user_id, created_at DESC);
"""

COMMAND_CONTEXT_FILTER = "(kind = 'assistant' OR (kind = 'user' AND is_command))"


class Database:
    """PostgreSQL database client."""

    def __init__(self):
        self._pool: asyncpg.Pool | None = None

    async def connect(self):
        """Create connection pool."""
        self._pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=2,
            max_size=10,
        )

    async def disconnect(self):
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self):
        """Get a connection from the pool."""
        if not self._pool:
            raise StorageUnavailable("Database not connected")
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (OSError, asyncpg.PostgresConnectionError, asyncpg.InterfaceError) as e:
            raise StorageUnavailable(f"Database unavailable: {e}") from e

    async def ensure_tables_exist(self):
        """Create tables if they don't exist."""
        async with self.connection() as conn:
            await conn.execute(SCHEMA_SQL)

    # ============= Membership Operations =============

    async def add_chat_member(self, chat_id: str, user_id: str, role: str | None = None):
        """Record a chat membership."""
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO chat_memberships (chat_id, user_id, role)
                VALUES ($1, $2, $3)
                ON CONFLICT (chat_id, user_id) DO UPDATE SET role = EXCLUDED.role
                """,
                chat_id,
                user_id,
                role,
            )

    async def is_chat_member(self, chat_id: str, user_id: str) -> bool:
        """Check whether a user may read a chat."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT 1 FROM chat_memberships WHERE chat_id = $1 AND user_id = $2",
                chat_id,
                user_id,
            )
        return row is not None

    # ============= Message Operations =============

    async def create_message(
        self,
        chat_id: str,
        author_id: str,
        content: str,
        kind: MessageKind = MessageKind.USER,
        is_command: bool = False,
    ) -> Message:
        """Append a message to a chat."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO messages (id, chat_id, author_id, content, kind, is_command)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING *
                """,
                str(uuid.uuid4()),
                chat_id,
                author_id,
                content,
                kind.value,
                is_command,
            )
        return self._row_to_message(row)

    async def get_message(self, message_id: str) -> Message | None:
        """Get a message by ID."""
        async with self.connection() as conn:
            row = await conn.fetchrow("SELECT * FROM messages WHERE id = $1", message_id)
        if not row:
            return None
        return self._row_to_message(row)

    async def list_messages(
        self,
        chat_id: str,
        *,
        command_only: bool = False,
        after: Message | None = None,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[Message]:
        """List messages of a chat in (created_at, id) order."""
        query = "SELECT * FROM messages WHERE chat_id = $1"
        params: list = [chat_id]

        if command_only:
            query += f" AND {COMMAND_CONTEXT_FILTER}"
        if after is not None:
            query += f" AND (created_at, id) > (${len(params) + 1}, ${len(params) + 2})"
            params.extend([after.created_at, after.id])

        direction = "DESC" if newest_first else "ASC"
        query += f" ORDER BY created_at {direction}, id {direction}"

        if limit is not None:
            query += f" LIMIT ${len(params) + 1}"
            params.append(limit)

        async with self.connection() as conn:
            rows = await conn.fetch(query, *params)
        return [self._row_to_message(row) for row in rows]

    async def count_messages(
        self,
        chat_id: str,
        *,
        command_only: bool = False,
        after: Message | None = None,
    ) -> int:
        """Count messages of a chat, optionally only those after a watermark."""
        query = "SELECT COUNT(*) FROM messages WHERE chat_id = $1"
        params: list = [chat_id]

        if command_only:
            query += f" AND {COMMAND_CONTEXT_FILTER}"
        if after is not None:
            query += " AND (created_at, id) > ($2, $3)"
            params.extend([after.created_at, after.id])

        async with self.connection() as conn:
            return await conn.fetchval(query, *params)

    def _row_to_message(self, row: asyncpg.Record) -> Message:
        return Message(
            id=row["id"],
            chat_id=row["chat_id"],
            author_id=row["author_id"],
            content=row["content"],
            kind=MessageKind(row["kind"]),
            is_command=row["is_command"],
            created_at=row["created_at"],
        )

    # ============= Context Settings Operations =============

    async def get_context_settings(self, chat_id: str) -> ContextSettings | None:
        """Get the context settings of a chat, if any were stored."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM chat_context_settings WHERE chat_id = $1", chat_id
            )
        if not row:
            return None
        return ContextSettings(
            chat_id=row["chat_id"],
            mode=ContextMode(row["mode"]),
            use_summary=row["use_summary"],
            updated_at=row["updated_at"],
        )

    async def save_context_settings(self, context_settings: ContextSettings) -> ContextSettings:
        """Create or replace the context settings of a chat."""
        context_settings.updated_at = datetime.now(timezone.utc)
        async with self.connection() as conn:
            await conn.execute(
                """
                INSERT INTO chat_context_settings (chat_id, mode, use_summary, updated_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (chat_id) DO UPDATE
                SET mode = EXCLUDED.mode,
                    use_summary = EXCLUDED.use_summary,
                    updated_at = EXCLUDED.updated_at
                """,
                context_settings.chat_id,
                context_settings.mode.value,
                context_settings.use_summary,
                context_settings.updated_at,
            )
        return context_settings

    # ============= Summary Operations =============

    async def get_latest_summary(self, chat_id: str) -> Summary | None:
        """Get the authoritative (highest-version) summary of a chat."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM summaries
                WHERE chat_id = $1
                ORDER BY version DESC
                LIMIT 1
                """,
                chat_id,
            )
        if not row:
            return None
        return self._row_to_summary(row)

    async def list_summaries(self, chat_id: str) -> list[Summary]:
        """List every retained summary version, newest first."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM summaries WHERE chat_id = $1 ORDER BY version DESC",
                chat_id,
            )
        return [self._row_to_summary(row) for row in rows]

    async def append_summary(
        self,
        chat_id: str,
        text: str,
        covered_message_count: int,
        watermark_message_id: str,
        tokens_spent: int,
        base_version: int | None = None,
    ) -> Summary:
        """Insert the next summary version.

        The sequence row is locked by the upsert, so concurrent appends for
        one chat serialize and never share a version. With base_version the
        insert only succeeds if no other version was written after it.
        """
        async with self.connection() as conn:
            async with conn.transaction():
                version = await conn.fetchval(
                    """
                    INSERT INTO summary_sequences (chat_id, last_version)
                    VALUES ($1, 1)
                    ON CONFLICT (chat_id) DO UPDATE
                    SET last_version = summary_sequences.last_version + 1
                    RETURNING last_version
                    """,
                    chat_id,
                )
                if base_version is not None and version != base_version + 1:
                    raise SummaryVersionConflict(
                        f"Chat {chat_id} is at summary v{version - 1}, expected v{base_version}"
                    )

                watermark = await conn.fetchrow(
                    "SELECT id, created_at FROM messages WHERE id = $1 AND chat_id = $2",
                    watermark_message_id,
                    chat_id,
                )
                if not watermark:
                    raise InvariantViolation(
                        f"Watermark {watermark_message_id} is not a message of chat {chat_id}"
                    )

                previous = await conn.fetchrow(
                    """
                    SELECT m.id, m.created_at FROM summaries s
                    JOIN messages m ON m.id = s.watermark_message_id
                    WHERE s.chat_id = $1
                    ORDER BY s.version DESC
                    LIMIT 1
                    """,
                    chat_id,
                )
                if previous and (watermark["created_at"], watermark["id"]) < (
                    previous["created_at"],
                    previous["id"],
                ):
                    raise InvariantViolation(
                        f"Watermark {watermark_message_id} rewinds past {previous['id']}"
                    )

                try:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO summaries
                        (id, chat_id, text, covered_message_count, watermark_message_id,
                         tokens_spent, created_at, version)
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                        RETURNING *
                        """,
                        str(uuid.uuid4()),
                        chat_id,
                        text,
                        covered_message_count,
                        watermark_message_id,
                        tokens_spent,
                        datetime.now(timezone.utc),
                        version,
                    )
                except asyncpg.UniqueViolationError as e:
                    raise InvariantViolation(
                        f"Summary version {version} already exists for chat {chat_id}"
                    ) from e
        return self._row_to_summary(row)

    async def delete_old_summaries(self, chat_id: str, keep_versions: int) -> int:
        """Delete all but the keep_versions highest versions."""
        async with self.connection() as conn:
            result = await conn.execute(
                """
                DELETE FROM summaries
                WHERE chat_id = $1 AND version NOT IN (
                    SELECT version FROM summaries
                    WHERE chat_id = $1
                    ORDER BY version DESC
                    LIMIT $2
                )
                """,
                chat_id,
                keep_versions,
            )
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(result.split()[-1])

    def _row_to_summary(self, row: asyncpg.Record) -> Summary:
        return Summary(
            id=row["id"],
            chat_id=row["chat_id"],
            text=row["text"],
            covered_message_count=row["covered_message_count"],
            watermark_message_id=row["watermark_message_id"],
            tokens_spent=row["tokens_spent"],
            created_at=row["created_at"],
            version=row["version"],
        )

    # ============= Summarization State Operations =============

    async def get_summarization_status(self, chat_id: str) -> SummarizationStatus:
        """Get the summarization state of a chat (idle if never scheduled)."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM summarization_state WHERE chat_id = $1", chat_id
            )
        if not row:
            return SummarizationStatus(chat_id=chat_id)
        return self._row_to_status(row)

    async def try_schedule_summarization(
        self, chat_id: str, job_id: str, user_id: str, base_version: int
    ) -> bool:
        """Move idle -> scheduled. Returns False when a job is already in flight."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO summarization_state (chat_id, state, job_id, user_id, base_version, updated_at)
                VALUES ($1, 'scheduled', $2, $3, $4, NOW())
                ON CONFLICT (chat_id) DO UPDATE
                SET state = 'scheduled',
                    job_id = EXCLUDED.job_id,
                    user_id = EXCLUDED.user_id,
                    base_version = EXCLUDED.base_version,
                    updated_at = NOW()
                WHERE summarization_state.state = 'idle'
                RETURNING job_id
                """,
                chat_id,
                job_id,
                user_id,
                base_version,
            )
        return row is not None

    async def begin_summarization(self, chat_id: str, job_id: str) -> SummarizationStatus | None:
        """Move scheduled -> summarizing for this job. None if the job lost its slot."""
        async with self.connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE summarization_state
                SET state = 'summarizing', updated_at = NOW()
                WHERE chat_id = $1 AND job_id = $2 AND state = 'scheduled'
                RETURNING *
                """,
                chat_id,
                job_id,
            )
        if not row:
            return None
        return self._row_to_status(row)

    async def finish_summarization(self, chat_id: str, job_id: str):
        """Return the chat to idle if this job still owns it."""
        async with self.connection() as conn:
            await conn.execute(
                """
                UPDATE summarization_state
                SET state = 'idle', job_id = NULL, updated_at = NOW()
                WHERE chat_id = $1 AND job_id = $2
                """,
                chat_id,
                job_id,
            )

    async def reset_stale_summarizations(self, older_than: datetime) -> list[str]:
        """Return chats stuck in scheduled/summarizing to idle."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                UPDATE summarization_state
                SET state = 'idle', job_id = NULL, updated_at = NOW()
                WHERE state <> 'idle' AND updated_at < $1
                RETURNING chat_id
                """,
                older_than,
            )
        return [row["chat_id"] for row in rows]

    def _row_to_status(self, row: asyncpg.Record) -> SummarizationStatus:
        return SummarizationStatus(
            chat_id=row["chat_id"],
            state=SummarizationState(row["state"]),
            job_id=row["job_id"],
            user_id=row["user_id"],
            base_version=row["base_version"],
            updated_at=row["updated_at"],
        )

    # ============= Token Operations =============

    async def _lock_account(
        self, conn: asyncpg.Connection, user_id: str, period: str, default_quota: int
    ) -> TokenAccount:
        """Create the account if missing and lock it for this transaction.

        A new period starts at the user's stored monthly limit, or the default.
        """
        await conn.execute(
            """
            INSERT INTO token_accounts (user_id, period, quota)
            VALUES (
                $1, $2,
                COALESCE((SELECT monthly_limit FROM token_balances WHERE user_id = $1), $3)
            )
            ON CONFLICT (user_id, period) DO NOTHING
            """,
            user_id,
            period,
            default_quota,
        )
        row = await conn.fetchrow(
            """
            SELECT a.*, COALESCE(b.purchased_tokens, 0) AS purchased
            FROM token_accounts a
            LEFT JOIN token_balances b ON b.user_id = a.user_id
            WHERE a.user_id = $1 AND a.period = $2
            FOR UPDATE OF a
            """,
            user_id,
            period,
        )
        return self._row_to_account(row, row["purchased"])

    async def _lock_user(self, conn: asyncpg.Connection, user_id: str):
        # Serializes every ledger operation of one user
        await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", user_id)

    async def get_token_account(
        self, user_id: str, period: str, default_quota: int
    ) -> TokenAccount:
        """Get a user's account for a period, creating it lazily."""
        async with self.connection() as conn:
            async with conn.transaction():
                return await self._lock_account(conn, user_id, period, default_quota)

    async def set_monthly_limit(
        self, user_id: str, period: str, monthly_limit: int, default_quota: int
    ) -> TokenAccount:
        """Store a user's monthly limit and apply it to the given period."""
        async with self.connection() as conn:
            async with conn.transaction():
                await self._lock_user(conn, user_id)
                await conn.execute(
                    """
                    INSERT INTO token_balances (user_id, monthly_limit)
                    VALUES ($1, $2)
                    ON CONFLICT (user_id) DO UPDATE
                    SET monthly_limit = EXCLUDED.monthly_limit, updated_at = NOW()
                    """,
                    user_id,
                    monthly_limit,
                )
                account = await self._lock_account(conn, user_id, period, default_quota)
                row = await conn.fetchrow(
                    """
                    UPDATE token_accounts
                    SET quota = $3, updated_at = NOW()
                    WHERE user_id = $1 AND period = $2
                    RETURNING *
                    """,
                    user_id,
                    period,
                    monthly_limit,
                )
        return self._row_to_account(row, account.purchased)

    async def add_token_purchase(
        self, purchase: TokenPurchase, period: str, default_quota: int
    ) -> PurchaseResult:
        """Record a purchase and credit it once per payment."""
        async with self.connection() as conn:
            async with conn.transaction():
                await self._lock_user(conn, purchase.user_id)

                existing = await conn.fetchrow(
                    """
                    SELECT * FROM token_purchases
                    WHERE payment_provider = $1 AND payment_id = $2
                    """,
                    purchase.payment_provider,
                    purchase.payment_id,
                )
                if existing:
                    account = await self._lock_account(
                        conn, purchase.user_id, period, default_quota
                    )
                    return PurchaseResult(
                        purchase=self._row_to_purchase(existing),
                        account=account,
                        duplicate=True,
                    )

                await conn.execute(
                    """
                    INSERT INTO token_purchases
                    (id, user_id, tokens_added, amount_paid_cents, payment_provider,
                     payment_id, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    purchase.id,
                    purchase.user_id,
                    purchase.tokens_added,
                    purchase.amount_paid_cents,
                    purchase.payment_provider,
                    purchase.payment_id,
                    purchase.created_at,
                )
                await conn.execute(
                    """
                    INSERT INTO token_balances (user_id, purchased_tokens)
                    VALUES ($1, $2)
                    ON CONFLICT (user_id) DO UPDATE
                    SET purchased_tokens = token_balances.purchased_tokens + EXCLUDED.purchased_tokens,
                        updated_at = NOW()
                    """,
                    purchase.user_id,
                    purchase.tokens_added,
                )
                account = await self._lock_account(
                    conn, purchase.user_id, period, default_quota
                )
        return PurchaseResult(purchase=purchase, account=account)

    async def list_token_purchases(self, user_id: str, since: datetime) -> list[TokenPurchase]:
        """List a user's purchases made at or after since, newest first."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM token_purchases
                WHERE user_id = $1 AND created_at >= $2
                ORDER BY created_at DESC
                """,
                user_id,
                since,
            )
        return [self._row_to_purchase(row) for row in rows]

    async def get_lifetime_tokens_used(self, user_id: str) -> int:
        """Tokens a user has used across all periods."""
        async with self.connection() as conn:
            total = await conn.fetchval(
                "SELECT total_tokens_used FROM token_balances WHERE user_id = $1",
                user_id,
            )
        return total or 0

    async def reserve_tokens(
        self, reservation: TokenReservation, default_quota: int
    ) -> TokenCheck:
        """Check the quota and record the reservation atomically."""
        async with self.connection() as conn:
            async with conn.transaction():
                await self._lock_user(conn, reservation.user_id)
                account = await self._lock_account(
                    conn, reservation.user_id, reservation.period, default_quota
                )
                if not account.can_reserve(reservation.tokens):
                    return TokenCheck(
                        allowed=False, remaining=account.remaining, quota=account.available
                    )

                row = await conn.fetchrow(
                    """
                    UPDATE token_accounts
                    SET reserved = reserved + $3, updated_at = NOW()
                    WHERE user_id = $1 AND period = $2
                    RETURNING *
                    """,
                    reservation.user_id,
                    reservation.period,
                    reservation.tokens,
                )
                await conn.execute(
                    """
                    INSERT INTO token_reservations
                    (call_id, user_id, period, tokens, category, chat_id, created_at, expires_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    reservation.call_id,
                    reservation.user_id,
                    reservation.period,
                    reservation.tokens,
                    reservation.category.value,
                    reservation.chat_id,
                    reservation.created_at,
                    reservation.expires_at,
                )
        account = self._row_to_account(row, account.purchased)
        return TokenCheck(
            allowed=True,
            remaining=account.remaining,
            quota=account.available,
            call_id=reservation.call_id,
        )

    async def reconcile_tokens(self, usage: TokenUsage, default_quota: int) -> ReconcileResult:
        """Charge a call's actual usage once and drop its reservation."""
        async with self.connection() as conn:
            async with conn.transaction():
                await self._lock_user(conn, usage.user_id)

                existing = await conn.fetchrow(
                    "SELECT period FROM token_usage WHERE call_id = $1", usage.call_id
                )
                if existing:
                    account = await self._lock_account(
                        conn, usage.user_id, existing["period"], default_quota
                    )
                    return ReconcileResult(
                        call_id=usage.call_id,
                        charged_tokens=0,
                        used=account.used,
                        remaining=account.remaining,
                        quota=account.available,
                        duplicate=True,
                    )

                reservation = await conn.fetchrow(
                    "DELETE FROM token_reservations WHERE call_id = $1 RETURNING period, tokens",
                    usage.call_id,
                )
                if reservation:
                    usage.period = reservation["period"]
                    reserved_tokens = reservation["tokens"]
                else:
                    reserved_tokens = 0

                account = await self._lock_account(
                    conn, usage.user_id, usage.period, default_quota
                )
                row = await conn.fetchrow(
                    """
                    UPDATE token_accounts
                    SET used = used + $3,
                        reserved = GREATEST(reserved - $4, 0),
                        updated_at = NOW()
                    WHERE user_id = $1 AND period = $2
                    RETURNING *
                    """,
                    usage.user_id,
                    usage.period,
                    usage.total_tokens,
                    reserved_tokens,
                )
                await conn.execute(
                    """
                    INSERT INTO token_balances (user_id, total_tokens_used)
                    VALUES ($1, $2)
                    ON CONFLICT (user_id) DO UPDATE
                    SET total_tokens_used = token_balances.total_tokens_used + EXCLUDED.total_tokens_used,
                        updated_at = NOW()
                    """,
                    usage.user_id,
                    usage.total_tokens,
                )
                await conn.execute(
                    """
                    INSERT INTO token_usage
                    (call_id, user_id, period, chat_id, category, input_tokens,
                     output_tokens, total_tokens, cost_cents, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    """,
                    usage.call_id,
                    usage.user_id,
                    usage.period,
                    usage.chat_id,
                    usage.category.value,
                    usage.input_tokens,
                    usage.output_tokens,
                    usage.total_tokens,
                    usage.cost_cents,
                    usage.created_at,
                )
        account = self._row_to_account(row, account.purchased)
        return ReconcileResult(
            call_id=usage.call_id,
            charged_tokens=usage.total_tokens,
            used=account.used,
            remaining=account.remaining,
            quota=account.available,
        )

    async def reclaim_expired_reservations(self, now: datetime) -> list[TokenReservation]:
        """Release reservations whose call never reconciled."""
        reclaimed: list[TokenReservation] = []
        async with self.connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    "DELETE FROM token_reservations WHERE expires_at < $1 RETURNING *",
                    now,
                )
                for row in rows:
                    await conn.execute(
                        """
                        UPDATE token_accounts
                        SET reserved = GREATEST(reserved - $3, 0), updated_at = NOW()
                        WHERE user_id = $1 AND period = $2
                        """,
                        row["user_id"],
                        row["period"],
                        row["tokens"],
                    )
                    reclaimed.append(self._row_to_reservation(row))
        return reclaimed

    async def list_token_usage(self, user_id: str, limit: int = 10) -> list[TokenUsage]:
        """List a user's most recent reconciled calls."""
        async with self.connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM token_usage
                WHERE user_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                user_id,
                limit,
            )
        return [
            TokenUsage(
                call_id=row["call_id"],
                user_id=row["user_id"],
                period=row["period"],
                chat_id=row["chat_id"],
                category=CostCategory(row["category"]),
                input_tokens=row["input_tokens"],
                output_tokens=row["output_tokens"],
                total_tokens=row["total_tokens"],
                cost_cents=row["cost_cents"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def _row_to_account(self, row: asyncpg.Record, purchased: int = 0) -> TokenAccount:
        return TokenAccount(
            user_id=row["user_id"],
            period=row["period"],
            quota=row["quota"],
            purchased=purchased,
            used=row["used"],
            reserved=row["reserved"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_reservation(self, row: asyncpg.Record) -> TokenReservation:
        return TokenReservation(
            call_id=row["call_id"],
            user_id=row["user_id"],
            period=row["period"],
            tokens=row["tokens"],
            category=CostCategory(row["category"]),
            chat_id=row["chat_id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def _row_to_purchase(self, row: asyncpg.Record) -> TokenPurchase:
        return TokenPurchase(
            id=row["id"],
            user_id=row["user_id"],
            tokens_added=row["tokens_added"],
            amount_paid_cents=row["amount_paid_cents"],
            payment_provider=row["payment_provider"],
            payment_id=row["payment_id"],
            created_at=row["created_at"],
        )
