"""Token quota models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def current_period(now: datetime | None = None) -> str:
    """Billing period key, YYYY-MM in UTC."""
    now = now or _utcnow()
    return f"{now.year:04d}-{now.month:02d}"


def period_start(now: datetime | None = None) -> datetime:
    """First instant of the billing period containing now."""
    now = (now or _utcnow()).astimezone(timezone.utc)
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class CostCategory(str, Enum):
    """What an LM call was spent on."""

    CHAT = "chat"
    SUMMARIZATION = "summarization"


class TokenAccount(BaseModel):
    """A user's quota for one billing period.

    Purchased tokens belong to the user, not the period: they raise the
    available amount of every period on top of the monthly quota.
    """

    user_id: str = Field(..., description="User ID")
    period: str = Field(..., description="Billing period (YYYY-MM)")
    quota: int = Field(..., description="Monthly token limit for this period")
    purchased: int = Field(0, description="Purchased tokens on top of the monthly limit")
    used: int = Field(0, description="Tokens confirmed by reconciled LM calls")
    reserved: int = Field(0, description="Tokens reserved but not yet reconciled")
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def available(self) -> int:
        return self.quota + self.purchased

    @property
    def remaining(self) -> int:
        return max(0, self.available - self.used - self.reserved)

    def can_reserve(self, tokens: int) -> bool:
        return self.used + self.reserved + tokens <= self.available


class TokenReservation(BaseModel):
    """Provisional debit made before an LM call's cost is known."""

    call_id: str = Field(..., description="Idempotency key of the LM call")
    user_id: str
    period: str
    tokens: int
    category: CostCategory = CostCategory.CHAT
    chat_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime


class TokenUsage(BaseModel):
    """One reconciled LM call."""

    call_id: str
    user_id: str
    period: str
    chat_id: str | None = None
    category: CostCategory = CostCategory.CHAT
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_cents: int | None = Field(None, description="Cost in USD cents")
    created_at: datetime = Field(default_factory=_utcnow)


class TokenCheck(BaseModel):
    """Outcome of a quota pre-check."""

    allowed: bool
    remaining: int
    quota: int = Field(..., description="Tokens available this period, purchases included")
    call_id: str | None = Field(None, description="Reservation key when allowed")


class ReconcileResult(BaseModel):
    """Outcome of reconciling a call's actual usage."""

    call_id: str
    charged_tokens: int
    used: int
    remaining: int
    quota: int = Field(..., description="Tokens available this period, purchases included")
    duplicate: bool = Field(False, description="Call was already reconciled, nothing charged")


class TokenPurchase(BaseModel):
    """Tokens bought on top of the monthly quota."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    tokens_added: int
    amount_paid_cents: int = Field(..., description="Amount paid in USD cents")
    payment_provider: str = Field(..., description='Payment provider, e.g. "stripe"')
    payment_id: str = Field(..., description="External payment reference, unique per provider")
    created_at: datetime = Field(default_factory=_utcnow)


class PurchaseResult(BaseModel):
    """Outcome of crediting a purchase."""

    purchase: TokenPurchase
    account: TokenAccount
    duplicate: bool = Field(False, description="Payment was already credited, nothing added")


class TokenUsageReport(BaseModel):
    """A user's current account and recent usage."""

    account: TokenAccount
    recent_usage: list[TokenUsage] = Field(default_factory=list)
    monthly_purchases: list[TokenPurchase] = Field(default_factory=list)
    lifetime_used: int = Field(0, description="Tokens used across all periods")
