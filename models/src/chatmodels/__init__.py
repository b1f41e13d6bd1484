"""Shared Pydantic models for groupchat."""

from chatmodels.chat import ContextMode, ContextSettings, Message, MessageKind
from chatmodels.summary import (
    Summary,
    SummarizationPolicy,
    SummarizationState,
    SummarizationStatus,
    SummaryStats,
)
from chatmodels.tokens import (
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
from chatmodels.context import AssemblyResult, ContextPreview
from chatmodels.commands import (
    AskCommand,
    Command,
    CommandUsageError,
    PingCommand,
    PlainMessage,
    UnknownCommand,
    WikiCommand,
    addresses_assistant,
)

__all__ = [
    # Chat
    "ContextMode",
    "ContextSettings",
    "Message",
    "MessageKind",
    # Summaries
    "Summary",
    "SummarizationPolicy",
    "SummarizationState",
    "SummarizationStatus",
    "SummaryStats",
    # Tokens
    "CostCategory",
    "PurchaseResult",
    "ReconcileResult",
    "TokenAccount",
    "TokenCheck",
    "TokenPurchase",
    "TokenReservation",
    "TokenUsage",
    "TokenUsageReport",
    "current_period",
    "period_start",
    # Context
    "AssemblyResult",
    "ContextPreview",
    # Commands
    "AskCommand",
    "Command",
    "CommandUsageError",
    "PingCommand",
    "PlainMessage",
    "UnknownCommand",
    "WikiCommand",
    "addresses_assistant",
]
