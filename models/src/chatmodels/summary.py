"""Summary, summarization state and policy models."""

from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field
import uuid


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Summary(BaseModel):
    """Everything up to and including the watermark message, condensed.

    The authoritative summary for a chat is the one with the highest version.
    """

    id: str = Field(default_factory=_uuid, description="Unique summary ID")
    chat_id: str = Field(..., description="Chat ID")
    text: str = Field(..., description="Summary text")
    covered_message_count: int = Field(..., description="Messages condensed so far")
    watermark_message_id: str = Field(..., description="Last message covered by this summary")
    tokens_spent: int = Field(0, description="Tokens spent generating this version")
    created_at: datetime = Field(default_factory=_utcnow, description="Creation timestamp")
    version: int = Field(..., description="Per-chat monotonically increasing version")


class SummarizationState(str, Enum):
    """Per-chat summarization state machine."""

    IDLE = "idle"
    SCHEDULED = "scheduled"
    SUMMARIZING = "summarizing"


class SummarizationStatus(BaseModel):
    """Persisted state flag guarding at-most-one job in flight per chat."""

    chat_id: str = Field(..., description="Chat ID")
    state: SummarizationState = Field(
        default=SummarizationState.IDLE, description="Current state"
    )
    job_id: str | None = Field(None, description="Job currently scheduled or running")
    user_id: str | None = Field(None, description="User whose quota pays for the job")
    base_version: int = Field(
        0, description="Authoritative summary version seen when the job was scheduled"
    )
    updated_at: datetime = Field(default_factory=_utcnow, description="Last transition")


class SummaryStats(BaseModel):
    """Aggregate figures over every retained summary version of a chat."""

    total_summaries: int = 0
    total_tokens_spent: int = 0
    total_messages_summarized: int = 0
    latest_summary_at: datetime | None = None


class SummarizationPolicy(BaseModel):
    """Thresholds deciding when history gets condensed.

    These are tuning knobs, not invariants.
    """

    min_corpus: int = Field(20, ge=0, description="Minimum history before summaries apply")
    trigger_threshold: int = Field(10, ge=1, description="Messages to condense per run")
    retain_tail: int = Field(10, ge=0, description="Newest messages always kept verbatim")
    min_fresh_messages: int = Field(
        5, ge=0, description="Below this many post-watermark messages, fall back to the tail"
    )
    keep_versions: int = Field(5, ge=0, description="Summary versions retained, 0 keeps all")

    def needs_new_summary(self, unsummarized: int, has_summary: bool) -> bool:
        """Decide whether the unsummarized backlog warrants a new version."""
        if not has_summary:
            return unsummarized > self.min_corpus
        return unsummarized - self.retain_tail >= self.trigger_threshold
