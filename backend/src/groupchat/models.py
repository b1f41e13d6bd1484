"""API-specific request and response models."""

from pydantic import BaseModel, Field

from chatmodels import ContextMode, Message, Summary


class SendMessageRequest(BaseModel):
    """Request model for posting a message to a chat."""

    content: str = Field(..., min_length=1, description="Message text, may be a /command")


class SendMessageResponse(BaseModel):
    """The stored message and anything posted in reply."""

    message: Message
    replies: list[Message] = Field(default_factory=list)


class MessageListResponse(BaseModel):
    """Response model for a page of chat messages."""

    messages: list[Message]
    total: int


class ContextSettingsUpdate(BaseModel):
    """Partial update of a chat's context settings."""

    mode: ContextMode | None = Field(None, description="Context selection mode")
    use_summary: bool | None = Field(None, description="Use the authoritative summary")


class SummaryListResponse(BaseModel):
    """Response model for a chat's retained summary versions."""

    summaries: list[Summary]
    total: int


class ForceSummaryResponse(BaseModel):
    """Outcome of a forced summarization run."""

    summary: Summary | None = Field(None, description="New version, None if the run was skipped")


class PruneResponse(BaseModel):
    """Outcome of deleting old summary versions."""

    deleted: int
    kept: int


class TokenPurchaseRequest(BaseModel):
    """Tokens bought through a payment provider."""

    tokens_added: int = Field(..., gt=0, description="Tokens to credit")
    amount_paid_cents: int = Field(..., ge=0, description="Amount paid in US cents")
    payment_provider: str = Field(..., min_length=1, description="e.g. stripe")
    payment_id: str = Field(..., min_length=1, description="Provider's payment reference")
