"""Chat message and context settings models."""

from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageKind(str, Enum):
    """Who produced a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ContextMode(str, Enum):
    """Which prior messages the assistant sees."""

    NONE = "none"  # Every LM call is stateless
    COMMAND_ONLY = "command_only"  # Assistant replies and the commands that asked for them
    ALL_MESSAGES = "all_messages"


class Message(BaseModel):
    """A single message in a chat. Immutable once stored."""

    id: str = Field(..., description="Unique message ID")
    chat_id: str = Field(..., description="Parent chat ID")
    author_id: str = Field(..., description="User ID of the author")
    content: str = Field(..., description="Message content")
    kind: MessageKind = Field(default=MessageKind.USER, description="Message kind")
    is_command: bool = Field(
        default=False, description="User message addressed to the assistant"
    )
    created_at: datetime = Field(default_factory=_utcnow, description="Creation timestamp")

    @property
    def sort_key(self) -> tuple[datetime, str]:
        """Total order of messages within a chat."""
        return (self.created_at, self.id)

    @property
    def in_command_context(self) -> bool:
        """Whether this message qualifies for command_only context."""
        return self.kind == MessageKind.ASSISTANT or (
            self.kind == MessageKind.USER and self.is_command
        )


class ContextSettings(BaseModel):
    """Per-chat context configuration, edited by chat admins."""

    chat_id: str = Field(..., description="Chat ID")
    mode: ContextMode = Field(
        default=ContextMode.COMMAND_ONLY, description="Context selection mode"
    )
    use_summary: bool = Field(
        default=False, description="Replace older history with the authoritative summary"
    )
    updated_at: datetime = Field(default_factory=_utcnow, description="Last update timestamp")
