"""Assembled LM context models."""

from pydantic import BaseModel, Field

from chatmodels.chat import Message
from chatmodels.summary import Summary


class AssemblyResult(BaseModel):
    """The view of a chat sent to the LM for one call. Never cached."""

    messages: list[Message] = Field(default_factory=list, description="Chronological messages")
    summary: Summary | None = Field(None, description="Authoritative summary in use")
    token_estimate: int = Field(0, description="Estimated tokens of messages plus summary")
    needs_new_summary: bool = Field(False, description="Backlog warrants summarization")
    total_message_count: int = Field(0, description="Messages in the selected window")

    @classmethod
    def empty(cls) -> "AssemblyResult":
        return cls()


class ContextPreview(BaseModel):
    """Assembled context plus a human-readable rendering."""

    assembly: AssemblyResult
    text: str
