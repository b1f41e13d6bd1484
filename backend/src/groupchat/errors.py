"""Error taxonomy for the context and token-budget controller."""


class GroupChatError(Exception):
    """Base class for domain errors."""


class QuotaExceeded(GroupChatError):
    """The user's monthly token quota cannot cover the request."""

    def __init__(self, remaining: int, quota: int):
        self.remaining = remaining
        self.quota = quota
        super().__init__(f"Monthly token limit exceeded ({remaining} of {quota} remaining)")

    def user_message(self) -> str:
        return (
            f"You've reached your monthly token limit: {self.remaining} of "
            f"{self.quota} tokens remaining. The assistant was not called."
        )


class ProviderUnavailable(GroupChatError):
    """The LM provider call failed or timed out."""


class SummarizationFailed(GroupChatError):
    """A background summarization run did not produce a summary."""


class SummarizationInProgress(GroupChatError):
    """A summarization job is already scheduled or running for the chat."""


class SummarizationDisabled(GroupChatError):
    """The chat does not use summary context."""


class InvariantViolation(GroupChatError):
    """Stored state contradicts an invariant (missing watermark, rewound watermark)."""


class NotChatMember(GroupChatError):
    """The user may not read this chat."""


class StorageUnavailable(GroupChatError):
    """The backing store cannot be reached."""


class SummaryVersionConflict(InvariantViolation):
    """A newer summary version was written since the job was scheduled."""
