"""Chat commands, resolved once when a message is ingested."""

from typing import Annotated, Literal, Union
from pydantic import BaseModel, Field


class PlainMessage(BaseModel):
    """Ordinary chat message, no command."""

    kind: Literal["plain"] = "plain"


class AskCommand(BaseModel):
    """/ask <prompt> - ask the assistant."""

    kind: Literal["ask"] = "ask"
    prompt: str


class PingCommand(BaseModel):
    """/ping - check the assistant responds."""

    kind: Literal["ping"] = "ping"
    prompt: str = 'Respond with just the word "success" if this works'


class WikiCommand(BaseModel):
    """/wiki <topic> - post a Wikipedia summary."""

    kind: Literal["wiki"] = "wiki"
    topic: str


class CommandUsageError(BaseModel):
    """A known command invoked without its required argument."""

    kind: Literal["usage_error"] = "usage_error"
    command: str
    usage: str


class UnknownCommand(BaseModel):
    """Slash-prefixed text that names no command."""

    kind: Literal["unknown"] = "unknown"
    name: str


Command = Annotated[
    Union[
        PlainMessage,
        AskCommand,
        PingCommand,
        WikiCommand,
        CommandUsageError,
        UnknownCommand,
    ],
    Field(discriminator="kind"),
]


def addresses_assistant(command: BaseModel) -> bool:
    """Whether the message carrying this command is part of command_only context."""
    return isinstance(command, (AskCommand, PingCommand))
