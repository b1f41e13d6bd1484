"""Slash-command parsing.

A message is parsed exactly once, when it is ingested. Everything downstream
works on the resulting Command variant rather than the raw text.
"""

from chatmodels import (
    AskCommand,
    Command,
    CommandUsageError,
    PingCommand,
    PlainMessage,
    UnknownCommand,
    WikiCommand,
)

USAGE = {
    "ask": "/ask [prompt]",
    "ping": "/ping",
    "wiki": "/wiki [topic]",
}


def parse_command(content: str) -> Command:
    """Resolve message text into one Command variant. Command names are case-insensitive."""
    text = content.strip()
    if not text.startswith("/"):
        return PlainMessage()

    parts = text[1:].split(maxsplit=1)
    if not parts:
        return UnknownCommand(name="")

    name = parts[0].lower()
    args = parts[1].strip() if len(parts) > 1 else ""

    if name == "ask":
        if not args:
            return CommandUsageError(command=name, usage=USAGE[name])
        return AskCommand(prompt=args)
    if name == "ping":
        return PingCommand()
    if name == "wiki":
        if not args:
            return CommandUsageError(command=name, usage=USAGE[name])
        return WikiCommand(topic=args)
    return UnknownCommand(name=name)


def usage_message(error: CommandUsageError) -> str:
    """System message text for a command missing its argument."""
    argument = "topic" if error.command == "wiki" else "prompt"
    return f"Please provide a {argument}. Usage: {error.usage}"
