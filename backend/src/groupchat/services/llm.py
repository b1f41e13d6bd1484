"""LM provider backed by the Claude Agent SDK.

The provider is a black box to the rest of the service:
send(messages, system_prompt) -> LLMResponse, or ProviderUnavailable.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Protocol

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    TextBlock,
    query,
)

from chatmodels import Message, MessageKind
from groupchat.config import settings
from groupchat.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

ASSISTANT_SYSTEM_PROMPT = """You are the assistant in a group chat shared by several people.

Each line of the conversation is prefixed with its author. Reply to the latest
message addressed to you. Be concise, friendly, and use what earlier messages
and the conversation summary tell you about the group."""


@dataclass
class LLMResponse:
    """Text plus the provider's own usage figures, when it reports them."""

    text: str
    input_tokens: int | None = None
    output_tokens: int | None = None


class LLMProvider(Protocol):
    async def send(
        self,
        messages: list[Message],
        system_prompt: str,
        model: str | None = None,
    ) -> LLMResponse: ...


def format_transcript(messages: Iterable[Message]) -> str:
    """Render chat messages as an author-prefixed transcript."""
    lines = []
    for msg in messages:
        if msg.kind == MessageKind.ASSISTANT:
            author = "Assistant"
        elif msg.kind == MessageKind.SYSTEM:
            author = "System"
        else:
            author = msg.author_id
        lines.append(f"{author}: {msg.content}")
    return "\n\n".join(lines)


class ClaudeProvider:
    """Single-turn, tool-less Claude calls."""

    def __init__(self, model: str | None = None):
        self.model = model or settings.claude_model

    async def send(
        self,
        messages: list[Message],
        system_prompt: str,
        model: str | None = None,
    ) -> LLMResponse:
        prompt = format_transcript(messages)
        options = ClaudeAgentOptions(
            model=model or self.model,
            system_prompt=system_prompt,
            max_turns=1,
            allowed_tools=[],
            permission_mode="bypassPermissions",
        )

        collected_text: list[str] = []
        usage: dict | None = None
        try:
            async for msg in query(prompt=prompt, options=options):
                if isinstance(msg, AssistantMessage):
                    for block in msg.content:
                        if isinstance(block, TextBlock):
                            collected_text.append(block.text)
                elif isinstance(msg, ResultMessage):
                    if msg.is_error:
                        raise ProviderUnavailable(msg.result or "Claude returned an error")
                    usage = msg.usage
        except ProviderUnavailable:
            raise
        except Exception as e:
            logger.error(f"Claude query failed: {e}")
            raise ProviderUnavailable(str(e)) from e

        text = "\n".join(collected_text).strip()
        if not text:
            raise ProviderUnavailable("Claude returned an empty response")

        usage = usage or {}
        return LLMResponse(
            text=text,
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
        )


def create_provider() -> LLMProvider:
    """Build the provider selected by LLM_BACKEND."""
    if settings.llm_backend == "mock":
        from groupchat.services.llm_mock import MockProvider

        logger.info("Using mock LLM provider")
        return MockProvider()
    return ClaudeProvider()
