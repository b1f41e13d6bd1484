"""Mock LM provider for fast testing without API calls.

Replies are canned and deterministic so tests can assert on them. Usage is
reported from the token estimator unless report_usage is turned off, which
exercises the estimator fallback in reconciliation.
"""

import logging
import re
from dataclasses import dataclass

from chatmodels import Message, MessageKind
from groupchat.errors import ProviderUnavailable
from groupchat.services.llm import LLMResponse, format_transcript
from groupchat.services.summarization import SUMMARY_SYSTEM_PROMPT
from groupchat.services.token_estimator import estimate

logger = logging.getLogger(__name__)

GREETING_PATTERNS = [
    r"^(hi|hello|hey|greetings|good\s+(morning|afternoon|evening))[\s!.,]*$",
]

PING_PATTERN = r'respond with just the word "success"'


@dataclass
class MockCall:
    """One recorded send() invocation."""

    messages: list[Message]
    system_prompt: str
    model: str | None


class MockProvider:
    """Provides predictable mock responses for testing."""

    def __init__(self, fail: bool = False, report_usage: bool = True):
        self.fail = fail
        self.report_usage = report_usage
        self.calls: list[MockCall] = []

    @staticmethod
    def _detect_intent(messages: list[Message], system_prompt: str) -> str:
        if system_prompt.startswith(SUMMARY_SYSTEM_PROMPT):
            return "summary"

        last = next(
            (m for m in reversed(messages) if m.kind == MessageKind.USER), None
        )
        content = last.content.lower() if last else ""
        if PING_PATTERN in content:
            return "ping"
        for pattern in GREETING_PATTERNS:
            if re.search(pattern, content, re.IGNORECASE):
                return "greeting"
        return "general"

    async def send(
        self,
        messages: list[Message],
        system_prompt: str,
        model: str | None = None,
    ) -> LLMResponse:
        self.calls.append(MockCall(list(messages), system_prompt, model))
        if self.fail:
            raise ProviderUnavailable("Mock provider configured to fail")

        intent = self._detect_intent(messages, system_prompt)
        logger.info(f"Mock LLM: detected intent '{intent}'")

        if intent == "summary":
            text = f"Summary of {len(messages)} messages."
        elif intent == "ping":
            text = "success"
        elif intent == "greeting":
            text = "Hello! What can I help the group with?"
        else:
            last = messages[-1].content if messages else ""
            truncated = last[:100] + "..." if len(last) > 100 else last
            text = f"I understood your message. Here's my response to: {truncated}"

        if not self.report_usage:
            return LLMResponse(text=text)
        return LLMResponse(
            text=text,
            input_tokens=estimate(system_prompt) + estimate(format_transcript(messages)),
            output_tokens=estimate(text),
        )
