"""Chat handler - ingests messages, dispatches commands, asks the assistant.

Ask flow:

1. Assemble context for the chat.
2. Reserve the estimated tokens against the asking user's quota.
3. Call the LM provider.
4. Reconcile with the provider's usage (or release on failure).
5. Post the reply, then let the orchestrator decide whether to summarize.

Quota and provider failures are posted into the chat as system messages.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from chatmodels import (
    AskCommand,
    AssemblyResult,
    CommandUsageError,
    Message,
    MessageKind,
    PingCommand,
    UnknownCommand,
    WikiCommand,
    addresses_assistant,
)
from groupchat.db import Store
from groupchat.errors import NotChatMember, ProviderUnavailable, QuotaExceeded
from groupchat.services.commands import parse_command, usage_message
from groupchat.services.context_assembler import ContextAssembler
from groupchat.services.llm import ASSISTANT_SYSTEM_PROMPT, LLMProvider, format_transcript
from groupchat.services.summarization import SummarizationOrchestrator
from groupchat.services.token_estimator import estimate, estimate_messages
from groupchat.services.token_ledger import TokenLedger
from groupchat.services.wikipedia import WikipediaClient, WikipediaError

logger = logging.getLogger(__name__)


@dataclass
class ChatResult:
    """Result of processing a chat message."""

    message: Message
    replies: list[Message] = field(default_factory=list)


def build_system_prompt(assembly: AssemblyResult) -> str:
    """Assistant system prompt, with the conversation summary when one is in use."""
    if assembly.summary is None:
        return ASSISTANT_SYSTEM_PROMPT
    return (
        f"{ASSISTANT_SYSTEM_PROMPT}\n\n"
        f"[Summary of earlier conversation]\n{assembly.summary.text}"
    )


class ChatHandler:
    """Message-sending flow for one deployment."""

    def __init__(
        self,
        store: Store,
        assembler: ContextAssembler,
        ledger: TokenLedger,
        orchestrator: SummarizationOrchestrator,
        provider: LLMProvider,
        wikipedia: WikipediaClient | None = None,
        assistant_user_id: str = "assistant",
        system_user_id: str = "system",
        response_budget: int = 800,
        llm_timeout: float = 120.0,
        model: str | None = None,
    ):
        self.store = store
        self.assembler = assembler
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.provider = provider
        self.wikipedia = wikipedia or WikipediaClient()
        self.assistant_user_id = assistant_user_id
        self.system_user_id = system_user_id
        self.response_budget = response_budget
        self.llm_timeout = llm_timeout
        self.model = model

    async def handle_message(self, chat_id: str, user_id: str, content: str) -> ChatResult:
        """Store a user message and act on the command it carries."""
        if not await self.store.is_chat_member(chat_id, user_id):
            raise NotChatMember(f"User {user_id} is not a member of chat {chat_id}")

        command = parse_command(content)
        message = await self.store.create_message(
            chat_id,
            user_id,
            content,
            kind=MessageKind.USER,
            is_command=addresses_assistant(command),
        )
        result = ChatResult(message=message)

        if isinstance(command, (AskCommand, PingCommand)):
            result.replies.append(
                await self.ask_assistant(chat_id, user_id, message, command.prompt)
            )
        elif isinstance(command, WikiCommand):
            result.replies.append(await self._wiki(chat_id, command.topic))
        elif isinstance(command, CommandUsageError):
            result.replies.append(await self._system_message(chat_id, usage_message(command)))
        elif isinstance(command, UnknownCommand):
            logger.info(f"Unknown command /{command.name} in chat {chat_id}")

        return result

    async def ask_assistant(
        self, chat_id: str, user_id: str, prompt_message: Message, prompt: str
    ) -> Message:
        """Ask the assistant on behalf of user_id and post its reply."""
        assembly = await self.assembler.assemble(chat_id)

        # The prompt goes last with the command text replaced by what was asked,
        # also when the chat's mode leaves it out of the assembled context
        messages = [m for m in assembly.messages if m.id != prompt_message.id]
        messages.append(prompt_message.model_copy(update={"content": prompt}))
        system_prompt = build_system_prompt(assembly)
        estimated = (
            estimate(system_prompt) + estimate_messages(messages) + self.response_budget
        )

        try:
            async with self.ledger.reserve(user_id, estimated, chat_id=chat_id) as call:
                try:
                    response = await asyncio.wait_for(
                        self.provider.send(messages, system_prompt, model=self.model),
                        timeout=self.llm_timeout,
                    )
                except asyncio.TimeoutError as e:
                    raise ProviderUnavailable(
                        f"No response within {self.llm_timeout:g}s"
                    ) from e
                await call.settle(
                    response.input_tokens,
                    response.output_tokens,
                    prompt_text=f"{system_prompt}\n\n{format_transcript(messages)}",
                    completion_text=response.text,
                )
        except QuotaExceeded as e:
            logger.info(f"Quota exceeded for {user_id} in chat {chat_id}")
            return await self._system_message(chat_id, e.user_message())
        except ProviderUnavailable as e:
            logger.warning(f"Assistant unavailable for chat {chat_id}: {e}")
            return await self._system_message(
                chat_id, "The assistant is unavailable right now. Please try again later."
            )

        reply = await self.store.create_message(
            chat_id,
            self.assistant_user_id,
            response.text,
            kind=MessageKind.ASSISTANT,
        )
        await self._maybe_summarize(chat_id, user_id)
        return reply

    async def _maybe_summarize(self, chat_id: str, user_id: str) -> None:
        assembly = await self.assembler.assemble(chat_id)
        if assembly.needs_new_summary:
            await self.orchestrator.trigger(chat_id, user_id)

    async def _wiki(self, chat_id: str, topic: str) -> Message:
        try:
            summary = await self.wikipedia.summary(topic)
        except WikipediaError as e:
            logger.error(f"Failed to get Wikipedia summary for {topic!r}: {e}")
            return await self._system_message(
                chat_id, f'Failed to get Wikipedia summary for "{topic}"'
            )
        return await self._system_message(
            chat_id, f'Wikipedia summary for "{topic}":\n\n{summary}'
        )

    async def _system_message(self, chat_id: str, content: str) -> Message:
        return await self.store.create_message(
            chat_id, self.system_user_id, content, kind=MessageKind.SYSTEM
        )
