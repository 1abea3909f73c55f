"""Reasoning oracle: the language-model boundary used by planning and execution.

The engine only depends on ``ReasoningOracle``. ``AnthropicOracle`` adapts
the Anthropic Messages API to it.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import anthropic
import structlog
from anthropic import AsyncAnthropic

from .config import LLMConfig, RetryConfig
from .exceptions import OracleError
from .logging_config import log_oracle_request, log_oracle_response
from .models import LLMParams, Message, TokenUsage
from .utils.retry import RetryError, RetryPolicy, retry_async

logger = structlog.get_logger()

TRANSIENT_ERRORS = (
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)


@dataclass
class OracleResponse:
    """Text returned by the oracle plus token accounting."""

    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""


class ReasoningOracle(ABC):
    """Language-model endpoint. Implementations must allow concurrent calls."""

    @abstractmethod
    async def infer(self, messages: Sequence[Message], params: LLMParams) -> OracleResponse:
        """Run one inference over ``messages``.

        Raises:
            OracleError: On any transport or API failure
        """

    async def close(self) -> None:
        """Release client resources."""


class AnthropicOracle(ReasoningOracle):
    """
    Oracle backed by ``anthropic.AsyncAnthropic``.

    System messages are joined into the ``system`` argument; consecutive
    messages with the same role are merged since the API requires the
    conversation to alternate.

    Example:
        >>> oracle = AnthropicOracle.from_config(config.llm)
        >>> reply = await oracle.infer([Message("user", "Hi")], params)
    """

    def __init__(
        self,
        client: Optional[AsyncAnthropic] = None,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._client = client or AsyncAnthropic(api_key=api_key, timeout=timeout)
        self._retry_policy = retry_policy or RetryPolicy(retryable_exceptions=TRANSIENT_ERRORS)
        self.total_usage = TokenUsage()

    @classmethod
    def from_config(cls, config: LLMConfig, api_key: Optional[str] = None) -> AnthropicOracle:
        return cls(
            api_key=api_key or config.api_key,
            timeout=config.timeout,
            retry_policy=policy_from_config(config.retry),
        )

    async def infer(self, messages: Sequence[Message], params: LLMParams) -> OracleResponse:
        system, conversation = split_system(messages)
        if not conversation:
            raise OracleError("No user or assistant messages to send", error_code="EMPTY_REQUEST")

        request: Dict[str, Any] = {
            "model": params.model,
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
            "messages": conversation,
        }
        if system:
            request["system"] = system

        log_oracle_request(params.model, len(conversation))
        start = time.monotonic()

        try:
            response = await retry_async(self._client.messages.create, self._retry_policy, **request)
        except RetryError as e:
            raise OracleError(
                f"Oracle unavailable after retries: {e.last_exception}",
                error_code="TRANSIENT",
            ) from e
        except anthropic.APIError as e:
            raise OracleError(f"Oracle request failed: {e}", error_code="API_ERROR") from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = TokenUsage(
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        self.total_usage.add(usage)

        log_oracle_response(
            params.model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            duration_ms=round((time.monotonic() - start) * 1000, 1),
        )
        return OracleResponse(text=text, usage=usage, model=getattr(response, "model", params.model))

    async def close(self) -> None:
        await self._client.close()


def split_system(messages: Sequence[Message]) -> tuple[str, List[Dict[str, str]]]:
    """Separate system text from the alternating user/assistant conversation."""
    system_parts: List[str] = []
    conversation: List[Dict[str, str]] = []

    for message in messages:
        if message.role == "system":
            system_parts.append(message.content)
            continue
        role = "assistant" if message.role == "assistant" else "user"
        if conversation and conversation[-1]["role"] == role:
            conversation[-1]["content"] += "\n\n" + message.content
        else:
            conversation.append({"role": role, "content": message.content})

    # The API rejects a conversation that opens with the assistant.
    if conversation and conversation[0]["role"] == "assistant":
        conversation.insert(0, {"role": "user", "content": "(conversation history)"})

    return "\n\n".join(system_parts), conversation


def policy_from_config(config: RetryConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.max_retries + 1,
        initial_delay=config.base_delay,
        max_delay=config.max_delay,
        backoff_multiplier=config.exponential_base,
        retryable_exceptions=TRANSIENT_ERRORS,
    )
