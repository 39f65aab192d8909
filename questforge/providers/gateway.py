"""
Provider gateway: the single call surface the pipeline uses to reach the
generative-content provider.

The gateway owns everything about a call that is not content: conversion of
conversation turns into LangChain messages, the shared admission gate that
bounds outstanding calls across every session, the per-call timeout, and the
retry/backoff schedule for transient failures.
"""

import asyncio
from typing import Any, Iterable, List, Mapping, Optional, Union

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from questforge.config import Settings
from questforge.errors import ProviderRejected, ProviderTransientError, ProviderUnavailable
from questforge.schemas.session import ConversationTurn
from questforge.utils.logger import get_logger

from .base import BaseProvider

logger = get_logger(__name__)

Turn = Union[ConversationTurn, Mapping[str, Any]]


def to_messages(history: Iterable[Turn], prompt: str) -> List[BaseMessage]:
    """Convert conversation turns plus the prompt into LangChain messages"""
    messages: List[BaseMessage] = []
    for turn in history:
        if isinstance(turn, ConversationTurn):
            role, content = turn.role, turn.content
        else:
            role, content = turn["role"], turn["content"]

        if role == "system":
            messages.append(SystemMessage(content=content))
        elif role == "user":
            messages.append(HumanMessage(content=content))
        elif role in ("assistant", "character"):
            messages.append(AIMessage(content=content))
        else:
            raise ValueError(f"Unknown conversation role: {role}")

    messages.append(HumanMessage(content=prompt))
    return messages


class ProviderGateway:
    """
    Bounded, retrying access to a provider.

    One gateway is shared by every session pipeline in the process so the
    admission gate reflects the provider's real rate-limit budget.

    Attributes:
        provider: The underlying LLM provider
        max_attempts: Total attempts for transient failures
        backoff_base: First backoff delay in seconds
        backoff_max: Upper bound for a single backoff delay
        timeout: Seconds allowed per call
    """

    def __init__(
        self,
        provider: BaseProvider,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        timeout: float = 60.0,
        concurrency: int = 4,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.provider = provider
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout = timeout
        self.concurrency = concurrency
        self._gate = asyncio.Semaphore(concurrency)

    @classmethod
    def from_settings(cls, provider: BaseProvider, config: Settings) -> "ProviderGateway":
        return cls(
            provider,
            max_attempts=config.provider_max_attempts,
            backoff_base=config.provider_backoff_base,
            backoff_max=config.provider_backoff_max,
            timeout=config.provider_timeout,
            concurrency=config.provider_concurrency,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt"""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    async def call(
        self,
        prompt: str,
        history: Optional[Iterable[Turn]] = None,
        label: Optional[str] = None,
    ) -> str:
        """
        Generate text for a prompt.

        Args:
            prompt: The user prompt for this call
            history: Ordered conversation turns sent before the prompt
            label: Caller name used for logging (usually the stage name)

        Returns:
            The generated text

        Raises:
            ProviderUnavailable: Transient failures exhausted the retry bound
            ProviderRejected: The provider refused the request
        """
        messages = to_messages(history or [], prompt)
        label = label or "call"
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self._gate:
                    response = await asyncio.wait_for(
                        self.provider.chat(messages), timeout=self.timeout
                    )
                return response.content
            except ProviderRejected as e:
                logger.error(
                    f"[Gateway] {label}: provider rejected request: {e}",
                    extra={"component": "Gateway", "stage": label},
                )
                raise
            except asyncio.TimeoutError:
                last_error = ProviderTransientError(
                    f"Provider call timed out after {self.timeout}s"
                )
            except ProviderTransientError as e:
                last_error = e

            if attempt < self.max_attempts:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"[Gateway] {label}: attempt {attempt}/{self.max_attempts} failed "
                    f"({last_error}); retrying in {delay:.2f}s",
                    extra={"component": "Gateway", "stage": label, "attempt": attempt},
                )
                await asyncio.sleep(delay)

        logger.error(
            f"[Gateway] {label}: provider unavailable after {self.max_attempts} attempts",
            extra={"component": "Gateway", "stage": label},
        )
        raise ProviderUnavailable(
            f"Provider unavailable after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
        ) from last_error
