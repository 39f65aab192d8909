"""
Provider interface shared by every chat backend.

Subclasses implement `_complete` and `classify_error`; `chat` wraps them
with timing, structured logging and error normalisation so the gateway
only ever sees ProviderTransientError or ProviderRejected.
"""

import time
import uuid
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Dict, List, Optional

from langchain_core.messages import BaseMessage
from pydantic import BaseModel

from questforge.errors import ProviderError, ProviderTransientError
from questforge.utils.logger import get_logger

logger = get_logger(__name__)

PREVIEW_CHARS = 300


class ProviderResponse(BaseModel):
    """Text returned by one provider call"""

    content: str
    usage: Optional[Dict[str, Any]] = None
    model: Optional[str] = None


def summarize_messages(messages: List[BaseMessage]) -> Dict[str, Any]:
    """Role histogram and prompt size for a message list"""
    roles = Counter(getattr(m, "type", type(m).__name__) for m in messages)
    return {
        "roles": dict(roles),
        "prompt_chars": sum(len(str(m.content)) for m in messages),
    }


class BaseProvider(ABC):
    """A single chat model endpoint"""

    def __init__(self, api_base: str, api_key: str, model_name: str):
        self.api_base = api_base
        self.api_key = api_key
        self.model_name = model_name
        self.llm: Any = None

    @property
    def name(self) -> str:
        return type(self).__name__

    async def chat(self, messages: List[BaseMessage], **kwargs) -> ProviderResponse:
        """Run one completion, logging its start, outcome and latency"""
        call_id = uuid.uuid4().hex[:8]
        context = {"component": "LLM", "call_id": call_id, "provider": self.name}
        summary = summarize_messages(messages)
        logger.info(
            f"[LLM] {call_id} -> {self.model_name}: "
            f"{len(messages)} messages, {summary['prompt_chars']} chars",
            extra={**context, **summary, "params": kwargs},
        )

        started = time.perf_counter()
        try:
            response = await self._complete(messages, **kwargs)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - started) * 1000
            error = e if isinstance(e, ProviderError) else self.classify_error(e)
            logger.warning(
                f"[LLM] {call_id} failed after {elapsed_ms:.0f}ms: {type(e).__name__}: {e}",
                extra={**context, "elapsed_ms": elapsed_ms, "outcome": type(error).__name__},
            )
            if error is e:
                raise
            raise error from e

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(
            f"[LLM] {call_id} <- {len(response.content)} chars in {elapsed_ms:.0f}ms",
            extra={**context, "elapsed_ms": elapsed_ms, "usage": response.usage},
        )
        logger.debug(f"[LLM] {call_id} preview: {response.content[:PREVIEW_CHARS]}")
        return response

    def classify_error(self, error: Exception) -> ProviderError:
        """Map a backend exception to ProviderTransientError or ProviderRejected"""
        return ProviderTransientError(f"{type(error).__name__}: {error}")

    @abstractmethod
    async def _complete(self, messages: List[BaseMessage], **kwargs) -> ProviderResponse:
        """Send the messages to the backend and return its reply"""

    @abstractmethod
    async def health_check(self) -> bool:
        """True when the endpoint answers"""
