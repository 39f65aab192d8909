"""
ChatOpenAI-backed provider for OpenAI and OpenAI-compatible endpoints
"""

from typing import Any, Dict, List, Optional

import openai
from langchain_core.messages import BaseMessage, HumanMessage
from langchain_openai import ChatOpenAI

from questforge.errors import ProviderError, ProviderRejected, ProviderTransientError
from questforge.utils.logger import get_logger

from .base import BaseProvider, ProviderResponse

logger = get_logger(__name__)

_TRANSIENT_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)

_REJECTED_ERRORS = (
    openai.AuthenticationError,
    openai.PermissionDeniedError,
    openai.BadRequestError,
    openai.NotFoundError,
    openai.UnprocessableEntityError,
)


def classify_provider_error(error: Exception) -> ProviderError:
    """Map an SDK exception onto the transient/rejected split"""
    if isinstance(error, _TRANSIENT_ERRORS):
        return ProviderTransientError(f"{type(error).__name__}: {error}")
    if isinstance(error, _REJECTED_ERRORS):
        return ProviderRejected(f"{type(error).__name__}: {error}")
    if isinstance(error, openai.APIStatusError):
        status = error.status_code
        if status == 429 or status >= 500:
            return ProviderTransientError(f"HTTP {status}: {error}")
        return ProviderRejected(f"HTTP {status}: {error}")
    # Unknown failures are retried; the gateway bounds how often
    return ProviderTransientError(f"{type(error).__name__}: {error}")


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    parts = []
    for part in content or []:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "".join(parts)


class OpenAIProvider(BaseProvider):
    """OpenAI (or OpenAI-compatible) chat provider using LangChain"""

    def __init__(
        self,
        api_base: str,
        api_key: str,
        model_name: str,
        temperature: Optional[float] = None,
    ):
        super().__init__(api_base, api_key, model_name)
        kwargs: Dict[str, Any] = {}
        if temperature is not None:
            kwargs["temperature"] = temperature
        # Retries and timeouts are owned by the gateway
        self.llm = ChatOpenAI(
            model=model_name,
            base_url=api_base,
            api_key=api_key,  # type: ignore
            max_retries=0,
            **kwargs,
        )
        logger.info(f"Initialized OpenAI provider for {model_name} at {api_base}")

    def classify_error(self, error: Exception) -> ProviderError:
        return classify_provider_error(error)

    async def _complete(self, messages: List[BaseMessage], **kwargs) -> ProviderResponse:
        llm = self.llm.bind(**kwargs) if kwargs else self.llm
        reply = await llm.ainvoke(messages)
        return ProviderResponse(
            content=_content_text(reply.content),
            usage=getattr(reply, "usage_metadata", None),
            model=self.model_name,
        )

    async def health_check(self) -> bool:
        """Send a one-word prompt and report whether the endpoint answered"""
        try:
            await self.llm.ainvoke([HumanMessage(content="ping")])
        except Exception as e:
            logger.warning(f"Health check failed for {self.model_name}: {e}")
            return False
        return True
