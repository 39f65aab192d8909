"""
Provider factory for creating LLM providers based on configuration
"""

from typing import Optional

from ..config import Settings, settings as default_settings
from .base import BaseProvider
from .openai import OpenAIProvider


def create_provider(config: Optional[Settings] = None) -> BaseProvider:
    """Create a provider instance based on configuration"""
    config = config or default_settings

    if config.model_provider == "openai":
        return OpenAIProvider(
            api_base=config.openai_api_base,
            api_key=config.openai_api_key,
            model_name=config.model_name,
            temperature=config.temperature,
        )
    elif config.model_provider == "generic":
        # OpenAI-compatible endpoints (LM Studio, vLLM, ...) often need no key
        return OpenAIProvider(
            api_base=config.openai_api_base,
            api_key=config.openai_api_key or "not-needed",
            model_name=config.model_name,
            temperature=config.temperature,
        )
    else:
        raise ValueError(f"Unsupported provider: {config.model_provider}")
