"""
LLM provider implementations and the gateway used by the pipeline
"""

from .base import BaseProvider, ProviderResponse
from .factory import create_provider
from .gateway import ProviderGateway, to_messages
from .openai import OpenAIProvider, classify_provider_error

__all__ = [
    "BaseProvider",
    "ProviderResponse",
    "OpenAIProvider",
    "ProviderGateway",
    "classify_provider_error",
    "create_provider",
    "to_messages",
]
