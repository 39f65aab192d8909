"""
Tests for the provider gateway: retries, backoff, timeouts and the admission gate.
"""

import asyncio
from typing import Any, List

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from questforge.config import Settings
from questforge.errors import ProviderRejected, ProviderTransientError, ProviderUnavailable
from questforge.providers.base import BaseProvider, ProviderResponse
from questforge.providers.gateway import ProviderGateway, to_messages
from questforge.schemas.session import ConversationTurn


class FakeProvider(BaseProvider):
    """Provider that plays back scripted outcomes"""

    def __init__(self, outcomes: List[Any] = None, delay: float = 0.0):
        super().__init__("http://fake", "key", "fake-model")
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls: List[list] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def _complete(self, messages, **kwargs) -> ProviderResponse:
        self.calls.append(messages)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes.pop(0) if self.outcomes else "ok"
            if isinstance(outcome, Exception):
                raise outcome
            return ProviderResponse(content=outcome, model=self.model_name)
        finally:
            self.in_flight -= 1

    async def health_check(self) -> bool:
        return True


class TestToMessages:
    """Test conversion of conversation turns to LangChain messages"""

    def test_roles_are_mapped(self):
        history = [
            ConversationTurn(role="system", content="You are the narrator."),
            ConversationTurn(role="user", content="Hello"),
            ConversationTurn(role="assistant", content="Greetings"),
            {"role": "character", "content": "Mira nods."},
        ]
        messages = to_messages(history, "Continue")

        assert [type(m) for m in messages] == [
            SystemMessage,
            HumanMessage,
            AIMessage,
            AIMessage,
            HumanMessage,
        ]
        assert messages[-1].content == "Continue"

    def test_unknown_role(self):
        with pytest.raises(ValueError):
            to_messages([{"role": "narrator", "content": "x"}], "prompt")


class TestProviderGateway:
    """Test gateway retry behaviour"""

    @pytest.mark.asyncio
    async def test_returns_content(self):
        provider = FakeProvider(["generated text"])
        gateway = ProviderGateway(provider, backoff_base=0)

        result = await gateway.call("prompt", [], label="World")

        assert result == "generated text"
        assert len(provider.calls) == 1
        assert provider.calls[0][-1].content == "prompt"

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self):
        provider = FakeProvider(
            [ProviderTransientError("429"), ProviderTransientError("503"), "finally"]
        )
        gateway = ProviderGateway(provider, max_attempts=3, backoff_base=0)

        result = await gateway.call("prompt")

        assert result == "finally"
        assert len(provider.calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries(self):
        provider = FakeProvider([ProviderTransientError("down")] * 5)
        gateway = ProviderGateway(provider, max_attempts=3, backoff_base=0)

        with pytest.raises(ProviderUnavailable) as exc_info:
            await gateway.call("prompt")

        assert exc_info.value.attempts == 3
        assert len(provider.calls) == 3

    @pytest.mark.asyncio
    async def test_rejected_is_not_retried(self):
        provider = FakeProvider([ProviderRejected("invalid api key"), "never"])
        gateway = ProviderGateway(provider, max_attempts=3, backoff_base=0)

        with pytest.raises(ProviderRejected):
            await gateway.call("prompt")

        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_as_transient(self):
        provider = FakeProvider(["too late"] * 3, delay=0.5)
        gateway = ProviderGateway(provider, max_attempts=2, backoff_base=0, timeout=0.01)

        with pytest.raises(ProviderUnavailable):
            await gateway.call("prompt")

        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_admission_gate_bounds_outstanding_calls(self):
        provider = FakeProvider(["ok"] * 6, delay=0.02)
        gateway = ProviderGateway(provider, concurrency=2, backoff_base=0)

        results = await asyncio.gather(*(gateway.call(f"p{i}") for i in range(6)))

        assert results == ["ok"] * 6
        assert provider.max_in_flight == 2

    def test_backoff_schedule(self):
        gateway = ProviderGateway(FakeProvider(), backoff_base=0.5, backoff_max=8.0)

        delays = [gateway.backoff_delay(n) for n in range(1, 7)]

        assert delays == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            ProviderGateway(FakeProvider(), max_attempts=0)

    def test_from_settings(self):
        config = Settings(
            provider_max_attempts=5,
            provider_backoff_base=0.25,
            provider_timeout=12,
            provider_concurrency=7,
        )
        gateway = ProviderGateway.from_settings(FakeProvider(), config)

        assert gateway.max_attempts == 5
        assert gateway.backoff_base == 0.25
        assert gateway.timeout == 12
        assert gateway.concurrency == 7
