from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

from store_assistant.models import StreamChunk, TransportRequest


@runtime_checkable
class LLMProvider(Protocol):
    @property
    def model(self) -> str: ...

    async def open_stream(self, request: TransportRequest) -> AsyncIterator[StreamChunk]:
        """Send one streaming request and return its chunks.

        Awaiting this performs the handshake, so connection, auth and rate-limit
        failures surface here and can be retried. Failures while iterating the
        returned stream happen after output may have been forwarded and must not
        be retried. Callers iterate the stream to the end or ``aclose()`` it.
        """
        ...


def create_provider(
    provider_name: str,
    api_key: str,
    *,
    model: str,
    base_url: str | None = None,
) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from store_assistant.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key, model=model)
    if name == "openai":
        from store_assistant.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key, model=model, base_url=base_url)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
