from collections.abc import AsyncIterator

import openai
from loguru import logger

from store_assistant.models import (
    ChatMessage,
    ContentChunk,
    FinishChunk,
    FinishReason,
    Role,
    StreamChunk,
    ToolCallFragment,
    TransportRequest,
)

_FINISH_REASON_MAP = {
    "stop": FinishReason.STOP,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "length": FinishReason.LENGTH,
}


def _to_openai_messages(messages: list[ChatMessage]) -> list[dict]:
    """Convert the working message list to OpenAI chat format."""
    out: list[dict] = []
    for msg in messages:
        if msg.role == Role.ASSISTANT and msg.tool_calls:
            out.append({
                "role": "assistant",
                "content": msg.content or None,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.arguments or "{}"},
                    }
                    for tc in msg.tool_calls
                ],
            })
        elif msg.role == Role.TOOL:
            out.append({"role": "tool", "tool_call_id": msg.tool_call_id, "content": msg.content})
        else:
            out.append({"role": str(msg.role), "content": msg.content})
    return out


def _to_openai_tools(tools: list[dict]) -> list[dict]:
    """Convert registry tool schemas to OpenAI function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {}),
            },
        }
        for t in tools
    ]


def _map_finish_reason(raw: str) -> FinishReason:
    return _FINISH_REASON_MAP.get(raw, FinishReason.OTHER)


class OpenAIProvider:
    """Chat-completions transport for OpenAI and OpenAI-compatible endpoints."""

    def __init__(self, api_key: str, *, model: str, base_url: str | None = None):
        self._client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._model = model

    @property
    def model(self) -> str:
        return self._model

    async def open_stream(self, request: TransportRequest) -> AsyncIterator[StreamChunk]:
        oai_messages = _to_openai_messages(request.messages)
        oai_tools = _to_openai_tools(request.tools)

        logger.debug(
            f"API request: model={self._model}, max_tokens={request.max_output_tokens}, "
            f"messages={len(oai_messages)}, tools={len(oai_tools)}"
        )
        kwargs: dict = dict(
            model=self._model,
            max_tokens=request.max_output_tokens,
            messages=oai_messages,
            stream=True,
        )
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if oai_tools:
            kwargs["tools"] = oai_tools
            kwargs["tool_choice"] = "auto"

        stream = await self._client.chat.completions.create(**kwargs)
        return self._iterate(stream)

    async def _iterate(self, stream) -> AsyncIterator[StreamChunk]:
        try:
            async for chunk in stream:
                choice = chunk.choices[0] if chunk.choices else None
                if choice is None:
                    continue

                delta = choice.delta
                if delta is not None:
                    if delta.content:
                        yield ContentChunk(delta.content)

                    # Tool calls arrive incrementally by index
                    for tc_delta in delta.tool_calls or ():
                        function = tc_delta.function
                        yield ToolCallFragment(
                            index=tc_delta.index,
                            id=tc_delta.id,
                            name=function.name if function else None,
                            arguments=function.arguments if function else None,
                        )

                if choice.finish_reason:
                    logger.debug(f"API response: finish_reason={choice.finish_reason}")
                    yield FinishChunk(_map_finish_reason(choice.finish_reason))
        finally:
            await stream.close()
