import json
from collections.abc import AsyncIterator

import anthropic
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

_STOP_REASON_MAP = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "tool_use": FinishReason.TOOL_CALLS,
    "max_tokens": FinishReason.LENGTH,
}


def _parse_tool_input(arguments: str) -> dict:
    if not arguments:
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        logger.warning(f"Failed to parse tool call arguments: {arguments[:200]}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _to_anthropic_messages(messages: list[ChatMessage]) -> tuple[str, list[dict]]:
    """Split the working list into a system prompt and Anthropic content-block messages.

    System-role entries (the prompt and any history notice) are joined into the
    ``system`` parameter. Consecutive tool results are grouped into one user
    message of ``tool_result`` blocks.
    """
    system_parts: list[str] = []
    out: list[dict] = []

    for msg in messages:
        if msg.role == Role.SYSTEM:
            system_parts.append(msg.content)
        elif msg.role == Role.TOOL:
            block = {"type": "tool_result", "tool_use_id": msg.tool_call_id, "content": msg.content}
            previous = out[-1] if out else None
            if previous and previous["role"] == "user" and isinstance(previous["content"], list):
                previous["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})
        elif msg.role == Role.ASSISTANT and msg.tool_calls:
            blocks: list[dict] = []
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                blocks.append({
                    "type": "tool_use",
                    "id": tc.id,
                    "name": tc.name,
                    "input": _parse_tool_input(tc.arguments),
                })
            out.append({"role": "assistant", "content": blocks})
        else:
            out.append({"role": str(msg.role), "content": msg.content})

    return "\n\n".join(p for p in system_parts if p), out


class AnthropicProvider:
    def __init__(self, api_key: str, *, model: str):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model

    @property
    def model(self) -> str:
        return self._model

    async def open_stream(self, request: TransportRequest) -> AsyncIterator[StreamChunk]:
        system_prompt, messages = _to_anthropic_messages(request.messages)

        logger.debug(
            f"API request: model={self._model}, max_tokens={request.max_output_tokens}, "
            f"messages={len(messages)}, tools={len(request.tools)}"
        )
        kwargs: dict = dict(
            model=self._model,
            max_tokens=request.max_output_tokens,
            messages=messages,
            stream=True,
        )
        if system_prompt:
            kwargs["system"] = system_prompt
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.tools:
            kwargs["tools"] = request.tools

        stream = await self._client.messages.create(**kwargs)
        return self._iterate(stream)

    async def _iterate(self, stream) -> AsyncIterator[StreamChunk]:
        try:
            async for event in stream:
                if event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        yield ToolCallFragment(index=event.index, id=block.id, name=block.name)
                elif event.type == "content_block_delta":
                    if event.delta.type == "text_delta":
                        yield ContentChunk(event.delta.text)
                    elif event.delta.type == "input_json_delta":
                        yield ToolCallFragment(index=event.index, arguments=event.delta.partial_json)
                elif event.type == "message_delta":
                    stop_reason = event.delta.stop_reason
                    if stop_reason:
                        logger.debug(f"API response: stop_reason={stop_reason}")
                        yield FinishChunk(_STOP_REASON_MAP.get(stop_reason, FinishReason.OTHER))
        finally:
            await stream.close()
