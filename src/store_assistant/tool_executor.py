from __future__ import annotations

import asyncio
import hashlib
import json
import time
from collections.abc import Callable
from typing import Any

from loguru import logger

from store_assistant.chat_config import ChatLimits
from store_assistant.models import ToolCall, ToolResult
from store_assistant.tokens import TokenCounter
from store_assistant.tool_registry import ToolRegistry, UnsupportedTool


def _error_payload(message: str) -> str:
    return json.dumps({"error": message}, ensure_ascii=False)


class _ToolInputError(ValueError):
    pass


def _parse_arguments(arguments: str) -> dict[str, Any]:
    if not arguments or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as ex:
        raise _ToolInputError(f"Tham số không hợp lệ: {ex.msg}") from ex
    if not isinstance(parsed, dict):
        raise _ToolInputError("Tham số phải là một JSON object")
    return parsed


class ToolExecutor:
    """Runs one round of tool calls concurrently and returns one result per call.

    Results come back in call order regardless of completion order. A failing,
    unknown or slow tool yields an error payload for its own call only. Every
    result is token-truncated before it is handed back, and successful results
    are cached briefly so repeated identical lookups within a turn are free.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        token_counter: TokenCounter,
        limits: ChatLimits,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._tokens = token_counter
        self._timeout = limits.tool_timeout_seconds
        self._max_result_tokens = limits.max_tool_result_tokens
        self._cache_ttl = limits.tool_cache_seconds
        self._clock = clock
        self._cache: dict[str, tuple[float, str]] = {}

    async def execute_parallel(self, calls: list[ToolCall]) -> list[ToolResult]:
        if not calls:
            return []
        logger.info(f"Executing {len(calls)} tool call(s): {', '.join(c.name for c in calls)}")
        return list(await asyncio.gather(*(self._run_one(call) for call in calls)))

    async def _run_one(self, call: ToolCall) -> ToolResult:
        tool = self._registry.resolve(call.name)
        if isinstance(tool, UnsupportedTool):
            logger.warning(f"Model requested unsupported tool {tool.requested_name!r}")
            return self._result(call, _error_payload(f"Function '{call.name}' không được hỗ trợ"), is_error=True)

        try:
            tool_input = _parse_arguments(call.arguments)
        except _ToolInputError as ex:
            logger.warning(f"{call.name}: bad arguments {call.arguments[:200]!r}")
            return self._result(call, _error_payload(str(ex)), is_error=True)

        cache_key = self._cache_key(call.name, tool_input)
        cached = self._cache_get(cache_key)
        if cached is not None:
            logger.debug(f"Tool cache hit: {call.name}")
            return self._result(call, cached)

        started = time.perf_counter()
        try:
            output = await asyncio.wait_for(tool.execute(tool_input), timeout=self._timeout)
        except TimeoutError:
            logger.warning(f"Tool {call.name} timed out after {self._timeout:g}s")
            return self._result(
                call,
                _error_payload(f"Tool '{call.name}' timeout sau {self._timeout:g}s."),
                is_error=True,
            )
        except Exception as ex:
            logger.error(f"Tool {call.name} failed: {type(ex).__name__}: {ex}")
            return self._result(call, _error_payload(f"Lỗi thực thi: {ex}"), is_error=True)

        elapsed_ms = (time.perf_counter() - started) * 1000
        if not isinstance(output, str):
            output = json.dumps(output, ensure_ascii=False, default=str)
        logger.info(f"Tool {call.name} completed in {elapsed_ms:.0f}ms ({len(output):,} chars)")

        self._cache_put(cache_key, output)
        return self._result(call, output)

    def _result(self, call: ToolCall, content: str, *, is_error: bool = False) -> ToolResult:
        if self._tokens.count(content) > self._max_result_tokens:
            logger.warning(f"{call.name} result truncated to {self._max_result_tokens} tokens")
            content = self._tokens.truncate_to_limit(content, self._max_result_tokens)
        return ToolResult(tool_call_id=call.id, content=content, is_error=is_error)

    @staticmethod
    def _cache_key(name: str, tool_input: dict[str, Any]) -> str:
        canonical = json.dumps(tool_input, sort_keys=True, ensure_ascii=False, default=str)
        return hashlib.sha256(f"{name}:{canonical}".encode("utf-8")).hexdigest()

    def _cache_get(self, key: str) -> str | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            del self._cache[key]
            return None
        return value

    def _cache_put(self, key: str, value: str) -> None:
        if self._cache_ttl <= 0:
            return
        now = self._clock()
        for stale in [k for k, (expires_at, _) in self._cache.items() if expires_at <= now]:
            del self._cache[stale]
        self._cache[key] = (now + self._cache_ttl, value)
