from __future__ import annotations

import hashlib
import threading
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

import tiktoken
from loguru import logger

DEFAULT_ENCODING = "cl100k_base"

MESSAGE_OVERHEAD = 4
CONVERSATION_OVERHEAD = 3
TRUNCATION_MARKER = "..."
TOO_LONG_PLACEHOLDER = "[Nội dung quá dài]"

# Texts up to this length are their own cache key.
_SHORT_KEY_CHARS = 256
_SNIPPET_CHARS = 32
# Whitespace back-off may shorten the cut by at most this fraction.
_WORD_BOUNDARY_SLACK = 0.2


class Encoding(Protocol):
    def encode(self, text: str, *, disallowed_special=...) -> list[int]: ...


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    size: int
    capacity: int


class TokenCounter:
    def __init__(
        self,
        encoding: Encoding | None = None,
        *,
        encoding_name: str = DEFAULT_ENCODING,
        cache_size: int = 2_000,
        tokens_per_tool: int = 200,
    ):
        self._encoding = encoding if encoding is not None else tiktoken.get_encoding(encoding_name)
        self._cache_size = max(1, cache_size)
        self._tokens_per_tool = tokens_per_tool
        self._cache: OrderedDict[str, int] = OrderedDict()
        self._lock = threading.Lock()
        # Diagnostics only; updated outside the lock.
        self._hits = 0
        self._misses = 0

    def count(self, text: str | None) -> int:
        if not text:
            return 0

        key = self._cache_key(text)
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._cache.move_to_end(key)
        if cached is not None:
            self._hits += 1
            return cached

        self._misses += 1
        tokens = self._encode_length(text)
        with self._lock:
            self._cache[key] = tokens
            self._cache.move_to_end(key)
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)
        return tokens

    def count_message(self, role: str, text: str | None) -> int:
        return self.count(text) + MESSAGE_OVERHEAD

    def count_messages(self, messages: Iterable[tuple[str, str]]) -> int:
        return CONVERSATION_OVERHEAD + sum(self.count_message(role, content) for role, content in messages)

    def estimate_tool_schema_tokens(self, tool_count: int) -> int:
        return max(0, tool_count) * self._tokens_per_tool

    def truncate_to_limit(self, text: str, max_tokens: int) -> str:
        """Return the longest word-aligned prefix of ``text`` (plus a marker) within ``max_tokens``."""
        if not text or self.count(text) <= max_tokens:
            return text

        if max_tokens <= 0 or self._encode_length(TRUNCATION_MARKER) > max_tokens:
            return TOO_LONG_PLACEHOLDER

        def fits(length: int) -> bool:
            return self._encode_length(text[:length] + TRUNCATION_MARKER) <= max_tokens

        lo, hi = 0, len(text)
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if fits(mid):
                lo = mid
            else:
                hi = mid - 1

        cut = lo
        boundary = max(text.rfind(" ", 0, cut), text.rfind("\n", 0, cut))
        if boundary > 0 and boundary >= cut * (1 - _WORD_BOUNDARY_SLACK) and fits(boundary):
            cut = boundary

        result = text[:cut].rstrip() + TRUNCATION_MARKER
        if self._encode_length(result) > max_tokens:
            result = text[:cut] + TRUNCATION_MARKER
        logger.debug(f"Truncated text from {len(text):,} to {len(result):,} chars ({max_tokens} token limit)")
        return result

    def cache_info(self) -> CacheStats:
        with self._lock:
            size = len(self._cache)
        return CacheStats(hits=self._hits, misses=self._misses, size=size, capacity=self._cache_size)

    def _encode_length(self, text: str) -> int:
        return len(self._encoding.encode(text, disallowed_special=()))

    @staticmethod
    def _cache_key(text: str) -> str:
        if len(text) <= _SHORT_KEY_CHARS:
            return text
        digest = hashlib.sha256(text.encode("utf-8")).hexdigest()[:24]
        return f"{len(text)}:{digest}:{text[:_SNIPPET_CHARS]}:{text[-_SNIPPET_CHARS:]}"
