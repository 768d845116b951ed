"""Bounded message-list construction for a single chat turn.

The budget available to history is whatever the model context window leaves after
the output allowance, the tool schemas, and a safety buffer. System prompt and the
current user message are always sent; prior turns are windowed to the newest
``max_history_messages`` entries and then admitted newest-first until the budget
runs out. Older entries that do not fit are replaced by a single system notice.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger

from store_assistant.chat_config import ChatLimits
from store_assistant.models import ChatMessage, ClientMessage, ContextStatus, Role
from store_assistant.tokens import CONVERSATION_OVERHEAD, MESSAGE_OVERHEAD, TokenCounter


def truncation_notice(dropped_count: int) -> str:
    return (
        f"[Lịch sử hội thoại đã được rút gọn. {dropped_count} tin nhắn cũ hơn "
        f"đã bị lược bỏ để tiết kiệm context.]"
    )


@dataclass
class _Candidate:
    role: Role
    content: str
    tokens: int


class ContextBudgeter:
    def __init__(self, token_counter: TokenCounter, limits: ChatLimits, *, tool_count: int | None = None):
        self._tokens = token_counter
        self._limits = limits
        self._tool_count = limits.estimated_tool_count if tool_count is None else tool_count

    @property
    def history_token_budget(self) -> int:
        return (
            self._limits.model_context_window
            - self._limits.max_output_tokens
            - self._tokens.estimate_tool_schema_tokens(self._tool_count)
            - self._limits.safety_buffer
        )

    def build_messages(
        self,
        system_prompt: str,
        prior_history: Sequence[ClientMessage] | None,
        user_message: str,
    ) -> list[ChatMessage]:
        system_tokens = self._tokens.count_message(Role.SYSTEM, system_prompt)
        user_tokens = self._tokens.count_message(Role.USER, user_message)
        available = self.history_token_budget - CONVERSATION_OVERHEAD - system_tokens - user_tokens

        logger.debug(
            f"Context budget: system={system_tokens}, user={user_tokens}, available for history={available}"
        )
        if available < 0:
            logger.warning(
                f"System prompt and user message alone exceed the history budget by {-available} tokens"
            )

        messages = [ChatMessage(Role.SYSTEM, system_prompt)]
        selected = self._select_history(list(prior_history or []), max(0, available))
        messages.extend(ChatMessage(c.role, c.content) for c in selected)
        messages.append(ChatMessage(Role.USER, user_message))

        logger.info(f"Built context: {len(messages)} messages, ~{self.count_tokens(messages)} tokens")
        return messages

    def status(
        self,
        system_prompt: str,
        prior_history: Sequence[ClientMessage] | None,
        user_message: str,
    ) -> ContextStatus:
        history = list(prior_history or [])
        used = (
            self._tokens.count(system_prompt)
            + self._tokens.count(user_message)
            + sum(self._tokens.count(m.content) for m in history)
        )
        budget = self.history_token_budget
        percent = (used / budget * 100) if budget > 0 else 100.0
        return ContextStatus(
            total_tokens_used=used,
            total_budget=budget,
            usage_percent=percent,
            message_count=len(history) + 1,
        )

    def count_tokens(self, messages: Sequence[ChatMessage]) -> int:
        """Token total of a working message list, including tool-call arguments."""
        parts: list[tuple[str, str]] = []
        for m in messages:
            text = m.content
            if m.tool_calls:
                text += "".join(tc.name + tc.arguments for tc in m.tool_calls)
            parts.append((m.role, text))
        return self._tokens.count_messages(parts)

    def _select_history(self, history: list[ClientMessage], available: int) -> list[_Candidate]:
        eligible = [m for m in history if m.content and m.role != Role.TOOL]
        window = eligible[-self._limits.max_history_messages:] if self._limits.max_history_messages > 0 else []
        if not window:
            return []

        candidates = [self._capped(m) for m in window]

        # Newest first.
        kept: list[_Candidate] = []
        used = 0
        for candidate in reversed(candidates):
            if used + candidate.tokens > available:
                break
            kept.append(candidate)
            used += candidate.tokens

        if not kept:
            # The most recent turn is shortened in place instead of being dropped.
            newest = candidates[-1]
            reserve = self._notice_tokens(len(candidates) - 1) if len(candidates) > 1 else 0
            shortened = self._shrink(newest, available - reserve)
            if shortened is not None:
                kept.append(shortened)
                used = shortened.tokens

        dropped = len(candidates) - len(kept)
        if dropped == 0:
            return list(reversed(kept))

        notice_tokens = self._notice_tokens(dropped)
        while kept and used + notice_tokens > available:
            if len(kept) > 1:
                removed = kept.pop()
                used -= removed.tokens
                dropped += 1
            else:
                shortened = self._shrink(kept[0], available - notice_tokens)
                kept.pop()
                used = 0
                if shortened is None:
                    dropped += 1
                else:
                    kept.append(shortened)
                    used = shortened.tokens
            notice_tokens = self._notice_tokens(dropped)

        logger.info(f"Context truncation: dropped {dropped} older messages, kept {len(kept)}")

        result = list(reversed(kept))
        if used + notice_tokens <= available:
            result.insert(0, _Candidate(Role.SYSTEM, truncation_notice(dropped), notice_tokens))
        else:
            logger.warning(f"No room for the truncation notice ({notice_tokens} tokens, {available} available)")
        return result

    def _capped(self, message: ClientMessage) -> _Candidate:
        content = message.content
        if self._tokens.count(content) > self._limits.max_single_message_tokens:
            content = self._tokens.truncate_to_limit(content, self._limits.max_single_message_tokens)
        return _Candidate(message.role, content, self._tokens.count_message(message.role, content))

    def _shrink(self, candidate: _Candidate, room: int) -> _Candidate | None:
        content_room = room - MESSAGE_OVERHEAD
        if content_room <= 0:
            return None
        content = self._tokens.truncate_to_limit(candidate.content, content_room)
        tokens = self._tokens.count_message(candidate.role, content)
        if tokens > room:
            return None
        return _Candidate(candidate.role, content, tokens)

    def _notice_tokens(self, dropped: int) -> int:
        return self._tokens.count_message(Role.SYSTEM, truncation_notice(dropped))
