"""Chat turn orchestration.

A turn moves through Preparing, one or more Streaming rounds separated by
ToolExecuting rounds, and ends Completed, Errored or Cancelled. Every turn runs
as its own task and reports progress as events on a ``TurnStream``:

    ConversationAssigned?  ContentDelta*  ToolStatusNotice*  TurnError?  TurnDone

Expected failures (validation, rate limit, transport, round cap) are values
carried to the caller as ``TurnError``; only cancellation unwinds the task.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from uuid import uuid4

from loguru import logger

from store_assistant.chat_config import ChatLimits
from store_assistant.context_budget import ContextBudgeter
from store_assistant.errors import (
    MSG_CANCELLED,
    MSG_CONVERSATION_NOT_FOUND,
    MSG_EMPTY_MESSAGE,
    MSG_HISTORY_TOO_LONG,
    MSG_MESSAGE_TOO_LONG,
    MSG_RATE_LIMITED,
    MSG_ROUND_LIMIT,
    ErrorKind,
    TransportFailure,
    to_transport_failure,
    user_friendly_error,
)
from store_assistant.events import (
    ContentDelta,
    ConversationAssigned,
    ToolStatusNotice,
    TurnDone,
    TurnError,
    TurnOutcome,
    TurnStream,
)
from store_assistant.memory.conversation_repository import ConversationStore
from store_assistant.memory.models import ToolMeta
from store_assistant.models import (
    ChatMessage,
    ClientMessage,
    ContentChunk,
    FinishChunk,
    FinishReason,
    Role,
    ToolCallFragment,
    TransportRequest,
)
from store_assistant.provider import LLMProvider
from store_assistant.rate_limiter import RateLimiter
from store_assistant.retry import RetryPolicy
from store_assistant.system_prompt import build_system_prompt
from store_assistant.tokens import TokenCounter
from store_assistant.tool_calls import ToolCallAccumulator
from store_assistant.tool_executor import ToolExecutor
from store_assistant.tool_names import display_name
from store_assistant.tool_registry import ToolRegistry

TITLE_MAX_CHARS = 50


def conversation_title(message: str, max_chars: int = TITLE_MAX_CHARS) -> str:
    title = message[:max_chars] + "..." if len(message) > max_chars else message
    return " ".join(title.split())


@dataclass(frozen=True)
class ChatResponse:
    success: bool
    response: str
    conversation_id: str | None
    error: str | None = None
    tools_used: tuple[str, ...] = ()


@dataclass(frozen=True)
class _Failure:
    kind: ErrorKind
    reason: str


@dataclass
class _TurnState:
    user_id: str
    message: str
    requested_conversation_id: str | None
    prior_history: list[ClientMessage]
    conversation_id: str | None = None
    streamed: list[str] = field(default_factory=list)
    tools_used: list[str] = field(default_factory=list)

    @property
    def answer(self) -> str:
        return "".join(self.streamed)


@dataclass
class _RoundOutcome:
    content: str = ""
    finish_reason: FinishReason | None = None
    failure: TransportFailure | None = None


class ChatOrchestrator:
    def __init__(
        self,
        *,
        provider: LLMProvider,
        registry: ToolRegistry,
        token_counter: TokenCounter,
        limits: ChatLimits,
        rate_limiter: RateLimiter,
        store: ConversationStore | None = None,
        retry_policy: RetryPolicy | None = None,
        tool_executor: ToolExecutor | None = None,
        system_prompt: Callable[[], str] = build_system_prompt,
        temperature: float | None = None,
    ):
        self._provider = provider
        self._registry = registry
        self._limits = limits
        self._rate_limiter = rate_limiter
        self._store = store
        self._retry = retry_policy or RetryPolicy(limits.max_retry_attempts, limits.retry_base_delay_seconds)
        self._executor = tool_executor or ToolExecutor(registry, token_counter, limits)
        self._budgeter = ContextBudgeter(token_counter, limits)
        self._system_prompt = system_prompt
        self._temperature = temperature
        self._tool_schemas = registry.schemas()
        self._watchers: set[asyncio.Task] = set()

    @property
    def budgeter(self) -> ContextBudgeter:
        return self._budgeter

    def start_turn(
        self,
        user_id: str,
        message: str,
        conversation_id: str | None = None,
        prior_history: Sequence[ClientMessage] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnStream:
        """Start a chat turn in the background and return its event channel.

        Must be called from a running event loop. Setting ``cancel_event`` or
        closing the returned stream cancels the turn.
        """
        stream = TurnStream()
        state = _TurnState(
            user_id=user_id,
            message=message,
            requested_conversation_id=conversation_id,
            prior_history=list(prior_history or []),
        )
        turn_id = uuid4().hex[:8]
        task = asyncio.create_task(self._run_turn(stream, state, turn_id), name=f"chat-turn-{turn_id}")
        stream.attach(task)

        if cancel_event is not None:
            watcher = asyncio.create_task(self._cancel_on_signal(cancel_event, task))
            self._watchers.add(watcher)
            watcher.add_done_callback(self._watchers.discard)
        return stream

    async def chat(
        self,
        user_id: str,
        message: str,
        conversation_id: str | None = None,
        prior_history: Sequence[ClientMessage] | None = None,
    ) -> ChatResponse:
        """Run a whole turn and collect its events into a single response."""
        parts: list[str] = []
        tools_used: list[str] = []
        assigned: str | None = conversation_id
        error: str | None = None

        async with self.start_turn(user_id, message, conversation_id, prior_history) as stream:
            async for event in stream:
                if isinstance(event, ConversationAssigned):
                    assigned = event.conversation_id
                elif isinstance(event, ContentDelta):
                    parts.append(event.text)
                elif isinstance(event, ToolStatusNotice):
                    tools_used.extend(n for n in event.tool_names if n not in tools_used)
                elif isinstance(event, TurnError):
                    error = event.reason

        return ChatResponse(
            success=error is None,
            response="".join(parts),
            conversation_id=assigned,
            error=error,
            tools_used=tuple(tools_used),
        )

    @staticmethod
    async def _cancel_on_signal(signal: asyncio.Event, task: asyncio.Task) -> None:
        waiter = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({waiter, task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if signal.is_set() and not task.done():
            task.cancel()

    async def _run_turn(self, stream: TurnStream, state: _TurnState, turn_id: str) -> None:
        with logger.contextualize(turn=turn_id):
            logger.info(f"Chat turn started: user={state.user_id}, chars={len(state.message)}")
            try:
                outcome = await self._drive(stream, state)
            except asyncio.CancelledError:
                logger.info(f"Chat turn cancelled after {len(state.answer)} streamed chars")
                stream.push(TurnError(ErrorKind.CANCELLED, MSG_CANCELLED))
                stream.push(TurnDone(TurnOutcome.CANCELLED))
                raise
            except Exception as ex:
                logger.exception(f"Unexpected failure in chat turn: {ex}")
                stream.push(TurnError(ErrorKind.INTERNAL, user_friendly_error(ex)))
                stream.push(TurnDone(TurnOutcome.ERRORED))
                return
            logger.info(f"Chat turn finished: {outcome}")
            stream.push(TurnDone(outcome))

    async def _drive(self, stream: TurnStream, state: _TurnState) -> TurnOutcome:
        # Preparing
        failure = self._validate(state)
        if failure is None and not self._rate_limiter.try_admit(state.user_id):
            failure = _Failure(ErrorKind.RATE_LIMITED, MSG_RATE_LIMITED)
        if failure is not None:
            return self._fail(stream, failure)

        failure = await self._prepare_conversation(state)
        if failure is not None:
            return self._fail(stream, failure)
        stream.push(ConversationAssigned(state.conversation_id))

        system_prompt = self._system_prompt()
        messages = self._budgeter.build_messages(system_prompt, state.prior_history, state.message)
        self._log_context_status(system_prompt, state)

        # Streaming / ToolExecuting
        tool_rounds = 0
        while True:
            accumulator = ToolCallAccumulator()
            round_outcome = await self._stream_round(stream, messages, accumulator, state)
            if round_outcome.failure is not None:
                await self._persist_answer(state)
                return self._fail(stream, _Failure(round_outcome.failure.kind, round_outcome.failure.reason))

            calls = accumulator.build()
            if not calls:
                if round_outcome.finish_reason == FinishReason.LENGTH:
                    logger.warning(f"Answer cut off at {self._limits.max_output_tokens} output tokens")
                break

            if tool_rounds >= self._limits.max_tool_rounds:
                logger.warning(f"Tool round cap ({self._limits.max_tool_rounds}) reached, ending turn")
                await self._persist_answer(state)
                return self._fail(stream, _Failure(ErrorKind.ROUND_LIMIT, MSG_ROUND_LIMIT))
            tool_rounds += 1

            names = list(dict.fromkeys(call.name for call in calls))
            state.tools_used.extend(n for n in names if n not in state.tools_used)
            stream.push(ToolStatusNotice(tuple(names), tuple(display_name(n) for n in names)))

            results = await self._executor.execute_parallel(calls)
            failed = sum(1 for r in results if r.is_error)
            if failed:
                logger.warning(f"{failed}/{len(results)} tool call(s) failed in round {tool_rounds}")

            messages.append(ChatMessage(Role.ASSISTANT, round_outcome.content, tool_calls=tuple(calls)))
            messages.extend(ChatMessage(Role.TOOL, r.content, tool_call_id=r.tool_call_id) for r in results)
            logger.info(
                f"Tool round {tool_rounds} done: {len(messages)} messages, "
                f"~{self._budgeter.count_tokens(messages)} tokens in context"
            )

        # Completed
        await self._persist_answer(state)
        return TurnOutcome.COMPLETED

    def _validate(self, state: _TurnState) -> _Failure | None:
        if not state.message or not state.message.strip():
            return _Failure(ErrorKind.VALIDATION, MSG_EMPTY_MESSAGE)
        if len(state.message) > self._limits.max_message_length:
            return _Failure(ErrorKind.VALIDATION, MSG_MESSAGE_TOO_LONG.format(limit=self._limits.max_message_length))
        if len(state.prior_history) > self._limits.max_client_history:
            return _Failure(ErrorKind.VALIDATION, MSG_HISTORY_TOO_LONG.format(limit=self._limits.max_client_history))
        return None

    async def _prepare_conversation(self, state: _TurnState) -> _Failure | None:
        if self._store is None:
            state.conversation_id = state.requested_conversation_id or str(uuid4())
            return None

        try:
            if state.requested_conversation_id is None:
                state.conversation_id = await self._store.create_conversation(
                    state.user_id, conversation_title(state.message)
                )
            else:
                owned = await self._store.get_owned(state.requested_conversation_id, state.user_id)
                if owned is None:
                    logger.warning(f"Conversation {state.requested_conversation_id} not found for user {state.user_id}")
                    return _Failure(ErrorKind.VALIDATION, MSG_CONVERSATION_NOT_FOUND)
                state.conversation_id = owned.id
                if not state.prior_history:
                    records = await self._store.load_recent_messages(owned.id, self._limits.max_history_messages)
                    state.prior_history = [ClientMessage(r.role, r.content) for r in records]
                    logger.debug(f"Reloaded {len(records)} persisted messages")

            await self._store.append_message(state.conversation_id, Role.USER, state.message)
        except Exception as ex:
            logger.exception(f"Error preparing conversation: {ex}")
            return _Failure(ErrorKind.INTERNAL, user_friendly_error(ex))
        return None

    async def _stream_round(
        self,
        stream: TurnStream,
        messages: list[ChatMessage],
        accumulator: ToolCallAccumulator,
        state: _TurnState,
    ) -> _RoundOutcome:
        request = TransportRequest(
            messages=list(messages),
            tools=self._tool_schemas,
            max_output_tokens=self._limits.max_output_tokens,
            temperature=self._temperature,
        )
        outcome = _RoundOutcome()

        try:
            chunks = await self._retry.execute(
                lambda: self._provider.open_stream(request),
                operation_name="LLM stream",
            )
        except Exception as ex:
            logger.error(f"LLM request failed: {type(ex).__name__}: {ex}")
            outcome.failure = to_transport_failure(ex)
            return outcome

        parts: list[str] = []
        try:
            async with contextlib.aclosing(chunks):
                async for chunk in chunks:
                    if isinstance(chunk, ContentChunk):
                        if chunk.text:
                            parts.append(chunk.text)
                            state.streamed.append(chunk.text)
                            stream.push(ContentDelta(chunk.text))
                    elif isinstance(chunk, ToolCallFragment):
                        accumulator.append(chunk)
                    elif isinstance(chunk, FinishChunk):
                        outcome.finish_reason = chunk.reason
        except Exception as ex:
            # Already-forwarded output stays; the stream is not retried.
            logger.error(f"LLM stream broke after {len(parts)} chunks: {type(ex).__name__}: {ex}")
            outcome.failure = to_transport_failure(ex)

        outcome.content = "".join(parts)
        logger.debug(
            f"Round finished: finish_reason={outcome.finish_reason}, "
            f"chars={len(outcome.content)}, tool fragments for {len(accumulator)} call(s)"
        )
        return outcome

    async def _persist_answer(self, state: _TurnState) -> None:
        answer = state.answer
        if self._store is None or state.conversation_id is None or not answer:
            return
        tool_meta = ToolMeta(name=",".join(state.tools_used)) if state.tools_used else None
        try:
            await self._store.append_message(state.conversation_id, Role.ASSISTANT, answer, tool_meta)
        except Exception as ex:
            logger.exception(f"Failed to persist assistant answer: {ex}")

    def _log_context_status(self, system_prompt: str, state: _TurnState) -> None:
        status = self._budgeter.status(system_prompt, state.prior_history, state.message)
        logger.info(
            f"Context: {status.total_tokens_used}/{status.total_budget} tokens "
            f"({status.usage_percent:.1f}%), {status.message_count} messages"
        )
        if status.is_critical:
            logger.warning(f"Context usage critical: {status.usage_percent:.1f}% of budget")
        elif status.is_near_limit:
            logger.warning(f"Context usage near limit: {status.usage_percent:.1f}% of budget")

    @staticmethod
    def _fail(stream: TurnStream, failure: _Failure) -> TurnOutcome:
        logger.warning(f"Chat turn failed ({failure.kind}): {failure.reason}")
        stream.push(TurnError(failure.kind, failure.reason))
        return TurnOutcome.ERRORED
