from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import StrEnum

from store_assistant.errors import ErrorKind


class TurnOutcome(StrEnum):
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ConversationAssigned:
    conversation_id: str


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ToolStatusNotice:
    """Tools about to run in this round, distinct and in call order."""

    tool_names: tuple[str, ...]
    display_names: tuple[str, ...]


@dataclass(frozen=True)
class TurnError:
    kind: ErrorKind
    reason: str


@dataclass(frozen=True)
class TurnDone:
    outcome: TurnOutcome


TurnEvent = ConversationAssigned | ContentDelta | ToolStatusNotice | TurnError | TurnDone


class TurnStream:
    """Channel carrying the events of one chat turn from its worker task to the caller.

    Iterating yields events until ``TurnDone``. Closing the channel (``aclose`` or
    leaving ``async with``) cancels the worker if it is still running.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[TurnEvent] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._finished = False
        self._closed = False

    def attach(self, task: asyncio.Task) -> None:
        self._task = task

    def push(self, event: TurnEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def aclose(self) -> None:
        self.cancel()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._closed = True

    def __aiter__(self) -> TurnStream:
        return self

    async def __anext__(self) -> TurnEvent:
        if self._finished:
            raise StopAsyncIteration
        event = await self._queue.get()
        if isinstance(event, TurnDone):
            self._finished = True
        return event

    async def __aenter__(self) -> TurnStream:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
