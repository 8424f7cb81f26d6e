"""Typed lifecycle events for a batch run.

The scheduler publishes every event onto one EventChannel. A single
subscriber (the CLI, a test) iterates it; iteration ends after the channel
is closed, which the scheduler does right after BatchCompleted.
"""

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from taskbatch.models import BatchStats, EscalationRequest


@dataclass(frozen=True)
class BatchStarted:
    batch_id: str
    task_ids: tuple[str, ...]


@dataclass(frozen=True)
class BatchCompleted:
    batch_id: str
    status: str
    stats: BatchStats
    deadlocked: bool = False
    blocked_tasks: tuple[str, ...] = ()


@dataclass(frozen=True)
class TaskStarted:
    task_id: str
    resumed: bool = False


@dataclass(frozen=True)
class TaskProgress:
    task_id: str
    text: str


@dataclass(frozen=True)
class TaskToolUse:
    task_id: str
    tool: str
    tool_input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TaskCompleted:
    task_id: str
    cost: float
    result: str | None = None


@dataclass(frozen=True)
class TaskFailed:
    task_id: str
    error: str
    cost: float = 0.0


@dataclass(frozen=True)
class TaskCancelled:
    task_id: str


@dataclass(frozen=True)
class EscalationRaised:
    request: EscalationRequest


@dataclass(frozen=True)
class StateUpdated:
    stats: BatchStats


BatchEvent = (
    BatchStarted
    | BatchCompleted
    | TaskStarted
    | TaskProgress
    | TaskToolUse
    | TaskCompleted
    | TaskFailed
    | TaskCancelled
    | EscalationRaised
    | StateUpdated
)


class EventChannel:
    """Unbounded single-consumer event stream.

    Usage:
        channel = EventChannel()
        async for event in channel:
            ...
    """

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: BatchEvent) -> None:
        """Queue an event. Events published after close() are dropped."""
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSED)

    def drain(self) -> list[BatchEvent]:
        """Take every event queued so far without waiting."""
        events = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is self._CLOSED:
                # keep the sentinel for a later async iteration
                self._queue.put_nowait(item)
                break
            events.append(item)
        return events

    def __aiter__(self) -> AsyncIterator[BatchEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[BatchEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                self._queue.put_nowait(item)
                return
            yield item
