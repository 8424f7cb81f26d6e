"""Executor capability used by the scheduler.

An executor runs one task to completion and reports back through an
ExecutionContext. The scheduler creates one executor instance per task run
via an executor factory, so executors may keep per-run state (a subprocess,
a cancel flag).

Composition helpers:
    ExecutorChain: try ranked executors in order until one is available
    ResumeFallbackExecutor: rerun fresh when a saved session cannot resume
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

from taskbatch.errors import ExecutorUnavailableError, SessionResumeError
from taskbatch.models import (
    EscalationRequest,
    EscalationResponse,
    TaskDescriptor,
    TaskOutcome,
)

logger = logging.getLogger(__name__)

ReportFn = Callable[[str, str, Any], None]
EscalateFn = Callable[[EscalationRequest], Awaitable[EscalationResponse]]


class ExecutionContext:
    """Reporting surface handed to an executor for one task run.

    The report_* methods only enqueue a message for the scheduler, so they
    are cheap and may be called from worker threads. escalate() must be
    awaited on the event loop.
    """

    def __init__(self, task_id: str, report: ReportFn, escalate: EscalateFn) -> None:
        self.task_id = task_id
        self._report = report
        self._escalate = escalate

    def report_progress(self, text: str, cost: float | None = None) -> None:
        self._report("progress", self.task_id, (text, cost))

    def report_tool_use(
        self, tool: str, tool_input: dict[str, Any] | None = None
    ) -> None:
        self._report("tool", self.task_id, (tool, tool_input or {}))

    def report_session(self, session_id: str) -> None:
        self._report("session", self.task_id, session_id)

    async def escalate(self, request: EscalationRequest) -> EscalationResponse:
        """Ask the operator and wait. Only this task is suspended."""
        return await self._escalate(request)


class Executor(Protocol):
    """Runs one task.

    run() returns a TaskOutcome for normal endings, including errors the
    task itself reports. Raising is reserved for plumbing failures; the
    scheduler records those as task failures.
    """

    async def run(
        self,
        task: TaskDescriptor,
        session_id: str | None,
        context: ExecutionContext,
    ) -> TaskOutcome: ...

    def cancel(self) -> None: ...


ExecutorFactory = Callable[[TaskDescriptor], Executor]


class ExecutorChain:
    """Ranked list of executors; the first available one runs the task.

    An executor signals that it cannot run here by raising
    ExecutorUnavailableError before doing any work.
    """

    def __init__(self, executors: Sequence[Executor]) -> None:
        if not executors:
            raise ValueError("ExecutorChain needs at least one executor")
        self.executors = list(executors)
        self._active: Executor | None = None
        self._cancelled = False

    async def run(
        self,
        task: TaskDescriptor,
        session_id: str | None,
        context: ExecutionContext,
    ) -> TaskOutcome:
        reasons = []
        for executor in self.executors:
            if self._cancelled:
                return TaskOutcome(status="cancelled", session_id=session_id)
            self._active = executor
            try:
                return await executor.run(task, session_id, context)
            except ExecutorUnavailableError as e:
                logger.info(
                    "%s unavailable for task %s: %s",
                    type(executor).__name__,
                    task.id,
                    e,
                )
                reasons.append(f"{type(executor).__name__}: {e}")
            finally:
                self._active = None
        raise ExecutorUnavailableError(
            "No executor available: " + "; ".join(reasons)
        )

    def cancel(self) -> None:
        self._cancelled = True
        if self._active is not None:
            self._active.cancel()


class ResumeFallbackExecutor:
    """Resume a saved session, or start over if it cannot be resumed."""

    def __init__(self, inner: Executor) -> None:
        self.inner = inner

    async def run(
        self,
        task: TaskDescriptor,
        session_id: str | None,
        context: ExecutionContext,
    ) -> TaskOutcome:
        if session_id is None:
            return await self.inner.run(task, None, context)

        try:
            return await self.inner.run(task, session_id, context)
        except SessionResumeError as e:
            logger.warning(
                "Could not resume session %s for task %s (%s), starting fresh",
                session_id,
                task.id,
                e,
            )
            context.report_progress("Previous session unavailable, starting fresh")
            return await self.inner.run(task, None, context)

    def cancel(self) -> None:
        self.inner.cancel()
