"""Batch scheduler: runs a validated task graph with bounded concurrency.

The control loop coroutine is the only writer of BatchState. Executors run
as asyncio tasks and talk to the loop through an inbox queue; operator
commands (pause, cancel, retry) travel through the same inbox, so the loop
only ever waits on that queue.

Each pass of the loop:
    1. Apply every queued message
    2. Admit ready pending tasks, in declaration order, up to the limit
    3. Stop when nothing runs and nothing can run, else wait for a message
"""

import asyncio
import functools
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Any

from opentelemetry import trace

from taskbatch import telemetry
from taskbatch.config import BatchConfig
from taskbatch.dag import DAGAnalysis, DependencyGraph, validate_graph
from taskbatch.errors import (
    BatchError,
    InvalidTransitionError,
    PersistenceError,
    TaskExecutionError,
)
from taskbatch.escalation import EscalationCoordinator
from taskbatch.events import (
    BatchCompleted,
    BatchStarted,
    EscalationRaised,
    EventChannel,
    StateUpdated,
    TaskCancelled,
    TaskCompleted,
    TaskFailed,
    TaskProgress,
    TaskStarted,
    TaskToolUse,
)
from taskbatch.executor import ExecutionContext, Executor, ExecutorFactory
from taskbatch.models import (
    BatchState,
    BatchStats,
    EscalationRequest,
    EscalationResponse,
    TaskDescriptor,
    TaskOutcome,
    check_transition,
)
from taskbatch.state import StateStore, derive_batch_status, generate_batch_id, utcnow

logger = logging.getLogger(__name__)


@dataclass
class _Message:
    kind: str
    task_id: str | None = None
    payload: Any = None


@dataclass
class _RunningTask:
    executor: Executor
    worker: "asyncio.Task[None]"
    started: float
    base_cost: float
    span: trace.Span
    reported_cost: float = 0.0


def display_status(state: BatchState, graph: DependencyGraph, task_id: str) -> str:
    """Status for display: pending splits into blocked and queued."""
    status = state.tasks[task_id].status
    if status != "pending":
        return status
    deps_done = all(
        state.tasks[dep].status == "completed"
        for dep in graph.direct_dependencies(task_id)
    )
    return "queued" if deps_done else "blocked"


class BatchScheduler:
    """Drives one batch from its current state to a terminal batch status.

    Usage:
        scheduler = BatchScheduler(tasks, factory, StateStore(state_dir))
        final_state = await scheduler.start()

    Attributes:
        graph: Validated dependency graph
        events: Lifecycle event channel for one subscriber
        coordinator: Pending escalations
    """

    def __init__(
        self,
        tasks: Sequence[TaskDescriptor],
        executor_factory: ExecutorFactory,
        store: StateStore,
        config: BatchConfig | None = None,
        *,
        batch_id: str | None = None,
        batch_name: str = "batch",
        source_path: str = "",
        state: BatchState | None = None,
        events: EventChannel | None = None,
        coordinator: EscalationCoordinator | None = None,
    ) -> None:
        self.graph = validate_graph(tasks)
        self.tasks = {task.id: task for task in tasks}
        self.config = config or BatchConfig()
        self.events = events or EventChannel()
        self.coordinator = coordinator or EscalationCoordinator()
        self._store = store
        self._executor_factory = executor_factory

        if state is None:
            state = store.create_initial(
                batch_id or generate_batch_id(batch_name),
                batch_name,
                source_path,
                self.graph.task_ids,
            )
        else:
            state = self._align_state(state)
        self._state = state

        self._loop: asyncio.AbstractEventLoop | None = None
        self._inbox: asyncio.Queue[_Message] | None = None
        self._running: dict[str, _RunningTask] = {}
        self._cancel_requested: set[str] = set()
        self._active = False
        self._paused = False
        self._cancel_all = False
        self._interrupted = False
        self._deadlocked = False

    @classmethod
    def resume(
        cls,
        tasks: Sequence[TaskDescriptor],
        saved_state: BatchState,
        executor_factory: ExecutorFactory,
        store: StateStore,
        config: BatchConfig | None = None,
        events: EventChannel | None = None,
    ) -> "BatchScheduler":
        """Build a scheduler that continues a saved batch.

        Running tasks in saved_state become pending with their session
        tokens kept; completed tasks are not run again.
        """
        return cls(
            tasks,
            executor_factory,
            store,
            config,
            state=store.reset_interrupted(saved_state),
            events=events,
        )

    def _align_state(self, state: BatchState) -> BatchState:
        unknown = [tid for tid in state.tasks if tid not in self.tasks]
        if unknown:
            logger.warning(
                "Dropping saved tasks no longer in the batch: %s", ", ".join(unknown)
            )
            tasks = {tid: ts for tid, ts in state.tasks.items() if tid in self.tasks}
            state = replace(
                state, tasks=tasks, total_cost=sum(ts.cost for ts in tasks.values())
            )
        return self._store.add_tasks(state, self.graph.task_ids)

    # --- queries -----------------------------------------------------------

    @property
    def state(self) -> BatchState:
        return self._state

    @property
    def batch_id(self) -> str:
        return self._state.batch_id

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_active(self) -> bool:
        return self._active

    def get_stats(self) -> BatchStats:
        return self._store.derive_stats(self._state)

    def get_pending_escalations(self) -> list[EscalationRequest]:
        return self.coordinator.pending()

    def get_dag_analysis(self) -> DAGAnalysis:
        return self.graph.analyze()

    def display_status(self, task_id: str) -> str:
        return display_status(self._state, self.graph, task_id)

    def save_state(self) -> None:
        self._store.save(self._state)

    # --- commands ----------------------------------------------------------

    def pause(self) -> None:
        """Stop admitting new tasks. Running tasks continue."""
        self._paused = True
        self._post(_Message("wakeup"))
        logger.info("Batch %s paused", self.batch_id)

    def resume_admission(self) -> None:
        self._paused = False
        self._post(_Message("wakeup"))
        logger.info("Batch %s resumed", self.batch_id)

    def cancel_task(self, task_id: str) -> None:
        """Cancel a running task. No effect on tasks that are not running."""
        if task_id not in self.tasks:
            raise KeyError(f"Unknown task: {task_id}")
        self._post(_Message("cancel", task_id))

    def cancel_all(self) -> None:
        """Cancel every running task and stop admitting. Idempotent."""
        self._cancel_all = True
        self._post(_Message("cancel_all"))

    def interrupt(self) -> None:
        """Stop the batch so it can be resumed later.

        Running executors are stopped but their tasks stay recorded as
        running, which the resume rule turns back into pending.
        """
        self._interrupted = True
        self._post(_Message("interrupt"))

    def retry_task(self, task_id: str) -> None:
        """Reset a failed task to pending, keeping its session token.

        Raises:
            KeyError: If the task is unknown
            InvalidTransitionError: If the task is not failed
        """
        if task_id not in self.tasks:
            raise KeyError(f"Unknown task: {task_id}")
        check_transition(task_id, self._state.tasks[task_id].status, "pending")
        if self._active:
            self._post(_Message("retry", task_id))
        else:
            self._apply_retry(task_id)

    def resolve_escalation(self, task_id: str, response: EscalationResponse) -> None:
        """Answer a pending escalation.

        Raises:
            StaleEscalationResolutionError: If nothing is pending for task_id
        """
        self.coordinator.resolve(task_id, response)

    # --- run ---------------------------------------------------------------

    async def start(self) -> BatchState:
        """Run until every task is terminal, the batch is stopped, or stuck.

        Returns:
            The final batch state (also saved to disk)

        Raises:
            BatchError: If the batch is already running
            PersistenceError: If state could not be saved; running tasks are
                stopped and the previous state file is left as it was
        """
        if self._active:
            raise BatchError(f"Batch {self.batch_id} is already running")

        self._loop = asyncio.get_running_loop()
        inbox: asyncio.Queue[_Message] = asyncio.Queue()
        self._inbox = inbox
        self._active = True
        self._deadlocked = False
        self._state = replace(
            self._state, status="running", completed_at=None, blocked_tasks=[]
        )

        tracer = telemetry.get_tracer()
        with tracer.start_as_current_span("taskbatch.batch") as span:
            span.set_attribute("batch.id", self.batch_id)
            span.set_attribute("batch.tasks", len(self.tasks))
            span.set_attribute("batch.max_concurrent", self.config.max_concurrent)

            logger.info(
                "Starting batch %s (%d tasks, max %d concurrent)",
                self.batch_id,
                len(self.tasks),
                self.config.max_concurrent,
            )
            self.events.publish(BatchStarted(self.batch_id, tuple(self.graph.task_ids)))
            autosave = asyncio.create_task(self._autosave())

            try:
                self._save()
                await self._control_loop(inbox)
                self._finish()
            except PersistenceError as e:
                logger.error("Stopping batch %s: %s", self.batch_id, e)
                await self._abort_workers()
                self._state = replace(self._state, status="failed")
                span.set_attribute("batch.status", "failed")
                span.set_attribute("batch.error", str(e))
                telemetry.record_batch("failed")
                self.events.close()
                raise
            finally:
                autosave.cancel()
                self._active = False

            span.set_attribute("batch.status", self._state.status)
            span.set_attribute("batch.cost_usd", self._state.total_cost)

        return self._state

    async def _control_loop(self, inbox: asyncio.Queue[_Message]) -> None:
        while True:
            while not inbox.empty():
                self._apply(inbox.get_nowait())

            if not (self._paused or self._cancel_all or self._interrupted):
                self._admit_ready()

            if not self._running:
                if self._cancel_all or self._interrupted:
                    return
                pending = [
                    tid
                    for tid, ts in self._state.tasks.items()
                    if ts.status == "pending"
                ]
                if not pending:
                    return
                if not self._paused:
                    self._deadlocked = True
                    self._state = replace(self._state, blocked_tasks=pending)
                    logger.warning(
                        "Batch %s cannot make progress; blocked: %s",
                        self.batch_id,
                        ", ".join(pending),
                    )
                    return

            self._apply(await inbox.get())

    def _finish(self) -> None:
        status = derive_batch_status(
            self._state,
            cancel_requested=self._cancel_all or self._interrupted,
            deadlocked=self._deadlocked,
        )
        self._state = replace(self._state, status=status, completed_at=utcnow())
        self._save()
        telemetry.record_batch(status)
        logger.info(
            "Batch %s finished: %s (cost $%.2f)",
            self.batch_id,
            status,
            self._state.total_cost,
        )
        self.events.publish(
            BatchCompleted(
                batch_id=self.batch_id,
                status=status,
                stats=self.get_stats(),
                deadlocked=self._deadlocked,
                blocked_tasks=tuple(self._state.blocked_tasks),
            )
        )
        self.events.close()

    def _admit_ready(self) -> None:
        completed = {
            tid for tid, ts in self._state.tasks.items() if ts.status == "completed"
        }
        ready = [
            tid
            for tid in self.graph.ready(completed, self._running)
            if self._state.tasks[tid].status == "pending"
        ]
        slots = self.config.max_concurrent - len(self._running)
        for task_id in ready[: max(slots, 0)]:
            self._launch(task_id)

    def _launch(self, task_id: str) -> None:
        task_state = self._state.tasks[task_id]
        check_transition(task_id, task_state.status, "running")
        session_id = task_state.session_id

        self._state = self._store.mutate_task(
            self._state,
            task_id,
            status="running",
            started_at=utcnow(),
            completed_at=None,
            error=None,
            progress=None,
            current_tool=None,
        )

        span = telemetry.get_tracer().start_span("taskbatch.task")
        span.set_attribute("task.id", task_id)
        span.set_attribute("task.resumed", session_id is not None)

        context = ExecutionContext(
            task_id, self._report, functools.partial(self._escalate, task_id)
        )
        try:
            executor = self._executor_factory(self.tasks[task_id])
        except Exception as e:
            logger.exception("Could not create executor for task %s", task_id)
            outcome = TaskOutcome(
                status="failed",
                session_id=session_id,
                error=str(TaskExecutionError(f"Executor setup failed: {e}")),
            )
            self._record_outcome(task_id, outcome, task_state.cost, 0.0, span, False)
            return

        worker = asyncio.create_task(
            self._run_worker(task_id, executor, session_id, context),
            name=f"taskbatch-{task_id}",
        )
        self._running[task_id] = _RunningTask(
            executor=executor,
            worker=worker,
            started=time.monotonic(),
            base_cost=task_state.cost,
            span=span,
        )

        resumed = session_id is not None
        self._store.append_log(
            self.batch_id,
            task_id,
            f"Task started (resuming session {session_id})"
            if resumed
            else "Task started",
        )
        logger.info("Task %s started", task_id)
        self.events.publish(TaskStarted(task_id, resumed=resumed))

    async def _run_worker(
        self,
        task_id: str,
        executor: Executor,
        session_id: str | None,
        context: ExecutionContext,
    ) -> None:
        try:
            outcome = await executor.run(self.tasks[task_id], session_id, context)
        except asyncio.CancelledError:
            outcome = TaskOutcome(status="cancelled", session_id=session_id)
        except Exception as e:
            logger.exception("Executor for task %s raised", task_id)
            failure = (
                e
                if isinstance(e, TaskExecutionError)
                else TaskExecutionError(f"{type(e).__name__}: {e}")
            )
            outcome = TaskOutcome(
                status="failed", session_id=session_id, error=str(failure)
            )
        self._post(_Message("finished", task_id, outcome))

    async def _escalate(
        self, task_id: str, request: EscalationRequest
    ) -> EscalationResponse:
        if request.task_id != task_id:
            request = replace(request, task_id=task_id)
        return await self.coordinator.raise_escalation(
            request,
            timeout=self.config.escalation_timeout_seconds,
            on_open=lambda r: self._post(_Message("escalation", r.task_id, r)),
        )

    async def _autosave(self) -> None:
        while True:
            await asyncio.sleep(self.config.auto_save_interval)
            self._post(_Message("autosave"))

    async def _abort_workers(self) -> None:
        workers = []
        for task_id, run in list(self._running.items()):
            self._stop_executor(task_id, run)
            workers.append(run.worker)
            run.span.end()
        self._running.clear()
        self.coordinator.cancel_all()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    # --- inbox -------------------------------------------------------------

    def _post(self, message: _Message) -> None:
        """Queue a message for the control loop. Safe from any thread."""
        if not self._active or self._loop is None or self._inbox is None:
            return
        self._loop.call_soon_threadsafe(self._inbox.put_nowait, message)

    def _report(self, kind: str, task_id: str, payload: Any) -> None:
        self._post(_Message(kind, task_id, payload))

    def _apply(self, message: _Message) -> None:
        kind = message.kind
        task_id = message.task_id

        if kind == "autosave":
            self._save()
        elif kind == "wakeup":
            pass
        elif kind in ("cancel_all", "interrupt"):
            for running_id in list(self._running):
                self._cancel_running(running_id)
            self.coordinator.cancel_all()
        elif task_id is None:
            logger.debug("Ignoring %s message without a task id", kind)
        elif kind == "finished":
            self._complete(task_id, message.payload)
        elif kind == "cancel":
            self._cancel_running(task_id)
        elif kind == "retry":
            try:
                self._apply_retry(task_id)
            except InvalidTransitionError as e:
                logger.warning("Retry ignored: %s", e)
        elif task_id in self._running:
            self._apply_report(kind, task_id, message.payload)

    def _apply_report(self, kind: str, task_id: str, payload: Any) -> None:
        if kind == "progress":
            text, cost = payload
            changes: dict[str, Any] = {"progress": text}
            if cost is not None:
                run = self._running[task_id]
                run.reported_cost = cost
                changes["cost"] = run.base_cost + cost
            self._state = self._store.mutate_task(self._state, task_id, **changes)
            self.events.publish(TaskProgress(task_id, text))
        elif kind == "tool":
            tool, tool_input = payload
            self._state = self._store.mutate_task(
                self._state, task_id, current_tool=tool
            )
            self._store.append_log(self.batch_id, task_id, f"Tool: {tool}")
            self.events.publish(TaskToolUse(task_id, tool, tool_input))
        elif kind == "session":
            self._state = self._store.mutate_task(
                self._state, task_id, session_id=payload
            )
            self._store.append_log(self.batch_id, task_id, f"Session: {payload}")
        elif kind == "escalation":
            task_state = self._state.tasks[task_id]
            check_transition(task_id, task_state.status, "running")
            self._state = self._store.mutate_task(
                self._state,
                task_id,
                progress=f"Waiting for operator: {payload.question}",
            )
            self._store.append_log(
                self.batch_id, task_id, f"Escalation: {payload.question}"
            )
            self.events.publish(EscalationRaised(payload))
        else:
            logger.debug("Ignoring unknown message %s for task %s", kind, task_id)

    def _complete(self, task_id: str, outcome: TaskOutcome) -> None:
        run = self._running.pop(task_id, None)
        if run is None:
            return
        duration = time.monotonic() - run.started
        self.coordinator.discard(task_id)
        cancel_requested = task_id in self._cancel_requested
        self._cancel_requested.discard(task_id)

        if self._interrupted:
            # Leave the task recorded as running so a resume picks it up.
            if outcome.session_id:
                self._state = self._store.mutate_task(
                    self._state, task_id, session_id=outcome.session_id
                )
            self._store.append_log(self.batch_id, task_id, "Task interrupted")
            run.span.set_attribute("task.status", "interrupted")
            run.span.end()
            return

        self._record_outcome(
            task_id,
            outcome,
            run.base_cost,
            duration,
            run.span,
            cancel_requested,
            reported_cost=run.reported_cost,
        )

    def _record_outcome(
        self,
        task_id: str,
        outcome: TaskOutcome,
        base_cost: float,
        duration: float,
        span: trace.Span,
        cancel_requested: bool,
        reported_cost: float = 0.0,
    ) -> None:
        status = outcome.status
        if cancel_requested and status != "completed":
            status = "cancelled"

        task_state = self._state.tasks[task_id]
        check_transition(task_id, task_state.status, status)
        # A cancelled or crashed run returns no cost; keep what it reported.
        run_cost = max(outcome.cost, reported_cost)
        cost = base_cost + run_cost
        self._state = self._store.mutate_task(
            self._state,
            task_id,
            status=status,
            session_id=outcome.session_id or task_state.session_id,
            completed_at=utcnow(),
            cost=cost,
            result=outcome.result,
            error=outcome.error if status == "failed" else None,
            progress=None,
            current_tool=None,
        )

        span.set_attribute("task.status", status)
        span.set_attribute("task.cost_usd", cost)
        span.set_attribute("task.duration_seconds", duration)
        span.end()
        telemetry.record_task(status, duration, run_cost)

        if status == "completed":
            logger.info("Task %s completed ($%.2f)", task_id, cost)
            self._store.append_log(
                self.batch_id,
                task_id,
                f"Task completed: cost=${cost:.4f}, duration={duration:.1f}s",
            )
            self.events.publish(TaskCompleted(task_id, cost, outcome.result))
        elif status == "failed":
            error = outcome.error or "Task failed"
            logger.warning("Task %s failed: %s", task_id, error)
            self._store.append_log(self.batch_id, task_id, f"Task failed: {error}")
            self.events.publish(TaskFailed(task_id, error, cost))
        else:
            logger.info("Task %s cancelled", task_id)
            self._store.append_log(self.batch_id, task_id, "Task cancelled")
            self.events.publish(TaskCancelled(task_id))

        self._store.save_task_result(
            self.batch_id, task_id, self._state.tasks[task_id]
        )
        self.events.publish(StateUpdated(self.get_stats()))
        self._save()

    def _cancel_running(self, task_id: str) -> None:
        run = self._running.get(task_id)
        if run is None or task_id in self._cancel_requested:
            return
        self._cancel_requested.add(task_id)
        self.coordinator.cancel(task_id)
        self._stop_executor(task_id, run)
        logger.info("Cancelling task %s", task_id)

    def _stop_executor(self, task_id: str, run: _RunningTask) -> None:
        try:
            run.executor.cancel()
        except Exception:
            logger.exception("Executor for task %s failed to cancel", task_id)
        run.worker.cancel()

    def _apply_retry(self, task_id: str) -> None:
        task_state = self._state.tasks[task_id]
        check_transition(task_id, task_state.status, "pending")
        self._state = self._store.mutate_task(
            self._state,
            task_id,
            status="pending",
            error=None,
            result=None,
            completed_at=None,
        )
        self._store.append_log(self.batch_id, task_id, "Task reset for retry")
        logger.info("Task %s queued for retry", task_id)

    def _save(self) -> None:
        self._store.save(self._state)

