"""Shared fixtures for taskbatch tests."""

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from taskbatch.config import BatchConfig
from taskbatch.executor import ExecutionContext
from taskbatch.models import (
    EscalationRequest,
    EscalationResponse,
    TaskDescriptor,
    TaskOutcome,
)
from taskbatch.state import StateStore


class FakeBackend:
    """Executor factory whose runs follow per-task scripts.

    Attributes:
        started: Task ids in the order their runs began
        sessions: Session token each task's last run was given
        outcomes: Outcome to return per task (default: completed)
        errors: Exception to raise per task
        gates: Events a task waits on before finishing
        delays: Seconds a task sleeps before finishing
        escalations: Request a task raises before finishing
        responses: Escalation response each task received
        cancelled: Task ids whose executor got cancel()
    """

    def __init__(self) -> None:
        self.started: list[str] = []
        self.sessions: dict[str, str | None] = {}
        self.outcomes: dict[str, TaskOutcome] = {}
        self.errors: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.delays: dict[str, float] = {}
        self.escalations: dict[str, EscalationRequest] = {}
        self.responses: dict[str, EscalationResponse] = {}
        self.cancelled: list[str] = []
        self.running: set[str] = set()
        self.max_running = 0

    def gate(self, task_id: str) -> asyncio.Event:
        self.gates[task_id] = asyncio.Event()
        return self.gates[task_id]

    def __call__(self, task: TaskDescriptor) -> "FakeExecutor":
        return FakeExecutor(self, task)


class FakeExecutor:
    def __init__(self, backend: FakeBackend, task: TaskDescriptor) -> None:
        self.backend = backend
        self.task = task

    async def run(
        self,
        task: TaskDescriptor,
        session_id: str | None,
        context: ExecutionContext,
    ) -> TaskOutcome:
        b = self.backend
        b.started.append(task.id)
        b.sessions[task.id] = session_id
        b.running.add(task.id)
        b.max_running = max(b.max_running, len(b.running))
        new_session = session_id or f"session-{task.id}"
        try:
            context.report_session(new_session)
            context.report_tool_use("Read", {"file_path": f"/src/{task.id}.py"})
            context.report_progress(f"working on {task.id}")
            await asyncio.sleep(b.delays.get(task.id, 0))

            if task.id in b.escalations:
                response = await context.escalate(b.escalations[task.id])
                b.responses[task.id] = response
                if response.kind == "skip":
                    return TaskOutcome(status="cancelled", session_id=new_session)

            if task.id in b.gates:
                await b.gates[task.id].wait()
            if task.id in b.errors:
                raise b.errors[task.id]
            outcome = b.outcomes.get(task.id)
            if outcome is not None:
                return outcome
            return TaskOutcome(
                status="completed",
                session_id=new_session,
                cost=0.25,
                result=f"{task.id} done",
            )
        finally:
            b.running.discard(task.id)

    def cancel(self) -> None:
        self.backend.cancelled.append(self.task.id)


def make_task(task_id: str, *deps: str, budget: float = 5.0) -> TaskDescriptor:
    return TaskDescriptor(
        id=task_id,
        cwd=f"/work/{task_id}",
        prompt=f"Do {task_id}",
        depends_on=tuple(deps),
        budget=budget,
        project=task_id,
    )


@pytest.fixture
def task() -> Callable[..., TaskDescriptor]:
    """Factory for task descriptors: task("B", "A") depends on A."""
    return make_task


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path / "state", tmp_path / "logs")


@pytest.fixture
def config(tmp_path: Path) -> BatchConfig:
    return BatchConfig(
        max_concurrent=2,
        state_dir=tmp_path / "state",
        logs_dir=tmp_path / "logs",
        auto_save_interval=60.0,
    )


@pytest.fixture
def wait_until() -> Callable:
    """Await a condition, polling the event loop, or fail after a timeout."""

    async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait_until
