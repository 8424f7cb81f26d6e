"""Tests for executor composition helpers."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from taskbatch.errors import ExecutorUnavailableError, SessionResumeError
from taskbatch.executor import ExecutionContext, ExecutorChain, ResumeFallbackExecutor
from taskbatch.models import (
    EscalationRequest,
    EscalationResponse,
    TaskDescriptor,
    TaskOutcome,
)

TASK = TaskDescriptor(id="A", cwd="/work/a", prompt="Do A")


def _context(report=None, escalate=None) -> ExecutionContext:
    return ExecutionContext(
        "A",
        report or MagicMock(),
        escalate or AsyncMock(return_value=EscalationResponse.agent_decide()),
    )


def _executor(**run_kwargs) -> MagicMock:
    executor = MagicMock()
    executor.run = AsyncMock(**run_kwargs)
    return executor


class TestExecutionContext:
    def test_reports_are_forwarded(self) -> None:
        report = MagicMock()
        context = _context(report=report)

        context.report_progress("reading", 0.5)
        context.report_tool_use("Edit")
        context.report_session("sess-1")

        assert report.call_args_list[0].args == ("progress", "A", ("reading", 0.5))
        assert report.call_args_list[1].args == ("tool", "A", ("Edit", {}))
        assert report.call_args_list[2].args == ("session", "A", "sess-1")

    @pytest.mark.asyncio
    async def test_escalate_awaits_callback(self) -> None:
        escalate = AsyncMock(return_value=EscalationResponse.choose("x"))
        context = _context(escalate=escalate)
        request = EscalationRequest(task_id="A", reason="r", question="q")

        response = await context.escalate(request)

        assert response == EscalationResponse.choose("x")
        escalate.assert_awaited_once_with(request)


class TestExecutorChain:
    """The first available executor runs the task."""

    @pytest.mark.asyncio
    async def test_falls_through_unavailable_executors(self) -> None:
        outcome = TaskOutcome(status="completed", result="ok")
        first = _executor(side_effect=ExecutorUnavailableError("no streaming"))
        second = _executor(return_value=outcome)
        chain = ExecutorChain([first, second])

        result = await chain.run(TASK, None, _context())

        assert result is outcome
        first.run.assert_awaited_once()
        second.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_first_available_wins(self) -> None:
        first = _executor(return_value=TaskOutcome(status="completed"))
        second = _executor(return_value=TaskOutcome(status="failed"))

        result = await ExecutorChain([first, second]).run(
            TASK, None, _context()
        )

        assert result.status == "completed"
        second.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_all_unavailable_raises(self) -> None:
        chain = ExecutorChain(
            [
                _executor(side_effect=ExecutorUnavailableError("a")),
                _executor(side_effect=ExecutorUnavailableError("b")),
            ]
        )

        with pytest.raises(ExecutorUnavailableError, match="No executor available"):
            await chain.run(TASK, None, _context())

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self) -> None:
        second = _executor(return_value=TaskOutcome(status="completed"))
        chain = ExecutorChain([_executor(side_effect=RuntimeError("boom")), second])

        with pytest.raises(RuntimeError):
            await chain.run(TASK, None, _context())

        second.run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cancel_reaches_active_executor(self) -> None:
        active = MagicMock()
        chain = ExecutorChain([active])

        async def run(task, session_id, context):
            chain.cancel()
            return TaskOutcome(status="cancelled")

        active.run = AsyncMock(side_effect=run)

        result = await chain.run(TASK, None, _context())

        assert result.status == "cancelled"
        active.cancel.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancelled_chain_does_not_start(self) -> None:
        executor = _executor(return_value=TaskOutcome(status="completed"))
        chain = ExecutorChain([executor])
        chain.cancel()

        result = await chain.run(TASK, "sess", _context())

        assert result.status == "cancelled"
        assert result.session_id == "sess"
        executor.run.assert_not_awaited()

    def test_empty_chain_rejected(self) -> None:
        with pytest.raises(ValueError):
            ExecutorChain([])


class TestResumeFallbackExecutor:
    """A session that cannot be resumed is replaced by a fresh run."""

    @pytest.mark.asyncio
    async def test_retries_fresh_on_resume_failure(self) -> None:
        outcome = TaskOutcome(status="completed", session_id="new")
        inner = _executor(side_effect=[SessionResumeError("gone"), outcome])
        report = MagicMock()

        result = await ResumeFallbackExecutor(inner).run(
            TASK, "old", _context(report=report)
        )

        assert result is outcome
        assert inner.run.call_args_list[0].args[1] == "old"
        assert inner.run.call_args_list[1].args[1] is None
        report.assert_called_once_with(
            "progress", "A", ("Previous session unavailable, starting fresh", None)
        )

    @pytest.mark.asyncio
    async def test_fresh_run_failure_propagates(self) -> None:
        inner = _executor(side_effect=SessionResumeError("gone"))

        with pytest.raises(SessionResumeError):
            await ResumeFallbackExecutor(inner).run(TASK, None, _context())

        inner.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_resume_success_passes_through(self) -> None:
        inner = _executor(return_value=TaskOutcome(status="completed"))

        await ResumeFallbackExecutor(inner).run(TASK, "old", _context())

        inner.run.assert_awaited_once()
        assert inner.run.call_args.args[1] == "old"

    def test_cancel_delegates(self) -> None:
        inner = MagicMock()

        ResumeFallbackExecutor(inner).cancel()

        inner.cancel.assert_called_once()
