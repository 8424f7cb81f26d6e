"""Executors that run tasks through the claude CLI.

Two invocation styles share one escalation loop:
    ClaudeStreamingExecutor: --output-format stream-json, reports session,
        progress and tool use as they happen (preferred)
    ClaudeJsonExecutor: --output-format json, one blob at the end (fallback)

An agent escalates by answering with a fenced json block containing
"escalation": true. The executor lets that turn finish, asks the operator
through the ExecutionContext, then resumes the same session with the answer.
"""

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

from taskbatch.config import BatchConfig
from taskbatch.errors import (
    ExecutorError,
    ExecutorUnavailableError,
    SessionResumeError,
)
from taskbatch.executor import (
    ExecutionContext,
    Executor,
    ExecutorChain,
    ExecutorFactory,
    ResumeFallbackExecutor,
)
from taskbatch.models import (
    EscalationOption,
    EscalationRequest,
    EscalationResponse,
    TaskDescriptor,
    TaskOutcome,
)

logger = logging.getLogger(__name__)

DEFAULT_TOOLS = ("Read", "Edit", "Glob", "Grep")

# Large enough for a single stream-json line carrying a whole file read.
STREAM_LIMIT = 16 * 1024 * 1024

GUARDRAILS = """## Guardrails

1. **No regressions**: run the tests before and after every change. If a test fails, stop and report it.
2. **Read first**: always read files before changing them. Verify, do not assume.
3. **Ask when in doubt**: if the request is ambiguous or a change is risky, escalate.
4. **Minimal scope**: do only what is asked. Do not "improve" unrelated code.
5. **Transparency**: explain what you are about to do.

To escalate, reply ONLY with this JSON:
```json
{
  "escalation": true,
  "reason": "kind of problem",
  "question": "your question",
  "options": [{"id": "opt1", "label": "Option 1"}]
}
```"""

_ESCALATION_RE = re.compile(
    r"```json\s*(\{[\s\S]*?\"escalation\"\s*:\s*true[\s\S]*?\})\s*```"
)

_RESUME_FAILURE_MARKERS = ("no conversation found", "session not found")
_UNSUPPORTED_FLAG_MARKERS = ("unknown option", "unrecognized option")


def build_prompt(task: TaskDescriptor, global_instructions: str | None = None) -> str:
    """Assemble the full prompt sent on a task's first invocation."""
    parts = []
    if task.allow_escalation:
        parts.append(GUARDRAILS)
    if global_instructions:
        parts.append(f"## Global Instructions\n\n{global_instructions}")
    if task.instructions:
        parts.append(f"## Task Instructions\n\n{task.instructions}")
    parts.append(f"## Your Task\n\n{task.prompt}")
    return "\n\n---\n\n".join(parts)


def parse_escalation(text: str, task_id: str) -> EscalationRequest | None:
    """Extract an escalation request from agent text, if there is one."""
    match = _ESCALATION_RE.search(text)
    if not match:
        return None

    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or data.get("escalation") is not True:
        return None

    options = []
    for i, raw in enumerate(data.get("options") or []):
        if isinstance(raw, dict):
            options.append(
                EscalationOption(
                    id=str(raw.get("id", f"opt{i + 1}")),
                    label=str(raw.get("label", raw.get("id", ""))),
                    description=raw.get("description"),
                    recommended=bool(raw.get("recommended", False)),
                )
            )
        elif isinstance(raw, str):
            options.append(EscalationOption(id=f"opt{i + 1}", label=raw))

    context = data.get("context")
    if context is not None and not isinstance(context, str):
        context = json.dumps(context)

    return EscalationRequest(
        task_id=task_id,
        reason=str(data.get("reason") or "unknown"),
        question=str(data.get("question") or "Agent needs input"),
        options=options,
        context=context,
    )


def format_escalation_reply(
    request: EscalationRequest, response: EscalationResponse
) -> str:
    """Prompt that carries the operator's answer back into the session."""
    if response.kind == "choice":
        option = next((o for o in request.options if o.id == response.value), None)
        label = f"{option.id} ({option.label})" if option else str(response.value)
        return f"The operator chose option {label}. Continue the task accordingly."
    if response.kind == "text":
        return f"The operator answered:\n\n{response.value}\n\nContinue the task."
    return (
        "The operator left this decision to you. Pick the option you judge "
        "best, state which one, and continue the task."
    )


@dataclass
class InvocationResult:
    """Parsed output of one claude CLI invocation."""

    session_id: str | None = None
    cost: float = 0.0
    result: str = ""
    is_error: bool = False
    error: str | None = None
    escalation: EscalationRequest | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class ClaudeExecutorBase:
    """Escalation loop shared by the claude CLI executors.

    Subclasses implement _invoke() for one CLI run.
    """

    output_format = "json"

    def __init__(
        self, config: BatchConfig, global_instructions: str | None = None
    ) -> None:
        self.config = config
        self.global_instructions = global_instructions
        self._process: asyncio.subprocess.Process | None = None
        self._cancelled = False

    async def run(
        self,
        task: TaskDescriptor,
        session_id: str | None,
        context: ExecutionContext,
    ) -> TaskOutcome:
        prompt = build_prompt(task, self.global_instructions)
        total_cost = 0.0

        while True:
            remaining = max(task.budget - total_cost, 0.01)
            invocation = await self._invoke(
                task, prompt, session_id, remaining, context
            )
            total_cost += invocation.cost
            session_id = invocation.session_id or session_id

            if self._cancelled:
                return TaskOutcome(
                    status="cancelled", session_id=session_id, cost=total_cost
                )

            if invocation.is_error:
                return TaskOutcome(
                    status="failed",
                    session_id=session_id,
                    cost=total_cost,
                    result=invocation.result or None,
                    error=invocation.error
                    or invocation.result
                    or "claude reported an error",
                )

            request = invocation.escalation
            if request is None or not task.allow_escalation:
                return TaskOutcome(
                    status="completed",
                    session_id=session_id,
                    cost=total_cost,
                    result=invocation.result,
                )

            response = await context.escalate(request)
            if response.kind == "skip" or self._cancelled:
                return TaskOutcome(
                    status="cancelled", session_id=session_id, cost=total_cost
                )
            if session_id is None:
                return TaskOutcome(
                    status="failed",
                    cost=total_cost,
                    error="Cannot answer escalation: claude reported no session id",
                )
            prompt = format_escalation_reply(request, response)

    def cancel(self) -> None:
        self._cancelled = True
        if self._process is not None and self._process.returncode is None:
            self._process.terminate()

    def build_command(
        self,
        task: TaskDescriptor,
        prompt: str,
        session_id: str | None,
        budget: float,
    ) -> list[str]:
        cmd = [self.config.claude_command]

        # Add --resume if continuing a session
        if session_id:
            cmd.extend(["--resume", session_id])

        cmd.extend(["-p", prompt, "--output-format", self.output_format])
        cmd.extend(self._extra_flags())
        cmd.extend(
            [
                "--max-turns",
                str(self.config.max_turns),
                "--allowedTools",
                ",".join(task.tools or DEFAULT_TOOLS),
                "--max-budget-usd",
                f"{budget:.2f}",
            ]
        )

        if task.model:
            cmd.extend(["--model", task.model])

        return cmd

    def _extra_flags(self) -> list[str]:
        return []

    async def _spawn(
        self, cmd: list[str], task: TaskDescriptor
    ) -> asyncio.subprocess.Process:
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=os.path.expanduser(task.cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except FileNotFoundError as e:
            raise ExecutorUnavailableError(
                f"Cannot start '{cmd[0]}' in {task.cwd}: {e}"
            ) from e
        self._process = process
        return process

    async def _finish(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            process.kill()
            await process.wait()

    async def _invoke(
        self,
        task: TaskDescriptor,
        prompt: str,
        session_id: str | None,
        budget: float,
        context: ExecutionContext,
    ) -> InvocationResult:
        raise NotImplementedError


def _check_resume_failure(session_id: str | None, stderr: str) -> None:
    if session_id and any(m in stderr.lower() for m in _RESUME_FAILURE_MARKERS):
        raise SessionResumeError(stderr.strip() or f"Cannot resume {session_id}")


def _result_from_event(data: dict[str, Any], task_id: str) -> InvocationResult:
    text = data.get("result") or ""
    subtype = data.get("subtype") or "success"
    is_error = bool(data.get("is_error", False)) or subtype != "success"
    return InvocationResult(
        session_id=data.get("session_id") or None,
        cost=float(data.get("total_cost_usd") or data.get("cost_usd") or 0.0),
        result=text,
        is_error=is_error,
        error=(text or subtype) if is_error else None,
        escalation=None if is_error else parse_escalation(text, task_id),
        raw=data,
    )


class ClaudeStreamingExecutor(ClaudeExecutorBase):
    """Runs claude with stream-json output for live progress."""

    output_format = "stream-json"

    def _extra_flags(self) -> list[str]:
        # --verbose is required for stream-json with -p
        return ["--verbose", "--include-partial-messages"]

    async def _invoke(
        self,
        task: TaskDescriptor,
        prompt: str,
        session_id: str | None,
        budget: float,
        context: ExecutionContext,
    ) -> InvocationResult:
        cmd = self.build_command(task, prompt, session_id, budget)
        process = await self._spawn(cmd, task)
        if process.stdout is None or process.stderr is None:
            await self._finish(process)
            raise ExecutorError(
                f"claude process for task {task.id} has no output pipes"
            )
        stderr_task = asyncio.ensure_future(process.stderr.read())

        current_session = session_id
        escalation: EscalationRequest | None = None
        result_data: dict[str, Any] | None = None
        events_seen = False

        try:
            async for raw_line in process.stdout:
                line = raw_line.decode(errors="replace").strip()
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    # Skip malformed lines
                    continue
                events_seen = True

                event_type = event.get("type")

                if event_type == "system" and event.get("subtype") == "init":
                    new_session = event.get("session_id")
                    if new_session and new_session != current_session:
                        current_session = new_session
                        context.report_session(new_session)

                elif event_type == "stream_event":
                    delta = (event.get("event") or {}).get("delta") or {}
                    text = delta.get("text")
                    if text:
                        context.report_progress(text)

                elif event_type == "assistant":
                    # Tool uses and text are nested in assistant message content
                    content = (event.get("message") or {}).get("content") or []
                    for item in content:
                        if item.get("type") == "tool_use":
                            context.report_tool_use(
                                item.get("name", ""), item.get("input") or {}
                            )
                        elif item.get("type") == "text" and escalation is None:
                            escalation = parse_escalation(item.get("text", ""), task.id)

                elif event_type == "result":
                    result_data = event

            await process.wait()
            stderr = (await stderr_task).decode(errors="replace")
        finally:
            await self._finish(process)
            if not stderr_task.done():
                stderr_task.cancel()

        if result_data is None:
            if self._cancelled:
                return InvocationResult(session_id=current_session)
            _check_resume_failure(session_id, stderr)
            if not events_seen and any(
                m in stderr.lower() for m in _UNSUPPORTED_FLAG_MARKERS
            ):
                raise ExecutorUnavailableError(
                    f"claude does not support streaming output: {stderr.strip()}"
                )
            return InvocationResult(
                session_id=current_session,
                is_error=True,
                error=f"claude exited with code {process.returncode}: {stderr.strip()}",
            )

        invocation = _result_from_event(result_data, task.id)
        invocation.session_id = invocation.session_id or current_session
        if invocation.escalation is None and not invocation.is_error:
            invocation.escalation = escalation
        return invocation


class ClaudeJsonExecutor(ClaudeExecutorBase):
    """Runs claude with a single JSON result; no live progress."""

    output_format = "json"

    async def _invoke(
        self,
        task: TaskDescriptor,
        prompt: str,
        session_id: str | None,
        budget: float,
        context: ExecutionContext,
    ) -> InvocationResult:
        cmd = self.build_command(task, prompt, session_id, budget)
        process = await self._spawn(cmd, task)
        try:
            stdout_bytes, stderr_bytes = await process.communicate()
        finally:
            await self._finish(process)

        stdout = stdout_bytes.decode(errors="replace")
        stderr = stderr_bytes.decode(errors="replace")

        if self._cancelled:
            return InvocationResult(session_id=session_id)

        if process.returncode != 0:
            _check_resume_failure(session_id, stderr)
            return InvocationResult(
                session_id=session_id,
                is_error=True,
                error=f"claude exited with code {process.returncode}: {stderr.strip()}",
            )

        try:
            data = json.loads(stdout)
        except json.JSONDecodeError:
            # Non-JSON output: treat the text itself as the result
            return InvocationResult(
                session_id=session_id,
                result=stdout,
                escalation=parse_escalation(stdout, task.id),
            )

        invocation = _result_from_event(data, task.id)
        if invocation.session_id:
            context.report_session(invocation.session_id)
        return invocation


def default_executor_factory(
    config: BatchConfig, global_instructions: str | None = None
) -> ExecutorFactory:
    """Factory producing the standard executor stack for each task run."""

    def factory(task: TaskDescriptor) -> Executor:
        return ResumeFallbackExecutor(
            ExecutorChain(
                [
                    ClaudeStreamingExecutor(config, global_instructions),
                    ClaudeJsonExecutor(config, global_instructions),
                ]
            )
        )

    return factory
