"""Task file loading and validation.

A task file is YAML:

    name: refactor-auth
    maxConcurrent: 2
    defaultBudget: 3.0
    globalInstructions: Keep commits small.
    tasks:
      - id: api
        cwd: ~/src/api
        prompt: Extract the token check into a middleware
      - id: web
        cwd: ~/src/web
        prompt: Use the new middleware
        dependsOn: [api]
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from taskbatch.dag import DependencyGraph
from taskbatch.errors import BatchError, TaskFileError
from taskbatch.models import TaskDescriptor

DEFAULT_MODEL = "sonnet"
DEFAULT_BUDGET = 5.0
DEFAULT_TOOLS = ("Read", "Edit", "Glob", "Grep")
DEFAULT_MAX_CONCURRENT = 3


@dataclass
class TaskBatch:
    """A parsed task file."""

    name: str
    tasks: list[TaskDescriptor]
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    default_budget: float = DEFAULT_BUDGET
    default_model: str = DEFAULT_MODEL
    default_tools: tuple[str, ...] = DEFAULT_TOOLS
    global_instructions: str | None = None
    source_path: str = ""

    def get(self, task_id: str) -> TaskDescriptor | None:
        return next((t for t in self.tasks if t.id == task_id), None)


def _project_name(cwd: str) -> str:
    return cwd.rstrip("/").split("/")[-1] or "unknown"


def _as_tuple(value: Any, where: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        raise TaskFileError(f"{where} must be a list")
    return tuple(str(v) for v in value)


def _parse_task(raw: Any, index: int, batch: dict[str, Any]) -> TaskDescriptor:
    if not isinstance(raw, dict):
        raise TaskFileError(f"Task at index {index} must be a mapping")
    task_id = raw.get("id")
    if not task_id:
        raise TaskFileError(f"Task at index {index} missing 'id'")
    task_id = str(task_id)
    if not raw.get("cwd"):
        raise TaskFileError(f"Task '{task_id}' missing 'cwd'")
    if not raw.get("prompt"):
        raise TaskFileError(f"Task '{task_id}' missing 'prompt'")

    cwd = str(raw["cwd"])
    tools = raw.get("tools", batch.get("defaultTools"))
    budget = raw.get("budget", batch.get("defaultBudget", DEFAULT_BUDGET))
    try:
        budget = float(budget)
    except (TypeError, ValueError) as e:
        raise TaskFileError(f"Task '{task_id}' has non-numeric budget: {budget}") from e

    return TaskDescriptor(
        id=task_id,
        cwd=os.path.expanduser(cwd),
        prompt=str(raw["prompt"]).strip(),
        depends_on=_as_tuple(raw.get("dependsOn"), f"Task '{task_id}' dependsOn"),
        budget=budget,
        project=str(raw.get("project") or _project_name(cwd)),
        model=raw.get("model", batch.get("defaultModel", DEFAULT_MODEL)),
        tools=_as_tuple(tools, f"Task '{task_id}' tools") or DEFAULT_TOOLS,
        instructions=raw.get("instructions"),
        allow_escalation=bool(raw.get("allowEscalation", True)),
    )


def parse_task_batch(content: str, source_path: str = "") -> TaskBatch:
    """Parse task file content.

    Args:
        content: YAML text
        source_path: Where the content came from, kept for resume

    Returns:
        TaskBatch with defaults applied

    Raises:
        TaskFileError: On invalid YAML, missing fields or unknown dependencies
    """
    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise TaskFileError(f"Invalid YAML: {e}") from e

    if not isinstance(raw, dict):
        raise TaskFileError("Task file must be a mapping with a 'tasks' list")
    raw_tasks = raw.get("tasks")
    if not raw_tasks:
        raise TaskFileError("No tasks defined in task file")
    if not isinstance(raw_tasks, list):
        raise TaskFileError("'tasks' must be a list")

    tasks = [_parse_task(t, i, raw) for i, t in enumerate(raw_tasks)]

    known = {t.id for t in tasks}
    for task in tasks:
        for dep in task.depends_on:
            if dep not in known:
                raise TaskFileError(
                    f"Task '{task.id}' depends on unknown task '{dep}'"
                )

    return TaskBatch(
        name=str(raw.get("name") or "Unnamed Batch"),
        tasks=tasks,
        max_concurrent=int(raw.get("maxConcurrent", DEFAULT_MAX_CONCURRENT)),
        default_budget=float(raw.get("defaultBudget", DEFAULT_BUDGET)),
        default_model=str(raw.get("defaultModel", DEFAULT_MODEL)),
        default_tools=_as_tuple(raw.get("defaultTools"), "defaultTools")
        or DEFAULT_TOOLS,
        global_instructions=raw.get("globalInstructions"),
        source_path=source_path,
    )


def load_task_file(path: str | Path) -> TaskBatch:
    """Read and parse a task file.

    Raises:
        TaskFileError: If the file cannot be read or parsed
    """
    path = Path(os.path.expanduser(str(path))).resolve()
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise TaskFileError(f"Cannot read task file {path}: {e}") from e
    return parse_task_batch(content, str(path))


def validate_batch(batch: TaskBatch) -> list[str]:
    """Check a parsed batch for problems that would stop it from running.

    Returns:
        Human-readable error messages; empty when the batch is valid
    """
    errors = []

    seen: set[str] = set()
    for task in batch.tasks:
        if task.id in seen:
            errors.append(f"Duplicate task ID: '{task.id}'")
        seen.add(task.id)

    for task in batch.tasks:
        if task.id in task.depends_on:
            errors.append(f"Task '{task.id}' depends on itself")

    for task in batch.tasks:
        if task.budget <= 0:
            errors.append(f"Task '{task.id}' has invalid budget: {task.budget}")

    if batch.max_concurrent < 1:
        errors.append(f"maxConcurrent must be at least 1 (got {batch.max_concurrent})")

    # Graph checks only make sense once ids are unique and edges are sane.
    if not errors:
        try:
            DependencyGraph(batch.tasks).topological_order()
        except BatchError as e:
            errors.append(str(e))

    return errors
