"""Shared error types for the taskbatch package."""

from collections.abc import Iterable


class BatchError(Exception):
    """Base exception for taskbatch errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class CyclicDependencyError(BatchError):
    """The dependency edges contain at least one cycle."""

    def __init__(self, task_ids: Iterable[str]) -> None:
        self.task_ids = sorted(task_ids)
        super().__init__(
            "Circular dependency detected involving tasks: "
            + ", ".join(self.task_ids)
        )


class UnknownDependencyError(BatchError):
    """A task depends on an id that is not part of the batch."""

    def __init__(self, task_id: str, dependency: str) -> None:
        self.task_id = task_id
        self.dependency = dependency
        super().__init__(f"Task '{task_id}' depends on unknown task '{dependency}'")


class DuplicateTaskError(BatchError):
    """Two descriptors share the same id."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Duplicate task id: {task_id}")


class InvalidTransitionError(BatchError):
    """A task status change that the lifecycle does not allow."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        self.task_id = task_id
        self.current = current
        self.target = target
        super().__init__(
            f"Task '{task_id}' cannot move from '{current}' to '{target}'"
        )


class TaskExecutionError(BatchError):
    """An executor reported an error or raised while running a task."""

    pass


class DeadlockDetected(BatchError):
    """Pending tasks remain but none can ever become ready.

    Not raised by the scheduler; it is folded into a failed batch status and
    the blocked ids are listed on the batch state.
    """

    def __init__(self, task_ids: Iterable[str]) -> None:
        self.task_ids = list(task_ids)
        super().__init__(
            "No runnable tasks remain; blocked: " + ", ".join(self.task_ids)
        )


class StaleEscalationResolutionError(BatchError):
    """A response arrived for a task with no pending escalation."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"No pending escalation for task '{task_id}'")


class EscalationPendingError(BatchError):
    """A task raised a second escalation while one is still open."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' already has a pending escalation")


class PersistenceError(BatchError):
    """Batch state could not be written or read."""

    pass


class TaskFileError(BatchError):
    """A task file could not be parsed or failed validation."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = errors or []
        if self.errors:
            message = message + "\n" + "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(message)


class BatchLockedError(BatchError):
    """Another live process holds the run lock for this batch."""

    pass


class ExecutorError(BatchError):
    """Base class for executor plumbing failures."""

    pass


class ExecutorUnavailableError(ExecutorError):
    """The executor cannot run in this environment; try the next one."""

    pass


class SessionResumeError(ExecutorError):
    """A saved session token could not be resumed."""

    pass
