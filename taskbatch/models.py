"""Data models for taskbatch.

Defines dataclasses for task descriptors, runtime task and batch state,
escalation requests and responses, and executor outcomes. Batch state is
JSON serializable via to_dict()/from_dict() for persistence.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

from taskbatch.errors import InvalidTransitionError

TaskStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
BatchStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
OutcomeStatus = Literal["completed", "failed", "cancelled"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

# running -> running is the escalation pause/resume, it never leaves running.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running"}),
    "running": frozenset({"running", "completed", "failed", "cancelled"}),
    "failed": frozenset({"pending"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}


def check_transition(task_id: str, current: str, target: str) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(task_id, current, target)


@dataclass(frozen=True)
class TaskDescriptor:
    """Immutable definition of one unit of work.

    The core only reads id, depends_on and budget. The remaining fields are
    payload handed through to the executor.
    """

    id: str
    cwd: str
    prompt: str
    depends_on: tuple[str, ...] = ()
    budget: float = 5.0
    project: str = ""
    model: str | None = None
    tools: tuple[str, ...] = ()
    instructions: str | None = None
    allow_escalation: bool = True


@dataclass
class TaskState:
    """Runtime state of a task inside a batch.

    Attributes:
        status: Current lifecycle status
        session_id: Opaque token that lets an executor resume the same session
        started_at: When the task was last admitted
        completed_at: When the task reached a terminal status
        cost: Accumulated cost in USD
        result: Final output text on success
        error: Error description on failure
        progress: Latest progress line (transient, for display)
        current_tool: Tool currently in use (transient, for display)
    """

    status: TaskStatus = "pending"
    session_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cost: float = 0.0
    result: str | None = None
    error: str | None = None
    progress: str | None = None
    current_tool: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = _iso(self.started_at)
        data["completed_at"] = _iso(self.completed_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskState":
        return cls(
            status=data.get("status", "pending"),
            session_id=data.get("session_id"),
            started_at=_parse_iso(data.get("started_at")),
            completed_at=_parse_iso(data.get("completed_at")),
            cost=float(data.get("cost", 0.0)),
            result=data.get("result"),
            error=data.get("error"),
            progress=data.get("progress"),
            current_tool=data.get("current_tool"),
        )


@dataclass
class BatchState:
    """Aggregate state for one batch run.

    total_cost always equals the sum of the task costs; the state store
    recomputes it on every task update.
    """

    batch_id: str
    batch_name: str
    source_path: str
    started_at: datetime
    status: BatchStatus = "pending"
    completed_at: datetime | None = None
    total_cost: float = 0.0
    tasks: dict[str, TaskState] = field(default_factory=dict)
    blocked_tasks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "batch_name": self.batch_name,
            "source_path": self.source_path,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "status": self.status,
            "total_cost": self.total_cost,
            "tasks": {tid: ts.to_dict() for tid, ts in self.tasks.items()},
            "blocked_tasks": list(self.blocked_tasks),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchState":
        started_at = _parse_iso(data["started_at"])
        if started_at is None:
            raise ValueError("started_at is required")
        return cls(
            batch_id=data["batch_id"],
            batch_name=data.get("batch_name", data["batch_id"]),
            source_path=data.get("source_path", ""),
            started_at=started_at,
            completed_at=_parse_iso(data.get("completed_at")),
            status=data.get("status", "pending"),
            total_cost=float(data.get("total_cost", 0.0)),
            tasks={
                tid: TaskState.from_dict(ts)
                for tid, ts in data.get("tasks", {}).items()
            },
            blocked_tasks=list(data.get("blocked_tasks", [])),
        )


@dataclass
class BatchStats:
    """Counts of tasks per status plus the accumulated cost."""

    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total_cost: float = 0.0


@dataclass
class EscalationOption:
    id: str
    label: str
    description: str | None = None
    recommended: bool = False


@dataclass
class EscalationRequest:
    """A question a running task needs the operator to answer."""

    task_id: str
    reason: str
    question: str
    options: list[EscalationOption] = field(default_factory=list)
    context: str | None = None


@dataclass(frozen=True)
class EscalationResponse:
    """The operator's answer to an escalation.

    Kinds:
        choice: value is the selected option id
        text: value is free-form guidance
        agent_decide: let the task decide on its own
        skip: abandon the task
    """

    kind: Literal["choice", "text", "agent_decide", "skip"]
    value: str | None = None

    @classmethod
    def choose(cls, option_id: str) -> "EscalationResponse":
        return cls(kind="choice", value=option_id)

    @classmethod
    def text(cls, guidance: str) -> "EscalationResponse":
        return cls(kind="text", value=guidance)

    @classmethod
    def agent_decide(cls) -> "EscalationResponse":
        return cls(kind="agent_decide")

    @classmethod
    def skip(cls) -> "EscalationResponse":
        return cls(kind="skip")


@dataclass
class TaskOutcome:
    """What an executor returns when a task run ends."""

    status: OutcomeStatus
    session_id: str | None = None
    cost: float = 0.0
    result: str | None = None
    error: str | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
