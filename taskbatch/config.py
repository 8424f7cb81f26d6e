"""Configuration for taskbatch.

Provides centralized configuration with sensible defaults and environment
variable overrides for scheduling, persistence, the claude CLI and telemetry.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from taskbatch.errors import BatchError


@dataclass
class BatchConfig:
    """Configuration for batch execution.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    # Scheduling
    max_concurrent: int = 3
    escalation_timeout_seconds: float | None = None

    # Persistence
    state_dir: Path = field(default_factory=lambda: Path("state"))
    logs_dir: Path = field(default_factory=lambda: Path("logs"))
    auto_save_interval: float = 5.0

    # Claude Code settings
    claude_command: str = "claude"
    max_turns: int = 50

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "taskbatch"

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise BatchError(
                f"max_concurrent must be at least 1 (got {self.max_concurrent})"
            )
        if self.auto_save_interval <= 0:
            raise BatchError(
                f"auto_save_interval must be positive (got {self.auto_save_interval})"
            )

    @classmethod
    def from_env(cls) -> "BatchConfig":
        """Load config with environment variable overrides.

        Environment variables:
            TASKBATCH_MAX_CONCURRENT: Override max_concurrent (default: 3)
            TASKBATCH_AUTO_SAVE_INTERVAL: Seconds between auto-saves (default: 5)
            TASKBATCH_STATE_DIR: Directory for state files (default: state)
            TASKBATCH_LOGS_DIR: Directory for task logs (default: logs)
            TASKBATCH_ESCALATION_TIMEOUT: Seconds before an unanswered
                escalation is handed back to the agent (default: wait forever)
            TASKBATCH_CLAUDE_COMMAND: claude executable (default: claude)
            TASKBATCH_MAX_TURNS: Override max_turns (default: 50)
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
        """
        timeout = os.getenv("TASKBATCH_ESCALATION_TIMEOUT")
        return cls(
            max_concurrent=int(os.getenv("TASKBATCH_MAX_CONCURRENT", "3")),
            auto_save_interval=float(os.getenv("TASKBATCH_AUTO_SAVE_INTERVAL", "5")),
            state_dir=Path(os.getenv("TASKBATCH_STATE_DIR", "state")),
            logs_dir=Path(os.getenv("TASKBATCH_LOGS_DIR", "logs")),
            escalation_timeout_seconds=float(timeout) if timeout else None,
            claude_command=os.getenv("TASKBATCH_CLAUDE_COMMAND", "claude"),
            max_turns=int(os.getenv("TASKBATCH_MAX_TURNS", "50")),
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
        )

    def with_overrides(self, **overrides: Any) -> "BatchConfig":
        """Return a copy with the given fields replaced, ignoring None values."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self
