"""Run lock for batch execution.

One process drives a batch at a time. The lock file lives next to the
batch's state file and holds the owner's PID.
"""

import logging
import os
from pathlib import Path
from types import TracebackType

from taskbatch.errors import BatchLockedError

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # owned by another user
    return True


class BatchLock:
    """PID lock file for one batch id.

    The file is created exclusively, so two processes racing for the same
    batch cannot both win. A file left behind by a dead process (or holding
    garbage) is removed and the lock taken over.

    Usage:
        with BatchLock(state_dir, batch_id):
            ...  # run the batch

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, state_dir: Path, batch_id: str) -> None:
        self.batch_id = batch_id
        self.lock_path = Path(state_dir) / f"{batch_id}.lock"

    def acquire(self) -> bool:
        """Try to take the lock.

        Returns:
            True if acquired, False if a live process holds it
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                holder = self.get_holder_pid()
                if holder is not None and _pid_alive(holder):
                    return False
                logger.warning(
                    "Removing stale lock %s (holder: %s)", self.lock_path, holder
                )
                self.lock_path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            return True
        return False

    def release(self) -> None:
        self.lock_path.unlink(missing_ok=True)

    def get_holder_pid(self) -> int | None:
        """PID stored in the lock file, or None if missing or unreadable."""
        try:
            return int(self.lock_path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def __enter__(self) -> "BatchLock":
        """Take the lock for the duration of a with block.

        Raises:
            BatchLockedError: If a live process holds the lock
        """
        if not self.acquire():
            raise BatchLockedError(
                f"Batch {self.batch_id} is already running (PID: "
                f"{self.get_holder_pid()})"
            )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
