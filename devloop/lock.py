"""Run lock for the driving loop.

One ``devloop run`` owns a state directory at a time. The lock file is
created exclusively and records the holder's PID and start time; ``devloop
status`` and ``devloop stop`` read it back. A file whose holder is gone is
stale and gets replaced.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from types import TracebackType

from devloop.errors import LockError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockHolder:
    pid: int
    started_at: str | None = None

    @property
    def alive(self) -> bool:
        return is_process_running(self.pid)


class RunLock:
    """Exclusive lock on a state directory.

    Usage:
        with RunLock(state_dir):
            ...  # loop runs while the lock is held

    Attributes:
        lock_path: Path to the lock file
    """

    LOCK_FILE = "devloop.pid"

    def __init__(self, state_dir: Path) -> None:
        self.lock_path = state_dir / self.LOCK_FILE

    def read(self) -> LockHolder | None:
        """Return the recorded holder, or None if missing or unreadable.

        A bare integer PID is accepted as well as the JSON record.
        """
        try:
            data = json.loads(self.lock_path.read_text())
        except (OSError, json.JSONDecodeError):
            return None
        if isinstance(data, int):
            return LockHolder(pid=data)
        if isinstance(data, dict) and isinstance(data.get("pid"), int):
            return LockHolder(pid=data["pid"], started_at=data.get("started_at"))
        return None

    def acquire(self) -> bool:
        """Create the lock file for this process.

        Returns:
            False if another live process holds the lock
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        record = json.dumps({"pid": os.getpid(), "started_at": datetime.now().isoformat()})

        # Second pass only after removing a stale file
        for _ in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self.read()
                if holder is not None and holder.pid == os.getpid():
                    return True
                if holder is not None and holder.alive:
                    return False
                logger.info(f"Removing stale lock {self.lock_path}")
                self.lock_path.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(record)
            return True
        return False

    def release(self) -> None:
        """Remove the lock file if this process holds it."""
        holder = self.read()
        if holder is not None and holder.pid == os.getpid():
            self.lock_path.unlink(missing_ok=True)

    def clear_stale(self) -> bool:
        """Remove the lock file when its holder is no longer running."""
        if not self.lock_path.exists():
            return False
        holder = self.read()
        if holder is not None and holder.alive:
            return False
        self.lock_path.unlink(missing_ok=True)
        return True

    def __enter__(self) -> "RunLock":
        """Acquire the lock.

        Raises:
            LockError: If another live process holds it
        """
        if not self.acquire():
            holder = self.read()
            pid = holder.pid if holder else "unknown"
            raise LockError(f"devloop is already running (PID: {pid})")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()


def is_process_running(pid: int) -> bool:
    """Check whether a process exists, using signal 0."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    except OverflowError:
        return False
    return True
