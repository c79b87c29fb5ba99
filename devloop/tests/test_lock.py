"""Tests for the run lock."""

import json
import os
from pathlib import Path

import pytest

from devloop.errors import LockError
from devloop.lock import LockHolder, RunLock, is_process_running


def write_lock(state_dir: Path, content: str) -> Path:
    state_dir.mkdir(parents=True, exist_ok=True)
    lock_file = state_dir / "devloop.pid"
    lock_file.write_text(content)
    return lock_file


class TestRunLockAcquire:
    """Tests for RunLock.acquire()."""

    def test_acquire_records_pid_and_start(self, tmp_path: Path) -> None:
        """Acquiring creates the lock file with this process's PID."""
        lock = RunLock(tmp_path / "state")

        assert lock.acquire() is True
        record = json.loads((tmp_path / "state" / "devloop.pid").read_text())
        assert record["pid"] == os.getpid()
        assert record["started_at"]

    def test_acquire_is_reentrant(self, tmp_path: Path) -> None:
        """The holder can acquire again."""
        lock = RunLock(tmp_path)

        assert lock.acquire() is True
        assert lock.acquire() is True

    def test_acquire_fails_when_held_by_running_process(self, tmp_path: Path) -> None:
        """Cannot acquire a lock held by another live process."""
        write_lock(tmp_path, json.dumps({"pid": os.getppid(), "started_at": "x"}))

        assert RunLock(tmp_path).acquire() is False

    def test_acquire_takes_over_stale_lock(self, tmp_path: Path) -> None:
        """A lock left by a dead process is replaced."""
        lock_file = write_lock(tmp_path, "99999999")

        assert RunLock(tmp_path).acquire() is True
        assert json.loads(lock_file.read_text())["pid"] == os.getpid()

    def test_acquire_with_invalid_content(self, tmp_path: Path) -> None:
        """Garbage in the lock file is treated as stale."""
        write_lock(tmp_path, "not_a_pid")

        assert RunLock(tmp_path).acquire() is True


class TestRunLockRead:
    """Tests for RunLock.read()."""

    def test_read_json_record(self, tmp_path: Path) -> None:
        """The JSON record is returned as a LockHolder."""
        write_lock(tmp_path, json.dumps({"pid": 42, "started_at": "2025-01-15T14:23:00"}))

        assert RunLock(tmp_path).read() == LockHolder(42, "2025-01-15T14:23:00")

    def test_read_bare_pid(self, tmp_path: Path) -> None:
        """A plain integer is accepted."""
        write_lock(tmp_path, "123\n")

        assert RunLock(tmp_path).read() == LockHolder(123)

    @pytest.mark.parametrize("content", ["", "abc", '{"pid": "7"}', "[1]"])
    def test_read_unusable(self, tmp_path: Path, content: str) -> None:
        """Anything else reads as no holder."""
        write_lock(tmp_path, content)

        assert RunLock(tmp_path).read() is None

    def test_read_missing(self, tmp_path: Path) -> None:
        """No file means no holder."""
        assert RunLock(tmp_path).read() is None


class TestRunLockRelease:
    """Tests for RunLock.release() and clear_stale()."""

    def test_release_removes_own_lock(self, tmp_path: Path) -> None:
        """Releasing removes the lock file."""
        lock = RunLock(tmp_path)
        lock.acquire()

        lock.release()

        assert not lock.lock_path.exists()

    def test_release_leaves_foreign_lock(self, tmp_path: Path) -> None:
        """A lock held by another process is not removed."""
        lock_file = write_lock(tmp_path, str(os.getppid()))

        RunLock(tmp_path).release()

        assert lock_file.exists()

    def test_release_without_lock(self, tmp_path: Path) -> None:
        """Releasing when nothing is held does not raise."""
        RunLock(tmp_path).release()

    def test_clear_stale(self, tmp_path: Path) -> None:
        """Only a lock without a live holder is cleared."""
        lock_file = write_lock(tmp_path, "99999999")
        assert RunLock(tmp_path).clear_stale() is True
        assert not lock_file.exists()

        write_lock(tmp_path, str(os.getppid()))
        assert RunLock(tmp_path).clear_stale() is False
        assert lock_file.exists()


class TestRunLockContextManager:
    """Tests for the context manager protocol."""

    def test_context_manager_acquires_and_releases(self, tmp_path: Path) -> None:
        """The lock is held inside the block only."""
        with RunLock(tmp_path) as lock:
            assert lock.read().pid == os.getpid()

        assert not (tmp_path / "devloop.pid").exists()

    def test_context_manager_raises_when_held(self, tmp_path: Path) -> None:
        """Entering a held lock raises LockError with the holder PID."""
        write_lock(tmp_path, str(os.getppid()))

        with pytest.raises(LockError, match=str(os.getppid())):
            with RunLock(tmp_path):
                pass


class TestIsProcessRunning:
    """Tests for is_process_running()."""

    def test_current_process(self) -> None:
        """This process is running."""
        assert is_process_running(os.getpid()) is True

    def test_dead_process(self) -> None:
        """A PID that cannot exist is not running."""
        assert is_process_running(99999999) is False
