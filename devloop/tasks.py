"""Task source contract and the ledger-backed implementation.

The workflow only needs a handful of operations from whatever stores tasks:
fetch the next pending task, change a task's status, count progress and turn
a failed attempt into a fix task. LedgerTaskSource keeps tasks in the state
ledger's tasks.json.
"""

import logging
from typing import Protocol

from devloop.models import Task, TaskStatus
from devloop.prompts import build_fix_description
from devloop.state import StateLedger

logger = logging.getLogger(__name__)

PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}


class TaskSource(Protocol):
    """What the workflow requires from a task store."""

    async def fetch_next_pending(self) -> Task | None: ...

    async def set_status(self, task_id: str, status: TaskStatus) -> None: ...

    async def counts(self) -> tuple[int, int]: ...

    async def create_fix_task(
        self, original_id: str, error_description: str, test_output: str
    ) -> Task | None: ...


class LedgerTaskSource:
    """Task source stored in the ledger's tasks.json.

    Fix tasks are created with high priority so they run before their parent
    is retried. Each fix request increments the parent's retry count; once it
    exceeds max_retries the parent is blocked and no fix task is created.

    Attributes:
        ledger: Ledger holding the task list
        max_retries: Fix attempts allowed per task
    """

    def __init__(self, ledger: StateLedger, max_retries: int = 3) -> None:
        self.ledger = ledger
        self.max_retries = max_retries

    async def fetch_next_pending(self) -> Task | None:
        pending = [t for t in self.ledger.get_tasks() if t.status == "pending"]
        if not pending:
            return None
        # sorted() is stable, so equal priorities keep file order
        pending = sorted(pending, key=lambda t: PRIORITY_ORDER.get(t.priority, 2))
        return pending[0]

    async def set_status(self, task_id: str, status: TaskStatus) -> None:
        if self.ledger.update_task(task_id, status=status) is None:
            logger.warning(f"Cannot set status of unknown task {task_id}")

    async def counts(self) -> tuple[int, int]:
        """Return (total, done) task counts."""
        tasks = self.ledger.get_tasks()
        return len(tasks), sum(1 for t in tasks if t.status == "done")

    async def add_task(
        self,
        title: str,
        description: str,
        priority: str = "medium",
        details: str | None = None,
        task_type: str | None = None,
    ) -> Task:
        tasks = self.ledger.get_tasks()
        task = Task(
            id=self._next_id(tasks),
            title=title,
            description=description,
            priority=priority,
            details=details,
            task_type=task_type,
        )
        tasks.append(task)
        self.ledger.save_tasks(tasks)
        return task

    async def create_fix_task(
        self, original_id: str, error_description: str, test_output: str
    ) -> Task | None:
        """Record a failed attempt and queue a fix task for it.

        Args:
            original_id: Task whose attempt failed
            error_description: Composite failure description
            test_output: Raw test output

        Returns:
            The new fix task, or None when the original exceeded max_retries
            and has been blocked
        """
        tasks = self.ledger.get_tasks()
        original = next((t for t in tasks if t.id == original_id), None)
        if original is None:
            logger.warning(f"Cannot create fix task for unknown task {original_id}")
            return None

        original.retry_count += 1
        attempt = original.retry_count
        if attempt > self.max_retries:
            original.status = "blocked"
            self.ledger.save_tasks(tasks)
            logger.warning(
                f"Task {original_id} exceeded {self.max_retries} fix attempts, blocked"
            )
            return None

        fix = Task(
            id=f"{original_id}-fix-{attempt}",
            title=f"Fix: {original.title} (attempt {attempt})",
            description=build_fix_description(
                original, attempt, self.max_retries, error_description, test_output
            ),
            priority="high",
            details=original.details,
            parent_id=original_id,
        )
        tasks.append(fix)
        self.ledger.save_tasks(tasks)
        logger.info(f"Created fix task {fix.id} for {original_id}")
        return fix

    @staticmethod
    def _next_id(tasks: list[Task]) -> str:
        numeric = [int(t.id) for t in tasks if t.id.isdigit()]
        return str(max(numeric, default=0) + 1)
