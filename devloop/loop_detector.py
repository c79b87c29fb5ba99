"""Loop detection for preventing runaway task retries.

Tracks consecutive extraction failures and timeouts per task and decides when
a task should be blocked instead of going back to pending. Counts live on the
persisted WorkflowState so they survive restarts.
"""

from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from devloop.models import WorkflowState

MAX_STORED_ERRORS = 10


@dataclass
class LoopDetectorConfig:
    """Configuration for loop detection thresholds.

    Attributes:
        max_extraction_failures: Consecutive unusable responses before blocking
        max_timeout_attempts: Consecutive agent timeouts before blocking
        error_similarity_threshold: Similarity ratio (0-1) to consider errors "the same"
    """

    max_extraction_failures: int = 5
    max_timeout_attempts: int = 3
    error_similarity_threshold: float = 0.8


class LoopDetector:
    """Detects tasks that keep failing the same way.

    A success for a task resets its counters, so only consecutive failures
    count toward blocking.
    """

    def __init__(self, config: LoopDetectorConfig, state: "WorkflowState"):
        """Initialize detector with config and state.

        Args:
            config: Thresholds for loop detection
            state: Workflow state holding the persistent counters
        """
        self.config = config
        self.state = state

    def record_extraction_failure(self, task_id: str, error: str) -> None:
        """Record a response from which no edit-set could be recovered."""
        counts = self.state.extraction_failures
        counts[task_id] = counts.get(task_id, 0) + 1
        self._remember(task_id, error)

    def record_timeout(self, task_id: str, error: str) -> None:
        """Record an agent invocation killed after its deadline."""
        counts = self.state.timeout_failures
        counts[task_id] = counts.get(task_id, 0) + 1
        self._remember(task_id, error)

    def record_success(self, task_id: str) -> None:
        """Clear failure tracking after a usable response."""
        self.state.extraction_failures.pop(task_id, None)
        self.state.timeout_failures.pop(task_id, None)
        self.state.failure_errors.pop(task_id, None)

    def should_block(self, task_id: str) -> tuple[bool, str]:
        """Check if we should stop retrying this task.

        Args:
            task_id: ID of the task to check

        Returns:
            Tuple of (should_block, reason_message)
        """
        extraction = self.state.extraction_failures.get(task_id, 0)
        timeouts = self.state.timeout_failures.get(task_id, 0)

        if extraction >= self.config.max_extraction_failures:
            kind, count = "extraction failures", extraction
        elif timeouts >= self.config.max_timeout_attempts:
            kind, count = "timeouts", timeouts
        else:
            return False, ""

        similarity = self._compute_error_similarity(self.state.failure_errors.get(task_id, []))
        pattern = "repeating" if similarity >= self.config.error_similarity_threshold else "varying"
        return True, (
            f"Task {task_id} hit {count} consecutive {kind}. "
            f"Error similarity: {similarity:.0%} ({pattern}). "
            "Blocking to prevent resource waste."
        )

    def _remember(self, task_id: str, error: str) -> None:
        errors = self.state.failure_errors.setdefault(task_id, [])
        errors.append(error[:500])
        del errors[:-MAX_STORED_ERRORS]

    def _compute_error_similarity(self, errors: list[str]) -> float:
        """Compute average similarity between consecutive errors.

        Args:
            errors: List of error messages to compare

        Returns:
            Average similarity ratio (0.0-1.0), or 0.0 if < 2 errors
        """
        if len(errors) < 2:
            return 0.0

        similarities = []
        for i in range(1, len(errors)):
            ratio = SequenceMatcher(None, errors[i - 1], errors[i]).ratio()
            similarities.append(ratio)

        return sum(similarities) / len(similarities)
