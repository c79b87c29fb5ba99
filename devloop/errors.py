"""Shared error types for the devloop package.

The taxonomy mirrors the failure categories the loop reacts to. Errors that
only affect one file or one hook are recorded and logged by the caller;
errors that make an agent response untrustworthy are wrapped into
RetryableError / HaltError values before they reach the workflow.
"""


class DevloopError(Exception):
    """Base exception for devloop errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class ConfigError(DevloopError):
    """Configuration is inconsistent or invalid."""

    pass


class LockError(DevloopError):
    """Another devloop run already holds the state directory."""

    pass


class ProcessSpawnError(DevloopError):
    """The agent binary is missing or could not be started."""

    pass


class RateLimitError(DevloopError):
    """The provider kept answering with rate-limit errors."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class ApplyError(DevloopError):
    """A single file edit could not be applied."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class SyntaxValidationError(DevloopError):
    """A written file failed its post-write syntax check."""

    def __init__(self, path: str, details: str) -> None:
        super().__init__(f"Syntax check failed for {path}: {details}")
        self.path = path
        self.details = details


class ExtractionError(DevloopError):
    """No strategy recovered a valid edit-set from the agent response.

    Carries enough context to diagnose the failure without re-running the
    agent: the retry count, the strategies that were attempted and a
    truncated sample of the last response.

    Attributes:
        task_id: Task the response belonged to
        task_title: Title of that task
        retry_count: Number of strict reprompts already spent
        response_sample: First 1000 characters of the response
        strategies_tried: Extraction strategies attempted, in order
    """

    def __init__(
        self,
        task_id: str,
        task_title: str,
        retry_count: int,
        response_sample: str,
        strategies_tried: list[str] | None = None,
        errors: list[str] | None = None,
    ) -> None:
        self.task_id = task_id
        self.task_title = task_title
        self.retry_count = retry_count
        self.response_sample = response_sample[:1000]
        self.strategies_tried = list(strategies_tried or [])
        self.errors = list(errors or [])
        super().__init__(self._render())

    def _render(self) -> str:
        lines = [
            f"Failed to extract an edit-set after {self.retry_count} retries.",
            "",
            "=== TASK ===",
            f"Task ID: {self.task_id}",
            f"Task Title: {self.task_title}",
            "",
            "=== STRATEGIES TRIED ===",
            ", ".join(self.strategies_tried) or "none",
        ]
        if self.errors:
            lines.extend(["", "=== VALIDATION ERRORS ===", *self.errors[:10]])
        lines.extend(
            [
                "",
                "=== RESPONSE SAMPLE (first 500 chars) ===",
                self.response_sample[:500],
            ]
        )
        return "\n".join(lines)
