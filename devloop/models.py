"""Data models for devloop.

Defines dataclasses for tasks, edit-sets, agent invocations and results,
sessions and the persisted workflow state. Models that are persisted are JSON
serializable via to_dict()/from_dict().
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Literal

TaskStatus = Literal["pending", "in-progress", "done", "blocked"]
Operation = Literal["create", "update", "delete", "patch"]

OPERATIONS: tuple[str, ...] = ("create", "update", "delete", "patch")

# Workflow states, in the order a successful iteration visits them.
WORKFLOW_STATUSES: tuple[str, ...] = (
    "idle",
    "fetching-task",
    "executing-ai",
    "applying-changes",
    "awaiting-approval",
    "running-post-apply-hooks",
    "running-pre-test-hooks",
    "running-tests",
    "analyzing-logs",
    "marking-done",
    "creating-fix-task",
)


@dataclass
class Task:
    """A unit of work owned by the task source.

    The workflow only ever changes ``status``; everything else belongs to
    whoever created the task.
    """

    id: str
    title: str
    description: str
    status: TaskStatus = "pending"
    priority: str = "medium"
    details: str | None = None
    task_type: str | None = None
    retry_count: int = 0
    parent_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["id"] = str(known["id"])
        return cls(**known)


@dataclass(frozen=True)
class Patch:
    """A search/replace pair applied to an existing file."""

    search: str
    replace: str


@dataclass(frozen=True)
class FileEdit:
    """One file operation in an edit-set.

    ``create`` and ``update`` carry ``content``; ``patch`` carries at least
    one Patch; ``delete`` carries neither.
    """

    path: str
    operation: Operation
    content: str | None = None
    patches: tuple[Patch, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"path": self.path, "operation": self.operation}
        if self.content is not None:
            data["content"] = self.content
        if self.patches:
            data["patches"] = [
                {"search": p.search, "replace": p.replace} for p in self.patches
            ]
        return data


@dataclass(frozen=True)
class EditSet:
    """Immutable set of file edits produced by one agent response."""

    files: tuple[FileEdit, ...]
    summary: str

    @property
    def is_empty(self) -> bool:
        return not self.files

    def to_dict(self) -> dict[str, Any]:
        return {"files": [f.to_dict() for f in self.files], "summary": self.summary}


@dataclass
class ExtractionResult:
    """Outcome of running the extractor over one agent response.

    ``strategy_used`` is ``"raw-fallback"`` when nothing structural worked and
    the raw text was wrapped for manual review; such a result is never
    ``valid``.
    """

    valid: bool
    edit_set: EditSet | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    strategy_used: str | None = None
    strategies_tried: list[str] = field(default_factory=list)

    @property
    def is_raw_fallback(self) -> bool:
        return self.strategy_used == "raw-fallback"


@dataclass
class AgentInvocation:
    """One request to the external agent. Discarded after the result is recorded."""

    request_id: str
    task_id: str
    prompt: str
    model: str
    timeout_budget_seconds: float
    started_at: datetime = field(default_factory=datetime.now)
    session_id: str | None = None


@dataclass
class AgentResult:
    """Raw outcome of one agent process run.

    ``success`` follows stdout: a non-empty stdout is a candidate success even
    when the exit code is non-zero. ``timeout`` is set only when the process
    was killed after its deadline.
    """

    request_id: str
    success: bool
    exit_code: int | None
    stdout: str
    stderr: str
    response: Any = None
    duration_seconds: float = 0.0
    tokens_estimate: int = 0
    timeout: bool = False
    provider_session_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ProgressEvent:
    """Coarse liveness signal emitted while an agent process streams output."""

    request_id: str
    tokens_estimate: int
    elapsed_seconds: float
    done: bool = False


@dataclass
class HistoryEntry:
    """One prior request/response pair kept in a session."""

    request_id: str
    prompt: str
    success: bool
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    response: str | None = None
    error: str | None = None
    tokens: int = 0
    duration_seconds: float = 0.0
    model: str | None = None


@dataclass
class SessionContext:
    """Logical work context a session is keyed on."""

    task_ids: list[str] = field(default_factory=list)
    prd_id: str | None = None
    phase_id: str | None = None
    set_id: str | None = None


@dataclass
class SessionStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_tokens: int = 0


@dataclass
class Session:
    """A resumable agent conversation bound to a work context."""

    session_id: str
    context: SessionContext
    created_at: str
    last_used_at: str
    provider_session_id: str | None = None
    history: list[HistoryEntry] = field(default_factory=list)
    stats: SessionStats = field(default_factory=SessionStats)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        return cls(
            session_id=data["session_id"],
            context=SessionContext(**data.get("context", {})),
            created_at=data["created_at"],
            last_used_at=data["last_used_at"],
            provider_session_id=data.get("provider_session_id"),
            history=[HistoryEntry(**h) for h in data.get("history", [])],
            stats=SessionStats(**data.get("stats", {})),
        )


@dataclass
class WorkflowState:
    """The single authoritative status record, persisted after every transition.

    Attributes:
        status: One of WORKFLOW_STATUSES
        current_task: Task being worked on, if any
        progress: completed_tasks / total_tasks
        total_tasks: Number of tasks known to the task source
        completed_tasks: Number of tasks marked done
        extraction_failures: Consecutive extraction failures per task id
        timeout_failures: Consecutive timeouts per task id
        failure_errors: Recent failure messages per task id
    """

    status: str = "idle"
    current_task: Task | None = None
    progress: float = 0.0
    total_tasks: int = 0
    completed_tasks: int = 0
    extraction_failures: dict[str, int] = field(default_factory=dict)
    timeout_failures: dict[str, int] = field(default_factory=dict)
    failure_errors: dict[str, list[str]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkflowState":
        data = dict(data)
        task = data.get("current_task")
        data["current_task"] = Task.from_dict(task) if task else None
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class RunResult:
    """Outcome of one WorkflowEngine.run_once() iteration."""

    completed: bool
    no_tasks: bool
    task_id: str | None = None
    error: str | None = None
    category: str | None = None


@dataclass
class TestRunResult:
    """What the test-runner collaborator reports."""

    __test__ = False

    success: bool
    output: str
    exit_code: int | None = None
    duration_seconds: float = 0.0
    artifacts: list[str] = field(default_factory=list)


@dataclass
class LogAnalysis:
    """What the log-analyzer collaborator reports."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    summary: str = ""


# Tagged result of a generation attempt. The workflow branches on the type
# instead of catching a distinguished exception subtype.


@dataclass
class Ok:
    edit_set: EditSet
    result: AgentResult
    strategy_used: str | None = None


@dataclass
class RetryableError:
    """The attempt failed but the task may be retried as-is.

    ``category`` is one of ``timeout``, ``spawn``, ``process`` or
    ``extraction``.
    """

    category: str
    message: str
    result: AgentResult | None = None


@dataclass
class HaltError:
    """The attempt failed in a way that must not be retried blindly."""

    category: str
    message: str
    error: Exception | None = None
    result: AgentResult | None = None


GenerationOutcome = Ok | RetryableError | HaltError
