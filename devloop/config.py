"""Configuration for devloop.

Provides typed configuration structs with sensible defaults and environment
variable overrides. The top-level DevloopConfig is validated once at the CLI
boundary; each component receives only the sub-struct it needs.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from devloop.errors import ConfigError
from devloop.loop_detector import LoopDetectorConfig

OUTPUT_FORMATS = ("json", "text", "stream-json")


@dataclass
class TimeoutConfig:
    """Adaptive deadline settings for one agent invocation (seconds).

    Attributes:
        initial_timeout: Deadline armed when the process starts
        max_timeout: Hard ceiling the deadline can be extended to
        extension_interval: How often the supervisor considers an extension
        extension_amount: How far one extension pushes the deadline
        warning_threshold: Remaining time at which the warning fires
        heartbeat_interval: How often the heartbeat probe is sampled
        kill_grace: Delay between SIGTERM and SIGKILL
    """

    initial_timeout: float = 120.0
    max_timeout: float = 1800.0
    extension_interval: float = 30.0
    extension_amount: float = 120.0
    warning_threshold: float = 30.0
    heartbeat_interval: float | None = 10.0
    kill_grace: float = 5.0


@dataclass
class AgentConfig:
    """Settings for spawning the external agent process."""

    binary: str = "agent"
    model: str = "auto"
    output_format: str = "json"
    workspace_path: Path = field(default_factory=Path.cwd)
    ipc_socket: str | None = None
    debug: bool = False
    progress_every_tokens: int = 100
    extraction_retries: int = 2
    rate_limit_attempts: int = 3
    rate_limit_base_delay: float = 1.0
    provider: str = "agent"


@dataclass
class SessionConfig:
    """Session continuity settings."""

    enabled: bool = True
    max_session_age_seconds: float = 3600.0
    max_history_items: int = 50
    history_window: int = 5


@dataclass
class HooksConfig:
    """Shell commands run around the test step (best-effort)."""

    post_apply: list[str] = field(default_factory=list)
    pre_test: list[str] = field(default_factory=list)
    timeout_seconds: float = 120.0


@dataclass
class TestingConfig:
    """Test runner and log analyzer inputs."""

    __test__ = False

    command: str = "pytest -q"
    timeout_seconds: float = 300.0
    artifacts_dir: Path = field(default_factory=lambda: Path(".devloop/artifacts"))
    log_sources: list[Path] = field(default_factory=list)


@dataclass
class WorkflowConfig:
    """Iteration-level settings for the state machine."""

    require_approval: bool = False
    max_fix_retries: int = 3
    max_iterations: int = 100
    max_log_errors: int = 10


def _split_commands(value: str) -> list[str]:
    return [part.strip() for part in value.split(";") if part.strip()]


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class DevloopConfig:
    """Configuration for devloop execution.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    hooks: HooksConfig = field(default_factory=HooksConfig)
    testing: TestingConfig = field(default_factory=TestingConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    loop: LoopDetectorConfig = field(default_factory=LoopDetectorConfig)

    # State persistence
    state_dir: Path = field(default_factory=lambda: Path(".devloop"))

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    otlp_enabled: bool = False
    service_name: str = "devloop"

    @classmethod
    def from_env(cls) -> "DevloopConfig":
        """Load config with environment variable overrides.

        Environment variables:
            DEVLOOP_STATE_DIR: State directory (default: .devloop)
            DEVLOOP_WORKSPACE: Workspace the agent edits (default: cwd)
            DEVLOOP_AGENT_BINARY: Agent executable (default: agent)
            DEVLOOP_MODEL: Model identifier (default: auto)
            DEVLOOP_OUTPUT_FORMAT: json, text or stream-json (default: json)
            DEVLOOP_IPC_SOCKET: IPC endpoint passed to the agent
            DEVLOOP_DEBUG: Enable agent debug output
            DEVLOOP_INITIAL_TIMEOUT: Initial deadline seconds (default: 120)
            DEVLOOP_MAX_TIMEOUT: Deadline ceiling seconds (default: 1800)
            DEVLOOP_TEST_COMMAND: Test command (default: pytest -q)
            DEVLOOP_TEST_TIMEOUT: Test timeout seconds (default: 300)
            DEVLOOP_LOG_SOURCES: ';'-separated log files to analyze
            DEVLOOP_POST_APPLY_HOOKS: ';'-separated hook commands
            DEVLOOP_PRE_TEST_HOOKS: ';'-separated hook commands
            DEVLOOP_REQUIRE_APPROVAL: Ask before applying changes
            DEVLOOP_MAX_ITERATIONS: Iteration cap for ``run`` (default: 100)
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
            OTLP_ENABLED: Export traces and metrics over OTLP (default: false)
        """
        state_dir = Path(os.getenv("DEVLOOP_STATE_DIR", ".devloop"))
        workspace = Path(os.getenv("DEVLOOP_WORKSPACE", str(Path.cwd())))

        return cls(
            timeouts=TimeoutConfig(
                initial_timeout=float(os.getenv("DEVLOOP_INITIAL_TIMEOUT", "120")),
                max_timeout=float(os.getenv("DEVLOOP_MAX_TIMEOUT", "1800")),
            ),
            agent=AgentConfig(
                binary=os.getenv("DEVLOOP_AGENT_BINARY", "agent"),
                model=os.getenv("DEVLOOP_MODEL", "auto"),
                output_format=os.getenv("DEVLOOP_OUTPUT_FORMAT", "json"),
                workspace_path=workspace,
                ipc_socket=os.getenv("DEVLOOP_IPC_SOCKET"),
                debug=_env_bool("DEVLOOP_DEBUG", False),
            ),
            hooks=HooksConfig(
                post_apply=_split_commands(os.getenv("DEVLOOP_POST_APPLY_HOOKS", "")),
                pre_test=_split_commands(os.getenv("DEVLOOP_PRE_TEST_HOOKS", "")),
            ),
            testing=TestingConfig(
                command=os.getenv("DEVLOOP_TEST_COMMAND", "pytest -q"),
                timeout_seconds=float(os.getenv("DEVLOOP_TEST_TIMEOUT", "300")),
                artifacts_dir=state_dir / "artifacts",
                log_sources=[
                    Path(p) for p in _split_commands(os.getenv("DEVLOOP_LOG_SOURCES", ""))
                ],
            ),
            workflow=WorkflowConfig(
                require_approval=_env_bool("DEVLOOP_REQUIRE_APPROVAL", False),
                max_iterations=int(os.getenv("DEVLOOP_MAX_ITERATIONS", "100")),
            ),
            state_dir=state_dir,
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
            otlp_enabled=_env_bool("OTLP_ENABLED", False),
        )

    def validate(self) -> "DevloopConfig":
        """Check cross-field consistency once, at the boundary.

        Returns:
            self, so calls can be chained after from_env()

        Raises:
            ConfigError: If any value is out of range or inconsistent
        """
        t = self.timeouts
        if t.initial_timeout <= 0 or t.max_timeout <= 0:
            raise ConfigError("Timeouts must be positive")
        if t.initial_timeout > t.max_timeout:
            raise ConfigError(
                f"initial_timeout ({t.initial_timeout}s) exceeds "
                f"max_timeout ({t.max_timeout}s)"
            )
        if t.extension_interval <= 0 or t.extension_amount <= 0:
            raise ConfigError("Extension interval and amount must be positive")
        if t.heartbeat_interval is not None and t.heartbeat_interval <= 0:
            raise ConfigError("heartbeat_interval must be positive when set")
        if t.kill_grace < 0:
            raise ConfigError("kill_grace cannot be negative")
        if self.agent.output_format not in OUTPUT_FORMATS:
            raise ConfigError(
                f"Unknown output format {self.agent.output_format!r}, "
                f"expected one of {', '.join(OUTPUT_FORMATS)}"
            )
        if self.agent.extraction_retries < 0 or self.agent.rate_limit_attempts < 1:
            raise ConfigError("Retry budgets must be non-negative")
        if self.workflow.max_fix_retries < 0 or self.workflow.max_iterations < 1:
            raise ConfigError("Workflow retry and iteration limits must be positive")
        if self.sessions.max_history_items < 1 or self.sessions.history_window < 0:
            raise ConfigError("Session history limits must be positive")
        return self
