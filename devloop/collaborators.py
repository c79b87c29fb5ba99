"""Test runner, log analyzer and hook collaborators.

The workflow talks to these through narrow contracts: ``run()`` for tests and
``analyze()`` for logs. The concrete implementations here run a shell command
and scan log files; anything with the same methods can be injected instead.
"""

import asyncio
import logging
import os
import re
import signal
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from devloop.models import LogAnalysis, TestRunResult

logger = logging.getLogger(__name__)

OUTPUT_LIMIT_CHARS = 20000


class TestRunner(Protocol):
    async def run(
        self, command: str, timeout: float, artifacts_dir: Path
    ) -> TestRunResult: ...


class LogAnalyzer(Protocol):
    async def analyze(self, sources: list[Path]) -> LogAnalysis: ...


@dataclass
class CommandResult:
    command: str
    exit_code: int | None
    output: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


async def run_command(command: str, cwd: Path, timeout: float) -> CommandResult:
    """Run a shell command, killing it if it outlives the timeout.

    stdout and stderr are merged. The command runs in its own process group
    so a timeout also kills anything the shell started.
    """
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        start_new_session=True,
    )
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        stdout, _ = await process.communicate()
        return CommandResult(
            command=command,
            exit_code=process.returncode,
            output=stdout.decode("utf-8", errors="replace")[-OUTPUT_LIMIT_CHARS:]
            + f"\n[timed out after {timeout:.0f}s]",
            timed_out=True,
        )
    return CommandResult(
        command=command,
        exit_code=process.returncode,
        output=stdout.decode("utf-8", errors="replace")[-OUTPUT_LIMIT_CHARS:],
    )


class CommandTestRunner:
    """Runs the configured test command in the workspace.

    The combined output is also written to the artifacts directory.
    """

    __test__ = False

    def __init__(self, workspace: Path) -> None:
        self.workspace = workspace

    async def run(self, command: str, timeout: float, artifacts_dir: Path) -> TestRunResult:
        started = time.monotonic()
        try:
            result = await run_command(command, self.workspace, timeout)
        except OSError as e:
            return TestRunResult(success=False, output=f"Failed to run tests: {e}")

        artifacts: list[str] = []
        try:
            artifacts_dir.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
            log_path = artifacts_dir / f"test-output-{stamp}.log"
            log_path.write_text(result.output)
            artifacts.append(str(log_path))
        except OSError as e:
            logger.warning(f"Could not write test artifacts: {e}")

        return TestRunResult(
            success=result.ok,
            output=result.output,
            exit_code=result.exit_code,
            duration_seconds=time.monotonic() - started,
            artifacts=artifacts,
        )


class PatternLogAnalyzer:
    """Scans log files for error and warning lines.

    Only lines appended since the previous analyze() call are considered, so
    errors from earlier iterations are not reported again.
    """

    ERROR_PATTERN = re.compile(r"\b(ERROR|FATAL|CRITICAL|Traceback|Exception)\b")
    WARNING_PATTERN = re.compile(r"\b(WARN|WARNING)\b")

    def __init__(self) -> None:
        self._offsets: dict[Path, int] = {}

    async def analyze(self, sources: list[Path]) -> LogAnalysis:
        errors: list[str] = []
        warnings: list[str] = []
        for source in sources:
            for line in self._new_lines(source):
                if self.ERROR_PATTERN.search(line):
                    errors.append(f"{source.name}: {line.strip()}")
                elif self.WARNING_PATTERN.search(line):
                    warnings.append(f"{source.name}: {line.strip()}")

        summary = f"{len(errors)} error(s), {len(warnings)} warning(s) in {len(sources)} log(s)"
        return LogAnalysis(errors=errors, warnings=warnings, summary=summary)

    def _new_lines(self, source: Path) -> list[str]:
        if not source.exists():
            return []
        size = source.stat().st_size
        offset = self._offsets.get(source, 0)
        if size < offset:
            # Rotated or truncated
            offset = 0
        with open(source, "rb") as f:
            f.seek(offset)
            text = f.read().decode("utf-8", errors="replace")
        self._offsets[source] = size
        return text.splitlines()


async def run_hooks(
    commands: list[str], cwd: Path, timeout: float, stage: str
) -> list[CommandResult]:
    """Run hook commands in order. Failures are logged, never raised."""
    results = []
    for command in commands:
        try:
            result = await run_command(command, cwd, timeout)
        except OSError as e:
            logger.warning(f"{stage} hook '{command}' could not start: {e}")
            continue
        if not result.ok:
            logger.warning(
                f"{stage} hook '{command}' failed (exit {result.exit_code}): "
                f"{result.output[-500:].strip()}"
            )
        results.append(result)
    return results
