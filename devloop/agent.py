"""Agent process orchestration.

Runs the external coding agent as a headless subprocess: builds its arguments,
feeds the prompt over stdin, streams stdout while a TimeoutSupervisor watches
the clock, and turns the harvested output into an edit-set via the extractor.

Process failures, timeouts and unusable responses are returned as
RetryableError / HaltError values from generate(); only programming errors
propagate as exceptions.
"""

import asyncio
import json
import logging
import os
import shutil
import time
import uuid
from collections.abc import AsyncIterator
from datetime import datetime

from devloop import telemetry
from devloop.config import AgentConfig, TimeoutConfig
from devloop.errors import ExtractionError, ProcessSpawnError, RateLimitError
from devloop.extractor import extract, find_json_objects
from devloop.models import (
    AgentInvocation,
    AgentResult,
    ExtractionResult,
    GenerationOutcome,
    HaltError,
    HistoryEntry,
    Ok,
    ProgressEvent,
    RetryableError,
    Task,
)
from devloop.process_pool import ProcessPool
from devloop.prompts import build_strict_json_prompt
from devloop.sessions import SessionStore
from devloop.supervisor import TimeoutSupervisor

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 4096
RESPONSE_SAMPLE_CHARS = 1000
RESUME_FAILURE_MARKERS = ("session", "resume")
RATE_LIMIT_MARKERS = ("429", "rate_limit", "rate limit")
STREAM_TEXT_TYPES = ("partial", "chunk")


def estimate_tokens(text_or_bytes: str | bytes | int) -> int:
    """Rough token estimate: one token per four bytes."""
    if isinstance(text_or_bytes, int):
        return text_or_bytes // 4
    return len(text_or_bytes) // 4


class ProgressChannel:
    """Fire-and-forget progress stream for one or more invocations.

    Producers call publish(); a consumer iterates with ``async for``. Events
    are dropped rather than blocking a producer when the buffer is full.
    Iteration ends after close().
    """

    def __init__(self, maxsize: int = 100) -> None:
        self._queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            pass

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Make room for the sentinel; the consumer is behind anyway
            self._queue.get_nowait()
            self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event


class _RateLimited(Exception):
    def __init__(self, result: AgentResult) -> None:
        super().__init__(result.stderr[:200] or result.stdout[:200])
        self.result = result


class AgentRunner:
    """Spawns and harvests the external agent process.

    Usage:
        runner = AgentRunner(config.agent, config.timeouts, sessions=store)
        outcome = await runner.generate(task, prompt, session_id=sid)
        await runner.shutdown()

    Attributes:
        config: Agent process settings
        timeouts: Deadline settings applied to every invocation
        sessions: Optional session store for resume tokens and history
        pool: Registry of live processes, terminated by shutdown()
    """

    def __init__(
        self,
        config: AgentConfig,
        timeouts: TimeoutConfig,
        sessions: SessionStore | None = None,
        pool: ProcessPool | None = None,
    ) -> None:
        self.config = config
        self.timeouts = timeouts
        self.sessions = sessions
        self.pool = pool or ProcessPool(kill_grace=timeouts.kill_grace)

    def new_invocation(
        self, task: Task, prompt: str, session_id: str | None = None
    ) -> AgentInvocation:
        return AgentInvocation(
            request_id=f"req-{uuid.uuid4().hex[:12]}",
            task_id=task.id,
            prompt=prompt,
            model=self.config.model,
            timeout_budget_seconds=self.timeouts.max_timeout,
            session_id=session_id,
        )

    def resolve_binary(self) -> str:
        """Locate the agent executable.

        Raises:
            ProcessSpawnError: If the binary is not found
        """
        binary = self.config.binary
        if os.path.sep in binary:
            if os.path.isfile(binary) and os.access(binary, os.X_OK):
                return binary
            raise ProcessSpawnError(f"Agent executable not found at {binary}")
        found = shutil.which(binary)
        if found is None:
            raise ProcessSpawnError(f"Agent executable '{binary}' not found on PATH")
        return found

    def build_args(self, resume_token: str | None = None) -> list[str]:
        args = [
            self.resolve_binary(),
            "--print",
            "--output-format",
            self.config.output_format,
            "--workspace",
            str(self.config.workspace_path),
            "--model",
            self.config.model,
        ]
        if resume_token:
            args.extend(["--resume", resume_token])
        return args

    def build_env(self, invocation: AgentInvocation) -> dict[str, str]:
        env = dict(os.environ)
        if self.config.ipc_socket:
            env["DEVLOOP_IPC_SOCKET"] = self.config.ipc_socket
        if invocation.session_id:
            env["DEVLOOP_SESSION_ID"] = invocation.session_id
        env["DEVLOOP_REQUEST_ID"] = invocation.request_id
        if self.config.debug:
            env["DEVLOOP_DEBUG"] = "true"
        return env

    async def invoke(
        self,
        invocation: AgentInvocation,
        progress: ProgressChannel | None = None,
    ) -> AgentResult:
        """Run the agent once and harvest its output.

        Args:
            invocation: Request to execute
            progress: Optional channel receiving coarse progress events

        Returns:
            AgentResult. ``timeout`` is set when the process was killed after
            its deadline; ``success`` reflects whether stdout is non-empty.

        Raises:
            ProcessSpawnError: If the agent binary cannot be started
        """
        resume_token = None
        prompt = invocation.prompt
        if self.sessions is not None and invocation.session_id:
            resume_token = self.sessions.get_resume_token(invocation.session_id)
            session = self.sessions.get(invocation.session_id)
            if session is not None and resume_token is None:
                prompt = self.sessions.build_prompt_with_history(session, prompt)

        args = self.build_args(resume_token)
        logger.debug(f"Spawning agent {invocation.request_id}: {' '.join(args[1:])}")

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.build_env(invocation),
                cwd=str(self.config.workspace_path),
                start_new_session=True,
            )
        except OSError as e:
            raise ProcessSpawnError(f"Failed to start agent process: {e}") from e

        self.pool.register(process)
        started = time.monotonic()
        stdout_buf = bytearray()
        stderr_buf = bytearray()
        counters = {"bytes": 0, "stream_chars": 0, "since_probe": 0, "next_report": 0}
        report_every = max(1, self.config.progress_every_tokens)
        timed_out = asyncio.Event()

        def tokens_so_far() -> int:
            if self.config.output_format == "stream-json" and counters["stream_chars"]:
                return counters["stream_chars"] // 4
            return estimate_tokens(counters["bytes"])

        def heartbeat() -> bool:
            seen = counters["since_probe"] > 0
            counters["since_probe"] = 0
            return seen

        async def feed_stdin() -> None:
            assert process.stdin is not None
            try:
                process.stdin.write(prompt.encode())
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug(f"Agent {invocation.request_id} closed stdin early")
            finally:
                process.stdin.close()

        async def read_stdout() -> None:
            assert process.stdout is not None
            pending_line = b""
            while True:
                chunk = await process.stdout.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                stdout_buf.extend(chunk)
                counters["bytes"] += len(chunk)
                counters["since_probe"] += len(chunk)
                if self.config.output_format == "stream-json":
                    pending_line += chunk
                    *lines, pending_line = pending_line.split(b"\n")
                    for line in lines:
                        counters["stream_chars"] += _stream_text_length(line)
                tokens = tokens_so_far()
                if progress is not None and tokens >= counters["next_report"]:
                    progress.publish(
                        ProgressEvent(
                            request_id=invocation.request_id,
                            tokens_estimate=tokens,
                            elapsed_seconds=time.monotonic() - started,
                        )
                    )
                    counters["next_report"] = (tokens // report_every + 1) * report_every

        async def read_stderr() -> None:
            assert process.stderr is not None
            while True:
                chunk = await process.stderr.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                stderr_buf.extend(chunk)

        supervisor = TimeoutSupervisor(
            self.timeouts,
            on_timeout=timed_out.set,
            on_warning=lambda remaining: logger.info(
                f"Agent {invocation.request_id} has {remaining:.0f}s left"
            ),
            heartbeat=heartbeat,
        )
        supervisor.start()

        io_task = asyncio.ensure_future(
            asyncio.gather(feed_stdin(), read_stdout(), read_stderr(), process.wait())
        )
        timeout_task = asyncio.ensure_future(timed_out.wait())
        try:
            # max_timeout is a hard backstop independent of the supervisor
            done, _ = await asyncio.wait(
                {io_task, timeout_task},
                timeout=self.timeouts.max_timeout + self.timeouts.kill_grace,
                return_when=asyncio.FIRST_COMPLETED,
            )
            killed = io_task not in done
            if killed:
                logger.warning(
                    f"Agent {invocation.request_id} exceeded its deadline, terminating"
                )
                await self.pool.terminate(process)
                io_task.cancel()
                await asyncio.gather(io_task, return_exceptions=True)
            else:
                io_task.result()
        finally:
            supervisor.stop()
            timeout_task.cancel()
            if process.returncode is None:
                await self.pool.terminate(process)
            self.pool.unregister(process)
            if progress is not None:
                progress.publish(
                    ProgressEvent(
                        request_id=invocation.request_id,
                        tokens_estimate=tokens_so_far(),
                        elapsed_seconds=time.monotonic() - started,
                        done=True,
                    )
                )

        duration = time.monotonic() - started
        stdout = stdout_buf.decode("utf-8", errors="replace")
        stderr = stderr_buf.decode("utf-8", errors="replace")

        if killed:
            result = AgentResult(
                request_id=invocation.request_id,
                success=False,
                exit_code=process.returncode,
                stdout=stdout,
                stderr=stderr,
                duration_seconds=duration,
                tokens_estimate=estimate_tokens(stdout),
                timeout=True,
                error=f"Agent timed out after {duration:.0f}s",
            )
            self._record(invocation, result)
            return result

        if self.pool.closed and (process.returncode or 0) < 0:
            result = AgentResult(
                request_id=invocation.request_id,
                success=False,
                exit_code=process.returncode,
                stdout=stdout,
                stderr=stderr,
                duration_seconds=duration,
                tokens_estimate=estimate_tokens(stdout),
                error="Agent terminated by shutdown",
            )
        else:
            result = self._harvest(invocation, process.returncode, stdout, stderr, duration)
        self._record(invocation, result)
        return result

    def _harvest(
        self,
        invocation: AgentInvocation,
        exit_code: int | None,
        stdout: str,
        stderr: str,
        duration: float,
    ) -> AgentResult:
        response, token = parse_agent_output(stdout, self.config.output_format)
        success = bool(stdout.strip())

        if exit_code != 0:
            if success:
                logger.warning(
                    f"Agent {invocation.request_id} exited with {exit_code} "
                    "but produced output, treating as a candidate success"
                )
            lowered = stderr.lower()
            if (
                self.sessions is not None
                and invocation.session_id
                and any(marker in lowered for marker in RESUME_FAILURE_MARKERS)
            ):
                logger.warning(
                    f"Resume failed for session {invocation.session_id}, starting fresh next time"
                )
                self.sessions.reset_provider_session_id(invocation.session_id)
                token = None

        if success and token and self.sessions is not None and invocation.session_id:
            self.sessions.set_provider_session_id(invocation.session_id, token)

        return AgentResult(
            request_id=invocation.request_id,
            success=success,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            response=response,
            duration_seconds=duration,
            tokens_estimate=estimate_tokens(stdout),
            provider_session_id=token,
            error=None if success else (stderr.strip()[:500] or f"Empty output (exit {exit_code})"),
        )

    def _record(self, invocation: AgentInvocation, result: AgentResult) -> None:
        outcome = "timeout" if result.timeout else ("success" if result.success else "failure")
        telemetry.record_invocation(outcome, result.tokens_estimate, result.duration_seconds)

        if self.sessions is not None and invocation.session_id:
            self.sessions.add_history(
                invocation.session_id,
                HistoryEntry(
                    request_id=invocation.request_id,
                    prompt=invocation.prompt,
                    success=result.success,
                    timestamp=datetime.now().isoformat(),
                    response=None if result.response is None else str(result.response)[:500],
                    error=result.error,
                    tokens=result.tokens_estimate,
                    duration_seconds=result.duration_seconds,
                    model=invocation.model,
                ),
            )

    async def invoke_with_backoff(
        self,
        invocation: AgentInvocation,
        progress: ProgressChannel | None = None,
    ) -> AgentResult:
        """Invoke, retrying rate-limited attempts with exponential backoff.

        Raises:
            RateLimitError: If every attempt was rate limited
            ProcessSpawnError: If the agent binary cannot be started
        """
        attempts = self.config.rate_limit_attempts
        for attempt in range(attempts):
            result = await self.invoke(invocation, progress)
            if not is_rate_limited(result):
                return result
            if attempt < attempts - 1:
                delay = self.config.rate_limit_base_delay * (2**attempt)
                logger.warning(
                    f"Agent rate limited (attempt {attempt + 1}/{attempts}), "
                    f"waiting {delay:.1f}s"
                )
                await asyncio.sleep(delay)
        raise RateLimitError(
            f"Agent still rate limited after {attempts} attempts", attempts=attempts
        )

    async def generate(
        self,
        task: Task,
        prompt: str,
        session_id: str | None = None,
        progress: ProgressChannel | None = None,
    ) -> GenerationOutcome:
        """Produce a validated edit-set for a task.

        An unusable response is retried with a strict JSON-only prompt up to
        ``extraction_retries`` times before the task is halted.

        Args:
            task: Task being worked on
            prompt: Full task prompt
            session_id: Session to resume and record history in
            progress: Optional channel for progress events

        Returns:
            Ok with the edit-set, RetryableError for timeouts and empty
            output, or HaltError for spawn, rate-limit and extraction failures
        """
        retries = self.config.extraction_retries
        invocation = self.new_invocation(task, prompt, session_id)
        extraction: ExtractionResult | None = None
        result: AgentResult | None = None

        for attempt in range(retries + 1):
            if attempt > 0:
                logger.info(f"Retry {attempt}/{retries} with strict JSON-only prompt")
                invocation = self.new_invocation(
                    task, build_strict_json_prompt(task), session_id
                )
            try:
                result = await self.invoke_with_backoff(invocation, progress)
            except ProcessSpawnError as e:
                return HaltError(category="spawn", message=str(e), error=e)
            except RateLimitError as e:
                return HaltError(category="rate-limit", message=str(e), error=e)

            if result.timeout:
                return RetryableError(
                    category="timeout", message=result.error or "Agent timed out", result=result
                )
            if not result.success:
                return RetryableError(
                    category="process",
                    message=result.error or "Agent produced no output",
                    result=result,
                )

            extraction = extract(result.response)
            if extraction.valid and extraction.edit_set is not None:
                for warning in extraction.warnings:
                    logger.debug(f"Extraction warning: {warning}")
                return Ok(
                    edit_set=extraction.edit_set,
                    result=result,
                    strategy_used=extraction.strategy_used,
                )

            telemetry.record_extraction_failure(extraction.strategies_tried)
            logger.warning(
                f"No edit-set in agent response for task {task.id} "
                f"(tried {', '.join(extraction.strategies_tried)})"
            )

        sample = result.stdout if result is not None else ""
        error = ExtractionError(
            task_id=task.id,
            task_title=task.title,
            retry_count=retries,
            response_sample=_sample(result.response if result else sample),
            strategies_tried=extraction.strategies_tried if extraction else [],
            errors=extraction.errors if extraction else [],
        )
        return HaltError(category="extraction", message=str(error), error=error, result=result)

    async def run_batch(
        self,
        invocations: list[AgentInvocation],
        progress: ProgressChannel | None = None,
    ) -> list[AgentResult | BaseException]:
        """Run independent invocations concurrently.

        One invocation failing does not cancel the others; its exception is
        returned in its slot.
        """
        return await asyncio.gather(
            *(self.invoke(inv, progress) for inv in invocations),
            return_exceptions=True,
        )

    async def shutdown(self) -> int:
        """Terminate every agent process still running."""
        return await self.pool.shutdown()


def is_rate_limited(result: AgentResult) -> bool:
    if result.exit_code == 0 or result.timeout:
        return False
    text = f"{result.stderr}\n{result.stdout[:2000]}".lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def parse_agent_output(stdout: str, output_format: str) -> tuple[object, str | None]:
    """Pull the response payload and resume token out of agent stdout.

    For ``json`` the last complete JSON object is used; for ``stream-json``
    the last ``result`` event. A ``{"type": "result"}`` envelope yields its
    ``result`` field as the response. Anything else falls back to the raw
    stdout.

    Returns:
        Tuple of (response, provider resume token or None)
    """
    if output_format == "text" or not stdout.strip():
        return stdout, None

    envelope: dict | None = None
    if output_format == "stream-json":
        for line in stdout.splitlines():
            event = _loads_line(line)
            if event is not None and event.get("type") == "result":
                envelope = event
    else:
        spans, _ = find_json_objects(stdout)
        for span in reversed(spans):
            try:
                parsed = json.loads(span)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                envelope = parsed
                break

    if envelope is None:
        return stdout, None

    token = envelope.get("session_id") or envelope.get("chatId") or envelope.get("chat_id")
    if envelope.get("type") == "result" and "result" in envelope:
        return envelope["result"], token
    return envelope, token


def _loads_line(line: str) -> dict | None:
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _stream_text_length(line: bytes) -> int:
    event = _loads_line(line.decode("utf-8", errors="replace"))
    if event is None or event.get("type") not in STREAM_TEXT_TYPES:
        return 0
    text = event.get("text") or event.get("content") or event.get("delta") or ""
    return len(text) if isinstance(text, str) else 0


def _sample(response: object) -> str:
    if isinstance(response, str):
        return response[:RESPONSE_SAMPLE_CHARS]
    try:
        return json.dumps(response)[:RESPONSE_SAMPLE_CHARS]
    except (TypeError, ValueError):
        return str(response)[:RESPONSE_SAMPLE_CHARS]
