"""Tests for the agent process orchestrator.

The agent binary is replaced by small Python scripts written to tmp_path, so
these tests spawn real child processes.
"""

import asyncio
import json
import os
import stat
import sys
import textwrap
from pathlib import Path

import pytest

from devloop.agent import (
    AgentRunner,
    ProgressChannel,
    estimate_tokens,
    is_rate_limited,
    parse_agent_output,
)
from devloop.config import AgentConfig, SessionConfig, TimeoutConfig
from devloop.errors import ExtractionError, ProcessSpawnError
from devloop.models import (
    AgentResult,
    HaltError,
    Ok,
    ProgressEvent,
    RetryableError,
    SessionContext,
    Task,
)
from devloop.sessions import SessionStore

EDIT_SET = {
    "files": [{"path": "pkg/mod.py", "operation": "create", "content": "x = 1\n"}],
    "summary": "add module",
}


def write_agent(tmp_path: Path, body: str) -> Path:
    """Write an executable fake agent script."""
    script = tmp_path / "fake-agent"
    script.write_text(
        f"#!{sys.executable}\nimport json, os, sys, time\n" + textwrap.dedent(body)
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


def make_runner(
    tmp_path: Path,
    script: Path,
    sessions: SessionStore | None = None,
    timeouts: TimeoutConfig | None = None,
    **agent_overrides,
) -> AgentRunner:
    config = AgentConfig(
        binary=str(script),
        workspace_path=tmp_path,
        rate_limit_base_delay=0.01,
        **agent_overrides,
    )
    timeouts = timeouts or TimeoutConfig(
        initial_timeout=20.0, max_timeout=30.0, heartbeat_interval=None, kill_grace=1.0
    )
    return AgentRunner(config, timeouts, sessions=sessions)


def make_task() -> Task:
    return Task(id="7", title="Add module", description="Create pkg/mod.py")


def envelope_agent(session_id: str = "chat-1") -> str:
    payload = {"type": "result", "result": json.dumps(EDIT_SET), "session_id": session_id}
    return f"""
    sys.stdin.read()
    print({json.dumps(json.dumps(payload))})
    """


class TestInvoke:
    """Tests for AgentRunner.invoke()."""

    @pytest.mark.asyncio
    async def test_successful_invocation(self, tmp_path: Path):
        """stdout is harvested and the result envelope unwrapped."""
        runner = make_runner(tmp_path, write_agent(tmp_path, envelope_agent()))
        invocation = runner.new_invocation(make_task(), "do it")

        result = await runner.invoke(invocation)

        assert result.success is True
        assert result.exit_code == 0
        assert json.loads(result.response) == EDIT_SET
        assert result.provider_session_id == "chat-1"
        assert result.timeout is False
        assert len(runner.pool) == 0

    @pytest.mark.asyncio
    async def test_prompt_arguments_and_environment(self, tmp_path: Path):
        """The prompt goes over stdin; flags and env vars are passed."""
        record = tmp_path / "record.json"
        script = write_agent(
            tmp_path,
            f"""
            prompt = sys.stdin.read()
            with open({str(record)!r}, "w") as f:
                json.dump({{
                    "prompt": prompt,
                    "argv": sys.argv[1:],
                    "request_id": os.environ.get("DEVLOOP_REQUEST_ID"),
                    "socket": os.environ.get("DEVLOOP_IPC_SOCKET"),
                }}, f)
            print("{{}}")
            """,
        )
        runner = make_runner(tmp_path, script, ipc_socket="/tmp/devloop.sock", model="fast")
        invocation = runner.new_invocation(make_task(), "the prompt")

        await runner.invoke(invocation)
        seen = json.loads(record.read_text())

        assert seen["prompt"] == "the prompt"
        assert seen["argv"][:3] == ["--print", "--output-format", "json"]
        assert "--model" in seen["argv"] and "fast" in seen["argv"]
        assert "--resume" not in seen["argv"]
        assert seen["request_id"] == invocation.request_id
        assert seen["socket"] == "/tmp/devloop.sock"

    @pytest.mark.asyncio
    async def test_nonzero_exit_with_output_is_candidate_success(self, tmp_path: Path):
        """A non-zero exit code does not discard non-empty stdout."""
        script = write_agent(
            tmp_path,
            f"""
            sys.stdin.read()
            print({json.dumps(json.dumps(EDIT_SET))})
            sys.exit(3)
            """,
        )
        runner = make_runner(tmp_path, script)

        result = await runner.invoke(runner.new_invocation(make_task(), "p"))

        assert result.exit_code == 3
        assert result.success is True

    @pytest.mark.asyncio
    async def test_empty_output_is_failure(self, tmp_path: Path):
        """No stdout means no success, with stderr as the error."""
        script = write_agent(
            tmp_path,
            """
            sys.stdin.read()
            sys.stderr.write("model crashed")
            sys.exit(1)
            """,
        )
        runner = make_runner(tmp_path, script)

        result = await runner.invoke(runner.new_invocation(make_task(), "p"))

        assert result.success is False
        assert result.error == "model crashed"

    @pytest.mark.asyncio
    async def test_missing_binary_raises_spawn_error(self, tmp_path: Path):
        """An absent executable is a ProcessSpawnError."""
        runner = make_runner(tmp_path, tmp_path / "no-such-agent")

        with pytest.raises(ProcessSpawnError):
            await runner.invoke(runner.new_invocation(make_task(), "p"))

    @pytest.mark.asyncio
    async def test_hung_process_is_killed_at_deadline(self, tmp_path: Path):
        """A silent process is terminated once the deadline passes."""
        script = write_agent(
            tmp_path,
            """
            sys.stdin.read()
            time.sleep(30)
            """,
        )
        timeouts = TimeoutConfig(
            initial_timeout=0.3,
            max_timeout=5.0,
            extension_interval=10.0,
            extension_amount=1.0,
            warning_threshold=0.1,
            heartbeat_interval=None,
            kill_grace=0.5,
        )
        runner = make_runner(tmp_path, script, timeouts=timeouts)

        result = await runner.invoke(runner.new_invocation(make_task(), "p"))

        assert result.timeout is True
        assert result.success is False
        assert result.duration_seconds < 5.0
        assert len(runner.pool) == 0

    @pytest.mark.asyncio
    async def test_progress_events_end_with_done(self, tmp_path: Path):
        """Progress events are published and the last one is marked done."""
        script = write_agent(
            tmp_path,
            """
            sys.stdin.read()
            for _ in range(5):
                sys.stdout.write("x" * 800)
                sys.stdout.flush()
                time.sleep(0.02)
            """,
        )
        runner = make_runner(tmp_path, script, progress_every_tokens=100)
        channel = ProgressChannel()

        await runner.invoke(runner.new_invocation(make_task(), "p"), progress=channel)
        channel.close()
        events = [event async for event in channel]

        assert events[-1].done is True
        assert events[-1].tokens_estimate == 1000
        assert any(not e.done for e in events)

    @pytest.mark.asyncio
    async def test_shutdown_terminates_running_invocation(self, tmp_path: Path):
        """shutdown() kills in-flight processes and the result says so."""
        script = write_agent(
            tmp_path,
            """
            sys.stdin.read()
            time.sleep(30)
            """,
        )
        runner = make_runner(tmp_path, script)
        pending = asyncio.create_task(runner.invoke(runner.new_invocation(make_task(), "p")))
        while len(runner.pool) == 0:
            await asyncio.sleep(0.01)

        killed = await runner.shutdown()
        result = await asyncio.wait_for(pending, timeout=5)

        assert killed == 1
        assert result.success is False
        assert result.error == "Agent terminated by shutdown"

    @pytest.mark.asyncio
    async def test_run_batch_runs_concurrently(self, tmp_path: Path):
        """Independent invocations all complete."""
        runner = make_runner(tmp_path, write_agent(tmp_path, envelope_agent()))
        invocations = [runner.new_invocation(make_task(), f"p{i}") for i in range(3)]

        results = await runner.run_batch(invocations)

        assert len(results) == 3
        assert all(isinstance(r, AgentResult) and r.success for r in results)
        assert len({r.request_id for r in results}) == 3


class TestSessions:
    """Tests for resume tokens and history."""

    @pytest.mark.asyncio
    async def test_resume_token_is_reused(self, tmp_path: Path):
        """A token harvested from one call is passed to the next."""
        argv_log = tmp_path / "argv.log"
        payload = {"type": "result", "result": json.dumps(EDIT_SET), "session_id": "chat-9"}
        script = write_agent(
            tmp_path,
            f"""
            sys.stdin.read()
            with open({str(argv_log)!r}, "a") as f:
                f.write(" ".join(sys.argv[1:]) + "\\n")
            print({json.dumps(json.dumps(payload))})
            """,
        )
        store = SessionStore(SessionConfig(), tmp_path / "state")
        session = store.get_or_create(SessionContext(task_ids=["7"]))
        runner = make_runner(tmp_path, script, sessions=store)

        await runner.invoke(runner.new_invocation(make_task(), "one", session.session_id))
        await runner.invoke(runner.new_invocation(make_task(), "two", session.session_id))
        calls = argv_log.read_text().splitlines()

        assert "--resume" not in calls[0]
        assert "--resume chat-9" in calls[1]
        assert store.get(session.session_id).stats.total_requests == 2

    @pytest.mark.asyncio
    async def test_failed_resume_resets_token(self, tmp_path: Path):
        """A resume failure clears the stored token."""
        script = write_agent(
            tmp_path,
            """
            sys.stdin.read()
            sys.stderr.write("error: session not found, cannot resume")
            sys.exit(1)
            """,
        )
        store = SessionStore(SessionConfig(), tmp_path / "state")
        session = store.get_or_create(SessionContext(task_ids=["7"]))
        store.set_provider_session_id(session.session_id, "stale")
        runner = make_runner(tmp_path, script, sessions=store)

        await runner.invoke(runner.new_invocation(make_task(), "p", session.session_id))

        assert store.get_resume_token(session.session_id) is None


class TestGenerate:
    """Tests for AgentRunner.generate()."""

    @pytest.mark.asyncio
    async def test_generate_returns_edit_set(self, tmp_path: Path):
        """A usable response becomes Ok with the edit-set."""
        runner = make_runner(tmp_path, write_agent(tmp_path, envelope_agent()))

        outcome = await runner.generate(make_task(), "p")

        assert isinstance(outcome, Ok)
        assert outcome.edit_set.files[0].path == "pkg/mod.py"

    @pytest.mark.asyncio
    async def test_unusable_response_retries_with_strict_prompt(self, tmp_path: Path):
        """Extraction failures reprompt and finally halt with diagnostics."""
        prompts = tmp_path / "prompts.log"
        script = write_agent(
            tmp_path,
            f"""
            prompt = sys.stdin.read()
            with open({str(prompts)!r}, "a") as f:
                f.write(prompt.splitlines()[0] + "\\n")
            print("Sorry, I cannot help with that.")
            """,
        )
        runner = make_runner(tmp_path, script, extraction_retries=1)

        outcome = await runner.generate(make_task(), "Task: Add module")

        assert isinstance(outcome, HaltError)
        assert outcome.category == "extraction"
        assert isinstance(outcome.error, ExtractionError)
        assert outcome.error.retry_count == 1
        assert "raw-fallback" in outcome.error.strategies_tried
        assert prompts.read_text().splitlines() == [
            "Task: Add module",
            "# STRICT JSON-ONLY MODE",
        ]

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self, tmp_path: Path):
        """A killed process yields RetryableError('timeout')."""
        script = write_agent(tmp_path, "sys.stdin.read()\ntime.sleep(30)\n")
        timeouts = TimeoutConfig(
            initial_timeout=0.2,
            max_timeout=5.0,
            extension_interval=10.0,
            heartbeat_interval=None,
            kill_grace=0.5,
        )
        runner = make_runner(tmp_path, script, timeouts=timeouts)

        outcome = await runner.generate(make_task(), "p")

        assert isinstance(outcome, RetryableError)
        assert outcome.category == "timeout"

    @pytest.mark.asyncio
    async def test_empty_output_is_retryable_process_error(self, tmp_path: Path):
        """No output yields RetryableError('process')."""
        script = write_agent(tmp_path, "sys.stdin.read()\nsys.exit(2)\n")
        runner = make_runner(tmp_path, script)

        outcome = await runner.generate(make_task(), "p")

        assert isinstance(outcome, RetryableError)
        assert outcome.category == "process"

    @pytest.mark.asyncio
    async def test_missing_binary_halts(self, tmp_path: Path):
        """A spawn failure halts instead of retrying."""
        runner = make_runner(tmp_path, tmp_path / "missing")

        outcome = await runner.generate(make_task(), "p")

        assert isinstance(outcome, HaltError)
        assert outcome.category == "spawn"

    @pytest.mark.asyncio
    async def test_rate_limit_backs_off_then_halts(self, tmp_path: Path):
        """Persistent rate limiting is retried with backoff, then halts."""
        counter = tmp_path / "count"
        script = write_agent(
            tmp_path,
            f"""
            sys.stdin.read()
            with open({str(counter)!r}, "a") as f:
                f.write("x")
            sys.stderr.write("HTTP 429: rate limit exceeded")
            sys.exit(1)
            """,
        )
        runner = make_runner(tmp_path, script, rate_limit_attempts=3)

        outcome = await runner.generate(make_task(), "p")

        assert isinstance(outcome, HaltError)
        assert outcome.category == "rate-limit"
        assert counter.read_text() == "xxx"


class TestOutputParsing:
    """Tests for parse_agent_output() and helpers."""

    def test_text_format_returns_stdout(self):
        """Text output is passed through with no token."""
        assert parse_agent_output("hello", "text") == ("hello", None)

    def test_json_envelope_with_prose(self):
        """The last JSON object in stdout is the envelope."""
        stdout = 'warming up\n{"type": "result", "result": "done", "chatId": "c-1"}\n'

        assert parse_agent_output(stdout, "json") == ("done", "c-1")

    def test_json_without_envelope_returns_object(self):
        """A bare edit-set object is returned as decoded JSON."""
        response, token = parse_agent_output(json.dumps(EDIT_SET), "json")

        assert response == EDIT_SET
        assert token is None

    def test_json_without_objects_returns_stdout(self):
        """Plain prose is returned unchanged."""
        assert parse_agent_output("no json", "json") == ("no json", None)

    def test_stream_json_uses_last_result_event(self):
        """Partial events are skipped in favour of the result event."""
        lines = [
            json.dumps({"type": "partial", "text": "thinking"}),
            json.dumps({"type": "result", "result": "final", "session_id": "s-2"}),
        ]

        assert parse_agent_output("\n".join(lines), "stream-json") == ("final", "s-2")

    def test_is_rate_limited(self):
        """Rate-limit markers on a failed run are detected."""
        limited = AgentResult("r", False, 1, "", "Error: rate_limit_error")
        ok = AgentResult("r", True, 0, "429 lines of output", "")

        assert is_rate_limited(limited) is True
        assert is_rate_limited(ok) is False

    def test_estimate_tokens(self):
        """Tokens are estimated at four bytes each."""
        assert estimate_tokens("abcdefgh") == 2
        assert estimate_tokens(b"abcd") == 1
        assert estimate_tokens(400) == 100


class TestProgressChannel:
    """Tests for ProgressChannel."""

    @pytest.mark.asyncio
    async def test_full_channel_drops_events(self):
        """Publishing never blocks; overflow is dropped."""
        channel = ProgressChannel(maxsize=2)
        for i in range(5):
            channel.publish(ProgressEvent("r", i, 0.0))
        channel.close()

        events = [e async for e in channel]

        assert [e.tokens_estimate for e in events] == [1]

    @pytest.mark.asyncio
    async def test_publish_after_close_is_ignored(self):
        """Events after close() are discarded."""
        channel = ProgressChannel()
        channel.close()
        channel.publish(ProgressEvent("r", 1, 0.0))

        assert [e async for e in channel] == []
