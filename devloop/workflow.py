"""Task execution state machine.

One call to WorkflowEngine.run_once() takes a single task through generation,
application, hooks, tests and log analysis, then either marks it done or turns
the failure into a fix task (or a block). Every status transition is written
to the state ledger, and the engine always finishes an iteration in ``idle``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

from opentelemetry import trace

from devloop import telemetry
from devloop.agent import ProgressChannel
from devloop.apply import EditApplier, is_analysis_task, referenced_paths
from devloop.collaborators import LogAnalyzer, TestRunner, run_hooks
from devloop.config import HooksConfig, TestingConfig, WorkflowConfig
from devloop.loop_detector import LoopDetector, LoopDetectorConfig
from devloop.models import (
    EditSet,
    GenerationOutcome,
    HaltError,
    LogAnalysis,
    Ok,
    RetryableError,
    RunResult,
    SessionContext,
    Task,
    TestRunResult,
)
from devloop.prompts import build_failure_description, build_task_prompt
from devloop.sessions import SessionStore
from devloop.state import StateLedger
from devloop.tasks import TaskSource

logger = logging.getLogger(__name__)

MAX_RETRIES_ERROR = "Max retries exceeded, task blocked"
TESTS_FAILED_ERROR = "Tests failed or errors found in logs"
REJECTED_ERROR = "Changes rejected by user"
SAMPLE_CHARS = 500

# Categories that no retry of the same task can fix; the driving loop stops.
FATAL_CATEGORIES = ("spawn", "rate-limit")


class CodeGenerator(Protocol):
    async def generate(
        self,
        task: Task,
        prompt: str,
        session_id: str | None = None,
        progress: ProgressChannel | None = None,
    ) -> GenerationOutcome: ...

    async def shutdown(self) -> int: ...


Approver = Callable[[Task, EditSet], Awaitable[bool]]


class WorkflowEngine:
    """Drives one task per iteration through the generate/apply/test loop.

    Iterations are strictly sequential; run_once() must not be called
    concurrently on the same engine.

    Attributes:
        config: Iteration-level settings
        tasks: Task source collaborator
        generator: Produces edit-sets (normally an AgentRunner)
        applier: Applies edit-sets to the workspace
        ledger: Persistent status record
    """

    def __init__(
        self,
        config: WorkflowConfig,
        tasks: TaskSource,
        generator: CodeGenerator,
        applier: EditApplier,
        ledger: StateLedger,
        test_runner: TestRunner,
        log_analyzer: LogAnalyzer,
        testing: TestingConfig | None = None,
        hooks: HooksConfig | None = None,
        loop_config: LoopDetectorConfig | None = None,
        sessions: SessionStore | None = None,
        approver: Approver | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.config = config
        self.tasks = tasks
        self.generator = generator
        self.applier = applier
        self.ledger = ledger
        self.test_runner = test_runner
        self.log_analyzer = log_analyzer
        self.testing = testing or TestingConfig()
        self.hooks = hooks or HooksConfig()
        self.loop_config = loop_config or LoopDetectorConfig()
        self.sessions = sessions
        self.approver = approver
        self.tracer = tracer or trace.get_tracer("devloop")
        self._shutdown = False

    @property
    def shutting_down(self) -> bool:
        return self._shutdown

    def request_shutdown(self) -> None:
        """Stop accepting iterations. Safe to call from a signal handler."""
        if not self._shutdown:
            logger.info("Shutdown requested, finishing current iteration")
        self._shutdown = True

    async def shutdown(self) -> None:
        """Stop accepting iterations and kill outstanding agent processes."""
        self.request_shutdown()
        killed = await self.generator.shutdown()
        if killed:
            logger.info(f"Terminated {killed} agent process(es)")

    async def run_once(self) -> RunResult:
        """Execute one iteration.

        Returns:
            RunResult. ``no_tasks`` is set when nothing is pending; ``error``
            holds a user-facing message for every non-completed outcome.
        """
        if self._shutdown:
            return RunResult(completed=False, no_tasks=False, error="Shutdown requested")

        with self.tracer.start_as_current_span("devloop.iteration") as span:
            try:
                result = await self._iterate(span)
            except Exception as e:
                task = self._current_task()
                task_id = task.id if task else None
                logger.exception(f"Iteration failed for task {task_id}: {e}")
                if task is not None:
                    await self._release(task.id)
                self._reset_idle()
                result = RunResult(
                    completed=False,
                    no_tasks=False,
                    task_id=task_id,
                    error=str(e) or type(e).__name__,
                    category="unhandled",
                )

            outcome = "completed" if result.completed else (
                "no-tasks" if result.no_tasks else (result.category or "failed")
            )
            span.set_attribute("iteration.outcome", outcome)
            telemetry.record_iteration(outcome)
            return result

    async def _iterate(self, span: trace.Span) -> RunResult:
        self._update(status="fetching-task")
        task = await self.tasks.fetch_next_pending()
        total, done = await self.tasks.counts()
        if task is None:
            self._update(
                status="idle", current_task=None, total_tasks=total, completed_tasks=done
            )
            return RunResult(completed=False, no_tasks=True)

        span.set_attribute("task.id", task.id)
        span.set_attribute("task.title", task.title)
        logger.info(f"Task {task.id}: {task.title}")

        self._update(
            status="executing-ai",
            current_task=task,
            total_tasks=total,
            completed_tasks=done,
        )
        await self.tasks.set_status(task.id, "in-progress")

        outcome = await self._generate(task)
        if not isinstance(outcome, Ok):
            return await self._generation_failed(task, outcome)

        edit_set = outcome.edit_set
        if edit_set.is_empty and not is_analysis_task(task):
            missing = self.applier.missing_targets(referenced_paths(task))
            if missing:
                return await self._generation_failed(
                    task,
                    HaltError(
                        category="extraction",
                        message=(
                            "Agent returned no changes but referenced targets are "
                            f"missing: {', '.join(missing)}"
                        ),
                    ),
                )
            logger.info(f"Task {task.id}: agent reports no changes required")

        self._record_generation_success(task)
        self._update(status="applying-changes")

        if self.config.require_approval and self.approver is not None:
            self._update(status="awaiting-approval")
            if not await self.approver(task, edit_set):
                await self.tasks.set_status(task.id, "pending")
                self._update(status="idle", current_task=None)
                return RunResult(False, False, task.id, REJECTED_ERROR, "rejected")

        report = await asyncio.to_thread(self.applier.apply, edit_set)
        for failed in report.failed:
            logger.warning(f"Task {task.id}: {failed.path} not applied ({failed.message})")

        workspace = self.applier.workspace
        if self.hooks.post_apply:
            self._update(status="running-post-apply-hooks")
            await run_hooks(
                self.hooks.post_apply, workspace, self.hooks.timeout_seconds, "post-apply"
            )
        if self.hooks.pre_test:
            self._update(status="running-pre-test-hooks")
            await run_hooks(
                self.hooks.pre_test, workspace, self.hooks.timeout_seconds, "pre-test"
            )

        self._update(status="running-tests")
        test_result = await self.test_runner.run(
            self.testing.command,
            self.testing.timeout_seconds,
            self.testing.artifacts_dir,
        )

        self._update(status="analyzing-logs")
        analysis = await self.log_analyzer.analyze(self.testing.log_sources)

        if not test_result.success or analysis.errors:
            return await self._create_fix_task(task, test_result, analysis)

        self._update(status="marking-done")
        await self.tasks.set_status(task.id, "done")
        total, done = await self.tasks.counts()
        self._update(status="idle", current_task=None, total_tasks=total, completed_tasks=done)
        logger.info(f"Task {task.id} done ({done}/{total})")
        return RunResult(completed=True, no_tasks=False, task_id=task.id)

    async def _generate(self, task: Task) -> GenerationOutcome:
        session_id = None
        if self.sessions is not None:
            session = self.sessions.get_or_create(SessionContext(task_ids=[task.id]))
            session_id = session.session_id

        progress = ProgressChannel()
        watcher = asyncio.create_task(self._watch_progress(task, progress))
        try:
            return await self.generator.generate(
                task, build_task_prompt(task), session_id=session_id, progress=progress
            )
        finally:
            progress.close()
            await watcher

    async def _watch_progress(self, task: Task, progress: ProgressChannel) -> None:
        async for event in progress:
            if event.done:
                logger.debug(
                    f"Task {task.id}: agent finished, ~{event.tokens_estimate} tokens "
                    f"in {event.elapsed_seconds:.0f}s"
                )
            else:
                logger.debug(f"Task {task.id}: agent ~{event.tokens_estimate} tokens so far")

    async def _generation_failed(
        self, task: Task, outcome: RetryableError | HaltError
    ) -> RunResult:
        sample = outcome.message[:SAMPLE_CHARS]
        logger.error(f"Task {task.id} [{outcome.category}]: {sample}")

        if outcome.category in FATAL_CATEGORIES:
            await self.tasks.set_status(task.id, "pending")
            self._update(status="idle", current_task=None)
            return RunResult(False, False, task.id, sample, outcome.category)

        state = self.ledger.load_state()
        detector = LoopDetector(self.loop_config, state)
        if outcome.category == "timeout":
            detector.record_timeout(task.id, outcome.message)
        else:
            detector.record_extraction_failure(task.id, outcome.message)
        block, reason = detector.should_block(task.id)

        state.status = "idle"
        state.current_task = None
        if block:
            logger.warning(reason)
            await self.tasks.set_status(task.id, "blocked")
            telemetry.record_blocked(outcome.category)
            self.ledger.save_state(state)
            return RunResult(False, False, task.id, MAX_RETRIES_ERROR, outcome.category)

        await self.tasks.set_status(task.id, "pending")
        self.ledger.save_state(state)
        return RunResult(False, False, task.id, sample, outcome.category)

    async def _create_fix_task(
        self, task: Task, test_result: TestRunResult, analysis: LogAnalysis
    ) -> RunResult:
        self._update(status="creating-fix-task")
        description = build_failure_description(
            test_result, analysis, self.config.max_log_errors
        )
        fix = await self.tasks.create_fix_task(task.id, description, test_result.output)
        self._update(status="idle", current_task=None)

        if fix is not None:
            logger.info(f"Task {task.id} failed verification, queued {fix.id}")
            await self.tasks.set_status(task.id, "pending")
            return RunResult(False, False, task.id, TESTS_FAILED_ERROR, "tests")

        logger.warning(f"Task {task.id} exceeded its fix attempts, blocking")
        await self.tasks.set_status(task.id, "blocked")
        telemetry.record_blocked("tests")
        return RunResult(False, False, task.id, MAX_RETRIES_ERROR, "tests")

    def _record_generation_success(self, task: Task) -> None:
        state = self.ledger.load_state()
        if task.id in state.extraction_failures or task.id in state.timeout_failures:
            LoopDetector(self.loop_config, state).record_success(task.id)
            self.ledger.save_state(state)

    async def _release(self, task_id: str) -> None:
        try:
            await self.tasks.set_status(task_id, "pending")
        except Exception as e:
            logger.error(f"Could not return task {task_id} to pending: {e}")

    def _update(self, **changes) -> None:
        self.ledger.update_state(**changes)

    def _current_task(self) -> Task | None:
        try:
            return self.ledger.load_state().current_task
        except Exception as e:
            logger.error(f"Could not read workflow state: {e!r}")
            return None

    def _reset_idle(self) -> None:
        try:
            self._update(status="idle", current_task=None)
        except Exception as e:
            logger.error(f"Could not reset workflow state to idle: {e!r}")
