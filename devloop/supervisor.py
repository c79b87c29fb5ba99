"""Adaptive timeout supervision for agent processes.

A fixed timeout either kills long legitimate generations or waits far too long
on a hung process. TimeoutSupervisor starts with a short deadline and pushes it
forward while the process shows signs of life, up to a hard ceiling.

The supervisor only decides *when* time is up; the caller's ``on_timeout``
callback does the killing.
"""

import asyncio
import logging
import time
from typing import Callable

from devloop.config import TimeoutConfig

logger = logging.getLogger(__name__)


class TimeoutSupervisor:
    """Progressive deadline with heartbeat-driven extension.

    Usage:
        supervisor = TimeoutSupervisor(config, on_timeout=kill_process,
                                       heartbeat=lambda: saw_output())
        supervisor.start()
        ...
        supervisor.stop()

    Every ``extension_interval`` the supervisor ticks. If a heartbeat probe is
    configured and reported activity since the previous tick, the deadline
    grows by ``extension_amount``. Without a probe the deadline grows only when
    less than ``extension_amount`` remains. The deadline never exceeds
    ``max_timeout`` measured from start().

    ``on_timeout`` fires at most once per start()/stop() cycle.
    """

    def __init__(
        self,
        config: TimeoutConfig,
        on_timeout: Callable[[], None],
        on_warning: Callable[[float], None] | None = None,
        on_extension: Callable[[float], None] | None = None,
        heartbeat: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize supervisor.

        Args:
            config: Timeout knobs, in seconds
            on_timeout: Called once when the deadline elapses
            on_warning: Called with the remaining seconds when the warning
                threshold is crossed
            on_extension: Called with the new total timeout after an extension
            heartbeat: Probe returning True when the process showed activity
            clock: Monotonic clock, injectable for tests
        """
        self.config = config
        self._on_timeout = on_timeout
        self._on_warning = on_warning
        self._on_extension = on_extension
        self._heartbeat = heartbeat
        self._clock = clock

        self._active = False
        self._fired = False
        self._start_time: float | None = None
        self._current_timeout = config.initial_timeout
        self._activity_seen = False

        self._timeout_handle: asyncio.TimerHandle | None = None
        self._warning_handle: asyncio.TimerHandle | None = None
        self._tasks: list[asyncio.Task] = []

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def timed_out(self) -> bool:
        return self._fired

    @property
    def current_timeout(self) -> float:
        """Total seconds allowed from start(), including extensions."""
        return self._current_timeout

    @property
    def deadline(self) -> float | None:
        if self._start_time is None:
            return None
        return self._start_time + self._current_timeout

    def remaining_time(self) -> float:
        """Seconds until the deadline, or 0 when not running."""
        if not self._active or self._start_time is None:
            return 0.0
        return max(0.0, self._start_time + self._current_timeout - self._clock())

    def start(self) -> None:
        """Arm the deadline, warning timer and extension loops.

        Must be called from inside a running event loop.
        """
        loop = asyncio.get_running_loop()
        self._cancel_all()
        self._active = True
        self._fired = False
        self._activity_seen = False
        self._start_time = self._clock()
        self._current_timeout = self.config.initial_timeout

        self._arm(loop)
        self._tasks.append(loop.create_task(self._extension_loop()))
        if self._heartbeat is not None and self.config.heartbeat_interval:
            self._tasks.append(loop.create_task(self._heartbeat_loop()))

    def stop(self) -> None:
        """Disarm everything. A later firing is a no-op."""
        self._active = False
        self._cancel_all()

    def tick(self) -> bool:
        """Run one extension check.

        Returns:
            True if the deadline was extended
        """
        if not self._active:
            return False

        if self._heartbeat is not None:
            active = self._activity_seen or self._probe()
            self._activity_seen = False
            if active:
                return self.extend()
            return False

        if self.remaining_time() < self.config.extension_amount:
            return self.extend()
        return False

    def extend(self) -> bool:
        """Push the deadline by extension_amount, capped at max_timeout.

        Returns:
            True if the deadline moved
        """
        if not self._active:
            return False
        new_timeout = min(
            self._current_timeout + self.config.extension_amount,
            self.config.max_timeout,
        )
        if new_timeout <= self._current_timeout:
            return False

        self._current_timeout = new_timeout
        self._arm(asyncio.get_running_loop())
        logger.debug(f"Extended agent deadline to {new_timeout:.0f}s")
        if self._on_extension is not None:
            self._on_extension(new_timeout)
        return True

    def _arm(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
        if self._warning_handle is not None:
            self._warning_handle.cancel()
            self._warning_handle = None

        remaining = self.remaining_time()
        self._timeout_handle = loop.call_later(remaining, self._fire)

        warn_in = remaining - self.config.warning_threshold
        if warn_in > 0 and self._on_warning is not None:
            self._warning_handle = loop.call_later(warn_in, self._warn)

    def _fire(self) -> None:
        if not self._active:
            return
        self._active = False
        self._fired = True
        self._cancel_all()
        logger.warning(f"Agent deadline of {self._current_timeout:.0f}s elapsed")
        self._on_timeout()

    def _warn(self) -> None:
        if self._active and self._on_warning is not None:
            self._on_warning(self.remaining_time())

    def _probe(self) -> bool:
        try:
            return bool(self._heartbeat())  # type: ignore[misc]
        except Exception as e:
            logger.debug(f"Heartbeat probe failed: {e}")
            return False

    async def _extension_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self.config.extension_interval)
            self.tick()

    async def _heartbeat_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self.config.heartbeat_interval or 0)
            if self._probe():
                self._activity_seen = True

    def _cancel_all(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        if self._warning_handle is not None:
            self._warning_handle.cancel()
            self._warning_handle = None
        current = asyncio.current_task() if _loop_running() else None
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks = []


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True
