"""Registry of live agent processes.

Every agent process is registered here while it runs so a shutdown request can
terminate all of them: SIGTERM first, SIGKILL once the grace window passes.
The pool is an ordinary object owned by whoever spawns processes, so separate
runners (and separate tests) never share state.
"""

import asyncio
import logging
import os
import signal
from asyncio.subprocess import Process

from devloop.errors import ProcessSpawnError

logger = logging.getLogger(__name__)


class ProcessPool:
    """Tracks spawned processes and terminates them on demand.

    Attributes:
        kill_grace: Seconds between SIGTERM and SIGKILL
    """

    def __init__(self, kill_grace: float = 5.0) -> None:
        self.kill_grace = kill_grace
        self._processes: set[Process] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._processes)

    def __contains__(self, process: object) -> bool:
        return process in self._processes

    def register(self, process: Process) -> None:
        """Track a running process.

        Raises:
            ProcessSpawnError: If the pool has been shut down. The process is
                terminated immediately in that case.
        """
        if self._closed:
            _send(process, signal.SIGKILL)
            raise ProcessSpawnError("Process pool is shut down, refusing new agent process")
        self._processes.add(process)

    def unregister(self, process: Process) -> None:
        self._processes.discard(process)

    async def terminate(self, process: Process, grace: float | None = None) -> int | None:
        """Stop one process: SIGTERM, then SIGKILL after the grace window.

        Args:
            process: Process to stop
            grace: Override for kill_grace

        Returns:
            The process exit code once it has exited
        """
        grace = self.kill_grace if grace is None else grace
        if process.returncode is None:
            _send(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Process {process.pid} ignored SIGTERM for {grace:.0f}s, sending SIGKILL"
                )
                _send(process, signal.SIGKILL)
                await process.wait()
        self.unregister(process)
        return process.returncode

    async def shutdown(self, grace: float | None = None) -> int:
        """Refuse new processes and terminate every registered one.

        Returns:
            Number of processes that were still registered
        """
        self._closed = True
        processes = list(self._processes)
        if processes:
            logger.info(f"Terminating {len(processes)} agent process(es)")
            await asyncio.gather(
                *(self.terminate(p, grace) for p in processes),
                return_exceptions=True,
            )
        return len(processes)


def _send(process: Process, sig: signal.Signals) -> None:
    """Signal the process group when the child leads one, else the child."""
    if process.returncode is not None:
        return
    try:
        if os.getpgid(process.pid) == process.pid:
            os.killpg(process.pid, sig)
        else:
            process.send_signal(sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        process.send_signal(sig)
