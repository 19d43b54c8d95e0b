"""ProcessRegistry: named long-running OS processes for tool executors.

Each process is launched in its own session, so its process-group id equals
the leader pid and ``stop`` can take down the whole tree (a dev server and
the workers it forks) with one signal to the group.

One registry per agent run. Callers serialize ``start``/``stop`` for a given
name; the registry is not meant to be shared between concurrent loops.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime

from agentloop.errors import ProcessSpawnError

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_LINES = 1000
DEFAULT_OUTPUT_LINES = 100
DEFAULT_READY_TIMEOUT = 30.0
STOP_GRACE_SECONDS = 3.0
KILL_GRACE_SECONDS = 1.0
_STREAM_LIMIT = 1 << 20  # max bytes per output line


@dataclass(frozen=True)
class ProcessInfo:
    """Snapshot of a managed process."""

    name: str
    command: str
    pid: int
    pgid: int
    cwd: str | None
    started_at: str
    uptime_ms: int = 0


@dataclass
class ManagedProcess:
    name: str
    command: str
    pid: int
    pgid: int
    cwd: str | None
    proc: asyncio.subprocess.Process
    started_at: float = field(default_factory=time.monotonic)
    started_at_iso: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    stdout: deque[str] = field(default_factory=deque)
    stderr: deque[str] = field(default_factory=deque)
    ready_pattern: re.Pattern[str] | None = None
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: list[asyncio.Task] = field(default_factory=list)

    def info(self) -> ProcessInfo:
        return ProcessInfo(
            name=self.name,
            command=self.command,
            pid=self.pid,
            pgid=self.pgid,
            cwd=self.cwd,
            started_at=self.started_at_iso,
            uptime_ms=int((time.monotonic() - self.started_at) * 1000),
        )

    @property
    def exited(self) -> bool:
        return self.proc.returncode is not None


class ProcessRegistry:
    """Starts, tracks and stops named process groups.

    Invariant: at most one ManagedProcess per name. Starting a name that is
    already taken stops (and awaits) the old process first.
    """

    def __init__(self, max_output_lines: int = DEFAULT_MAX_OUTPUT_LINES):
        self.max_output_lines = max_output_lines
        self._processes: dict[str, ManagedProcess] = {}

    # -------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------

    async def start(
        self,
        name: str,
        command: str,
        cwd: str | None = None,
        ready_pattern: str | None = None,
        timeout: float = DEFAULT_READY_TIMEOUT,
    ) -> ProcessInfo:
        """Start ``command`` under ``name`` and return its info.

        With ``ready_pattern``, waits until a stdout/stderr line matches or
        ``timeout`` seconds pass. A timeout still returns normally (logged as
        a warning); the process may be usable even if it never printed the
        expected banner.

        Raises:
            ProcessSpawnError: If the process could not be spawned.
            re.error: If ``ready_pattern`` is not a valid regex.
        """
        pattern = re.compile(ready_pattern) if ready_pattern else None

        if name in self._processes:
            logger.info("Process '%s' already running; stopping it first", name)
            await self.stop(name)

        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise ProcessSpawnError(name, f"{e} (command: {command}, cwd: {cwd or os.getcwd()})") from e

        if not proc.pid:
            raise ProcessSpawnError(name, f"no pid assigned (command: {command})")

        managed = ManagedProcess(
            name=name,
            command=command,
            pid=proc.pid,
            pgid=proc.pid,
            cwd=cwd,
            proc=proc,
            stdout=deque(maxlen=self.max_output_lines),
            stderr=deque(maxlen=self.max_output_lines),
            ready_pattern=pattern,
        )
        managed.tasks = [
            asyncio.create_task(self._pump(managed, proc.stdout, managed.stdout)),
            asyncio.create_task(self._pump(managed, proc.stderr, managed.stderr)),
        ]
        managed.tasks.append(asyncio.create_task(self._watch_exit(managed)))
        self._processes[name] = managed
        logger.info("Started process '%s' (pid %d): %s", name, proc.pid, command)

        if pattern is not None:
            await self._wait_ready(managed, timeout)

        return managed.info()

    async def _wait_ready(self, managed: ManagedProcess, timeout: float) -> None:
        ready_task = asyncio.create_task(managed.ready.wait())
        exit_task = asyncio.create_task(managed.proc.wait())
        try:
            done, _ = await asyncio.wait(
                {ready_task, exit_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (ready_task, exit_task):
                if not task.done():
                    task.cancel()

        if ready_task in done:
            logger.info("Process '%s' is ready", managed.name)
        elif exit_task in done:
            logger.warning(
                "Process '%s' exited with code %s before printing its ready pattern",
                managed.name,
                managed.proc.returncode,
            )
        else:
            # TODO: let callers opt into failing here once tools can surface it
            logger.warning(
                "Process '%s' did not match its ready pattern within %ss; continuing",
                managed.name,
                timeout,
            )

    async def _pump(
        self,
        managed: ManagedProcess,
        stream: asyncio.StreamReader | None,
        buffer: deque[str],
    ) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; the reader drops it
                buffer.append("[line too long, truncated]")
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            buffer.append(line)
            if (
                managed.ready_pattern is not None
                and not managed.ready.is_set()
                and managed.ready_pattern.search(line)
            ):
                managed.ready.set()

    async def _watch_exit(self, managed: ManagedProcess) -> None:
        returncode = await managed.proc.wait()
        logger.info("Process '%s' (pid %d) exited with code %s", managed.name, managed.pid, returncode)
        # Only drop the entry if it has not been replaced by a newer process
        if self._processes.get(managed.name) is managed:
            del self._processes[managed.name]

    # -------------------------------------------------------------------
    # Stop
    # -------------------------------------------------------------------

    def _signal_group(self, managed: ManagedProcess, sig: int) -> None:
        try:
            os.killpg(managed.pgid, sig)
            return
        except ProcessLookupError:
            return
        except (AttributeError, OSError) as e:
            logger.debug("killpg(%d) failed for '%s': %s; signalling pid", managed.pgid, managed.name, e)
        try:
            managed.proc.send_signal(sig)
        except ProcessLookupError:
            pass

    async def stop(self, name: str) -> bool:
        """Terminate the process group registered under ``name``.

        SIGTERM, a short grace period, then SIGKILL. Returns False for an
        unknown name, True once the process has been reaped (or the final
        grace period has elapsed).
        """
        managed = self._processes.get(name)
        if managed is None:
            return False

        self._signal_group(managed, signal.SIGTERM)
        try:
            await asyncio.wait_for(managed.proc.wait(), timeout=STOP_GRACE_SECONDS)
        except TimeoutError:
            logger.warning("Process '%s' ignored SIGTERM; sending SIGKILL", name)
            self._signal_group(managed, signal.SIGKILL)
            try:
                await asyncio.wait_for(managed.proc.wait(), timeout=KILL_GRACE_SECONDS)
            except TimeoutError:
                logger.error("Process '%s' (pid %d) still alive after SIGKILL", name, managed.pid)

        if self._processes.get(name) is managed:
            del self._processes[name]
        await self._finish_tasks(managed)
        logger.info("Stopped process '%s'", name)
        return True

    @staticmethod
    async def _finish_tasks(managed: ManagedProcess) -> None:
        pending = [t for t in managed.tasks if not t.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=KILL_GRACE_SECONDS)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

    async def stop_all(self) -> None:
        names = list(self._processes)
        if names:
            await asyncio.gather(*(self.stop(n) for n in names))

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    def list(self) -> list[ProcessInfo]:
        return [m.info() for m in self._processes.values()]

    def is_running(self, name: str) -> bool:
        managed = self._processes.get(name)
        return managed is not None and not managed.exited

    def get_output(self, name: str, lines: int = DEFAULT_OUTPUT_LINES) -> dict[str, str] | None:
        """Return the last ``lines`` lines of stdout and stderr, or None if unknown."""
        managed = self._processes.get(name)
        if managed is None:
            return None
        lines = max(0, lines)
        stdout = list(managed.stdout)[-lines:] if lines else []
        stderr = list(managed.stderr)[-lines:] if lines else []
        return {"stdout": "\n".join(stdout), "stderr": "\n".join(stderr)}

    def __len__(self) -> int:
        return len(self._processes)
