"""Agent subprocess supervision.

Launches the agent binary (e.g. ``opencode acp``) with stdio piped into a
StreamChannel, drains stderr into the log, and watches for exit.

Policy:
- A missing binary or failed exec is ProcessError(SPAWN_FAILURE)
- An exit we did not ask for fires the on_exit handlers with the exit code;
  nothing is restarted automatically
- stop() closes stdin, terminates, waits up to ``stop_timeout``, then kills
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from .errors import ProcessError, ProcessErrorKind
from .transport import StreamChannel
from .utils import maybe_await

logger = logging.getLogger(__name__)

ExitHandler = Callable[[int], Awaitable[None] | None]

# Agents embed whole files in responses; asyncio's 64 KiB default is too small
DEFAULT_STREAM_LIMIT = 16 * 1024 * 1024


@dataclass
class ChannelHandle:
    """The byte channel to a running agent process."""

    channel: StreamChannel
    pid: int
    command: list[str]


class ProcessSupervisor:
    """Owns one agent subprocess at a time."""

    def __init__(
        self,
        *,
        stop_timeout: float = 5.0,
        stream_limit: int = DEFAULT_STREAM_LIMIT,
    ):
        self.stop_timeout = stop_timeout
        self._stream_limit = stream_limit
        self._process: asyncio.subprocess.Process | None = None
        self._handle: ChannelHandle | None = None
        self._exit_handlers: list[ExitHandler] = []
        self._stderr_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._stopping = False

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    def on_exit(self, handler: ExitHandler) -> None:
        """Register a handler for unexpected exits. Receives the exit code."""
        self._exit_handlers.append(handler)

    async def start(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> ChannelHandle:
        """Spawn the agent and return its channel.

        Raises:
            ProcessError: SPAWN_FAILURE if the binary is missing or cannot run.
        """
        if self.is_running:
            raise RuntimeError(f"Agent process already running (pid={self.pid})")

        resolved = shutil.which(executable)
        if resolved is None:
            raise ProcessError(
                ProcessErrorKind.SPAWN_FAILURE, f"Agent binary not found: {executable}"
            )

        full_env = {**os.environ, **env} if env else None
        command = [resolved, *args]

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=full_env,
                limit=self._stream_limit,
            )
        except OSError as e:
            raise ProcessError(
                ProcessErrorKind.SPAWN_FAILURE, f"Failed to launch {executable}: {e}"
            ) from e

        assert process.stdout is not None and process.stdin is not None
        self._process = process
        self._stopping = False
        self._handle = ChannelHandle(
            channel=StreamChannel(process.stdout, process.stdin),
            pid=process.pid,
            command=command,
        )
        self._stderr_task = asyncio.create_task(self._read_stderr(process))
        self._watch_task = asyncio.create_task(self._watch_exit(process))

        logger.info(f"Launched agent: {' '.join(command)} (pid={process.pid})")
        return self._handle

    async def wait(self, timeout: float | None = None) -> int | None:
        """Wait for the process to exit; returns the exit code, or None on timeout."""
        process = self._process
        if process is None:
            return None
        try:
            return await asyncio.wait_for(process.wait(), timeout)
        except TimeoutError:
            return None

    async def stop(self) -> None:
        """Terminate the agent; the channel is closed when this returns."""
        process = self._process
        if process is None:
            return
        self._stopping = True

        if self._handle is not None:
            await self._handle.channel.close()

        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
            except TimeoutError:
                logger.warning(f"Agent did not exit in {self.stop_timeout}s, killing (pid={process.pid})")
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        for task in (self._watch_task, self._stderr_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._watch_task = None
        self._stderr_task = None

        logger.info(f"Agent process stopped (pid={process.pid}, code={process.returncode})")
        self._process = None
        self._handle = None

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        code = await process.wait()
        if self._stopping:
            return

        logger.warning(f"Agent process exited unexpectedly (pid={process.pid}, code={code})")
        for handler in list(self._exit_handlers):
            try:
                await maybe_await(handler, code)
            except Exception:
                logger.exception("Error in process exit handler")

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        """Read and log stderr output."""
        if process.stderr is None:
            return
        try:
            while True:
                try:
                    line = await process.stderr.readline()
                except ValueError:
                    logger.debug("Skipping oversized stderr line")
                    continue
                if not line:
                    break
                logger.debug(f"[agent stderr] {line.decode('utf-8', errors='replace').rstrip()}")
        except asyncio.CancelledError:
            pass
