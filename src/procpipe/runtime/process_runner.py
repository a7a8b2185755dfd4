"""Async channel API over process handles.

procpipe runtime module v0.1.0

This module provides:
- An async iterator of output/exit events per child, carried by an anyio
  memory object stream instead of ad hoc callbacks
- Reliable termination when the consumer stops early (SIGTERM -> timeout -> SIGKILL)
- Cancel-safe cleanup using asyncio.shield

Key design points:
- The output sink and the exit callback only push messages into the channel;
  exactly-once exit delivery is inherited from the handle's cleanup pass
- Stdin is written from a worker thread so a large input cannot stall the
  event loop while the child fills its stdout pipe
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import signal
import sys
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import anyio

from ..config import Config, get_config
from .process import ProcessHandle, Stream
from .spawner import spawn

__all__ = [
    "ExecutionResult",
    "OutputChunk",
    "ProcessExit",
    "ProcessRunner",
    "ProcessSpec",
    "run_process",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a child process to run.

    Attributes:
        command: Command line (split with shell-word rules)
        cwd: Working directory (None = inherit)
        env: Environment, mapping or KEY=VALUE entries (None = inherit parent)
        stdin_bytes: Optional bytes to write to stdin before closing it
        monitor_stderr: Deliver stderr chunks as well as stdout
    """

    command: str
    cwd: Path | None = None
    env: Mapping[str, str] | Iterable[str] | None = None
    stdin_bytes: bytes | None = None
    monitor_stderr: bool = True


@dataclass(frozen=True)
class OutputChunk:
    """A chunk of child output."""

    stream: Stream
    data: bytes


@dataclass(frozen=True)
class ProcessExit:
    """Final message of a channel: the child's normalized exit status."""

    status: int


@dataclass
class ExecutionResult:
    """Collected output of a finished child."""

    stdout: bytes = b""
    stderr: bytes = b""
    exit_status: int | None = None
    chunks: list[OutputChunk] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_status == 0


@dataclass
class ProcessRunner:
    """Runs children and exposes them as async event channels.

    Example:
        runner = ProcessRunner()
        spec = ProcessSpec(command="my-cli --json", stdin_bytes=b"prompt text")

        async for chunk in runner.stream(spec):
            process_output(chunk.data)
    """

    term_timeout: float | None = None
    kill_timeout: float | None = None
    config: Config | None = None

    def __post_init__(self) -> None:
        config = self.config or get_config()
        if self.term_timeout is None:
            self.term_timeout = config.term_timeout
        if self.kill_timeout is None:
            self.kill_timeout = config.kill_timeout

    async def events(
        self,
        spec: ProcessSpec,
        *,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> AsyncIterator[OutputChunk | ProcessExit]:
        """Run a child and yield its output chunks, then its ProcessExit.

        This method:
        1. Spawns the child with stdout (and optionally stderr) monitored
        2. Writes stdin_bytes if provided, then closes stdin
        3. Yields output chunks in arrival order
        4. Yields ProcessExit once the child has been cleaned up
        5. Terminates the child if iteration stops early or is cancelled

        Args:
            spec: Process specification
            cancel_scope: Optional anyio.CancelScope; iteration stops once
                cancel() was called on it

        Raises:
            SpawnError: If the child could not be started
        """
        send_stream, receive_stream = anyio.create_memory_object_stream(math.inf)

        def on_output(handle: ProcessHandle, data: bytes, stream: Stream) -> None:
            try:
                send_stream.send_nowait(OutputChunk(stream, data))
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                # Consumer went away
                pass

        def on_exit(handle: ProcessHandle, status: int) -> None:
            try:
                send_stream.send_nowait(ProcessExit(status))
            except (anyio.BrokenResourceError, anyio.ClosedResourceError):
                pass
            send_stream.close()

        handle: ProcessHandle | None = None
        try:
            handle = spawn(
                spec.command,
                cwd=spec.cwd,
                env=spec.env,
                monitor_stdout=True,
                monitor_stderr=spec.monitor_stderr,
                on_output=on_output,
                on_exit=on_exit,
                config=self.config,
            )

            logger.debug(
                f"Started child pid={handle.pid} "
                f"command={spec.command} cwd={spec.cwd}"
            )

            if spec.stdin_bytes is not None:
                await handle.write_async(spec.stdin_bytes)
            handle.close_input()

            async with receive_stream:
                async for event in receive_stream:
                    if cancel_scope and cancel_scope.cancel_called:
                        break
                    yield event

        finally:
            send_stream.close()
            if handle is not None:
                # Ensure cleanup with shield to prevent cancel interruption
                await self._safe_cleanup(handle)

    async def stream(
        self,
        spec: ProcessSpec,
        *,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> AsyncIterator[OutputChunk]:
        """Run a child and yield only its output chunks."""
        async for event in self.events(spec, cancel_scope=cancel_scope):
            if isinstance(event, OutputChunk):
                yield event

    async def run(self, spec: ProcessSpec) -> ExecutionResult:
        """Run a child to completion and collect its output."""
        result = ExecutionResult()
        stdout = bytearray()
        stderr = bytearray()
        async for event in self.events(spec):
            if isinstance(event, ProcessExit):
                result.exit_status = event.status
                continue
            result.chunks.append(event)
            if event.stream.is_stdout:
                stdout += event.data
            else:
                stderr += event.data
        result.stdout = bytes(stdout)
        result.stderr = bytes(stderr)
        return result

    async def _safe_cleanup(self, handle: ProcessHandle) -> None:
        """Terminate the child if still alive, shielded from cancellation."""
        try:
            await asyncio.shield(self._do_cleanup(handle))
        except asyncio.CancelledError:
            # If shield itself is cancelled, still try cleanup
            await self._do_cleanup(handle)
            raise

    async def _do_cleanup(self, handle: ProcessHandle) -> None:
        if handle.alive:
            await self._terminate_process(handle)

    async def _terminate_process(self, handle: ProcessHandle) -> None:
        """Terminate child gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (Windows: forced termination, there is no graceful signal)
        2. Wait up to term_timeout for the exit watch to clean up
        3. If still alive, send SIGKILL
        4. Wait up to kill_timeout

        Args:
            handle: The child to terminate
        """
        pid = handle.pid
        logger.debug(f"Terminating child pid={pid}")

        handle.kill(signal.SIGTERM)
        try:
            await asyncio.wait_for(handle.wait_async(), timeout=self.term_timeout)
            logger.debug(
                f"Child terminated gracefully pid={pid} "
                f"status={handle.exit_status}"
            )
            return
        except asyncio.TimeoutError:
            pass

        logger.debug(f"Force killing child pid={pid}")
        handle.kill(signal.SIGTERM if IS_WINDOWS else signal.SIGKILL)
        try:
            await asyncio.wait_for(handle.wait_async(), timeout=self.kill_timeout)
            logger.debug(
                f"Child killed pid={pid} "
                f"status={handle.exit_status}"
            )
        except asyncio.TimeoutError:
            logger.warning(f"Child did not exit after kill pid={pid}")


# Convenience function for simple use cases
async def run_process(
    command: str,
    *,
    cwd: str | os.PathLike[str] | None = None,
    stdin_bytes: bytes | None = None,
) -> ExecutionResult:
    """Run command to completion and collect stdout, stderr and exit status."""
    runner = ProcessRunner()
    spec = ProcessSpec(
        command=command,
        cwd=Path(cwd) if cwd is not None else None,
        stdin_bytes=stdin_bytes,
    )
    return await runner.run(spec)
