"""Process handles: output monitors, exit handling and manual stream access.

A ProcessHandle is created by spawn() and stays alive until its single
cleanup pass runs, either from the exit watch or from wait(). Cleanup is
guarded by the liveness flag: every handle operation runs on the host loop
thread, so checking and clearing that flag is enough to make cleanup run at
most once, even when an output EOF and the child exit are handled in the same
loop iteration.

Push and pull access to stdout:
- monitor_stdout=True streams stdout chunks to the output sink
- read() pulls from stdout on demand and is refused while a stdout monitor
  is active (StreamModeError)
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import sys
from collections.abc import Callable, Iterator
from enum import Enum
from typing import TYPE_CHECKING

import anyio

from ..errors import ReadError, StreamModeError
from .transport import Endpoint, PipeSet, StreamMode

if TYPE_CHECKING:
    from .host import HostLoop, Registration

__all__ = [
    "ExitCallback",
    "OutputMonitor",
    "OutputSink",
    "ProcessHandle",
    "ReadMode",
    "Stream",
    "normalize_status",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


class Stream(str, Enum):
    """Which child output stream a chunk came from."""

    STDOUT = "stdout"
    STDERR = "stderr"

    @property
    def is_stdout(self) -> bool:
        return self is Stream.STDOUT


class ReadMode(str, Enum):
    """Manual read modes.

    - LINE ("l"): next line, terminator stripped
    - LINE_KEEP ("L"): next line, terminator kept
    - ALL ("a"): everything up to end-of-stream
    - BYTES ("n"): a fixed number of bytes
    """

    LINE = "l"
    LINE_KEEP = "L"
    ALL = "a"
    BYTES = "n"

    @classmethod
    def parse(cls, value: "ReadMode | str") -> "ReadMode":
        """Accept a ReadMode or its one-letter code."""
        if isinstance(value, ReadMode):
            return value
        for mode in cls:
            if mode.value == value:
                return mode
        raise ValueError(f"invalid read mode: {value!r}")


OutputSink = Callable[["ProcessHandle", bytes, Stream], None]
ExitCallback = Callable[["ProcessHandle", int], None]


def normalize_status(returncode: int) -> int:
    """Map a Popen returncode to the cross-platform exit status.

    POSIX children killed by a signal (negative returncode) report 1.
    Windows exit codes are used unchanged.
    """
    if not IS_WINDOWS and returncode < 0:
        return 1
    return returncode


class OutputMonitor:
    """Delivers one output stream of a child to the handle's output sink.

    POSIX: woken by selector readiness, drains the non-blocking pipe in
    chunk_size reads until a short read, BlockingIOError or EOF.
    Windows: a reader thread posts chunks, one per callback.
    An EOF (including hang-up with nothing left) removes the watch.
    """

    def __init__(
        self,
        handle: ProcessHandle,
        endpoint: Endpoint,
        stream: Stream,
        host: HostLoop,
    ) -> None:
        self.handle = handle
        self.endpoint = endpoint
        self.stream = stream
        self._host = host
        self._registration: Registration | None = None

    def __repr__(self) -> str:
        state = "active" if self.active else "stopped"
        return f"OutputMonitor({self.stream.value}, pid={self.handle.pid}, {state})"

    @property
    def active(self) -> bool:
        return self._registration is not None and self._registration.active

    def start(self) -> None:
        description = f"{self.stream.value} of pid={self.handle.pid}"
        if IS_WINDOWS:
            self._registration = self._host.watch_reads(
                self.endpoint.fd, self.endpoint.chunk_size, self._on_chunk, description
            )
        else:
            self._registration = self._host.watch_readable(
                self.endpoint.fd, self._on_readable, description
            )

    def stop(self) -> None:
        if self._registration is not None:
            self._registration.cancel()

    def _on_readable(self) -> None:
        if not self.handle.alive:
            self.stop()
            return
        self.drain()

    def _on_chunk(self, data: bytes) -> None:
        if not self.handle.alive:
            self.stop()
            return
        if not data:
            logger.debug(f"{self.stream.value} EOF for pid={self.handle.pid}")
            self.endpoint.eof = True
            self.stop()
            return
        self.handle._deliver(data, self.stream)

    def drain(self) -> None:
        """Read and deliver everything available right now (POSIX)."""
        size = self.endpoint.chunk_size
        while True:
            try:
                data = self.endpoint.read_chunk(size)
            except BlockingIOError:
                return
            except OSError as e:
                logger.debug(f"{self.stream.value} read failed for pid={self.handle.pid}: {e}")
                self.stop()
                return
            if not data:
                logger.debug(f"{self.stream.value} EOF for pid={self.handle.pid}")
                self.stop()
                return
            self.handle._deliver(data, self.stream)
            if len(data) < size:
                return

    def flush(self) -> None:
        """Deliver output already sitting in the pipe before cleanup closes it."""
        if self.active and not IS_WINDOWS:
            self.drain()


class ProcessHandle:
    """A spawned child, its three pipe endpoints and its final status.

    Created by spawn(). All methods must be called on the host loop thread.

    Example:
        proc = spawn("cat", monitor_stdout=True, on_output=sink, on_exit=done)
        proc.write(b"hello\\n")
        proc.close_input()
        status = proc.wait()

    Attributes:
        pid: OS process id
        command: The command line as given
        argv: The argument vector actually executed
        stdin: Write endpoint of the child's stdin
        stdout: Read endpoint of the child's stdout
        stderr: Read endpoint of the child's stderr
        exit_status: Normalized exit status, None until cleanup
    """

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        pipes: PipeSet,
        host: HostLoop,
        *,
        command: str,
        argv: list[str] | str,
        kill_signal: int,
        on_output: OutputSink | None = None,
        on_exit: ExitCallback | None = None,
    ) -> None:
        self.pid = process.pid
        self.command = command
        self.argv = argv
        self.stdin = pipes.stdin
        self.stdout = pipes.stdout
        self.stderr = pipes.stderr
        self.exit_status: int | None = None

        self._process: subprocess.Popen[bytes] | None = process
        self._host = host
        self._kill_signal = kill_signal
        self._on_output = on_output
        self._on_exit = on_exit
        self._alive = True
        self._exited: asyncio.Future[int] = host.create_future()
        self._monitors: dict[Stream, OutputMonitor] = {}
        self._exit_watch: Registration | None = None
        # Worker threads currently inside write(); stdin stays open while > 0
        self._writers = 0
        self._stdin_close_pending = False

    def __repr__(self) -> str:
        return f"<ProcessHandle pid={self.pid} {self.status}>"

    @property
    def alive(self) -> bool:
        """True from spawn until cleanup ran."""
        return self._alive

    @property
    def status(self) -> str:
        return "running" if self._alive else "terminated"

    @property
    def exited(self) -> asyncio.Future[int]:
        """Future resolved with the normalized exit status at cleanup."""
        return self._exited

    def monitoring(self, stream: Stream) -> bool:
        """Whether an output monitor for stream is currently active."""
        monitor = self._monitors.get(stream)
        return monitor is not None and monitor.active

    # ------------------------------------------------------------------
    # Monitors
    # ------------------------------------------------------------------

    def _start(self, monitor_stdout: bool, monitor_stderr: bool) -> None:
        """Register the exit watch and the requested output monitors."""
        self._exit_watch = self._host.watch_child(self._process, self._on_child_exit)
        for stream, endpoint, wanted in (
            (Stream.STDOUT, self.stdout, monitor_stdout),
            (Stream.STDERR, self.stderr, monitor_stderr),
        ):
            if wanted:
                monitor = OutputMonitor(self, endpoint, stream, self._host)
                monitor.start()
                self._monitors[stream] = monitor

    def _abort(self) -> None:
        """Tear down a handle whose monitors could not be registered.

        No callbacks run; the child is killed and reaped.
        """
        self._alive = False
        for monitor in self._monitors.values():
            monitor.stop()
        if self._exit_watch is not None:
            self._exit_watch.cancel()
        if self._process is not None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
            self._process.wait()
            self._process = None
        for endpoint in (self.stdin, self.stdout, self.stderr):
            endpoint.close()

    def _deliver(self, data: bytes, stream: Stream) -> None:
        if self._on_output is None:
            return
        try:
            self._on_output(self, data, stream)
        except Exception as e:
            logger.warning(f"Error in output callback for pid={self.pid}: {e}")

    def _on_child_exit(self, returncode: int) -> None:
        logger.debug(f"Child exited pid={self.pid} returncode={returncode}")
        self._finalize(normalize_status(returncode))

    def _finalize(self, status: int) -> bool:
        """Release everything and report status. Runs its body at most once.

        Returns True if this call performed the cleanup.
        """
        if not self._alive:
            return False
        self._alive = False
        stdout_streamed = Stream.STDOUT in self._monitors

        for monitor in self._monitors.values():
            monitor.flush()
            monitor.stop()
        if self._exit_watch is not None:
            self._exit_watch.cancel()
        self._process = None

        if not stdout_streamed:
            try:
                self.stdout.absorb_pending()
            except OSError as e:
                logger.debug(f"Could not keep pending stdout of pid={self.pid}: {e}")
        self._close_stdin()
        self.stdout.close()
        self.stderr.close()

        self.exit_status = status
        if not self._exited.done():
            self._exited.set_result(status)
        logger.debug(f"Cleaned up pid={self.pid} status={status}")

        if self._on_exit is not None:
            try:
                self._on_exit(self, status)
            except Exception as e:
                logger.warning(f"Error in exit callback for pid={self.pid}: {e}")
        return True

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    def wait(self) -> int:
        """Block until cleanup ran and return the normalized exit status.

        With an idle host loop, the loop is pumped while waiting so other
        children's monitors keep delivering. When any loop is already running
        on this thread (inside a callback or a coroutine), it blocks in
        waitpid and cleans up directly.
        """
        if self._alive:
            if self._host.can_pump:
                self._host.run_until(self._exited)
            else:
                returncode = self._process.wait()
                self._finalize(normalize_status(returncode))
        return self.exit_status

    async def wait_async(self) -> int:
        """Wait for cleanup on the running host loop."""
        return await asyncio.shield(self._exited)

    # ------------------------------------------------------------------
    # Manual reads
    # ------------------------------------------------------------------

    def read(self, mode: ReadMode | str | int = ReadMode.LINE, size: int | None = None) -> bytes | None:
        """Read from stdout on demand.

        Args:
            mode: ReadMode, its code ("l", "L", "a", "n"), or a byte count
            size: Byte count for ReadMode.BYTES

        Returns:
            The bytes read, or None at end-of-stream

        Raises:
            StreamModeError: stdout is being streamed to an output sink
            ReadError: The OS read failed
        """
        if isinstance(mode, int) and not isinstance(mode, bool):
            mode, size = ReadMode.BYTES, mode
        mode = ReadMode.parse(mode)
        if mode is ReadMode.BYTES and size is None:
            raise ValueError("ReadMode.BYTES needs a byte count")
        if mode is ReadMode.BYTES and size < 0:
            raise ValueError(f"byte count must not be negative: {size}")
        if self.monitoring(Stream.STDOUT):
            raise StreamModeError(
                f"stdout of pid={self.pid} is streamed to the output callback"
            )

        endpoint = self.stdout
        endpoint.set_mode(StreamMode.MANUAL)
        try:
            if mode is ReadMode.LINE:
                return endpoint.read_line()
            if mode is ReadMode.LINE_KEEP:
                return endpoint.read_line(keep_ends=True)
            if mode is ReadMode.ALL:
                return endpoint.read_all()
            return endpoint.read_exact(size)
        except OSError as e:
            raise ReadError(e.strerror or str(e), e.errno or 0) from e
        finally:
            if not endpoint.pending:
                endpoint.set_mode(StreamMode.STREAMING)

    def readline(self, keep_ends: bool = False) -> bytes | None:
        return self.read(ReadMode.LINE_KEEP if keep_ends else ReadMode.LINE)

    def read_all(self) -> bytes | None:
        return self.read(ReadMode.ALL)

    def lines(self) -> Iterator[bytes]:
        """Iterate over stdout lines (terminators stripped) until end-of-stream."""
        while True:
            line = self.read(ReadMode.LINE)
            if line is None:
                return
            yield line

    # ------------------------------------------------------------------
    # Input and signals
    # ------------------------------------------------------------------

    def write(self, *chunks: bytes | str) -> None:
        """Write chunks to the child's stdin, str encoded as UTF-8.

        Failures (child gone, input closed) are logged, not raised.
        """
        for chunk in chunks:
            if isinstance(chunk, str):
                chunk = chunk.encode("utf-8")
            try:
                self.stdin.write(chunk)
            except OSError as e:
                logger.debug(f"Write to stdin of pid={self.pid} failed: {e}")
                return

    async def write_async(self, *chunks: bytes | str) -> None:
        """Write chunks from a worker thread while the host loop keeps running.

        Output monitors go on draining the child during the write, so input
        larger than the pipe buffers cannot deadlock against a full stdout.
        Until the write returns, close_input() and cleanup leave the stdin
        descriptor open and close it afterwards.
        """
        self._writers += 1
        try:
            await anyio.to_thread.run_sync(self.write, *chunks)
        finally:
            self._writers -= 1
            if self._stdin_close_pending and not self._writers:
                self._close_stdin()

    def close_input(self) -> None:
        """Close the child's stdin so it reads EOF."""
        self._close_stdin()

    def _close_stdin(self) -> None:
        if self._writers:
            # A worker thread may be past the closed check; closing now could
            # let it write into a reused descriptor
            self._stdin_close_pending = True
            return
        self._stdin_close_pending = False
        if self.stdin.close():
            logger.debug(f"Closed stdin of pid={self.pid}")

    def kill(self, signal: int | None = None) -> None:
        """Send signal (default: the configured force-kill signal) to the child.

        On Windows the child is always terminated forcibly, whatever signal
        is requested; there is no graceful equivalent.
        """
        if not self._alive or self._process is None:
            logger.debug(f"kill() ignored, pid={self.pid} already cleaned up")
            return
        try:
            if IS_WINDOWS:
                self._process.kill()
                logger.debug(f"Terminated pid={self.pid}")
            else:
                signum = signal or self._kill_signal
                self._process.send_signal(signum)
                logger.debug(f"Sent signal {signum} to pid={self.pid}")
        except ProcessLookupError:
            logger.debug(f"Process already exited pid={self.pid}")
