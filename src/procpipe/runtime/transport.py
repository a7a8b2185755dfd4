"""Pipe transport for child process standard streams.

Each child gets three unidirectional pipes. The parent keeps the stdin write
end and the stdout/stderr read ends as Endpoint objects; the other three ends
are handed to the child and closed in the parent once the child exists.

A read Endpoint has two modes:
- STREAMING: unbuffered. On POSIX the descriptor is non-blocking so an output
  monitor can drain it from an event loop callback without stalling the loop.
- MANUAL: buffered. Reads block until a line / the requested size / EOF is
  available, and unconsumed bytes stay in the endpoint buffer.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from enum import Enum

__all__ = [
    "Endpoint",
    "PipeSet",
    "StreamMode",
    "create_pipes",
]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

if IS_WINDOWS:
    import msvcrt
    import _winapi


class StreamMode(Enum):
    """Delivery mode of a read endpoint."""

    STREAMING = "streaming"
    MANUAL = "manual"


def _available(fd: int) -> int:
    """Bytes that can be read from a Windows pipe without blocking."""
    handle = msvcrt.get_osfhandle(fd)
    return _winapi.PeekNamedPipe(handle)[0]


class Endpoint:
    """One parent-side end of a child's standard stream pipe.

    The endpoint exclusively owns its descriptor and closes it at most once.

    Attributes:
        fd: OS file descriptor
        name: "stdin", "stdout" or "stderr"
        chunk_size: Size of a single OS read
        mode: Current StreamMode (read endpoints only)
        eof: True once the OS reported end-of-stream
        closed: True once the descriptor was closed
    """

    def __init__(self, fd: int, name: str, *, chunk_size: int = 8192) -> None:
        if fd < 0:
            raise ValueError("File descriptor fd is negative")
        self.fd = fd
        self.name = name
        self.chunk_size = chunk_size
        self.mode = StreamMode.STREAMING
        self.eof = False
        self.closed = False
        self._buffer = bytearray()

    def __repr__(self) -> str:
        state = "closed" if self.closed else self.mode.value
        return f"Endpoint({self.name}, fd={self.fd}, {state}, pending={len(self._buffer)})"

    def fileno(self) -> int:
        return self.fd

    @property
    def buffered(self) -> bool:
        return self.mode is StreamMode.MANUAL

    @property
    def pending(self) -> int:
        """Number of bytes held in the endpoint buffer."""
        return len(self._buffer)

    def set_mode(self, mode: StreamMode) -> None:
        """Switch between STREAMING and MANUAL delivery.

        Windows pipes stay blocking in both modes; streaming there is done by
        a reader thread.
        """
        if mode is self.mode:
            return
        self.mode = mode
        if self.closed or IS_WINDOWS:
            return
        os.set_blocking(self.fd, mode is StreamMode.MANUAL)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read_chunk(self, size: int | None = None) -> bytes:
        """Read at most size bytes, buffered bytes first.

        Returns b"" at end-of-stream. In STREAMING mode on POSIX raises
        BlockingIOError when nothing is available right now. Other OSErrors
        propagate.
        """
        size = size or self.chunk_size
        if self._buffer:
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
            return data
        if self.closed or self.eof:
            return b""
        data = os.read(self.fd, size)
        if not data:
            self.eof = True
        return data

    def _fill(self) -> bool:
        """Append one OS read to the buffer. False at end-of-stream."""
        if self.closed or self.eof:
            return False
        data = os.read(self.fd, self.chunk_size)
        if not data:
            self.eof = True
            return False
        self._buffer += data
        return True

    def read_line(self, keep_ends: bool = False) -> bytes | None:
        """Read up to and including the next newline.

        The terminator ("\\n" or "\\r\\n") is stripped unless keep_ends.
        A final unterminated line is returned as-is. None at end-of-stream.
        """
        start = 0
        while True:
            index = self._buffer.find(b"\n", start)
            if index != -1:
                line = bytes(self._buffer[: index + 1])
                del self._buffer[: index + 1]
                break
            start = len(self._buffer)
            if not self._fill():
                if not self._buffer:
                    return None
                line = bytes(self._buffer)
                self._buffer.clear()
                return line

        if keep_ends:
            return line
        if line.endswith(b"\r\n"):
            return line[:-2]
        return line[:-1]

    def read_all(self) -> bytes | None:
        """Read until end-of-stream. None when nothing was left to read."""
        while self._fill():
            pass
        if not self._buffer:
            return None
        data = bytes(self._buffer)
        self._buffer.clear()
        return data

    def read_exact(self, size: int) -> bytes | None:
        """Read size bytes, fewer only at end-of-stream. None when nothing is left."""
        if size <= 0:
            return b""
        while len(self._buffer) < size and self._fill():
            pass
        if not self._buffer:
            return None
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def absorb_pending(self) -> int:
        """Move whatever the pipe holds right now into the buffer, never blocking.

        Returns the number of bytes absorbed.
        """
        if self.closed or self.eof:
            return 0
        absorbed = 0
        if IS_WINDOWS:
            while True:
                available = _available(self.fd)
                if not available:
                    break
                data = os.read(self.fd, min(available, self.chunk_size))
                if not data:
                    self.eof = True
                    break
                self._buffer += data
                absorbed += len(data)
            return absorbed

        os.set_blocking(self.fd, False)
        try:
            while True:
                try:
                    data = os.read(self.fd, self.chunk_size)
                except BlockingIOError:
                    break
                if not data:
                    self.eof = True
                    break
                self._buffer += data
                absorbed += len(data)
        finally:
            os.set_blocking(self.fd, self.mode is StreamMode.MANUAL)
        return absorbed

    # ------------------------------------------------------------------
    # Writing and closing
    # ------------------------------------------------------------------

    def write(self, data: bytes) -> int:
        """Blocking write of all of data. OSErrors propagate."""
        if self.closed:
            raise OSError(9, f"{self.name} is closed")
        view = memoryview(data)
        while view:
            written = os.write(self.fd, view)
            view = view[written:]
        return len(data)

    def close(self) -> bool:
        """Close the descriptor. Returns False if it was already closed."""
        if self.closed:
            return False
        self.closed = True
        try:
            os.close(self.fd)
        except OSError as e:
            logger.debug(f"Error closing {self.name} fd={self.fd}: {e}")
        return True


@dataclass
class PipeSet:
    """The three pipes created for one child.

    Attributes:
        stdin: Parent write end of the child's stdin
        stdout: Parent read end of the child's stdout
        stderr: Parent read end of the child's stderr
        child_fds: Child ends (stdin read, stdout write, stderr write),
            emptied once closed in the parent
    """

    stdin: Endpoint
    stdout: Endpoint
    stderr: Endpoint
    child_fds: list[int] = field(default_factory=list)

    def close_child_ends(self) -> None:
        """Close the ends inherited by the child, once."""
        fds, self.child_fds = self.child_fds, []
        for fd in fds:
            try:
                os.close(fd)
            except OSError as e:
                logger.debug(f"Error closing child pipe end fd={fd}: {e}")

    def close_all(self) -> None:
        """Close every end (used when the child could not be created)."""
        self.close_child_ends()
        for endpoint in (self.stdin, self.stdout, self.stderr):
            endpoint.close()


def create_pipes(chunk_size: int = 8192) -> PipeSet:
    """Create stdin/stdout/stderr pipes for a new child.

    Descriptors from os.pipe() are non-inheritable; subprocess makes the child
    ends inheritable for the child only. Parent read ends start in STREAMING
    mode. On failure everything created so far is closed and the OSError
    propagates.
    """
    created: list[int] = []
    try:
        stdin_read, stdin_write = os.pipe()
        created += [stdin_read, stdin_write]
        stdout_read, stdout_write = os.pipe()
        created += [stdout_read, stdout_write]
        stderr_read, stderr_write = os.pipe()
        created += [stderr_read, stderr_write]
    except OSError:
        for fd in created:
            os.close(fd)
        raise

    pipes = PipeSet(
        stdin=Endpoint(stdin_write, "stdin", chunk_size=chunk_size),
        stdout=Endpoint(stdout_read, "stdout", chunk_size=chunk_size),
        stderr=Endpoint(stderr_read, "stderr", chunk_size=chunk_size),
        child_fds=[stdin_read, stdout_write, stderr_write],
    )
    if not IS_WINDOWS:
        os.set_blocking(stdout_read, False)
        os.set_blocking(stderr_read, False)
    return pipes
