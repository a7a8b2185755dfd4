"""procpipe exception classes.

Spawn failures and manual read failures are reported synchronously to the
caller. Teardown failures are never raised.
"""

from __future__ import annotations

__all__ = [
    "ProcessError",
    "SpawnError",
    "ReadError",
    "StreamModeError",
]


class ProcessError(Exception):
    """Base exception for child process operations."""
    pass


class SpawnError(ProcessError):
    """The command could not be parsed or the child could not be created.

    Attributes:
        message: Human readable reason (OS message when creation failed)
        errno: OS error number, if the failure came from the OS
    """

    def __init__(self, message: str, errno: int | None = None) -> None:
        self.message = message
        self.errno = errno
        super().__init__(message)


class ReadError(ProcessError):
    """A manual read from the child's stdout failed (not a clean EOF).

    Attributes:
        message: OS error message
        code: OS error code
    """

    def __init__(self, message: str, code: int) -> None:
        self.message = message
        self.code = code
        super().__init__(f"[{code}] {message}")


class StreamModeError(ProcessError):
    """Manual read attempted while stdout is delivered to an output sink."""
    pass
