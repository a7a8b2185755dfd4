"""procpipe - event-loop driven child processes with piped standard streams.

Environment variables:
    PROCPIPE_CHUNK_SIZE: Output monitor read size (default 8192)
    PROCPIPE_CHILD_WATCH: auto | pidfd | thread (default auto)
    PROCPIPE_KILL_SIGNAL: Default kill() signal (default SIGKILL)
    PROCPIPE_LOG_DEBUG: Log to a temporary file (default false)

Usage:
    procpipe "ls -l"
"""

__version__ = "0.1.0"

from .errors import ProcessError, ReadError, SpawnError, StreamModeError
from .runtime import (
    HostLoop,
    ProcessHandle,
    ProcessRunner,
    ProcessSpec,
    ReadMode,
    Stream,
    spawn,
)

__all__ = [
    "__version__",
    "HostLoop",
    "ProcessError",
    "ProcessHandle",
    "ProcessRunner",
    "ProcessSpec",
    "ReadError",
    "ReadMode",
    "SpawnError",
    "Stream",
    "StreamModeError",
    "spawn",
]
