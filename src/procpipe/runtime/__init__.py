"""Runtime module for child process management.

This module provides spawning with redirected standard streams, event-loop
driven output and exit monitoring, and synchronous read/write/wait access.
"""

from __future__ import annotations

from .host import HostLoop, Registration, get_host
from .process import OutputMonitor, ProcessHandle, ReadMode, Stream, normalize_status
from .process_runner import (
    ExecutionResult,
    OutputChunk,
    ProcessExit,
    ProcessRunner,
    ProcessSpec,
    run_process,
)
from .spawner import spawn
from .transport import Endpoint, StreamMode

__all__ = [
    "Endpoint",
    "ExecutionResult",
    "HostLoop",
    "OutputChunk",
    "OutputMonitor",
    "ProcessExit",
    "ProcessHandle",
    "ProcessRunner",
    "ProcessSpec",
    "ReadMode",
    "Registration",
    "Stream",
    "StreamMode",
    "get_host",
    "normalize_status",
    "run_process",
    "spawn",
]
