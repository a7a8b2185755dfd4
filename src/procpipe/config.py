"""procpipe environment configuration.

Environment variables:
    PROCPIPE_CHUNK_SIZE: Bytes read per chunk by output monitors
        - default 8192, clamped to 512..1048576

    PROCPIPE_CHILD_WATCH: How child exit is detected
        - auto = pidfd when the platform supports it, otherwise thread (default)
        - pidfd = Linux pidfd registered with the event loop
        - thread = one waiter thread per child

    PROCPIPE_KILL_SIGNAL: Default signal for kill()
        - signal name (KILL, SIGTERM, ...) or number
        - default SIGKILL (ignored on Windows, which always terminates)

    PROCPIPE_NEW_SESSION: Start POSIX children in a new session
        - true/1/yes = yes (default, terminal Ctrl+C does not reach children)
        - false/0/no = no

    PROCPIPE_SHELL: Command interpreter used on Windows
        - default %COMSPEC%, or cmd.exe

    PROCPIPE_TERM_TIMEOUT: Seconds ProcessRunner waits after SIGTERM (default 2.0)

    PROCPIPE_KILL_TIMEOUT: Seconds ProcessRunner waits after SIGKILL (default 1.0)

    PROCPIPE_LOG_DEBUG: Log debug output to a temporary file
        - true/1/yes = on
        - false/0/no = off (default, log to stderr)
"""

from __future__ import annotations

import os
import signal
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = [
    "ChildWatchMode",
    "Config",
    "generate_log_file_path",
    "get_config",
    "load_config",
    "parse_signal",
    "reload_config",
]

IS_WINDOWS = sys.platform == "win32"

DEFAULT_CHUNK_SIZE = 8192
MIN_CHUNK_SIZE = 512
MAX_CHUNK_SIZE = 1024 * 1024


class ChildWatchMode(Enum):
    """Child exit detection strategy.

    - AUTO: PIDFD where os.pidfd_open works, THREAD otherwise
    - PIDFD: pidfd readiness on the event loop (Linux only)
    - THREAD: a daemon thread blocked in wait()
    """

    AUTO = "auto"
    PIDFD = "pidfd"
    THREAD = "thread"

    @classmethod
    def from_string(cls, value: str) -> "ChildWatchMode":
        """Parse a mode name, falling back to AUTO for unknown values."""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.AUTO


def _default_kill_signal() -> int:
    if IS_WINDOWS:
        return int(signal.SIGTERM)
    return int(signal.SIGKILL)


def _default_shell() -> str:
    return os.environ.get("COMSPEC") or "cmd.exe"


@dataclass
class Config:
    """procpipe configuration.

    Attributes:
        chunk_size: Read size for output monitors
        child_watch: Exit detection strategy
        kill_signal: Default signal number for kill()
        new_session: Start POSIX children in a new session
        shell: Windows command interpreter
        term_timeout: ProcessRunner grace period after SIGTERM
        kill_timeout: ProcessRunner grace period after SIGKILL
        log_debug: Log to a temporary file at DEBUG level
        log_file: Log file path (set when log_debug is on)
    """

    chunk_size: int = DEFAULT_CHUNK_SIZE
    child_watch: ChildWatchMode = ChildWatchMode.AUTO
    kill_signal: int = _default_kill_signal()
    new_session: bool = True
    shell: str = "cmd.exe"
    term_timeout: float = 2.0
    kill_timeout: float = 1.0
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(chunk_size={self.chunk_size}, "
            f"child_watch={self.child_watch.value}, "
            f"kill_signal={self.kill_signal}, "
            f"new_session={self.new_session}, "
            f"shell={self.shell}, "
            f"term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_chunk_size(value: str | None) -> int:
    if not value:
        return DEFAULT_CHUNK_SIZE
    try:
        size = int(value)
    except ValueError:
        return DEFAULT_CHUNK_SIZE
    return max(MIN_CHUNK_SIZE, min(size, MAX_CHUNK_SIZE))


def _parse_timeout(value: str | None, default: float) -> float:
    if not value:
        return default
    try:
        timeout = float(value)
        return max(0.1, min(timeout, 60.0))
    except ValueError:
        return default


def parse_signal(value: str | int | None) -> int:
    """Parse a signal given as a number or a name like TERM or SIGTERM.

    Unknown names and empty values yield the platform's force-kill signal.
    """
    if value is None:
        return _default_kill_signal()
    if isinstance(value, int):
        return value
    value = value.strip()
    if not value:
        return _default_kill_signal()
    if value.isdigit():
        return int(value)
    name = value.upper()
    if not name.startswith("SIG"):
        name = f"SIG{name}"
    try:
        return int(signal.Signals[name])
    except KeyError:
        return _default_kill_signal()


def generate_log_file_path() -> str:
    """Build a timestamped log file path under the temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "procpipe"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"procpipe_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """Load configuration from the environment."""
    log_debug = _parse_bool(os.environ.get("PROCPIPE_LOG_DEBUG"), default=False)
    log_file = generate_log_file_path() if log_debug else None

    return Config(
        chunk_size=_parse_chunk_size(os.environ.get("PROCPIPE_CHUNK_SIZE")),
        child_watch=ChildWatchMode.from_string(
            os.environ.get("PROCPIPE_CHILD_WATCH") or "auto"
        ),
        kill_signal=parse_signal(os.environ.get("PROCPIPE_KILL_SIGNAL")),
        new_session=_parse_bool(os.environ.get("PROCPIPE_NEW_SESSION"), default=True),
        shell=os.environ.get("PROCPIPE_SHELL") or _default_shell(),
        term_timeout=_parse_timeout(os.environ.get("PROCPIPE_TERM_TIMEOUT"), 2.0),
        kill_timeout=_parse_timeout(os.environ.get("PROCPIPE_KILL_TIMEOUT"), 1.0),
        log_debug=log_debug,
        log_file=log_file,
    )


# Global instance, loaded lazily
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Re-read the environment (used by tests)."""
    global _config
    _config = load_config()
    return _config
