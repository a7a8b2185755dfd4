"""Spawning children with redirected standard streams.

spawn() either returns a live ProcessHandle with its exit watch (and any
requested output monitors) registered, or raises SpawnError with every pipe
it created already closed.

Platform notes:
- POSIX: the command line is split with shell-word rules and executed
  directly (PATH lookup). Children start a new session unless disabled, so
  a Ctrl+C aimed at the host does not reach them.
- Windows: the command line runs through the command interpreter
  ("%COMSPEC% /c ...") so batch files work; children get
  CREATE_NEW_PROCESS_GROUP and no console window.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
from collections.abc import Iterable, Mapping
from typing import Any

from ..config import Config, get_config
from ..errors import SpawnError
from .host import HostLoop, get_host
from .process import ExitCallback, OutputSink, ProcessHandle
from .transport import create_pipes

__all__ = ["build_argv", "build_env", "spawn"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"

EnvSpec = Mapping[str, str] | Iterable[str]


def build_argv(command: str, config: Config | None = None) -> list[str] | str:
    """Turn a command line into what Popen executes.

    Raises:
        SpawnError: Unbalanced quotes or an empty command
    """
    try:
        argv = shlex.split(command, posix=not IS_WINDOWS)
    except ValueError as e:
        raise SpawnError(f"Invalid command line: {e}") from e
    if not argv:
        raise SpawnError("Command line is empty")
    if IS_WINDOWS:
        shell = (config or get_config()).shell
        return f"{shell} /c {command}"
    return argv


def build_env(env: EnvSpec | None) -> dict[str, str] | None:
    """Normalize a mapping or ordered KEY=VALUE entries into a Popen env.

    None means "inherit the parent environment".

    Raises:
        SpawnError: An entry without "=" or with an empty key
    """
    if env is None:
        return None
    if isinstance(env, Mapping):
        return {str(key): str(value) for key, value in env.items()}
    if isinstance(env, (str, bytes)):
        raise SpawnError("Environment must be a mapping or a list of KEY=VALUE entries")
    result: dict[str, str] = {}
    for entry in env:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            raise SpawnError(f"Invalid environment entry: {entry!r}")
        result[key] = value
    return result


def _build_subprocess_kwargs(config: Config) -> dict[str, Any]:
    """Build platform-specific Popen kwargs."""
    kwargs: dict[str, Any] = {}
    if IS_WINDOWS:
        kwargs["creationflags"] = (
            subprocess.CREATE_NEW_PROCESS_GROUP | subprocess.CREATE_NO_WINDOW
        )
    elif config.new_session:
        kwargs["start_new_session"] = True
    return kwargs


def spawn(
    command: str,
    *,
    cwd: str | os.PathLike[str] | None = None,
    env: EnvSpec | None = None,
    monitor_stdout: bool = False,
    monitor_stderr: bool = False,
    on_output: OutputSink | None = None,
    on_exit: ExitCallback | None = None,
    host: HostLoop | None = None,
    config: Config | None = None,
) -> ProcessHandle:
    """Start command with piped stdin/stdout/stderr.

    Args:
        command: Command line, split with shell-word rules
        cwd: Working directory (None = inherit)
        env: Replacement environment, mapping or KEY=VALUE entries (None = inherit)
        monitor_stdout: Stream stdout chunks to on_output
        monitor_stderr: Stream stderr chunks to on_output
        on_output: on_output(handle, data, stream) for each chunk
        on_exit: on_exit(handle, status), called exactly once
        host: Host loop to register watches with (default: running or shared loop)
        config: Settings (default: environment configuration)

    Returns:
        A live ProcessHandle

    Raises:
        SpawnError: The command is malformed or the child could not be created
    """
    config = config or get_config()
    argv = build_argv(command, config)
    environment = build_env(env)
    host = host or get_host()

    try:
        pipes = create_pipes(config.chunk_size)
    except OSError as e:
        raise SpawnError(str(e), e.errno) from e

    child_stdin, child_stdout, child_stderr = pipes.child_fds
    try:
        process = subprocess.Popen(
            argv,
            stdin=child_stdin,
            stdout=child_stdout,
            stderr=child_stderr,
            cwd=cwd,
            env=environment,
            close_fds=True,
            **_build_subprocess_kwargs(config),
        )
    except (OSError, ValueError, subprocess.SubprocessError) as e:
        pipes.close_all()
        logger.debug(f"Spawn failed for {command!r}: {e}")
        raise SpawnError(str(e), getattr(e, "errno", None)) from e
    pipes.close_child_ends()

    handle = ProcessHandle(
        process,
        pipes,
        host,
        command=command,
        argv=argv,
        kill_signal=config.kill_signal,
        on_output=on_output,
        on_exit=on_exit,
    )
    try:
        handle._start(monitor_stdout, monitor_stderr)
    except Exception as e:
        handle._abort()
        logger.debug(f"Could not monitor pid={process.pid}: {e}")
        raise SpawnError(f"Could not monitor child process: {e}") from e

    program = argv[0] if isinstance(argv, list) else argv
    logger.debug(f"Spawned pid={process.pid} argv0={program} cwd={cwd}")
    return handle
