"""procpipe command line entry point.

Runs one command with its output mirrored to our stdout/stderr and exits with
the child's normalized status.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
import sys

import anyio

from .config import Config, generate_log_file_path, get_config
from .errors import SpawnError
from .runtime import ProcessHandle, Stream, spawn

__all__ = ["build_parser", "configure_logging", "main", "run_command"]

logger = logging.getLogger(__name__)

# Exit status when the command could not be started (shell convention)
SPAWN_FAILED_STATUS = 127

# Bytes forwarded from our stdin per write
STDIN_CHUNK_SIZE = 64 * 1024


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="procpipe",
        description="Run a command with piped, event-loop monitored standard streams.",
    )
    parser.add_argument("--cwd", default=None, help="Working directory for the command")
    parser.add_argument(
        "--env",
        action="append",
        default=None,
        metavar="KEY=VALUE",
        help="Environment entry; when given, replaces the inherited environment",
    )
    parser.add_argument("--no-stderr", action="store_true", help="Do not mirror stderr")
    parser.add_argument("--input", default=None, help="Text written to the command's stdin")
    parser.add_argument("--stdin", action="store_true", help="Forward our stdin to the command")
    parser.add_argument("--log-debug", action="store_true", help="Log debug output to a temp file")
    parser.add_argument("command", nargs="+", help="Command line (one string, or words)")
    return parser


def configure_logging(config: Config) -> None:
    """Configure log handlers for the procpipe namespace."""
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        # LOG_DEBUG mode: write to a temp file
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # Default: stderr, warnings only so the child's stderr stays readable
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.WARNING

    # Root logger (third-party libraries) stays at WARNING
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    logging.getLogger("procpipe").setLevel(log_level)


def _mirror_output(handle: ProcessHandle, data: bytes, stream: Stream) -> None:
    target = sys.stdout if stream.is_stdout else sys.stderr
    target.buffer.write(data)
    target.buffer.flush()


async def run_command(args: argparse.Namespace) -> int:
    """Spawn the command described by args and wait for it."""
    command = args.command[0] if len(args.command) == 1 else shlex.join(args.command)
    try:
        handle = spawn(
            command,
            cwd=args.cwd,
            env=args.env,
            monitor_stdout=True,
            monitor_stderr=not args.no_stderr,
            on_output=_mirror_output,
        )
    except SpawnError as e:
        print(f"procpipe: {e.message}", file=sys.stderr)
        return SPAWN_FAILED_STATUS

    # Writes run off the loop so mirroring keeps draining the child meanwhile
    if args.input is not None:
        await handle.write_async(args.input)
    if args.stdin:
        while True:
            data = await anyio.to_thread.run_sync(sys.stdin.buffer.read1, STDIN_CHUNK_SIZE)
            if not data:
                break
            await handle.write_async(data)
    handle.close_input()

    status = await handle.wait_async()
    logger.debug(f"Command finished pid={handle.pid} status={status}")
    return status


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    config = get_config()
    if args.log_debug and not config.log_debug:
        config.log_debug = True
        config.log_file = config.log_file or generate_log_file_path()
    configure_logging(config)
    logger.debug(f"Starting procpipe: {config}")

    return asyncio.run(run_command(args))


if __name__ == "__main__":
    sys.exit(main())
