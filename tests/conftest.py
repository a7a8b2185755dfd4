"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import shlex
import subprocess
import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from procpipe.config import ChildWatchMode, reload_config  # noqa: E402
from procpipe.runtime.host import HostLoop  # noqa: E402

# Helper child script
FAKE_CHILD = Path(__file__).parent / "fixtures" / "fake_child.py"

IS_WINDOWS = sys.platform == "win32"


@pytest.fixture(autouse=True)
def fresh_config() -> Iterator[None]:
    """Drop any configuration cached from a patched environment."""
    reload_config()
    yield
    reload_config()


@pytest.fixture(params=[ChildWatchMode.PIDFD, ChildWatchMode.THREAD], ids=["pidfd", "thread"])
def host(request: pytest.FixtureRequest) -> Iterator[HostLoop]:
    """A HostLoop on a fresh, idle event loop (pumped by wait())."""
    loop = asyncio.new_event_loop()
    try:
        yield HostLoop(loop, child_watch=request.param)
    finally:
        loop.close()


@pytest.fixture
def child_command() -> Callable[..., str]:
    """Build a command line running the fake child with the given arguments."""

    def build(*args: str) -> str:
        argv = [sys.executable, str(FAKE_CHILD), *args]
        if IS_WINDOWS:
            return subprocess.list2cmdline(argv)
        return shlex.join(argv)

    return build


class Recorder:
    """Collects output and exit callbacks in arrival order."""

    def __init__(self) -> None:
        self.events: list[tuple] = []

    def on_output(self, handle, data: bytes, stream) -> None:
        self.events.append(("output", stream, data))

    def on_exit(self, handle, status: int) -> None:
        self.events.append(("exit", status))

    def output(self, stream=None) -> bytes:
        chunks = []
        for event in self.events:
            if event[0] == "output" and (stream is None or event[1] == stream):
                chunks.append(event[2])
        return b"".join(chunks)

    @property
    def exits(self) -> list[int]:
        return [event[1] for event in self.events if event[0] == "exit"]


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()
