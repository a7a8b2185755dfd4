"""Host event loop adapter.

Process monitors never poll. They register readiness watches and child
watches with an asyncio event loop and are called back on the loop thread.

Watch primitives:
- watch_readable: selector readiness on a descriptor (POSIX)
- watch_reads: a reader thread posting chunks back to the loop (Windows
  pipes, which proactor loops cannot select on)
- watch_child: pidfd readiness (Linux) or a waiter thread

Threads only ever post results with call_soon_threadsafe; every callback
runs on the loop thread.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
import threading
from collections.abc import Callable
from typing import Any

from ..config import ChildWatchMode, get_config

__all__ = ["HostLoop", "Registration", "get_host"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


class Registration:
    """Cancellable token for one active watch.

    cancel() is idempotent and never raises; deregistering an already removed
    watch is a no-op.
    """

    def __init__(self, description: str, on_cancel: Callable[[], Any] | None = None) -> None:
        self.description = description
        self._on_cancel = on_cancel
        self._active = True

    def __repr__(self) -> str:
        state = "active" if self._active else "cancelled"
        return f"Registration({self.description}, {state})"

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> bool:
        """Remove the watch. Returns False if it was already removed."""
        if not self._active:
            return False
        self._active = False
        on_cancel, self._on_cancel = self._on_cancel, None
        if on_cancel is not None:
            try:
                on_cancel()
            except Exception as e:
                logger.debug(f"Error removing watch {self.description}: {e}")
        return True


class HostLoop:
    """Binds process watches to one asyncio event loop.

    Example:
        host = HostLoop(asyncio.new_event_loop())
        proc = spawn("echo hello", host=host, monitor_stdout=True, on_output=sink)
        status = proc.wait()  # pumps host.loop until the child is cleaned up

    Attributes:
        loop: The event loop callbacks run on
        child_watch: Exit detection strategy
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        *,
        child_watch: ChildWatchMode | None = None,
    ) -> None:
        self.loop = loop
        self.child_watch = child_watch if child_watch is not None else get_config().child_watch

    def __repr__(self) -> str:
        return f"HostLoop(child_watch={self.child_watch.value}, running={self.loop.is_running()})"

    # ------------------------------------------------------------------
    # Pumping
    # ------------------------------------------------------------------

    @property
    def can_pump(self) -> bool:
        """True when the loop is idle and may be driven from this thread.

        False while any event loop (this one or another) runs on this thread,
        since asyncio refuses to nest run_until_complete().
        """
        if self.loop.is_running() or self.loop.is_closed():
            return False
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return True
        return False

    def pump(self) -> None:
        """Process the events that are ready right now, without waiting."""
        if not self.can_pump:
            return
        self.loop.call_soon(self.loop.stop)
        self.loop.run_forever()

    def run_until(self, future: asyncio.Future[Any]) -> Any:
        """Pump the loop until future is done and return its result."""
        return self.loop.run_until_complete(future)

    def create_future(self) -> asyncio.Future[Any]:
        return self.loop.create_future()

    def _post(self, registration: Registration, callback: Callable[..., Any], *args: Any) -> bool:
        """Schedule callback on the loop from a watcher thread."""

        def deliver() -> None:
            if registration.active:
                callback(*args)

        try:
            self.loop.call_soon_threadsafe(deliver)
        except RuntimeError:
            # Loop closed while the thread was blocked
            logger.debug(f"Dropping event for {registration.description}: loop is closed")
            return False
        return True

    # ------------------------------------------------------------------
    # Readiness watches
    # ------------------------------------------------------------------

    def watch_readable(self, fd: int, callback: Callable[[], Any], description: str) -> Registration:
        """Call callback whenever fd is readable (including hang-up)."""
        self.loop.add_reader(fd, callback)

        def remove() -> None:
            if not self.loop.is_closed():
                self.loop.remove_reader(fd)

        logger.debug(f"Watching fd={fd} for {description}")
        return Registration(description, remove)

    def watch_reads(
        self,
        fd: int,
        chunk_size: int,
        callback: Callable[[bytes], Any],
        description: str,
    ) -> Registration:
        """Read fd on a daemon thread and deliver each chunk on the loop.

        callback receives b"" once at end-of-stream. Chunks arriving after
        the registration is cancelled are dropped.
        """
        registration = Registration(description)

        def reader() -> None:
            while registration.active:
                try:
                    data = os.read(fd, chunk_size)
                except OSError as e:
                    logger.debug(f"Reader thread for {description} stopped: {e}")
                    data = b""
                if not self._post(registration, callback, data) or not data:
                    return

        thread = threading.Thread(target=reader, name=f"procpipe-{description}", daemon=True)
        thread.start()
        logger.debug(f"Reader thread started for {description}")
        return registration

    # ------------------------------------------------------------------
    # Child watch
    # ------------------------------------------------------------------

    def _use_pidfd(self) -> bool:
        if IS_WINDOWS or not hasattr(os, "pidfd_open"):
            return False
        return self.child_watch is not ChildWatchMode.THREAD

    def watch_child(
        self,
        process: subprocess.Popen[bytes],
        callback: Callable[[int], Any],
    ) -> Registration:
        """Call callback(returncode) once, on the loop, when process exits.

        returncode is Popen's: the exit code, or -signum when a POSIX child
        was killed by a signal.
        """
        description = f"exit of pid={process.pid}"
        if self._use_pidfd():
            try:
                return self._watch_pidfd(process, callback, description)
            except OSError as e:
                logger.debug(f"pidfd_open failed for pid={process.pid}, using thread: {e}")
        return self._watch_thread(process, callback, description)

    def _watch_pidfd(
        self,
        process: subprocess.Popen[bytes],
        callback: Callable[[int], Any],
        description: str,
    ) -> Registration:
        pidfd = os.pidfd_open(process.pid)

        def remove() -> None:
            try:
                if not self.loop.is_closed():
                    self.loop.remove_reader(pidfd)
            finally:
                os.close(pidfd)

        registration = Registration(description, remove)

        def exited() -> None:
            registration.cancel()
            # Does not block: the pidfd is readable only after exit
            callback(process.wait())

        self.loop.add_reader(pidfd, exited)
        logger.debug(f"Watching {description} via pidfd={pidfd}")
        return registration

    def _watch_thread(
        self,
        process: subprocess.Popen[bytes],
        callback: Callable[[int], Any],
        description: str,
    ) -> Registration:
        registration = Registration(description)

        def exited(returncode: int) -> None:
            registration.cancel()
            callback(returncode)

        def waiter() -> None:
            returncode = process.wait()
            if registration.active:
                self._post(registration, exited, returncode)

        thread = threading.Thread(
            target=waiter, name=f"procpipe-waitpid-{process.pid}", daemon=True
        )
        thread.start()
        logger.debug(f"Watching {description} via waiter thread")
        return registration


# Shared host for callers without a running loop, created lazily
_default_host: HostLoop | None = None


def get_host(loop: asyncio.AbstractEventLoop | None = None) -> HostLoop:
    """Return a HostLoop for loop, the running loop, or the shared default loop."""
    global _default_host
    if loop is not None:
        return HostLoop(loop)
    try:
        return HostLoop(asyncio.get_running_loop())
    except RuntimeError:
        pass
    if _default_host is None or _default_host.loop.is_closed():
        _default_host = HostLoop(asyncio.new_event_loop())
    return _default_host
