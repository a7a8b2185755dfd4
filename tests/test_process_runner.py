"""ProcessRunner unit tests.

Test coverage:
- Basic process execution (stdout chunks, exit event last)
- Stdin writing
- Stderr handling
- Early exit and cancellation terminate the child
- Environment handling
- ProcessSpec and ExecutionResult dataclasses
- Edge cases (spawn failure, non-zero exit, empty and large output)
"""

from __future__ import annotations

import asyncio
import os
import shlex
import subprocess
import sys
from pathlib import Path

import anyio
import pytest

from procpipe.errors import SpawnError
from procpipe.runtime.process import Stream
from procpipe.runtime.process_runner import (
    IS_WINDOWS,
    ExecutionResult,
    OutputChunk,
    ProcessExit,
    ProcessRunner,
    ProcessSpec,
    run_process,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def runner() -> ProcessRunner:
    """Create ProcessRunner instance with short timeouts for testing."""
    return ProcessRunner(term_timeout=0.5, kill_timeout=0.3)


def python_command(code: str) -> str:
    """Command line running a Python snippet in the current interpreter."""
    argv = [sys.executable, "-c", code]
    if IS_WINDOWS:
        return subprocess.list2cmdline(argv)
    return shlex.join(argv)


# =============================================================================
# Basic Execution Tests
# =============================================================================


class TestBasicExecution:
    """Test basic process execution."""

    @pytest.mark.asyncio
    async def test_simple_command(self, temp_workspace: Path, runner: ProcessRunner):
        """Test running a simple command."""
        spec = ProcessSpec(command="echo hello", cwd=temp_workspace)

        output = []
        async for chunk in runner.stream(spec):
            output.append(chunk.data)

        result = b"".join(output).decode().strip()
        assert "hello" in result

    @pytest.mark.asyncio
    async def test_exit_event_is_last(self, runner: ProcessRunner, child_command):
        """Test that ProcessExit arrives once, after every chunk."""
        spec = ProcessSpec(command=child_command("--stdout", "out\\n", "--exit-code", "3"))

        events = [event async for event in runner.events(spec)]

        assert events[-1] == ProcessExit(3)
        assert sum(isinstance(event, ProcessExit) for event in events) == 1
        assert b"".join(e.data for e in events if isinstance(e, OutputChunk)) == b"out\n"

    @pytest.mark.asyncio
    async def test_multiline_output(self, runner: ProcessRunner, child_command):
        """Test process with multiple output lines."""
        spec = ProcessSpec(command=child_command("--stdout", "line1\\nline2\\nline3\\n"))

        result = await runner.run(spec)

        assert result.stdout.splitlines() == [b"line1", b"line2", b"line3"]
        assert result.success

    @pytest.mark.asyncio
    async def test_working_directory(self, temp_workspace: Path, runner: ProcessRunner):
        """Test that working directory is correctly set."""
        spec = ProcessSpec(
            command=python_command("import os; print(os.getcwd())"),
            cwd=temp_workspace,
        )

        result = await runner.run(spec)

        assert Path(result.stdout.decode().strip()).resolve() == temp_workspace.resolve()


# =============================================================================
# Stdin Tests
# =============================================================================


class TestStdinHandling:
    """Test stdin handling."""

    @pytest.mark.asyncio
    async def test_stdin_write(self, runner: ProcessRunner, child_command):
        """Test writing to stdin."""
        spec = ProcessSpec(command=child_command("--echo"), stdin_bytes=b"hello from stdin\n")

        result = await runner.run(spec)

        assert result.stdout == b"hello from stdin\n"

    @pytest.mark.asyncio
    async def test_stdin_larger_than_pipe(self, runner: ProcessRunner, child_command):
        """Test input larger than a pipe buffer does not stall the loop."""
        payload = bytes(range(256)) * 1024
        spec = ProcessSpec(command=child_command("--echo"), stdin_bytes=payload)

        result = await asyncio.wait_for(runner.run(spec), timeout=20)

        assert result.stdout == payload

    @pytest.mark.asyncio
    async def test_stdin_closed_without_input(self, runner: ProcessRunner, child_command):
        """Test that stdin is closed even when there is nothing to write."""
        spec = ProcessSpec(command=child_command("--drain-stdin", "--exit-code", "2"))

        result = await asyncio.wait_for(runner.run(spec), timeout=10)

        assert result.exit_status == 2

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_child_ignores_large_stdin(self, runner: ProcessRunner, child_command):
        """Test input larger than a pipe buffer sent to a child that exits without reading."""
        spec = ProcessSpec(
            command=child_command("--stdout", "bye", "--sleep", "0.2", "--exit-code", "5"),
            stdin_bytes=b"x" * (4 * 1024 * 1024),
        )

        result = await runner.run(spec)

        assert result.exit_status == 5
        assert result.stdout == b"bye"


# =============================================================================
# Stderr Handling Tests
# =============================================================================


class TestStderrHandling:
    """Test stderr handling."""

    @pytest.mark.asyncio
    async def test_mixed_stdout_stderr(self, runner: ProcessRunner, child_command):
        """Test handling both stdout and stderr."""
        spec = ProcessSpec(command=child_command("--stdout", "stdout", "--stderr", "stderr"))

        result = await runner.run(spec)

        assert result.stdout == b"stdout"
        assert result.stderr == b"stderr"
        assert {chunk.stream for chunk in result.chunks} == {Stream.STDOUT, Stream.STDERR}

    @pytest.mark.asyncio
    async def test_stderr_not_monitored(self, runner: ProcessRunner, child_command):
        """Test that stderr can be left out of the channel."""
        spec = ProcessSpec(
            command=child_command("--stdout", "stdout", "--stderr", "stderr"),
            monitor_stderr=False,
        )

        result = await runner.run(spec)

        assert result.stdout == b"stdout"
        assert result.stderr == b""


# =============================================================================
# Termination Tests
# =============================================================================


class TestTermination:
    """Test process termination."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_early_exit_terminates_process(self, runner: ProcessRunner, child_command):
        """Test that closing the iterator early terminates the child."""
        spec = ProcessSpec(command=child_command("--stdout", "started\\n", "--sleep", "100"))

        events = runner.events(spec)
        first = await events.__anext__()
        assert isinstance(first, OutputChunk)
        await events.aclose()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_cancellation_terminates_process(self, runner: ProcessRunner, child_command):
        """Test that task cancellation terminates the child."""
        spec = ProcessSpec(command=child_command("--sleep", "100"))

        async def consume():
            async for _ in runner.events(spec):
                pass

        task = asyncio.create_task(consume())

        # Let it start
        await asyncio.sleep(0.2)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX-specific test")
    async def test_sigkill_after_term_timeout(self, child_command):
        """Test escalation when the child ignores SIGTERM."""
        runner = ProcessRunner(term_timeout=0.2, kill_timeout=2.0)
        code = (
            "import signal, sys, time; "
            "signal.signal(signal.SIGTERM, signal.SIG_IGN); "
            "print('ready', flush=True); time.sleep(100)"
        )
        spec = ProcessSpec(command=python_command(code))

        loop = asyncio.get_running_loop()
        started = loop.time()
        events = runner.events(spec)
        assert (await events.__anext__()).data == b"ready\n"
        await events.aclose()

        assert loop.time() - started < 5


# =============================================================================
# Cancel Scope Tests
# =============================================================================


class TestCancelScope:
    """Test anyio.CancelScope integration."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_cancel_scope_stops_iteration(self, runner: ProcessRunner, child_command):
        """Test that cancel_scope stops the iteration."""
        code = (
            "import sys, time\n"
            "for i in range(100):\n"
            "    print(f'line{i}', flush=True)\n"
            "    time.sleep(0.02)\n"
        )
        spec = ProcessSpec(command=python_command(code))

        cancel_scope = anyio.CancelScope()
        output_count = 0

        async for _ in runner.stream(spec, cancel_scope=cancel_scope):
            output_count += 1
            if output_count >= 3:
                cancel_scope.cancel()

        # Should have stopped right after the third chunk
        assert output_count == 3


# =============================================================================
# Environment Tests
# =============================================================================


class TestEnvironment:
    """Test environment variable handling."""

    @pytest.mark.asyncio
    async def test_custom_environment(self, runner: ProcessRunner):
        """Test custom environment variables."""
        custom_env = os.environ.copy()
        custom_env["TEST_VAR"] = "test_value_123"
        spec = ProcessSpec(
            command=python_command("import os; print(os.environ['TEST_VAR'])"),
            env=custom_env,
        )

        result = await runner.run(spec)

        assert result.stdout.decode().strip() == "test_value_123"

    @pytest.mark.asyncio
    async def test_inherit_environment(self, runner: ProcessRunner, monkeypatch):
        """Test that environment is inherited when env=None."""
        monkeypatch.setenv("PROCPIPE_TEST_VAR", "inherited")
        spec = ProcessSpec(
            command=python_command("import os; print(os.environ.get('PROCPIPE_TEST_VAR'))"),
            env=None,  # Inherit
        )

        result = await runner.run(spec)

        assert result.stdout.decode().strip() == "inherited"


# =============================================================================
# Dataclass Tests
# =============================================================================


class TestProcessSpec:
    """Test ProcessSpec dataclass."""

    def test_frozen(self):
        """Test that ProcessSpec is immutable."""
        spec = ProcessSpec(command="echo test")

        with pytest.raises(AttributeError):
            spec.command = "other"  # type: ignore

    def test_default_values(self):
        """Test default values."""
        spec = ProcessSpec(command="echo")

        assert spec.cwd is None
        assert spec.env is None
        assert spec.stdin_bytes is None
        assert spec.monitor_stderr is True

    def test_with_all_fields(self, temp_workspace: Path):
        """Test creation with all fields."""
        spec = ProcessSpec(
            command="my-cli --arg",
            cwd=temp_workspace,
            env={"KEY": "value"},
            stdin_bytes=b"input",
            monitor_stderr=False,
        )

        assert spec.command == "my-cli --arg"
        assert spec.cwd == temp_workspace
        assert spec.env == {"KEY": "value"}
        assert spec.stdin_bytes == b"input"
        assert spec.monitor_stderr is False


class TestExecutionResult:
    """Test ExecutionResult dataclass."""

    def test_success(self):
        assert ExecutionResult(exit_status=0).success is True
        assert ExecutionResult(exit_status=1).success is False
        assert ExecutionResult().success is False


class TestRunnerDefaults:
    """Test ProcessRunner timeouts."""

    def test_timeouts_from_environment(self, monkeypatch):
        from procpipe.config import reload_config

        monkeypatch.setenv("PROCPIPE_TERM_TIMEOUT", "5")
        monkeypatch.setenv("PROCPIPE_KILL_TIMEOUT", "0.5")
        reload_config()

        runner = ProcessRunner()
        assert runner.term_timeout == 5.0
        assert runner.kill_timeout == 0.5

    def test_explicit_timeouts_win(self):
        runner = ProcessRunner(term_timeout=0.5, kill_timeout=0.3)
        assert runner.term_timeout == 0.5
        assert runner.kill_timeout == 0.3


# =============================================================================
# Edge Cases
# =============================================================================


class TestEdgeCases:
    """Test edge cases and error handling."""

    @pytest.mark.asyncio
    @pytest.mark.skipif(IS_WINDOWS, reason="cmd.exe reports missing commands via exit code")
    async def test_nonexistent_command(self, temp_workspace: Path, runner: ProcessRunner):
        """Test handling of non-existent command."""
        spec = ProcessSpec(command="nonexistent_command_xyz_123", cwd=temp_workspace)

        with pytest.raises(SpawnError):
            async for _ in runner.events(spec):
                pass

    @pytest.mark.asyncio
    async def test_exit_code_nonzero(self, runner: ProcessRunner, child_command):
        """Test process with non-zero exit code."""
        result = await runner.run(ProcessSpec(command=child_command("--exit-code", "1")))

        assert result.exit_status == 1
        assert result.success is False

    @pytest.mark.asyncio
    async def test_empty_output(self, runner: ProcessRunner, child_command):
        """Test process with no output."""
        result = await runner.run(ProcessSpec(command=child_command()))

        assert result.stdout == b""
        assert result.chunks == []
        assert result.exit_status == 0

    @pytest.mark.asyncio
    async def test_large_output(self, runner: ProcessRunner, child_command):
        """Test handling of large output."""
        size = 500_000
        result = await runner.run(ProcessSpec(command=child_command("--size", str(size))))

        assert len(result.stdout) == size
        assert result.exit_status == 0

    @pytest.mark.asyncio
    async def test_run_process_helper(self, temp_workspace: Path, child_command):
        """Test the run_process() convenience function."""
        result = await run_process(
            child_command("--echo", "--exit-code", "4"),
            cwd=temp_workspace,
            stdin_bytes=b"ping",
        )

        assert result.stdout == b"ping"
        assert result.exit_status == 4
