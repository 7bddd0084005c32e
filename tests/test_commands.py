"""Tests for CommandRunner and output truncation."""

import pytest

from preview_runtime.errors import CommandFailure, CommandTimeout
from preview_runtime.sandbox.commands import CommandResult, CommandRunner, truncate_output
from preview_runtime.sandbox.executor import ContainerHandle

from tests.conftest import BLOCK, FakeExecutor

HANDLE = ContainerHandle(container_id="container-1", container_name="preview-test", port=20000)


@pytest.fixture
def launched():
    """Executor with one live sandbox matching HANDLE."""
    def factory(scripts=None):
        executor = FakeExecutor(scripts)
        executor.launch(".", HANDLE.port, name=HANDLE.container_name)
        return executor
    return factory


class TestTruncateOutput:

    def test_short_output_untouched(self):
        text = "a\nb\nc\n"
        assert truncate_output(text, max_lines=3) == text

    def test_long_output_capped_with_marker(self):
        text = "\n".join(f"line {i}" for i in range(10)) + "\n"
        result = truncate_output(text, max_lines=4)
        assert result == "line 0\nline 1\nline 2\nline 3\n[Output truncated: 6 lines omitted]"

    def test_trailing_newline_not_counted(self):
        assert truncate_output("x\n" * 5, max_lines=5) == "x\n" * 5

    def test_empty(self):
        assert truncate_output("", max_lines=1) == ""


class TestRun:

    def test_success(self, launched):
        executor = launched({"echo hi": (0, b"hi\n", b"")})
        runner = CommandRunner(executor)

        result = runner.run(HANDLE, "echo hi", timeout=5)

        assert result.exit_code == 0
        assert result.stdout == "hi\n"
        assert result.stderr == ""
        assert result.timed_out is False
        assert result.duration_ms >= 0
        runner.validate(result)

    def test_failure_keeps_output_verbatim(self, launched):
        stderr = b"npm ERR! code ENOENT\nnpm ERR! syscall open\n"
        executor = launched({"npm run build": (1, b"> build\n", stderr)})
        runner = CommandRunner(executor)

        result = runner.run(HANDLE, "npm run build", timeout=5)

        assert result.exit_code == 1
        assert result.stderr == stderr.decode()
        with pytest.raises(CommandFailure) as exc_info:
            runner.validate(result)
        message = str(exc_info.value)
        assert 'Command failed: "npm run build" exited with code 1' in message
        assert stderr.decode() in message
        assert "> build\n" in message

    def test_timeout(self, launched):
        executor = launched({"sleep": BLOCK})
        runner = CommandRunner(executor)

        result = runner.run(HANDLE, "sleep", timeout=0.1)

        assert result.timed_out is True
        assert result.exit_code is None
        assert result.duration_ms == 100
        assert result.stderr.endswith("[TIMEOUT: Command exceeded 100ms]")
        assert executor.executed == ["sleep"]
        with pytest.raises(CommandTimeout):
            runner.validate(result)

        executor.force_terminate(HANDLE)

    def test_timeout_marker_counts_toward_cap(self, launched):
        noisy = "".join(f"err {i}\n" for i in range(20)).encode()
        executor = launched({"build": (BLOCK, b"", noisy)})
        runner = CommandRunner(executor, max_output_lines=5)

        result = runner.run(HANDLE, "build", timeout=0.1)

        lines = result.stderr.split("\n")
        assert len(lines) == 6
        assert lines[-1] == "[Output truncated: 17 lines omitted]"
        assert "[TIMEOUT" not in result.stderr
        executor.force_terminate(HANDLE)

    def test_timeout_marker_kept_when_under_cap(self, launched):
        executor = launched({"build": (BLOCK, b"", b"compiling\n")})
        runner = CommandRunner(executor, max_output_lines=5)

        result = runner.run(HANDLE, "build", timeout=0.1)

        assert result.stderr == "compiling\n\n[TIMEOUT: Command exceeded 100ms]"
        executor.force_terminate(HANDLE)

    def test_output_capped(self, launched):
        noisy = "".join(f"{i}\n" for i in range(50)).encode()
        executor = launched({"noisy": (0, noisy, b"")})
        runner = CommandRunner(executor, max_output_lines=10)

        result = runner.run(HANDLE, "noisy", timeout=5)

        assert result.stdout.endswith("[Output truncated: 40 lines omitted]")
        assert result.stdout.startswith("0\n1\n")

    def test_exec_error_propagates(self, launched):
        executor = launched()

        def broken(*args):
            raise RuntimeError("exec failed")

        executor.exec_stream = broken
        runner = CommandRunner(executor)

        with pytest.raises(RuntimeError, match="exec failed"):
            runner.run(HANDLE, "anything", timeout=5)

    def test_to_record(self):
        result = CommandResult(
            command="npm run build",
            exit_code=0,
            stdout="ok",
            stderr="",
            duration_ms=12,
            timed_out=False,
        )
        record = result.to_record()
        assert record.command == "npm run build"
        assert record.duration_ms == 12
        with pytest.raises(Exception):
            record.exit_code = 1


class TestStart:

    def test_start_returns_future(self, launched):
        executor = launched({"npm run start": (0, b"ready\n", b"")})
        runner = CommandRunner(executor)

        future = runner.start(HANDLE, "npm run start", timeout=5)

        result = future.result(timeout=5)
        assert result.exit_code == 0
        assert result.stdout == "ready\n"

    def test_start_times_out_like_run(self, launched):
        executor = launched({"npm run start": BLOCK})
        runner = CommandRunner(executor)

        future = runner.start(HANDLE, "npm run start", timeout=0.1)

        result = future.result(timeout=5)
        assert result.timed_out is True
        executor.force_terminate(HANDLE)
