"""Tests for bounded command execution and managed server processes."""

from __future__ import annotations

import logging
import socket
import sys
import time
from pathlib import Path

import pytest

from repo_agent.process import (
    CommandResult,
    ProcessLaunchError,
    ServerProcess,
    allocate_free_port,
    clip_output,
    resolve_binary,
    run_command,
)
from repo_agent.schemas import ErrorKind


def _py(code: str) -> list[str]:
    return [sys.executable, "-c", code]


@pytest.mark.unit
class TestRunCommand:
    def test_success_captures_output(self, tmp_path: Path):
        result = run_command(_py("print('hello')"), tmp_path, timeout=30)
        assert result.ok
        assert result.exit_code == 0
        assert result.output.strip() == "hello"
        assert result.error == ""
        assert result.error_kind is None
        assert result.duration_seconds >= 0

    def test_stdout_and_stderr_are_combined(self, tmp_path: Path):
        code = "import sys; print('out', flush=True); print('err', file=sys.stderr, flush=True)"
        result = run_command(_py(code), tmp_path, timeout=30)
        assert "out" in result.output
        assert "err" in result.output

    def test_non_zero_exit_is_a_result_not_an_exception(self, tmp_path: Path):
        result = run_command(_py("import sys; print('boom'); sys.exit(3)"), tmp_path, timeout=30)
        assert not result.ok
        assert result.exit_code == 3
        assert result.error == "command exited with code 3"
        assert result.error_kind == ErrorKind.EXECUTION_FAILURE
        assert "boom" in result.output

    def test_runs_in_requested_directory(self, tmp_path: Path):
        (tmp_path / "marker.txt").write_text("here", encoding="utf-8")
        result = run_command(_py("print(open('marker.txt').read())"), tmp_path, timeout=30)
        assert result.output.strip() == "here"

    def test_extra_env_is_merged(self, tmp_path: Path):
        code = "import os; print(os.environ['REPO_AGENT_PROBE'])"
        result = run_command(_py(code), tmp_path, timeout=30, env={"REPO_AGENT_PROBE": "42"})
        assert result.output.strip() == "42"

    def test_display_replaces_argv_in_log(self, tmp_path: Path, caplog):
        caplog.set_level(logging.DEBUG, logger="repo_agent.process")
        argv = _py("print('https://secret-token@host')")

        run_command(argv, tmp_path, timeout=30, display="python -c <redacted>")

        assert "python -c <redacted>" in caplog.text
        assert "secret-token" not in caplog.text

    @pytest.mark.slow
    def test_timeout_kills_the_child(self, tmp_path: Path):
        started = time.monotonic()
        result = run_command(_py("import time; time.sleep(30)"), tmp_path, timeout=0.5)
        assert result.timed_out
        assert not result.ok
        assert result.error == "command timed out after 0.5s"
        assert result.error_kind == ErrorKind.TIMEOUT
        assert time.monotonic() - started < 20

    def test_missing_executable_raises_launch_error(self, tmp_path: Path):
        with pytest.raises(ProcessLaunchError):
            run_command(["definitely-not-a-real-binary-xyz"], tmp_path, timeout=5)

    def test_empty_argv_raises_launch_error(self, tmp_path: Path):
        with pytest.raises(ProcessLaunchError):
            run_command([], tmp_path, timeout=5)


@pytest.mark.unit
class TestHelpers:
    def test_clip_output_keeps_short_text(self):
        text = "a\nb\nc"
        assert clip_output(text, max_lines=10) == text

    def test_clip_output_keeps_head_and_tail(self):
        text = "\n".join(f"line {i}" for i in range(100))
        clipped = clip_output(text, max_lines=20).splitlines()
        assert clipped[0] == "line 0"
        assert clipped[4] == "line 4"
        assert clipped[5] == "  ... (80 lines omitted) ..."
        assert clipped[-1] == "line 99"
        assert len(clipped) == 21

    def test_resolve_binary_missing(self):
        assert resolve_binary("definitely-not-a-real-binary-xyz") == ""
        assert resolve_binary("") == ""

    def test_allocate_free_port_is_bindable(self):
        port = allocate_free_port()
        assert 0 < port < 65536
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind(("127.0.0.1", port))

    def test_command_result_ok_requires_no_timeout(self):
        assert not CommandResult(argv=["x"], exit_code=0, timed_out=True).ok


@pytest.mark.slow
class TestServerProcess:
    def test_stop_returns_output_and_is_idempotent(self, tmp_path: Path):
        code = "import time; print('listening', flush=True); time.sleep(30)"
        server = ServerProcess(_py(code), tmp_path)
        server.start(grace_seconds=0.5)
        assert server.running

        output = server.stop()
        assert "listening" in output
        assert not server.running
        assert server.stop() == output

    def test_context_manager_stops_server(self, tmp_path: Path):
        with ServerProcess(_py("import time; time.sleep(30)"), tmp_path) as server:
            server.start(grace_seconds=0.2)
            assert server.running
        assert not server.running

    def test_early_exit_is_observable(self, tmp_path: Path):
        server = ServerProcess(_py("import sys; print('bad config'); sys.exit(2)"), tmp_path)
        server.start(grace_seconds=5.0)
        assert not server.running
        assert server.returncode == 2
        assert "bad config" in server.stop()

    def test_double_start_is_rejected(self, tmp_path: Path):
        with ServerProcess(_py("import time; time.sleep(30)"), tmp_path) as server:
            server.start(grace_seconds=0.1)
            with pytest.raises(RuntimeError):
                server.start()

    def test_launch_failure_raises(self, tmp_path: Path):
        server = ServerProcess(["definitely-not-a-real-binary-xyz"], tmp_path)
        with pytest.raises(ProcessLaunchError):
            server.start(grace_seconds=0.1)
