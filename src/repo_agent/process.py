"""Bounded subprocess execution and managed server processes.

Every child is started in its own session (process group on POSIX) so that a
timeout or ``stop()`` can take down the whole tree, not just the direct child.
"""

from __future__ import annotations

import logging
import os
import shutil
import socket
import subprocess
import tempfile
import threading
import time
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from repo_agent.schemas import ErrorKind

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

DEFAULT_MAX_OUTPUT_LINES = 400
_DRAIN_TIMEOUT_SECONDS = 5.0
_POLL_INTERVAL_SECONDS = 0.05


class ProcessLaunchError(RuntimeError):
    """Raised when a child process cannot be spawned at all."""


def _process_isolation_kwargs() -> dict[str, object]:
    """Return subprocess kwargs that put the child in its own process group.

    On Windows CREATE_NEW_PROCESS_GROUP keeps Ctrl+C aimed at the agent away
    from the child and CREATE_NO_WINDOW detaches it from the shared console.
    On POSIX a new session gives the same isolation and lets us signal the
    whole group.
    """
    if os.name == "nt":
        new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
        flags = new_pg | no_win
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def resolve_binary(name: str) -> str:
    """Return the full path of *name* on ``PATH``, or ``""`` when it is absent."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if not expanded:
        return ""
    return shutil.which(expanded) or ""


def _merged_env(env: dict[str, str] | None) -> dict[str, str] | None:
    if not env:
        return None
    merged = dict(os.environ)
    merged.update({str(k): str(v) for k, v in env.items()})
    return merged


def clip_output(text: str, max_lines: int = DEFAULT_MAX_OUTPUT_LINES) -> str:
    """Keep the head and tail of long output with an omission marker between."""
    lines = text.splitlines()
    if max_lines <= 0 or len(lines) <= max_lines:
        return text

    head_count = max(1, max_lines // 4)
    tail_count = max(1, max_lines - head_count)
    skipped = len(lines) - head_count - tail_count
    return "\n".join(
        [*lines[:head_count], f"  ... ({skipped} lines omitted) ...", *lines[-tail_count:]]
    )


def allocate_free_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for an unused TCP port by binding port 0."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, 0))
        return int(sock.getsockname()[1])


# ---------------------------------------------------------------------------
# Termination helpers
# ---------------------------------------------------------------------------


def _terminate_process_with_fallback(
    proc: subprocess.Popen[Any],
    *,
    process_name: str,
    reason: str,
    terminate_timeout_seconds: float = 1.5,
) -> None:
    """Request graceful terminate first, then force-kill if still alive."""
    if proc.poll() is not None:
        # The leader is gone but its group may still hold children.
        _reap_process_group(proc)
        return

    _terminate_process(proc)
    timeout = max(0.1, float(terminate_timeout_seconds))
    try:
        proc.wait(timeout=timeout)
        _reap_process_group(proc)
        return
    except subprocess.TimeoutExpired:
        logger.warning(
            "%s did not exit after terminate during %s; forcing kill.",
            process_name,
            reason,
        )

    _kill_process(proc)
    try:
        proc.wait(timeout=5.0)
    except subprocess.TimeoutExpired:  # pragma: no cover - extreme edge case
        logger.warning("%s ignored kill during %s.", process_name, reason)


def _terminate_process(proc: subprocess.Popen[Any]) -> None:
    """Best-effort graceful termination for a child process (and its group)."""
    if os.name != "nt":
        _signal_process_group(proc, signal.SIGTERM)
    with suppress(Exception):
        proc.terminate()


def _reap_process_group(proc: subprocess.Popen[Any]) -> None:
    """Kill stragglers left in the group after the leader exited."""
    if os.name != "nt":
        _signal_process_group(proc, signal.SIGKILL)


def _kill_process(proc: subprocess.Popen[Any]) -> None:
    """Best-effort force kill for a child process (and its group)."""
    if os.name != "nt":
        _signal_process_group(proc, signal.SIGKILL)
    with suppress(Exception):
        proc.kill()


def _signal_process_group(proc: subprocess.Popen[Any], sig: int) -> None:
    """Best-effort signal delivery to the subprocess process-group on POSIX."""
    if os.name == "nt":  # pragma: no cover - Windows-only runtime branch
        return
    pid = int(getattr(proc, "pid", 0) or 0)
    if pid <= 0:
        return
    # The child called setsid(), so its pgid equals its pid even after it exits.
    with suppress(Exception):
        os.killpg(pid, sig)


# ---------------------------------------------------------------------------
# One-shot commands
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class CommandResult:
    """Outcome of a bounded one-shot command."""

    argv: list[str]
    exit_code: int
    output: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False
    timeout_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def error(self) -> str:
        if self.timed_out:
            return f"command timed out after {self.timeout_seconds:g}s"
        if self.exit_code != 0:
            return f"command exited with code {self.exit_code}"
        return ""

    @property
    def error_kind(self) -> ErrorKind | None:
        if self.timed_out:
            return ErrorKind.TIMEOUT
        if self.exit_code != 0:
            return ErrorKind.EXECUTION_FAILURE
        return None


def run_command(
    argv: list[str],
    cwd: str | Path,
    timeout: float,
    env: dict[str, str] | None = None,
    *,
    display: str = "",
) -> CommandResult:
    """Run *argv* in *cwd* with interleaved stdout/stderr and a hard timeout.

    A non-zero exit is an ordinary result. Only a failure to spawn the process
    raises, as :class:`ProcessLaunchError`. *display* replaces the argv in log
    lines when the command line carries a credential.
    """
    if not argv:
        raise ProcessLaunchError("empty command")

    logger.debug("Running %s (cwd=%s, timeout=%ss)", display or " ".join(argv), cwd, timeout)
    started = time.monotonic()
    try:
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            env=_merged_env(env),
            **_process_isolation_kwargs(),
        )
    except (OSError, ValueError) as exc:
        raise ProcessLaunchError(f"failed to launch {argv[0]!r}: {exc}") from exc

    timed_out = False
    output = ""
    try:
        output, _ = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _terminate_process_with_fallback(proc, process_name=argv[0], reason="timeout")
        try:
            output, _ = proc.communicate(timeout=_DRAIN_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            # A descendant left the group and still holds the pipe open.
            logger.warning("Output of %s could not be drained after timeout", argv[0])
            if proc.stdout is not None:
                with suppress(OSError):
                    proc.stdout.close()
            output = ""
    finally:
        if proc.poll() is None:
            _kill_process(proc)
            with suppress(subprocess.TimeoutExpired):
                proc.wait(timeout=_DRAIN_TIMEOUT_SECONDS)

    duration = time.monotonic() - started
    exit_code = proc.returncode if proc.returncode is not None else -1
    if timed_out:
        logger.warning("%s timed out after %ss", argv[0], timeout)
    return CommandResult(
        argv=list(argv),
        exit_code=exit_code,
        output=output or "",
        duration_seconds=duration,
        timed_out=timed_out,
        timeout_seconds=float(timeout),
    )


# ---------------------------------------------------------------------------
# Long-running servers
# ---------------------------------------------------------------------------


@dataclass
class ServerProcess:
    """A background server whose output is spooled to an anonymous temp file.

    Usable as a context manager; leaving the block always stops the server.
    """

    argv: list[str]
    cwd: str | Path
    env: dict[str, str] | None = None
    _proc: subprocess.Popen[bytes] | None = field(default=None, init=False, repr=False)
    _spool: IO[bytes] | None = field(default=None, init=False, repr=False)
    _captured: str | None = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def start(self, grace_seconds: float = 2.0) -> None:
        """Launch the server and wait out the grace period (or an early exit)."""
        if self._proc is not None:
            raise RuntimeError("server already started")
        if not self.argv:
            raise ProcessLaunchError("empty command")

        spool = tempfile.TemporaryFile()
        try:
            proc = subprocess.Popen(
                self.argv,
                cwd=str(self.cwd),
                stdin=subprocess.DEVNULL,
                stdout=spool,
                stderr=subprocess.STDOUT,
                env=_merged_env(self.env),
                **_process_isolation_kwargs(),
            )
        except (OSError, ValueError) as exc:
            spool.close()
            raise ProcessLaunchError(f"failed to launch {self.argv[0]!r}: {exc}") from exc

        self._spool = spool
        self._proc = proc
        logger.debug("Started server pid=%s: %s", proc.pid, " ".join(self.argv))

        deadline = time.monotonic() + max(0.0, float(grace_seconds))
        while time.monotonic() < deadline:
            if proc.poll() is not None:
                logger.info("Server %s exited early with code %s", self.argv[0], proc.returncode)
                break
            time.sleep(_POLL_INTERVAL_SECONDS)

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    @property
    def returncode(self) -> int | None:
        return None if self._proc is None else self._proc.poll()

    def stop(self) -> str:
        """Terminate the process group and return everything it printed."""
        with self._lock:
            if self._captured is not None:
                return self._captured
            if self._proc is not None:
                _terminate_process_with_fallback(
                    self._proc, process_name=self.argv[0], reason="server stop"
                )
            text = ""
            if self._spool is not None:
                with suppress(OSError, ValueError):
                    self._spool.seek(0)
                    text = self._spool.read().decode("utf-8", errors="replace")
                with suppress(OSError):
                    self._spool.close()
            self._captured = text
            return text

    def __enter__(self) -> ServerProcess:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
