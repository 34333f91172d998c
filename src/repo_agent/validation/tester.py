"""Run the six-check validation battery against an application directory."""

from __future__ import annotations

import datetime as dt
import logging
import re
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from repo_agent.commands import CommandResolver, ResolvedCommand
from repo_agent.config import AgentSettings
from repo_agent.ecosystem import detect, locate_project_dir
from repo_agent.file_io import iter_project_files
from repo_agent.process import (
    ProcessLaunchError,
    ServerProcess,
    allocate_free_port,
    clip_output,
    run_command,
)
from repo_agent.schemas import (
    AppProfile,
    CheckCategory,
    CheckOutcome,
    CheckStatus,
    Ecosystem,
    ErrorKind,
    FailurePolicy,
    StepKind,
    ValidationReport,
)
from repo_agent.validation.probes import probe_all, probe_plan, wait_for_port
from repo_agent.validation.security import SOURCE_SUFFIXES, scan_directory
from repo_agent.workflow import EngineFault

logger = logging.getLogger(__name__)

API_APP_TYPES = frozenset({"api", "web"})
PROBE_HOST = "127.0.0.1"

# Held for the whole API phase when a fixed port is configured.
_FIXED_PORT_LOCK = threading.Lock()

_GO_COVERAGE = re.compile(r"coverage: ([\d.]+)% of statements")
_PYTEST_TOTAL = re.compile(r"^TOTAL\s.*?(\d+(?:\.\d+)?)%\s*$", re.MULTILINE)
_JEST_ALL_FILES = re.compile(r"^\s*All files\s*\|\s*([\d.]+)", re.MULTILINE)
_COMMENT_PREFIXES = ("//", "#", "/*", "*", "--")


def parse_coverage(output: str) -> float | None:
    """Extract a coverage percentage from Go, pytest-cov, or Jest output.

    Go prints one line per package, so the mean across packages is returned.
    """
    go_values = [float(v) for v in _GO_COVERAGE.findall(output)]
    if go_values:
        return sum(go_values) / len(go_values)
    pytest_values = _PYTEST_TOTAL.findall(output)
    if pytest_values:
        return float(pytest_values[-1])
    jest = _JEST_ALL_FILES.search(output)
    if jest:
        return float(jest.group(1))
    return None


@dataclass(slots=True)
class _Target:
    root: Path
    ecosystem: Ecosystem
    profile: AppProfile
    # Where the manifest lives; toolchain checks run here.
    project_dir: Path


@dataclass(slots=True)
class _Execution:
    ok: bool
    output: str
    error: str = ""
    error_kind: ErrorKind | None = None


_Check = Callable[["_Target"], CheckOutcome]


class ApplicationTester:
    """Validate scaffolded applications whose language is not known up front."""

    def __init__(
        self,
        settings: AgentSettings | None = None,
        resolver: CommandResolver | None = None,
        *,
        policy: FailurePolicy = FailurePolicy.FAIL_SOFT,
    ) -> None:
        self.settings = settings or AgentSettings()
        self.resolver = resolver or CommandResolver()
        self.policy = policy

    def _checks(self) -> list[tuple[CheckCategory, str, _Check]]:
        return [
            (CheckCategory.BUILD, "Build", self._check_build),
            (CheckCategory.STATIC, "Static Analysis", self._check_static),
            (CheckCategory.UNIT, "Unit Tests", self._check_unit),
            (CheckCategory.API, "API Tests", self._check_api),
            (CheckCategory.SECURITY, "Security Scan", self._check_security),
            (CheckCategory.PERFORMANCE, "Performance", self._check_performance),
        ]

    def validate(
        self,
        path: str | Path,
        declared_language: str | None = None,
        profile: AppProfile | None = None,
    ) -> ValidationReport:
        """Run all six checks and fold them into a report.

        Raises :class:`EngineFault` only when *path* is not a directory.
        """
        root = Path(path)
        if not root.is_dir():
            raise EngineFault(f"application path not found: {root}")

        profile = profile or AppProfile()
        language = (declared_language or profile.language or "").strip() or None
        ecosystem = detect(root, language, default=self.settings.default_ecosystem)
        target = _Target(
            root=root,
            ecosystem=ecosystem,
            profile=profile,
            project_dir=locate_project_dir(root, ecosystem),
        )
        logger.info(
            "Validating %s as %s (project directory %s)",
            root,
            ecosystem.value,
            target.project_dir,
        )

        started = dt.datetime.now(dt.timezone.utc)
        results: list[CheckOutcome] = []
        halted = False
        for category, name, check in self._checks():
            if halted:
                results.append(
                    CheckOutcome(
                        category=category,
                        name=name,
                        status=CheckStatus.SKIP,
                        output="not attempted after an earlier failure",
                    )
                )
                continue
            outcome = self._run_check(category, name, check, target)
            results.append(outcome)
            if outcome.status == CheckStatus.FAIL and self.policy == FailurePolicy.FAIL_FAST:
                halted = True
        finished = dt.datetime.now(dt.timezone.utc)

        report = ValidationReport.assemble(
            name=profile.name or root.name,
            app_path=str(root),
            ecosystem=target.ecosystem,
            started=started,
            finished=finished,
            results=results,
        )
        logger.info(
            "Validation of %s: %s (%d passed, %d failed, %d skipped)",
            root,
            report.overall_status,
            report.passed_tests,
            report.failed_tests,
            report.skipped_tests,
        )
        return report

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _run_check(
        self,
        category: CheckCategory,
        name: str,
        check: _Check,
        target: _Target,
    ) -> CheckOutcome:
        started = time.monotonic()
        try:
            outcome = check(target)
        except ProcessLaunchError as exc:
            logger.warning("%s: resolved command could not be launched: %s", name, exc)
            outcome = self._outcome(
                CheckStatus.FAIL, error=str(exc), error_kind=ErrorKind.LAUNCH_FAILURE
            )
        except Exception as exc:
            logger.exception("%s check raised unexpectedly", name)
            outcome = self._outcome(
                CheckStatus.FAIL,
                error=f"unexpected error: {exc}",
                error_kind=ErrorKind.ENGINE_FAULT,
            )
        return outcome.model_copy(
            update={
                "category": category,
                "name": name,
                "output": clip_output(outcome.output, self.settings.max_output_lines),
                "duration_seconds": time.monotonic() - started,
            }
        )

    @staticmethod
    def _outcome(status: CheckStatus, **fields: object) -> CheckOutcome:
        # Category and name are filled in by _run_check.
        return CheckOutcome(category=CheckCategory.BUILD, name="", status=status, **fields)

    def _skip(self, command: ResolvedCommand) -> CheckOutcome:
        return self._outcome(
            CheckStatus.SKIP, output=command.reason, error_kind=command.error_kind
        )

    def _execute(
        self,
        steps: Iterable[tuple[str, ...]],
        cwd: Path,
        env: dict[str, str] | None = None,
    ) -> _Execution:
        """Run argv lists in order; stop at the first failure."""
        timeout = self.settings.default_step_timeout_seconds
        chunks: list[str] = []
        for argv in steps:
            result = run_command(list(argv), cwd, timeout, env)
            chunks.append(result.output)
            if not result.ok:
                return _Execution(False, "\n".join(chunks), result.error, result.error_kind)
        return _Execution(True, "\n".join(chunks))

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _check_build(self, target: _Target) -> CheckOutcome:
        command = self.resolver.resolve(target.ecosystem, StepKind.BUILD, target.project_dir)
        if command.skip:
            return self._skip(command)
        run = self._execute((*command.prepare, command.argv), target.project_dir)
        status = CheckStatus.PASS if run.ok else CheckStatus.FAIL
        return self._outcome(
            status,
            output=run.output,
            error=run.error,
            error_kind=run.error_kind,
            details={"command": list(command.argv), "project_dir": str(target.project_dir)},
        )

    def _check_static(self, target: _Target) -> CheckOutcome:
        notes: list[str] = []
        tools: list[str] = []
        errors: list[str] = []
        chunks: list[str] = []
        error_kind: ErrorKind | None = None

        for kind in (StepKind.LINT, StepKind.FORMAT):
            command = self.resolver.resolve(target.ecosystem, kind, target.project_dir)
            if command.skip:
                notes.append(f"{kind.value}: {command.reason}")
                continue
            tools.append(command.argv[0])
            run = self._execute((*command.prepare, command.argv), target.project_dir)
            chunks.append(run.output)
            if not run.ok:
                errors.append(f"{command.argv[0]}: {run.error}")
                error_kind = error_kind or run.error_kind
            elif command.fail_on_output and run.output.strip():
                errors.append(f"{command.argv[0]} reported files needing formatting")
                error_kind = error_kind or ErrorKind.EXECUTION_FAILURE

        details = {"tools": tools, "notes": notes}
        if not tools:
            return self._outcome(
                CheckStatus.PASS,
                output="no static analysis tools available; " + "; ".join(notes),
                details=details,
            )
        if errors:
            return self._outcome(
                CheckStatus.FAIL,
                output="\n".join(chunks),
                error="; ".join(errors),
                error_kind=error_kind,
                details=details,
            )
        return self._outcome(CheckStatus.PASS, output="\n".join(chunks), details=details)

    def _check_unit(self, target: _Target) -> CheckOutcome:
        command = self.resolver.resolve(target.ecosystem, StepKind.TEST, target.project_dir)
        if command.skip:
            return self._skip(command)
        run = self._execute((*command.prepare, command.argv), target.project_dir)
        coverage = parse_coverage(run.output)
        return self._outcome(
            CheckStatus.PASS if run.ok else CheckStatus.FAIL,
            output=run.output,
            error=run.error,
            error_kind=run.error_kind,
            coverage=coverage,
            details={"command": list(command.argv)},
        )

    def _check_api(self, target: _Target) -> CheckOutcome:
        app_type = target.profile.app_type.strip().lower()
        if app_type not in API_APP_TYPES:
            return self._outcome(
                CheckStatus.SKIP,
                output=f"application type '{app_type or 'unspecified'}' has no HTTP surface",
            )
        command = self.resolver.resolve(target.ecosystem, StepKind.SERVE, target.project_dir)
        if command.skip:
            return self._skip(command)

        fixed_port = self.settings.api_port
        if fixed_port:
            with _FIXED_PORT_LOCK:
                return self._exercise_server(target, command, fixed_port)
        return self._exercise_server(target, command, allocate_free_port(PROBE_HOST))

    def _exercise_server(
        self,
        target: _Target,
        command: ResolvedCommand,
        port: int,
    ) -> CheckOutcome:
        command = command.with_port(port)
        env = {"PORT": str(port)}
        if command.prepare:
            prepared = self._execute(command.prepare, target.project_dir, env)
            if not prepared.ok:
                return self._outcome(
                    CheckStatus.FAIL,
                    output=prepared.output,
                    error=f"prepare failed: {prepared.error}",
                    error_kind=prepared.error_kind,
                )

        plan = probe_plan(target.profile.endpoints)
        with ServerProcess(list(command.argv), target.project_dir, env=env) as server:
            server.start(self.settings.server_grace_seconds)
            if server.running:
                wait_for_port(PROBE_HOST, port, self.settings.probe_timeout_seconds)
                probes = probe_all(
                    f"http://{PROBE_HOST}:{port}",
                    plan,
                    timeout=self.settings.probe_timeout_seconds,
                )
            else:
                probes = []
            exit_code = server.returncode
            server_output = server.stop()

        reachable = sum(1 for p in probes if p.reachable)
        details = {
            "port": port,
            "reachable": reachable,
            "probes": [p.to_dict() for p in probes],
        }
        if reachable == 0:
            error = (
                f"server exited with code {exit_code} before probing"
                if not probes
                else f"none of {len(probes)} probes reached the server"
            )
            return self._outcome(
                CheckStatus.FAIL,
                output=server_output,
                error=error,
                error_kind=ErrorKind.EXECUTION_FAILURE,
                details=details,
            )
        return self._outcome(CheckStatus.PASS, output=server_output, details=details)

    def _check_security(self, target: _Target) -> CheckOutcome:
        findings = scan_directory(target.root)
        details = {"findings": [f.to_dict() for f in findings]}
        if findings:
            lines = [f"{f.file}:{f.line}: {f.message}" for f in findings]
            return self._outcome(
                CheckStatus.FAIL,
                output="\n".join(lines),
                error=f"{len(findings)} potential security issue(s) found",
                error_kind=ErrorKind.EXECUTION_FAILURE,
                details=details,
            )
        return self._outcome(
            CheckStatus.PASS, output="no security issues found", details=details
        )

    def _check_performance(self, target: _Target) -> CheckOutcome:
        file_count = 0
        total_bytes = 0
        code_lines = 0
        for path in iter_project_files(target.root):
            file_count += 1
            try:
                total_bytes += path.stat().st_size
            except OSError:
                continue
            if path.suffix.lower() in SOURCE_SUFFIXES:
                code_lines += _count_code_lines(path)

        details: dict[str, object] = {
            "file_count": file_count,
            "total_bytes": total_bytes,
            "lines_of_code": code_lines,
        }
        for candidate in ("app", target.project_dir.name):
            binary = target.project_dir / candidate
            if binary.is_file() and not binary.is_symlink():
                details["binary"] = candidate
                details["binary_size_bytes"] = binary.stat().st_size
                break

        output = f"{file_count} files, {total_bytes} bytes, {code_lines} lines of code"
        if "binary_size_bytes" in details:
            output += f", binary {details['binary']} is {details['binary_size_bytes']} bytes"
        return self._outcome(CheckStatus.PASS, output=output, details=details)


def _count_code_lines(path: Path) -> int:
    """Count non-blank lines that are not line comments."""
    try:
        with path.open(encoding="utf-8", errors="replace") as handle:
            return sum(
                1
                for line in handle
                if line.strip() and not line.strip().startswith(_COMMENT_PREFIXES)
            )
    except OSError:
        return 0
