"""Workflow engine: run named pipelines against an ephemeral working copy."""

from __future__ import annotations

import datetime as dt
import logging
import re
import shutil
import tempfile
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from repo_agent.commands import CommandResolver, ResolvedCommand
from repo_agent.config import AgentSettings
from repo_agent.ecosystem import detect, locate_project_dir
from repo_agent.git_tools import GitError, GitTimeout, head_sha, materialize_source
from repo_agent.process import (
    ProcessLaunchError,
    ServerProcess,
    allocate_free_port,
    clip_output,
    run_command,
)
from repo_agent.schemas import (
    Ecosystem,
    ErrorKind,
    FailurePolicy,
    PipelineDefinition,
    RunContext,
    RunResult,
    StepKind,
    StepOutcome,
    StepSpec,
)

logger = logging.getLogger(__name__)

REPO_DIRNAME = "repo"

_UNSAFE_PATH_CHARS = re.compile(r"[^\w.-]")

_Finish = Callable[..., StepOutcome]


class EngineFault(RuntimeError):
    """Raised when the engine itself cannot proceed (workspace or target missing)."""


DEFAULT_PIPELINES: tuple[PipelineDefinition, ...] = (
    PipelineDefinition(
        name="ci_cd",
        description="Clone, analyze, build, test and scan a pushed commit.",
        steps=[
            StepSpec(name="clone"),
            StepSpec(name="analyze"),
            StepSpec(name="build"),
            StepSpec(name="test"),
            StepSpec(name="security_scan"),
        ],
    ),
    PipelineDefinition(
        name="ci",
        description="Fetch, build and test.",
        steps=[StepSpec(name="fetch"), StepSpec(name="build"), StepSpec(name="test")],
    ),
)


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass(slots=True)
class _RunState:
    """Mutable per-run state; never shared between executions."""

    workspace: Path
    context: RunContext
    ecosystem: Ecosystem | None = None
    fetched: bool = False
    source_mode: str = ""

    @property
    def repo_dir(self) -> Path:
        return self.workspace / REPO_DIRNAME


class WorkflowEngine:
    """Registry of pipeline definitions plus the executor that runs them.

    Counters are instance state guarded by one lock; no module-level
    singletons are involved, so several engines can coexist in one process.
    """

    def __init__(
        self,
        settings: AgentSettings | None = None,
        resolver: CommandResolver | None = None,
        *,
        pipelines: Iterable[PipelineDefinition] | None = None,
    ) -> None:
        self.settings = settings or AgentSettings()
        self.resolver = resolver or CommandResolver()
        self._pipelines: dict[str, PipelineDefinition] = {}
        self._pipelines_lock = threading.Lock()
        self._counter_lock = threading.Lock()
        self._active = 0
        self._total = 0
        self._last_activity = ""
        for definition in DEFAULT_PIPELINES if pipelines is None else pipelines:
            self.register(definition)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, definition: PipelineDefinition) -> None:
        """Insert or overwrite a pipeline by name."""
        name = definition.name.strip()
        if not name:
            raise ValueError("pipeline name must be a non-empty string")
        with self._pipelines_lock:
            replaced = name in self._pipelines
            self._pipelines[name] = definition
        logger.info(
            "%s pipeline '%s' (%d steps)",
            "Replaced" if replaced else "Registered",
            name,
            len(definition.steps),
        )

    def get(self, name: str) -> PipelineDefinition | None:
        with self._pipelines_lock:
            return self._pipelines.get(name)

    def list_registered(self) -> list[str]:
        with self._pipelines_lock:
            return sorted(self._pipelines)

    def definitions(self) -> list[PipelineDefinition]:
        with self._pipelines_lock:
            return [self._pipelines[name] for name in sorted(self._pipelines)]

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    def active_count(self) -> int:
        with self._counter_lock:
            return self._active

    def total_count(self) -> int:
        with self._counter_lock:
            return self._total

    def last_activity(self) -> str:
        with self._counter_lock:
            return self._last_activity

    def _enter(self) -> None:
        with self._counter_lock:
            self._active += 1
            self._total += 1
            self._last_activity = _utc_now().isoformat()

    def _leave(self) -> None:
        with self._counter_lock:
            self._active -= 1
            self._last_activity = _utc_now().isoformat()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, name: str, context: RunContext | None = None) -> RunResult:
        """Run pipeline *name* and return an immutable result.

        Expected failures (unknown pipeline, workspace errors, failing steps)
        are reported in the result rather than raised.
        """
        context = context or RunContext()
        definition = self.get(name)
        if definition is None:
            logger.warning("Pipeline '%s' not found", name)
            return RunResult(
                success=False,
                error=f"pipeline '{name}' not found",
                context=context,
                metadata={"pipeline": name, "error_kind": ErrorKind.ENGINE_FAULT.value},
            )

        run_id = f"run_{uuid.uuid4().hex[:12]}"
        started_at = _utc_now()
        started = time.monotonic()
        metadata: dict[str, object] = {
            "run_id": run_id,
            "pipeline": name,
            "policy": definition.policy.value,
            "started_at": started_at.isoformat(),
        }
        outcomes: list[StepOutcome] = []
        errors: list[str] = []

        self._enter()
        try:
            try:
                workspace = self._create_workspace(name)
            except EngineFault as exc:
                logger.error("Run %s aborted: %s", run_id, exc)
                metadata["error_kind"] = ErrorKind.ENGINE_FAULT.value
                return RunResult(
                    success=False,
                    error=str(exc),
                    duration_seconds=time.monotonic() - started,
                    context=context,
                    metadata=metadata,
                )

            state = _RunState(
                workspace=workspace,
                context=context.model_copy(update={"workspace": str(workspace)}),
            )
            logger.info("Run %s: pipeline '%s' in %s", run_id, name, workspace)
            try:
                failure = self._run_steps(definition, state, outcomes)
                if failure is not None:
                    errors.append(f"step '{failure.name}' failed: {failure.error}")
                metadata["ecosystem"] = state.ecosystem.value if state.ecosystem else ""
                metadata["head_sha"] = head_sha(state.repo_dir) if state.fetched else ""
                metadata["source_mode"] = state.source_mode
            finally:
                try:
                    self._remove_workspace(workspace)
                except EngineFault as exc:
                    logger.error("Run %s: %s", run_id, exc)
                    metadata["error_kind"] = ErrorKind.ENGINE_FAULT.value
                    errors.append(str(exc))
        finally:
            self._leave()

        duration = time.monotonic() - started
        success = not errors
        logger.info(
            "Run %s finished: %s in %.2fs",
            run_id,
            "success" if success else "failure",
            duration,
        )
        return RunResult(
            success=success,
            error="; ".join(errors),
            steps=tuple(outcomes),
            duration_seconds=duration,
            context=state.context,
            metadata=metadata,
        )

    def _run_steps(
        self,
        definition: PipelineDefinition,
        state: _RunState,
        outcomes: list[StepOutcome],
    ) -> StepOutcome | None:
        """Append outcomes in order; return the first failure, if any."""
        first_failure: StepOutcome | None = None
        for step in definition.steps:
            step_started = time.monotonic()
            try:
                outcome = self._run_step(step, state)
            except Exception as exc:
                logger.exception("Step '%s' raised unexpectedly", step.name)
                outcome = StepOutcome(
                    name=step.name,
                    kind=step.kind or StepKind.COMMAND,
                    success=False,
                    error=f"unexpected error: {exc}",
                    error_kind=ErrorKind.ENGINE_FAULT,
                    duration_seconds=time.monotonic() - step_started,
                )
            outcomes.append(outcome)

            if outcome.skipped:
                logger.info("Step '%s' skipped: %s", step.name, outcome.output)
            elif outcome.success:
                logger.info("Step '%s' succeeded in %.2fs", step.name, outcome.duration_seconds)
            else:
                logger.warning("Step '%s' failed: %s", step.name, outcome.error)
                if first_failure is None:
                    first_failure = outcome
                if definition.policy == FailurePolicy.FAIL_FAST:
                    break
        return first_failure

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run_step(self, step: StepSpec, state: _RunState) -> StepOutcome:
        kind = step.kind or StepKind.COMMAND
        timeout = step.timeout_seconds or self.settings.default_step_timeout_seconds
        started = time.monotonic()

        def finish(
            *,
            success: bool,
            skipped: bool = False,
            output: str = "",
            error: str = "",
            error_kind: ErrorKind | None = None,
        ) -> StepOutcome:
            return StepOutcome(
                name=step.name,
                kind=kind,
                success=success,
                skipped=skipped,
                output=clip_output(output, self.settings.max_output_lines),
                error=error,
                error_kind=error_kind,
                duration_seconds=time.monotonic() - started,
            )

        if kind == StepKind.FETCH:
            return self._fetch(state, timeout, finish)

        cwd = self._step_cwd(step, state)
        if cwd is None:
            return finish(
                success=False,
                error=f"workdir '{step.workdir}' not found in working copy",
                error_kind=ErrorKind.EXECUTION_FAILURE,
            )

        if kind == StepKind.SECURITY:
            return self._security_scan(cwd, finish)
        if kind == StepKind.COMMAND:
            command = ResolvedCommand(argv=tuple(step.command))
        else:
            if state.ecosystem is None:
                state.ecosystem = detect(
                    cwd,
                    state.context.language or None,
                    default=self.settings.default_ecosystem,
                )
                logger.info("Detected ecosystem: %s", state.ecosystem.value)
            project_dir = locate_project_dir(cwd, state.ecosystem)
            if project_dir != cwd:
                logger.info("Step '%s' runs in %s", step.name, project_dir)
                cwd = project_dir
            command = self.resolver.resolve(state.ecosystem, kind, cwd)
            if command.skip:
                return finish(
                    success=True,
                    skipped=True,
                    output=command.reason,
                    error_kind=command.error_kind,
                )

        try:
            if kind == StepKind.SERVE:
                return self._serve(command, cwd, timeout, finish)
            return self._run_resolved(command, cwd, timeout, finish)
        except ProcessLaunchError as exc:
            logger.warning(
                "Resolved command for step '%s' could not be launched: %s", step.name, exc
            )
            return finish(success=False, error=str(exc), error_kind=ErrorKind.LAUNCH_FAILURE)

    def _fetch(self, state: _RunState, timeout: float, finish: _Finish) -> StepOutcome:
        if state.fetched:
            return finish(success=True, skipped=True, output="source already fetched")
        source = state.context.clone_url.strip()
        if not source:
            return finish(
                success=False,
                error="run context has no clone_url",
                error_kind=ErrorKind.EXECUTION_FAILURE,
            )
        try:
            state.source_mode = materialize_source(
                source,
                state.repo_dir,
                state.context.ref,
                token=self.settings.github_token,
                timeout=timeout,
            )
        except GitTimeout:
            return finish(
                success=False,
                error=f"fetch timed out after {timeout:g}s",
                error_kind=ErrorKind.TIMEOUT,
            )
        except ProcessLaunchError as exc:
            return finish(success=False, error=str(exc), error_kind=ErrorKind.LAUNCH_FAILURE)
        except (GitError, OSError) as exc:
            return finish(success=False, error=str(exc), error_kind=ErrorKind.EXECUTION_FAILURE)
        state.fetched = True
        return finish(success=True, output=f"{state.source_mode} {source} -> {state.repo_dir}")

    def _security_scan(self, cwd: Path, finish: _Finish) -> StepOutcome:
        # validation imports this module, so the scanner is imported lazily.
        from repo_agent.validation.security import scan_directory

        findings = scan_directory(cwd)
        if not findings:
            return finish(success=True, output="no security issues found")
        return finish(
            success=False,
            output="\n".join(f"{f.file}:{f.line}: {f.message}" for f in findings),
            error=f"{len(findings)} potential security issue(s) found",
            error_kind=ErrorKind.EXECUTION_FAILURE,
        )

    def _step_cwd(self, step: StepSpec, state: _RunState) -> Path | None:
        base = state.repo_dir if state.repo_dir.is_dir() else state.workspace
        if not step.workdir.strip():
            return base
        candidate = (base / step.workdir).resolve()
        if not candidate.is_dir() or not candidate.is_relative_to(base.resolve()):
            return None
        return candidate

    def _run_resolved(
        self,
        command: ResolvedCommand,
        cwd: Path,
        timeout: float,
        finish: _Finish,
    ) -> StepOutcome:
        chunks: list[str] = []
        for argv in (*command.prepare, command.argv):
            result = run_command(list(argv), cwd, timeout)
            chunks.append(result.output)
            if not result.ok:
                return finish(
                    success=False,
                    output="\n".join(chunks),
                    error=result.error,
                    error_kind=result.error_kind,
                )
        output = "\n".join(chunks)
        if command.fail_on_output and output.strip():
            return finish(
                success=False,
                output=output,
                error=f"{command.argv[0]} reported files needing changes",
                error_kind=ErrorKind.EXECUTION_FAILURE,
            )
        return finish(success=True, output=output)

    def _serve(
        self,
        command: ResolvedCommand,
        cwd: Path,
        timeout: float,
        finish: _Finish,
    ) -> StepOutcome:
        """Smoke-start a server: it must survive the grace period (or exit 0)."""
        port = allocate_free_port()
        command = command.with_port(port)
        chunks: list[str] = []
        for argv in command.prepare:
            result = run_command(list(argv), cwd, timeout)
            chunks.append(result.output)
            if not result.ok:
                return finish(
                    success=False,
                    output="\n".join(chunks),
                    error=result.error,
                    error_kind=result.error_kind,
                )
        with ServerProcess(list(command.argv), cwd, env={"PORT": str(port)}) as server:
            server.start(self.settings.server_grace_seconds)
            returncode = server.returncode
            chunks.append(server.stop())
        if returncode not in (None, 0):
            return finish(
                success=False,
                output="\n".join(chunks),
                error=f"server exited with code {returncode}",
                error_kind=ErrorKind.EXECUTION_FAILURE,
            )
        return finish(success=True, output="\n".join(chunks))

    # ------------------------------------------------------------------
    # Workspace
    # ------------------------------------------------------------------

    def _create_workspace(self, pipeline: str) -> Path:
        root = self.settings.workspace_root.strip() or None
        try:
            if root:
                Path(root).mkdir(parents=True, exist_ok=True)
            prefix = f"workflow_{_UNSAFE_PATH_CHARS.sub('_', pipeline)}_"
            return Path(tempfile.mkdtemp(prefix=prefix, dir=root))
        except OSError as exc:
            raise EngineFault(f"failed to create workspace: {exc}") from exc

    def _remove_workspace(self, workspace: Path) -> None:
        try:
            shutil.rmtree(workspace)
        except FileNotFoundError:
            return
        except OSError as exc:
            raise EngineFault(f"failed to remove workspace {workspace}: {exc}") from exc
