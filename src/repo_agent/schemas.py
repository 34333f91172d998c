"""Pydantic models for pipelines, runs, and validation reports."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from repo_agent.file_io import atomic_write_text

# ---------------------------------------------------------------------------
# Shared enums
# ---------------------------------------------------------------------------


class Ecosystem(str, Enum):
    """Language/toolchain identity of a project directory."""

    GO = "go"
    NODE = "node"
    PYTHON = "python"
    JAVA = "java"
    PHP = "php"
    RUBY = "ruby"
    UNKNOWN = "unknown"


class StepKind(str, Enum):
    """Kinds of pipeline steps understood by the command resolver."""

    FETCH = "fetch"
    BUILD = "build"
    LINT = "lint"
    FORMAT = "format"
    TEST = "test"
    SERVE = "serve"
    SECURITY = "security"
    COMMAND = "command"


class FailurePolicy(str, Enum):
    """How a sequence of steps/checks reacts to a failure."""

    FAIL_FAST = "fail_fast"
    FAIL_SOFT = "fail_soft"


class ErrorKind(str, Enum):
    """Classification attached to failed or skipped outcomes."""

    TOOLCHAIN_MISSING = "toolchain_missing"
    EXECUTION_FAILURE = "execution_failure"
    TIMEOUT = "timeout"
    LAUNCH_FAILURE = "launch_failure"
    ENGINE_FAULT = "engine_fault"


# Step names that imply a kind when a pipeline author omits ``kind``.
STEP_NAME_KINDS: dict[str, StepKind] = {
    "fetch": StepKind.FETCH,
    "clone": StepKind.FETCH,
    "checkout": StepKind.FETCH,
    "build": StepKind.BUILD,
    "install": StepKind.BUILD,
    "lint": StepKind.LINT,
    "analyze": StepKind.LINT,
    "static": StepKind.LINT,
    "vet": StepKind.LINT,
    "format": StepKind.FORMAT,
    "fmt": StepKind.FORMAT,
    "test": StepKind.TEST,
    "tests": StepKind.TEST,
    "unit": StepKind.TEST,
    "serve": StepKind.SERVE,
    "security": StepKind.SECURITY,
    "security_scan": StepKind.SECURITY,
}


def _utc_now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Workflow pipelines
# ---------------------------------------------------------------------------


class StepSpec(BaseModel):
    """One named unit of work inside a pipeline."""

    name: str
    kind: StepKind | None = None
    timeout_seconds: float | None = None
    command: list[str] = Field(default_factory=list)
    workdir: str = ""

    @model_validator(mode="after")
    def _infer_kind(self) -> StepSpec:
        """Derive ``kind`` from the step name or an explicit command."""
        if not self.name.strip():
            raise ValueError("step name must not be empty")
        if self.kind is None:
            if self.command:
                self.kind = StepKind.COMMAND
            else:
                inferred = STEP_NAME_KINDS.get(self.name.strip().lower())
                if inferred is None:
                    raise ValueError(
                        f"cannot infer kind for step '{self.name}'; set kind or command"
                    )
                self.kind = inferred
        if self.kind == StepKind.COMMAND and not self.command:
            raise ValueError(f"step '{self.name}' has kind=command but no command")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive when set")
        return self


class PipelineDefinition(BaseModel):
    """A named, ordered list of steps."""

    name: str
    steps: list[StepSpec] = Field(default_factory=list)
    policy: FailurePolicy = FailurePolicy.FAIL_FAST
    description: str = ""


class Commit(BaseModel):
    """Commit metadata carried from a push event."""

    id: str = ""
    message: str = ""
    author: str = ""


class RunContext(BaseModel):
    """Inputs for one pipeline execution."""

    repository: str = ""
    clone_url: str = ""
    ref: str = ""
    commits: list[Commit] = Field(default_factory=list)
    language: str = ""
    # Filled in by the engine; owned by a single run.
    workspace: str = ""


class StepOutcome(BaseModel):
    """Result of executing one step."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: StepKind
    success: bool
    skipped: bool = False
    output: str = ""
    error: str = ""
    error_kind: ErrorKind | None = None
    duration_seconds: float = 0.0


class RunResult(BaseModel):
    """Aggregated, immutable result of a pipeline execution."""

    model_config = ConfigDict(frozen=True)

    success: bool = False
    error: str = ""
    steps: tuple[StepOutcome, ...] = ()
    duration_seconds: float = 0.0
    context: RunContext = Field(default_factory=RunContext)
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Application validation
# ---------------------------------------------------------------------------


class CheckCategory(str, Enum):
    """The six fixed validation dimensions, in execution order."""

    BUILD = "build"
    STATIC = "static"
    UNIT = "unit"
    API = "api"
    SECURITY = "security"
    PERFORMANCE = "performance"


class CheckStatus(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"


class Endpoint(BaseModel):
    """A declared HTTP endpoint of a scaffolded application."""

    method: str = "GET"
    path: str = "/"


class AppProfile(BaseModel):
    """Declared metadata about a scaffolded application."""

    name: str = ""
    app_type: str = ""
    language: str = ""
    endpoints: list[Endpoint] = Field(default_factory=list)


class CheckOutcome(BaseModel):
    """Result of one validation check."""

    model_config = ConfigDict(frozen=True)

    category: CheckCategory
    name: str
    status: CheckStatus
    duration_seconds: float = 0.0
    output: str = ""
    error: str = ""
    error_kind: ErrorKind | None = None
    coverage: float | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class ValidationReport(BaseModel):
    """Aggregated, immutable result of validating an application directory."""

    model_config = ConfigDict(frozen=True)

    name: str
    app_path: str
    ecosystem: Ecosystem = Ecosystem.UNKNOWN
    started_at: str = Field(default_factory=_utc_now_iso)
    finished_at: str = Field(default_factory=_utc_now_iso)
    duration_seconds: float = 0.0
    total_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    skipped_tests: int = 0
    coverage: float = 0.0
    results: tuple[CheckOutcome, ...] = ()
    summary: str = ""
    overall_status: str = "skipped"

    @classmethod
    def assemble(
        cls,
        *,
        name: str,
        app_path: str,
        ecosystem: Ecosystem,
        started: dt.datetime,
        finished: dt.datetime,
        results: list[CheckOutcome] | tuple[CheckOutcome, ...],
    ) -> ValidationReport:
        """Build a report, deriving counts, coverage, status, and summary."""
        outcomes = tuple(results)
        passed = sum(1 for r in outcomes if r.status == CheckStatus.PASS)
        failed = sum(1 for r in outcomes if r.status == CheckStatus.FAIL)
        skipped = sum(1 for r in outcomes if r.status == CheckStatus.SKIP)

        if failed > 0:
            overall = "failure"
        elif passed > 0:
            overall = "success"
        else:
            overall = "skipped"

        reported = [r.coverage for r in outcomes if r.coverage]
        coverage = sum(reported) / len(reported) if reported else 0.0

        draft = cls(
            name=name,
            app_path=app_path,
            ecosystem=ecosystem,
            started_at=started.isoformat(),
            finished_at=finished.isoformat(),
            duration_seconds=max(0.0, (finished - started).total_seconds()),
            total_tests=len(outcomes),
            passed_tests=passed,
            failed_tests=failed,
            skipped_tests=skipped,
            coverage=coverage,
            results=outcomes,
            overall_status=overall,
        )
        return draft.model_copy(update={"summary": format_summary(draft)})

    def save(self, path: str | Path) -> Path:
        """Write the report as indented JSON and return the path."""
        target = Path(path)
        atomic_write_text(target, self.model_dump_json(indent=2))
        return target


def format_summary(report: ValidationReport) -> str:
    """Render a human-readable summary from report data alone."""
    lines = [
        f"Test Suite: {report.name}",
        (
            f"Total Tests: {report.total_tests}, Passed: {report.passed_tests}, "
            f"Failed: {report.failed_tests}, Skipped: {report.skipped_tests}"
        ),
        f"Duration: {report.duration_seconds:.3f}s",
    ]
    if report.coverage > 0:
        lines.append(f"Coverage: {report.coverage:.2f}%")
    for result in report.results:
        lines.append(f"- {result.name} ({result.category.value}): {result.status.value.upper()}")
        if result.error:
            lines.append(f"  Error: {result.error}")
    lines.append(f"Overall: {report.overall_status}")
    return "\n".join(lines) + "\n"
