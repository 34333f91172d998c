"""Map (ecosystem, step kind) pairs onto concrete shell commands."""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from pathlib import Path

from repo_agent.file_io import iter_project_files
from repo_agent.process import resolve_binary
from repo_agent.schemas import Ecosystem, ErrorKind, StepKind

logger = logging.getLogger(__name__)

PORT_PLACEHOLDER = "{port}"


@dataclass(frozen=True, slots=True)
class ResolvedCommand:
    """What to run for one step, or why nothing should run."""

    argv: tuple[str, ...] = ()
    skip: bool = False
    reason: str = ""
    prepare: tuple[tuple[str, ...], ...] = ()
    fail_on_output: bool = False
    error_kind: ErrorKind | None = None

    @classmethod
    def skipped(
        cls,
        reason: str,
        error_kind: ErrorKind | None = None,
    ) -> ResolvedCommand:
        """A skip; tag it ``TOOLCHAIN_MISSING`` only when a tool or mapping is absent."""
        return cls(skip=True, reason=reason, error_kind=error_kind)

    def with_port(self, port: int) -> ResolvedCommand:
        """Return a copy with ``{port}`` substituted in argv and prepare steps."""

        def _sub(argv: tuple[str, ...]) -> tuple[str, ...]:
            return tuple(part.replace(PORT_PLACEHOLDER, str(port)) for part in argv)

        return replace(
            self,
            argv=_sub(self.argv),
            prepare=tuple(_sub(step) for step in self.prepare),
        )


CommandFactory = Callable[[Path], ResolvedCommand]


def _run(*argv: str, fail_on_output: bool = False) -> ResolvedCommand:
    return ResolvedCommand(argv=tuple(argv), fail_on_output=fail_on_output)


def python_binary() -> str:
    """Interpreter used for Python projects: PATH first, then our own."""
    return resolve_binary("python3") or resolve_binary("python") or sys.executable


def _any_file(project_dir: Path, predicate: Callable[[str], bool]) -> bool:
    return any(predicate(path.name) for path in iter_project_files(project_dir))


def _is_python_test(name: str) -> bool:
    return name.endswith(".py") and (name.startswith("test_") or name.endswith("_test.py"))


def _first_existing(project_dir: Path, *names: str) -> str:
    for name in names:
        if (project_dir / name).is_file():
            return name
    return ""


def _package_scripts(project_dir: Path) -> dict[str, str] | None:
    """Return ``package.json`` scripts, or ``None`` when the file is unusable."""
    manifest = project_dir / "package.json"
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.debug("Could not parse %s: %s", manifest, exc)
        return None
    if not isinstance(data, dict):
        return None
    scripts = data.get("scripts") or {}
    if not isinstance(scripts, dict):
        return {}
    return {str(k): str(v) for k, v in scripts.items()}


# ---------------------------------------------------------------------------
# Default table
# ---------------------------------------------------------------------------

_DEFAULT_FACTORIES: dict[tuple[Ecosystem, StepKind], CommandFactory] = {}


def _with_makefile_fallback(factory: CommandFactory) -> CommandFactory:
    """Build with ``make`` when the ecosystem has nothing to build but a Makefile exists."""

    def build(project_dir: Path) -> ResolvedCommand:
        command = factory(project_dir)
        if command.skip and (project_dir / "Makefile").is_file():
            return _run("make")
        return command

    return build


def _default(ecosystem: Ecosystem, kind: StepKind) -> Callable[[CommandFactory], CommandFactory]:
    def decorator(factory: CommandFactory) -> CommandFactory:
        if kind == StepKind.BUILD:
            _DEFAULT_FACTORIES[(ecosystem, kind)] = _with_makefile_fallback(factory)
        else:
            _DEFAULT_FACTORIES[(ecosystem, kind)] = factory
        return factory

    return decorator


def _fixed(ecosystem: Ecosystem, kind: StepKind, *argv: str, fail_on_output: bool = False) -> None:
    command = _run(*argv, fail_on_output=fail_on_output)
    _DEFAULT_FACTORIES[(ecosystem, kind)] = lambda _project_dir: command


# Go

_fixed(Ecosystem.GO, StepKind.LINT, "go", "vet", "./...")
_fixed(Ecosystem.GO, StepKind.FORMAT, "gofmt", "-l", ".", fail_on_output=True)


@_default(Ecosystem.GO, StepKind.BUILD)
def _go_build(project_dir: Path) -> ResolvedCommand:
    has_sources = _any_file(project_dir, lambda name: name.endswith(".go"))
    if not (project_dir / "go.mod").is_file() and not has_sources:
        return ResolvedCommand.skipped("no Go module or sources")
    return _run("go", "build", "./...")


@_default(Ecosystem.GO, StepKind.TEST)
def _go_test(project_dir: Path) -> ResolvedCommand:
    if not _any_file(project_dir, lambda name: name.endswith("_test.go")):
        return ResolvedCommand.skipped("no Go test files")
    return _run("go", "test", "-cover", "./...")


@_default(Ecosystem.GO, StepKind.SERVE)
def _go_serve(project_dir: Path) -> ResolvedCommand:
    return ResolvedCommand(argv=("./app",), prepare=(("go", "build", "-o", "app", "."),))


# Node

_fixed(Ecosystem.NODE, StepKind.LINT, "eslint", ".")
_fixed(Ecosystem.NODE, StepKind.FORMAT, "prettier", "--check", ".")


@_default(Ecosystem.NODE, StepKind.BUILD)
def _node_build(project_dir: Path) -> ResolvedCommand:
    if not (project_dir / "package.json").is_file():
        return ResolvedCommand.skipped("no package.json")
    return _run("npm", "install")


@_default(Ecosystem.NODE, StepKind.TEST)
def _node_test(project_dir: Path) -> ResolvedCommand:
    scripts = _package_scripts(project_dir)
    if scripts is None:
        return ResolvedCommand.skipped("package.json missing or unreadable")
    test_script = scripts.get("test", "").strip()
    # npm init writes a placeholder that always exits 1.
    if not test_script or "no test specified" in test_script:
        return ResolvedCommand.skipped("no test script in package.json")
    return _run("npm", "test")


@_default(Ecosystem.NODE, StepKind.SERVE)
def _node_serve(project_dir: Path) -> ResolvedCommand:
    scripts = _package_scripts(project_dir) or {}
    if scripts.get("start", "").strip():
        return _run("npm", "start")
    entry = _first_existing(project_dir, "app.js", "index.js", "server.js")
    if entry:
        return _run("node", entry)
    return ResolvedCommand.skipped("no start script or entry file")


# Python


@_default(Ecosystem.PYTHON, StepKind.BUILD)
def _python_build(project_dir: Path) -> ResolvedCommand:
    if not (project_dir / "requirements.txt").is_file():
        return ResolvedCommand.skipped("no requirements.txt")
    return _run(python_binary(), "-m", "pip", "install", "-r", "requirements.txt")


@_default(Ecosystem.PYTHON, StepKind.LINT)
def _python_lint(project_dir: Path) -> ResolvedCommand:
    if not resolve_binary("flake8") and resolve_binary("ruff"):
        return _run("ruff", "check", ".")
    return _run("flake8", ".")


_fixed(Ecosystem.PYTHON, StepKind.FORMAT, "black", "--check", ".")


@_default(Ecosystem.PYTHON, StepKind.TEST)
def _python_test(project_dir: Path) -> ResolvedCommand:
    if not _any_file(project_dir, _is_python_test):
        return ResolvedCommand.skipped("no Python test files")
    if resolve_binary("pytest"):
        return _run("pytest", "-q")
    return _run(python_binary(), "-m", "unittest", "discover")


@_default(Ecosystem.PYTHON, StepKind.SERVE)
def _python_serve(project_dir: Path) -> ResolvedCommand:
    entry = _first_existing(project_dir, "app.py", "main.py")
    if not entry:
        return ResolvedCommand.skipped("no app.py or main.py")
    return _run(python_binary(), entry)


# Java


def _java_tool(project_dir: Path) -> str:
    if (project_dir / "pom.xml").is_file():
        return "mvn"
    if _first_existing(project_dir, "build.gradle", "build.gradle.kts"):
        return "gradle"
    return ""


@_default(Ecosystem.JAVA, StepKind.BUILD)
def _java_build(project_dir: Path) -> ResolvedCommand:
    tool = _java_tool(project_dir)
    if tool == "mvn":
        return _run("mvn", "-q", "compile")
    if tool == "gradle":
        return _run("gradle", "build")
    return ResolvedCommand.skipped("no pom.xml or build.gradle")


_fixed(Ecosystem.JAVA, StepKind.LINT, "checkstyle", "-c", "/sun_checks.xml", ".")


@_default(Ecosystem.JAVA, StepKind.TEST)
def _java_test(project_dir: Path) -> ResolvedCommand:
    tool = _java_tool(project_dir)
    if not tool or not (project_dir / "src" / "test").is_dir():
        return ResolvedCommand.skipped("no src/test directory")
    if tool == "mvn":
        return _run("mvn", "-q", "test")
    return _run("gradle", "test")


@_default(Ecosystem.JAVA, StepKind.SERVE)
def _java_serve(project_dir: Path) -> ResolvedCommand:
    for pattern in ("target/*.jar", "build/libs/*.jar"):
        jars = sorted(project_dir.glob(pattern))
        if jars:
            return _run("java", "-jar", str(jars[0].relative_to(project_dir)))
    return ResolvedCommand.skipped("no built jar")


# PHP


@_default(Ecosystem.PHP, StepKind.BUILD)
def _php_build(project_dir: Path) -> ResolvedCommand:
    if not (project_dir / "composer.json").is_file():
        return ResolvedCommand.skipped("no composer.json")
    return _run("composer", "install")


_fixed(Ecosystem.PHP, StepKind.LINT, "phpcs", ".")
_fixed(Ecosystem.PHP, StepKind.SERVE, "php", "-S", f"127.0.0.1:{PORT_PLACEHOLDER}", "-t", ".")


@_default(Ecosystem.PHP, StepKind.TEST)
def _php_test(project_dir: Path) -> ResolvedCommand:
    if not _first_existing(project_dir, "phpunit.xml", "phpunit.xml.dist") and not (
        project_dir / "tests"
    ).is_dir():
        return ResolvedCommand.skipped("no phpunit configuration or tests directory")
    return _run("phpunit")


# Ruby


@_default(Ecosystem.RUBY, StepKind.BUILD)
def _ruby_build(project_dir: Path) -> ResolvedCommand:
    if not (project_dir / "Gemfile").is_file():
        return ResolvedCommand.skipped("no Gemfile")
    return _run("bundle", "install")


_fixed(Ecosystem.RUBY, StepKind.LINT, "rubocop")


@_default(Ecosystem.RUBY, StepKind.TEST)
def _ruby_test(project_dir: Path) -> ResolvedCommand:
    if (project_dir / "spec").is_dir():
        return _run("rspec")
    if (project_dir / "Rakefile").is_file() and (project_dir / "test").is_dir():
        return _run("rake", "test")
    return ResolvedCommand.skipped("no spec/ or test/ directory")


@_default(Ecosystem.RUBY, StepKind.SERVE)
def _ruby_serve(project_dir: Path) -> ResolvedCommand:
    if (project_dir / "config.ru").is_file():
        return _run("rackup", "-p", PORT_PLACEHOLDER)
    if (project_dir / "app.rb").is_file():
        return _run("ruby", "app.rb")
    return ResolvedCommand.skipped("no config.ru or app.rb")


def default_table() -> dict[tuple[Ecosystem, StepKind], CommandFactory]:
    """Return a fresh copy of the built-in command table."""
    return dict(_DEFAULT_FACTORIES)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


def _executable_available(executable: str) -> bool:
    # Relative paths such as ``./app`` are produced by a prepare step.
    if executable.startswith(("./", ".\\")):
        return True
    candidate = Path(executable)
    if candidate.is_absolute():
        return candidate.is_file() and os.access(candidate, os.X_OK)
    return bool(resolve_binary(executable))


class CommandResolver:
    """Look up commands in a per-instance copy of the dispatch table.

    Registrations made on one resolver never leak into another.
    """

    def __init__(
        self,
        table: Mapping[tuple[Ecosystem, StepKind], CommandFactory] | None = None,
    ) -> None:
        self._table = dict(default_table() if table is None else table)

    def register(self, ecosystem: Ecosystem, kind: StepKind, factory: CommandFactory) -> None:
        """Add or replace the factory for ``(ecosystem, kind)``."""
        if not callable(factory):
            raise TypeError("command factory must be callable")
        self._table[(Ecosystem(ecosystem), StepKind(kind))] = factory

    def registered(self) -> list[tuple[Ecosystem, StepKind]]:
        return sorted(self._table, key=lambda key: (key[0].value, key[1].value))

    def resolve(
        self,
        ecosystem: Ecosystem,
        kind: StepKind,
        project_dir: str | Path,
    ) -> ResolvedCommand:
        """Return the command for *kind* in *project_dir*, or a skip with a reason."""
        factory = self._table.get((ecosystem, kind))
        if factory is None:
            return ResolvedCommand.skipped(
                f"no {kind.value} command for {ecosystem.value} projects",
                ErrorKind.TOOLCHAIN_MISSING,
            )

        try:
            command = factory(Path(project_dir))
        except (OSError, ValueError) as exc:
            logger.warning("Command factory for %s/%s failed: %s", ecosystem.value, kind.value, exc)
            return ResolvedCommand.skipped(f"could not inspect project: {exc}")

        if command.skip or not command.argv:
            return command if command.skip else ResolvedCommand.skipped("empty command")

        for argv in (*command.prepare, command.argv):
            if argv and not _executable_available(argv[0]):
                logger.info("%s not found on PATH; skipping %s", argv[0], kind.value)
                return ResolvedCommand.skipped(
                    f"{argv[0]} not found on PATH", ErrorKind.TOOLCHAIN_MISSING
                )
        return command
