"""CLI entry point for repo-agent.

Usage::

    repo-agent serve --port 8080
    repo-agent run ci --source https://github.com/org/repo.git --ref refs/heads/main
    repo-agent validate ./generated_app --app-type api
    repo-agent detect ./some/project
    repo-agent pipelines
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from repo_agent.config import AgentSettings, load_settings
from repo_agent.schemas import AppProfile, Endpoint, FailurePolicy, RunContext


def _load_dotenv() -> None:
    """Load .env from cwd, its parent, or the project root so it's found regardless of cwd."""
    # src/repo_agent/__main__.py -> project root
    project_root = Path(__file__).resolve().parent.parent.parent
    for dir_ in (Path.cwd(), Path.cwd().parent, project_root):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


def _parse_endpoint(raw: str) -> Endpoint:
    method, _, path = raw.strip().partition(" ")
    if not path:
        return Endpoint(method="GET", path=method or "/")
    return Endpoint(method=method.upper(), path=path.strip())


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all supported modes."""
    p = argparse.ArgumentParser(
        prog="repo-agent",
        description="repo-agent - run CI pipelines and validate generated applications.",
    )
    p.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    p.add_argument("--json", action="store_true", help="Print machine-readable JSON output.")
    p.add_argument(
        "--config",
        type=str,
        default="",
        help="Optional JSON settings file (environment variables still override it).",
    )
    # -- Sub-commands ---------------------------------------------------------
    sub = p.add_subparsers(dest="command")

    serve_p = sub.add_parser("serve", help="Start the webhook/HTTP server.")
    serve_p.add_argument("--host", type=str, default="", help="Bind address (default 0.0.0.0)")
    serve_p.add_argument("--port", type=int, default=0, help="Port (default 8080)")

    run_p = sub.add_parser("run", help="Execute a registered pipeline once.")
    run_p.add_argument("pipeline", help="Pipeline name, e.g. 'ci' or 'ci_cd'.")
    run_p.add_argument(
        "--source",
        required=True,
        help="Clone URL, git checkout, or plain local directory to run against.",
    )
    run_p.add_argument("--ref", default="", help="Branch, tag, or commit to check out.")
    run_p.add_argument("--language", default="", help="Declared language (skips detection).")
    run_p.add_argument("--repository", default="", help="Repository name for reporting.")

    validate_p = sub.add_parser("validate", help="Run the six validation checks on a directory.")
    validate_p.add_argument("path", help="Application directory.")
    validate_p.add_argument("--language", default="", help="Declared language (skips detection).")
    validate_p.add_argument(
        "--app-type",
        default="",
        help="Application type; 'api' or 'web' enables HTTP probing.",
    )
    validate_p.add_argument("--name", default="", help="Application name for the report.")
    validate_p.add_argument(
        "--endpoint",
        action="append",
        default=[],
        help="Declared endpoint as 'METHOD /path' (repeatable).",
    )
    validate_p.add_argument(
        "--save",
        action="store_true",
        help="Write test_results.json into the application directory.",
    )
    validate_p.add_argument(
        "--fail-fast",
        action="store_true",
        help="Stop at the first failing check (remaining checks are reported as skipped).",
    )

    detect_p = sub.add_parser("detect", help="Print the detected ecosystem of a directory.")
    detect_p.add_argument("path", help="Project directory.")
    detect_p.add_argument("--language", default="", help="Declared language to normalise.")

    sub.add_parser("pipelines", help="List the built-in pipelines.")
    return p


def _run_serve(args: argparse.Namespace, settings: AgentSettings) -> int:
    from repo_agent.web import main as web_main

    updates: dict[str, object] = {}
    if args.host:
        updates["host"] = args.host
    if args.port:
        updates["port"] = args.port
    web_main(settings.model_copy(update=updates) if updates else settings)
    return 0


def _run_pipeline(args: argparse.Namespace, settings: AgentSettings) -> int:
    from repo_agent.workflow import WorkflowEngine

    engine = WorkflowEngine(settings)
    context = RunContext(
        repository=args.repository or Path(args.source).name,
        clone_url=args.source,
        ref=args.ref,
        language=args.language,
    )
    result = engine.execute(args.pipeline, context)
    if args.json:
        print(result.model_dump_json(indent=2))
    else:
        print(f"\n  Pipeline: {args.pipeline}")
        for step in result.steps:
            state = "SKIP" if step.skipped else ("OK" if step.success else "FAIL")
            print(f"  [{state:>4}] {step.name} ({step.kind.value}, {step.duration_seconds:.2f}s)")
            if step.error:
                print(f"         {step.error}")
        print(f"\n  Result: {'success' if result.success else 'failure'}")
        if result.error:
            print(f"  Error: {result.error}")
    return 0 if result.success else 1


def _run_validate(args: argparse.Namespace, settings: AgentSettings) -> int:
    from repo_agent.validation import ApplicationTester
    from repo_agent.workflow import EngineFault

    policy = FailurePolicy.FAIL_FAST if args.fail_fast else FailurePolicy.FAIL_SOFT
    tester = ApplicationTester(settings, policy=policy)
    profile = AppProfile(
        name=args.name,
        app_type=args.app_type,
        language=args.language,
        endpoints=[_parse_endpoint(raw) for raw in args.endpoint],
    )
    try:
        report = tester.validate(args.path, args.language or None, profile)
    except EngineFault as exc:
        print(f"\nError: {exc}", file=sys.stderr)
        return 1

    if args.save:
        report.save(Path(args.path) / "test_results.json")
    if args.json:
        print(report.model_dump_json(indent=2))
    else:
        print(report.summary, end="")
    return 1 if report.overall_status == "failure" else 0


def _run_detect(args: argparse.Namespace, settings: AgentSettings) -> int:
    from repo_agent.ecosystem import detect

    path = Path(args.path)
    if not path.is_dir():
        print(f"\nError: directory not found: {path}", file=sys.stderr)
        return 1
    ecosystem = detect(path, args.language or None, default=settings.default_ecosystem)
    if args.json:
        print(json.dumps({"path": str(path), "ecosystem": ecosystem.value}))
    else:
        print(ecosystem.value)
    return 0


def _list_pipelines(args: argparse.Namespace) -> int:
    from repo_agent.workflow import DEFAULT_PIPELINES

    if args.json:
        print(json.dumps([d.model_dump(mode="json") for d in DEFAULT_PIPELINES], indent=2))
        return 0
    for definition in DEFAULT_PIPELINES:
        steps = " -> ".join(step.name for step in definition.steps)
        print(f"  {definition.name:<8} {steps}")
        if definition.description:
            print(f"           {definition.description}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate mode."""
    _load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    # -- Logging setup (early, for all modes) --------------------------------
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    if not args.command:
        parser.print_help()
        return 1

    try:
        settings = load_settings(args.config or None)
    except ValueError as exc:
        print(f"\nError: {exc}", file=sys.stderr)
        return 1

    if args.command == "serve":
        return _run_serve(args, settings)
    if args.command == "run":
        return _run_pipeline(args, settings)
    if args.command == "validate":
        return _run_validate(args, settings)
    if args.command == "detect":
        return _run_detect(args, settings)
    if args.command == "pipelines":
        return _list_pipelines(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
