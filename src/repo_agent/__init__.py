"""repo-agent - run CI pipelines and validate generated applications in any language."""

from importlib.metadata import PackageNotFoundError, version

from repo_agent.schemas import Ecosystem, RunResult, ValidationReport

__all__ = ["Ecosystem", "RunResult", "ValidationReport"]

try:
    __version__ = version("repo-agent")
except PackageNotFoundError:
    __version__ = "0.0.0"
