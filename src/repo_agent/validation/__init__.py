"""Multi-language application validation."""

from repo_agent.validation.security import SecurityFinding, scan_directory
from repo_agent.validation.tester import ApplicationTester, parse_coverage

__all__ = ["ApplicationTester", "SecurityFinding", "parse_coverage", "scan_directory"]
