"""Line-level heuristics for SQL concatenation and hardcoded secrets."""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from repo_agent.file_io import iter_project_files, read_text_resilient

logger = logging.getLogger(__name__)

SOURCE_SUFFIXES = frozenset(
    {".go", ".py", ".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".java", ".kt", ".php", ".rb"}
)
_MAX_SCAN_BYTES = 1_000_000

_SQL_CALL = re.compile(
    r"(?i)\b(?:exec|execute|executemany|query|queryrow|queryx|raw|executequery|mysqli_query)\s*\("
)
_SQL_STRING = re.compile(
    r"""(?i)["'`][^"'`]*\b(?:select|insert|update|delete|drop)\b[^"'`]*["'`]"""
)
_STRING_CONCAT = re.compile(r"""["'`]\s*(?:\+|\.\s*\$)|\+\s*["'`]""")
_FSTRING_SQL = re.compile(r"""(?i)\bf["'][^"']*\b(?:select|insert|update|delete)\b[^"']*\{""")

_ASSIGN = r"""["']?\s*(?::=|=>|[:=])\s*["']"""


def _secret_pattern(name: str, min_length: int) -> re.Pattern[str]:
    return re.compile(rf"""(?i)\b\w*{name}\w*{_ASSIGN}([^"'\n]{{{min_length},}})["']""")


_SECRET_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("hardcoded_password", _secret_pattern("password", 8)),
    ("hardcoded_api_key", _secret_pattern("api[_-]?key", 10)),
    ("hardcoded_secret_key", _secret_pattern("secret[_-]?key", 10)),
    ("hardcoded_token", _secret_pattern("token", 10)),
)

_PLACEHOLDER_SECRET_VALUES = {
    "password",
    "changeme",
    "api-key",
    "token-here",
    "xxxxxxxx",
    "your-key",
    "your_api_key",
    "your-api-key",
    "your_secret_key",
}
_PLACEHOLDER_SECRET_SUBSTRINGS = (
    "your-key-here",
    "your key here",
    "your_api_key_here",
    "your-secret",
    "your_secret",
    "your-token",
    "your_token",
    "replace-me",
    "replace_with",
    "change-me",
    "changeme",
    "placeholder",
    "example",
    "set-me",
    "xxxx",
    "****",
)


@dataclass(frozen=True, slots=True)
class SecurityFinding:
    """One suspicious line."""

    file: str
    line: int
    rule: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def looks_like_placeholder(value: str) -> bool:
    """Return True for obvious placeholder secret text."""
    normalized = (value or "").strip().strip('"').strip("'").lower()
    if not normalized:
        return True
    if normalized in _PLACEHOLDER_SECRET_VALUES:
        return True
    if normalized.startswith("<") and normalized.endswith(">"):
        return True
    if normalized.startswith(("${", "{{", "%(")) or normalized.endswith("..."):
        return True
    return any(token in normalized for token in _PLACEHOLDER_SECRET_SUBSTRINGS)


def _is_sql_concat(line: str) -> bool:
    if _FSTRING_SQL.search(line):
        return True
    if not _STRING_CONCAT.search(line):
        return False
    return bool(_SQL_CALL.search(line) or _SQL_STRING.search(line))


def scan_text(text: str, relative_path: str) -> list[SecurityFinding]:
    """Scan one file's text and return its findings in line order."""
    findings: list[SecurityFinding] = []
    for lineno, line in enumerate(text.splitlines(), start=1):
        if _is_sql_concat(line):
            findings.append(
                SecurityFinding(
                    file=relative_path,
                    line=lineno,
                    rule="sql_concatenation",
                    message="SQL query built by string concatenation",
                )
            )
        for rule, pattern in _SECRET_PATTERNS:
            match = pattern.search(line)
            if match and not looks_like_placeholder(match.group(1)):
                label = rule.removeprefix("hardcoded_").replace("_", " ")
                findings.append(
                    SecurityFinding(
                        file=relative_path,
                        line=lineno,
                        rule=rule,
                        message=f"possible hardcoded {label} literal",
                    )
                )
                break
    return findings


def scan_directory(root: str | Path) -> list[SecurityFinding]:
    """Scan source files under *root*, skipping vendored directories."""
    base = Path(root)
    findings: list[SecurityFinding] = []
    for path in iter_project_files(base):
        if path.suffix.lower() not in SOURCE_SUFFIXES:
            continue
        try:
            if path.stat().st_size > _MAX_SCAN_BYTES:
                logger.debug("Skipping large file %s", path)
                continue
            text = read_text_resilient(path)
        except OSError as exc:
            logger.warning("Could not read %s: %s", path, exc)
            continue
        findings.extend(scan_text(text, path.relative_to(base).as_posix()))
    return findings
