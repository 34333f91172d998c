"""Detect a project's language/toolchain from filesystem markers."""

from __future__ import annotations

import logging
from pathlib import Path

from repo_agent.schemas import Ecosystem

logger = logging.getLogger(__name__)

DEFAULT_ECOSYSTEM = Ecosystem.PYTHON

# Priority order matters: the first marker found wins.
PRIMARY_MARKERS: tuple[tuple[str, Ecosystem], ...] = (
    ("package.json", Ecosystem.NODE),
    ("go.mod", Ecosystem.GO),
    ("requirements.txt", Ecosystem.PYTHON),
    ("pom.xml", Ecosystem.JAVA),
    ("composer.json", Ecosystem.PHP),
    ("Gemfile", Ecosystem.RUBY),
)

SECONDARY_MARKERS: tuple[tuple[str, Ecosystem], ...] = (
    ("pyproject.toml", Ecosystem.PYTHON),
    ("setup.py", Ecosystem.PYTHON),
    ("Pipfile", Ecosystem.PYTHON),
    ("build.gradle", Ecosystem.JAVA),
    ("build.gradle.kts", Ecosystem.JAVA),
)

CONVENTIONAL_SUBDIRS: tuple[str, ...] = ("src", "app", "backend", "server", "api")

LANGUAGE_ALIASES: dict[str, Ecosystem] = {
    "go": Ecosystem.GO,
    "golang": Ecosystem.GO,
    "node": Ecosystem.NODE,
    "nodejs": Ecosystem.NODE,
    "node.js": Ecosystem.NODE,
    "javascript": Ecosystem.NODE,
    "js": Ecosystem.NODE,
    "typescript": Ecosystem.NODE,
    "ts": Ecosystem.NODE,
    "python": Ecosystem.PYTHON,
    "python3": Ecosystem.PYTHON,
    "py": Ecosystem.PYTHON,
    "java": Ecosystem.JAVA,
    "php": Ecosystem.PHP,
    "ruby": Ecosystem.RUBY,
    "rb": Ecosystem.RUBY,
}


def normalize_language(language: str) -> Ecosystem:
    """Map a caller-declared language name onto an :class:`Ecosystem`."""
    key = str(language or "").strip().lower()
    return LANGUAGE_ALIASES.get(key, Ecosystem.UNKNOWN)


def _probe(directory: Path, markers: tuple[tuple[str, Ecosystem], ...]) -> Ecosystem | None:
    for filename, ecosystem in markers:
        if (directory / filename).is_file():
            return ecosystem
    return None


def _candidate_dirs(root: Path) -> list[Path]:
    """Return the root plus conventional nested directories, never via symlinks."""
    candidates = [root]
    for name in CONVENTIONAL_SUBDIRS:
        sub = root / name
        if sub.is_symlink() or not sub.is_dir():
            continue
        candidates.append(sub)
    return candidates


def detect(
    path: str | Path,
    declared_language: str | None = None,
    *,
    default: Ecosystem = DEFAULT_ECOSYSTEM,
) -> Ecosystem:
    """Return the ecosystem of *path*.

    A non-empty *declared_language* is trusted without touching the
    filesystem. Otherwise marker files are probed in priority order, first at
    the top level and then one level into conventional source directories.
    When nothing matches, *default* is returned rather than raising.
    """
    if declared_language and declared_language.strip():
        ecosystem = normalize_language(declared_language)
        logger.debug("Using declared language %r -> %s", declared_language, ecosystem.value)
        return ecosystem

    root = Path(path)
    if not root.is_dir():
        logger.debug("Detection target %s is not a directory; using default", root)
        return default

    candidates = _candidate_dirs(root)
    for markers in (PRIMARY_MARKERS, SECONDARY_MARKERS):
        for directory in candidates:
            found = _probe(directory, markers)
            if found is not None:
                logger.debug("Detected %s from markers in %s", found.value, directory)
                return found

    logger.debug("No ecosystem markers under %s; defaulting to %s", root, default.value)
    return default


def locate_project_dir(path: str | Path, ecosystem: Ecosystem) -> Path:
    """Return the directory holding *ecosystem*'s marker file under *path*.

    The same candidates as :func:`detect` are searched in the same order, so
    a manifest found in ``app/`` or ``backend/`` makes that directory the
    place to build, test and serve from. Falls back to *path* itself.
    """
    root = Path(path)
    if not root.is_dir():
        return root
    candidates = _candidate_dirs(root)
    for markers in (PRIMARY_MARKERS, SECONDARY_MARKERS):
        wanted = tuple(marker for marker in markers if marker[1] == ecosystem)
        for directory in candidates:
            if _probe(directory, wanted) is not None:
                return directory
    return root
