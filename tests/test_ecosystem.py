"""Unit tests for ecosystem detection."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from repo_agent.ecosystem import detect, locate_project_dir, normalize_language
from repo_agent.schemas import Ecosystem

pytestmark = pytest.mark.unit


def _touch(path: Path, content: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_package_json_only_is_node(tmp_path: Path) -> None:
    _touch(tmp_path / "package.json", "{}")
    assert detect(tmp_path) == Ecosystem.NODE


def test_empty_directory_yields_default(tmp_path: Path) -> None:
    assert detect(tmp_path) == Ecosystem.PYTHON
    assert detect(tmp_path, default=Ecosystem.GO) == Ecosystem.GO


def test_missing_directory_yields_default(tmp_path: Path) -> None:
    assert detect(tmp_path / "nope") == Ecosystem.PYTHON


@pytest.mark.parametrize(
    ("marker", "expected"),
    [
        ("go.mod", Ecosystem.GO),
        ("requirements.txt", Ecosystem.PYTHON),
        ("pom.xml", Ecosystem.JAVA),
        ("composer.json", Ecosystem.PHP),
        ("Gemfile", Ecosystem.RUBY),
        ("pyproject.toml", Ecosystem.PYTHON),
        ("build.gradle.kts", Ecosystem.JAVA),
    ],
)
def test_single_marker(tmp_path: Path, marker: str, expected: Ecosystem) -> None:
    _touch(tmp_path / marker)
    assert detect(tmp_path) == expected


def test_priority_order_first_marker_wins(tmp_path: Path) -> None:
    _touch(tmp_path / "go.mod")
    _touch(tmp_path / "package.json", "{}")
    assert detect(tmp_path) == Ecosystem.NODE


def test_primary_marker_beats_secondary(tmp_path: Path) -> None:
    _touch(tmp_path / "pyproject.toml")
    _touch(tmp_path / "Gemfile")
    assert detect(tmp_path) == Ecosystem.RUBY


def test_top_level_beats_nested(tmp_path: Path) -> None:
    _touch(tmp_path / "go.mod")
    _touch(tmp_path / "src" / "package.json", "{}")
    assert detect(tmp_path) == Ecosystem.GO


def test_conventional_subdirectory_is_probed(tmp_path: Path) -> None:
    _touch(tmp_path / "backend" / "go.mod")
    assert detect(tmp_path) == Ecosystem.GO


def test_unconventional_subdirectory_is_not_probed(tmp_path: Path) -> None:
    _touch(tmp_path / "misc" / "go.mod")
    assert detect(tmp_path) == Ecosystem.PYTHON


@pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
def test_symlinked_subdirectory_is_not_entered(tmp_path: Path) -> None:
    outside = tmp_path / "outside"
    _touch(outside / "go.mod")
    project = tmp_path / "project"
    project.mkdir()
    (project / "src").symlink_to(outside, target_is_directory=True)
    assert detect(project) == Ecosystem.PYTHON


def test_declared_language_is_trusted_without_probing(tmp_path: Path) -> None:
    _touch(tmp_path / "package.json", "{}")
    assert detect(tmp_path, "golang") == Ecosystem.GO
    assert detect(tmp_path, "  TypeScript ") == Ecosystem.NODE


def test_blank_declared_language_falls_back_to_probing(tmp_path: Path) -> None:
    _touch(tmp_path / "Gemfile")
    assert detect(tmp_path, "   ") == Ecosystem.RUBY


def test_normalize_language_aliases() -> None:
    assert normalize_language("javascript") == Ecosystem.NODE
    assert normalize_language("nodejs") == Ecosystem.NODE
    assert normalize_language("py") == Ecosystem.PYTHON
    assert normalize_language("cobol") == Ecosystem.UNKNOWN


def test_locate_project_dir_finds_nested_manifest(tmp_path: Path) -> None:
    _touch(tmp_path / "app" / "package.json", "{}")
    ecosystem = detect(tmp_path)
    assert ecosystem == Ecosystem.NODE
    assert locate_project_dir(tmp_path, ecosystem) == tmp_path / "app"


def test_locate_project_dir_prefers_top_level(tmp_path: Path) -> None:
    _touch(tmp_path / "go.mod")
    _touch(tmp_path / "backend" / "go.mod")
    assert locate_project_dir(tmp_path, Ecosystem.GO) == tmp_path


def test_locate_project_dir_matches_the_requested_ecosystem(tmp_path: Path) -> None:
    _touch(tmp_path / "package.json", "{}")
    _touch(tmp_path / "backend" / "go.mod")
    assert locate_project_dir(tmp_path, Ecosystem.GO) == tmp_path / "backend"
    assert locate_project_dir(tmp_path, Ecosystem.NODE) == tmp_path


def test_locate_project_dir_falls_back_to_root(tmp_path: Path) -> None:
    _touch(tmp_path / "misc" / "Gemfile")
    assert locate_project_dir(tmp_path, Ecosystem.RUBY) == tmp_path
    assert locate_project_dir(tmp_path / "absent", Ecosystem.RUBY) == tmp_path / "absent"
