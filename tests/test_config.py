"""Unit tests for settings loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from repo_agent.config import AgentSettings, load_settings
from repo_agent.schemas import Ecosystem

pytestmark = pytest.mark.unit


def test_defaults_without_file_or_environment() -> None:
    settings = load_settings(environ={})
    assert settings == AgentSettings()
    assert settings.default_step_timeout_seconds == 300.0
    assert settings.api_port == 0
    assert settings.server_grace_seconds == 2.0
    assert settings.default_ecosystem == Ecosystem.PYTHON
    assert settings.webhook_branches == ["main", "master"]


def test_json_file_overrides_defaults(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"port": 9090, "webhook_pipeline": "ci"}), encoding="utf-8")

    settings = load_settings(path, environ={})

    assert settings.port == 9090
    assert settings.webhook_pipeline == "ci"


def test_environment_overrides_file(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"port": 9090}), encoding="utf-8")

    settings = load_settings(
        path,
        environ={
            "PORT": "7000",
            "WEBHOOK_SECRET": "s3cret",
            "GITHUB_TOKEN": "ghp_example",
            "REPO_AGENT_API_PORT": "18080",
            "REPO_AGENT_WEBHOOK_BRANCHES": "main, release",
        },
    )

    assert settings.port == 7000
    assert settings.webhook_secret == "s3cret"
    assert settings.github_token == "ghp_example"
    assert settings.api_port == 18080
    assert settings.webhook_branches == ["main", "release"]


def test_prefixed_variable_beats_legacy_name() -> None:
    settings = load_settings(environ={"PORT": "7000", "REPO_AGENT_PORT": "7001"})
    assert settings.port == 7001


def test_missing_file_is_ignored(tmp_path: Path) -> None:
    settings = load_settings(tmp_path / "absent.json", environ={})
    assert settings == AgentSettings()


def test_invalid_json_raises_value_error(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError, match="failed to read config file"):
        load_settings(path, environ={})


def test_non_object_json_raises_value_error(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ValueError, match="JSON object"):
        load_settings(path, environ={})


def test_invalid_values_raise_value_error() -> None:
    with pytest.raises(ValueError, match="invalid settings"):
        load_settings(environ={"REPO_AGENT_DEFAULT_STEP_TIMEOUT_SECONDS": "-1"})
    with pytest.raises(ValueError, match="invalid settings"):
        load_settings(environ={"PORT": "70000"})
