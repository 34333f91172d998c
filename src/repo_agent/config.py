"""Runtime settings: defaults, optional JSON file, environment overrides."""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from repo_agent.schemas import Ecosystem

logger = logging.getLogger(__name__)

ENV_PREFIX = "REPO_AGENT_"

# Unprefixed variables honoured for compatibility with container deployments.
_LEGACY_ENV_VARS: dict[str, str] = {
    "PORT": "port",
    "WEBHOOK_SECRET": "webhook_secret",
    "GITHUB_TOKEN": "github_token",
}


class AgentSettings(BaseModel):
    """Tunables for the workflow engine, application tester, and HTTP layer."""

    # Engine
    default_step_timeout_seconds: float = 300.0
    workspace_root: str = ""
    default_ecosystem: Ecosystem = Ecosystem.PYTHON
    max_output_lines: int = 400

    # Application tester
    api_port: int = 0  # 0 = ask the OS for a free port per validation
    server_grace_seconds: float = 2.0
    probe_timeout_seconds: float = 10.0

    # HTTP layer
    host: str = "0.0.0.0"
    port: int = 8080
    webhook_secret: str = ""
    webhook_pipeline: str = "ci_cd"
    webhook_branches: list[str] = Field(default_factory=lambda: ["main", "master"])
    github_token: str = ""

    @field_validator("default_step_timeout_seconds", "probe_timeout_seconds")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("server_grace_seconds")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("api_port", "port")
    @classmethod
    def _valid_port(cls, value: int) -> int:
        if not 0 <= value <= 65535:
            raise ValueError("port must be between 0 and 65535")
        return value

    @field_validator("webhook_branches", mode="before")
    @classmethod
    def _split_branches(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


def _env_overrides(environ: Mapping[str, str]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for env_name, field in _LEGACY_ENV_VARS.items():
        value = str(environ.get(env_name, "")).strip()
        if value:
            overrides[field] = value
    for field in AgentSettings.model_fields:
        value = str(environ.get(f"{ENV_PREFIX}{field.upper()}", "")).strip()
        if value:
            overrides[field] = value
    return overrides


def load_settings(
    path: str | Path | None = None,
    *,
    environ: dict[str, str] | None = None,
) -> AgentSettings:
    """Build settings from defaults, an optional JSON file, then the environment.

    A missing file is ignored; an unreadable or invalid file raises ``ValueError``.
    """
    data: dict[str, Any] = {}
    if path:
        config_path = Path(path)
        if config_path.is_file():
            try:
                raw = json.loads(config_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as exc:
                raise ValueError(f"failed to read config file {config_path}: {exc}") from exc
            if not isinstance(raw, dict):
                raise ValueError(f"config file {config_path} must contain a JSON object")
            data.update(raw)
        else:
            logger.debug("Config file %s not found; using defaults", config_path)

    data.update(_env_overrides(os.environ if environ is None else environ))
    try:
        return AgentSettings.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"invalid settings: {exc}") from exc
