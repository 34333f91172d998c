"""Flask HTTP layer: GitHub webhook, pipeline runs, and application validation."""

from __future__ import annotations

import hashlib
import hmac
import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from flask import Flask, jsonify, request
from pydantic import BaseModel, Field, ValidationError

from repo_agent.config import AgentSettings
from repo_agent.schemas import AppProfile, Commit, Endpoint, PipelineDefinition, RunContext
from repo_agent.validation.tester import ApplicationTester
from repo_agent.workflow import EngineFault, WorkflowEngine

logger = logging.getLogger(__name__)

RESULTS_FILENAME = "test_results.json"
SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"

Dispatch = Callable[[Callable[[], None], str], None]


# ---------------------------------------------------------------------------
# Webhook payload
# ---------------------------------------------------------------------------


class _PushAuthor(BaseModel):
    name: str = ""
    email: str = ""


class _PushCommit(BaseModel):
    id: str = ""
    message: str = ""
    author: _PushAuthor = Field(default_factory=_PushAuthor)


class _PushRepository(BaseModel):
    full_name: str = ""
    clone_url: str


class PushEvent(BaseModel):
    """The subset of a GitHub push payload the agent acts on."""

    ref: str
    repository: _PushRepository
    commits: list[_PushCommit] = Field(default_factory=list)

    @property
    def branch(self) -> str:
        return self.ref.rsplit("/", 1)[-1]

    def to_context(self) -> RunContext:
        return RunContext(
            repository=self.repository.full_name,
            clone_url=self.repository.clone_url,
            ref=self.ref,
            commits=[
                Commit(id=c.id, message=c.message, author=c.author.name) for c in self.commits
            ],
        )


def verify_signature(secret: str, body: bytes, header: str) -> bool:
    """Check a ``sha256=<hex>`` HMAC header in constant time."""
    if not header or not header.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header.strip())


def _thread_dispatch(target: Callable[[], None], name: str) -> None:
    threading.Thread(target=target, name=name, daemon=True).start()


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    settings: AgentSettings | None = None,
    engine: WorkflowEngine | None = None,
    tester: ApplicationTester | None = None,
    *,
    dispatch: Dispatch | None = None,
) -> Flask:
    """Build the Flask app around injected engine and tester instances."""
    settings = settings or AgentSettings()
    engine = engine or WorkflowEngine(settings)
    tester = tester or ApplicationTester(settings, engine.resolver)
    dispatch = dispatch or _thread_dispatch

    app = Flask(__name__)
    app.extensions["repo_agent"] = {"settings": settings, "engine": engine, "tester": tester}

    def _run_push(event: PushEvent) -> None:
        pipeline = settings.webhook_pipeline
        repository = event.repository.full_name
        try:
            result = engine.execute(pipeline, event.to_context())
        except Exception:
            logger.exception("Webhook run of '%s' for %s crashed", pipeline, repository)
            return
        if result.success:
            logger.info("Webhook run of '%s' for %s succeeded", pipeline, repository)
        else:
            logger.warning(
                "Webhook run of '%s' for %s failed: %s",
                pipeline,
                repository,
                result.error,
            )

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    @app.route("/status")
    def status():
        return jsonify(
            {
                "health": "healthy",
                "active_jobs": engine.active_count(),
                "total_jobs": engine.total_count(),
                "pipelines": engine.list_registered(),
                "last_activity": engine.last_activity(),
            }
        )

    @app.route("/pipelines", methods=["GET"])
    def list_pipelines():
        return jsonify({"pipelines": [d.model_dump(mode="json") for d in engine.definitions()]})

    @app.route("/pipelines", methods=["POST"])
    def register_pipeline():
        data = request.get_json(silent=True) or {}
        try:
            definition = PipelineDefinition.model_validate(data)
            engine.register(definition)
        except (ValidationError, ValueError) as exc:
            return jsonify({"error": f"Invalid pipeline: {exc}"}), 400
        return jsonify(definition.model_dump(mode="json")), 201

    @app.route("/pipelines/<name>/run", methods=["POST"])
    def run_pipeline(name: str):
        if engine.get(name) is None:
            return jsonify({"error": f"pipeline '{name}' not found"}), 404
        data = request.get_json(silent=True) or {}
        try:
            context = RunContext.model_validate(data)
        except ValidationError as exc:
            return jsonify({"error": f"Invalid run context: {exc}"}), 400
        result = engine.execute(name, context)
        return jsonify(result.model_dump(mode="json"))

    @app.route("/webhook", methods=["POST"])
    def webhook():
        body = request.get_data(cache=True)
        if settings.webhook_secret:
            header = request.headers.get(SIGNATURE_HEADER, "")
            if not verify_signature(settings.webhook_secret, body, header):
                logger.warning("Rejected webhook with invalid signature")
                return jsonify({"error": "invalid signature"}), 401

        event_type = request.headers.get(EVENT_HEADER, "push")
        if event_type == "ping":
            return jsonify({"status": "pong"})
        if event_type != "push":
            return jsonify({"status": "ignored", "reason": f"event '{event_type}' not handled"})

        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "malformed payload"}), 400
        try:
            event = PushEvent.model_validate(data)
        except ValidationError as exc:
            return jsonify({"error": f"malformed payload: {exc}"}), 400

        if event.branch not in settings.webhook_branches:
            logger.info("Ignoring push to %s on %s", event.ref, event.repository.full_name)
            return jsonify({"status": "ignored", "reason": f"branch '{event.branch}' not tracked"})

        dispatch(lambda: _run_push(event), f"webhook-{event.repository.full_name or 'repo'}")
        return (
            jsonify(
                {
                    "status": "accepted",
                    "pipeline": settings.webhook_pipeline,
                    "repository": event.repository.full_name,
                    "ref": event.ref,
                }
            ),
            202,
        )

    @app.route("/test-app", methods=["POST"])
    def test_app():
        data: Any = request.get_json(silent=True)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return jsonify({"error": "request body must be a JSON object"}), 400
        raw_path = str(data.get("app_path") or "").strip()
        if not raw_path:
            return jsonify({"error": "app_path is required"}), 400
        app_path = Path(raw_path)
        if not app_path.is_dir():
            return jsonify({"error": f"Application path not found: {raw_path}"}), 404

        endpoints = data.get("endpoints") or []
        if not isinstance(endpoints, list):
            return jsonify({"error": "endpoints must be a list"}), 400
        try:
            profile = AppProfile(
                name=str(data.get("name") or app_path.name),
                app_type=str(data.get("app_type") or "api"),
                language=str(data.get("language") or ""),
                endpoints=[Endpoint.model_validate(ep) for ep in endpoints],
            )
        except ValidationError as exc:
            return jsonify({"error": f"Invalid request: {exc}"}), 400

        try:
            report = tester.validate(app_path, profile.language or None, profile)
        except EngineFault as exc:
            return jsonify({"error": str(exc)}), 404

        payload = report.model_dump(mode="json")
        if data.get("save_results", True):
            try:
                payload["results_path"] = str(report.save(app_path / RESULTS_FILENAME))
            except OSError as exc:
                logger.warning("Could not save results for %s: %s", app_path, exc)
                payload["save_error"] = str(exc)
        return jsonify(payload)

    return app


def run_server(settings: AgentSettings | None = None) -> None:
    """Start the Flask server with a fresh engine and tester."""
    settings = settings or AgentSettings()
    app = create_app(settings)
    logger.info("Listening on http://%s:%s", settings.host, settings.port)
    app.run(host=settings.host, port=settings.port, debug=False, threaded=True)
