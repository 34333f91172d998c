"""API tests for the webhook, pipeline and validation endpoints."""

from __future__ import annotations

import hashlib
import hmac
import json
import sys
from pathlib import Path

import pytest

from repo_agent.commands import CommandResolver
from repo_agent.config import AgentSettings
from repo_agent.validation import ApplicationTester
from repo_agent.web.app import RESULTS_FILENAME, create_app, verify_signature
from repo_agent.workflow import WorkflowEngine

pytestmark = pytest.mark.integration

SECRET = "webhook-secret"


def _push_payload(source: str, ref: str = "refs/heads/main") -> dict:
    return {
        "ref": ref,
        "repository": {"full_name": "org/demo", "clone_url": source},
        "commits": [{"id": "abc123", "message": "Add feature", "author": {"name": "dev"}}],
    }


def _sign(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@pytest.fixture()
def dispatched() -> list[str]:
    return []


@pytest.fixture()
def engine(tmp_path: Path) -> WorkflowEngine:
    settings = AgentSettings(workspace_root=str(tmp_path / "workspaces"))
    return WorkflowEngine(settings, CommandResolver(table={}))


@pytest.fixture()
def app(tmp_path: Path, engine: WorkflowEngine, dispatched: list[str]):
    settings = AgentSettings(
        webhook_secret=SECRET,
        webhook_pipeline="ci",
        workspace_root=str(tmp_path / "workspaces"),
    )
    tester = ApplicationTester(settings, CommandResolver(table={}))

    def run_inline(target, name):
        dispatched.append(name)
        target()

    flask_app = create_app(settings, engine, tester, dispatch=run_inline)
    flask_app.config.update(TESTING=True)
    return flask_app


@pytest.fixture()
def client(app):
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture()
def source_dir(tmp_path: Path) -> Path:
    source = tmp_path / "source"
    source.mkdir()
    (source / "README.md").write_text("# demo\n", encoding="utf-8")
    return source


def _post_webhook(client, payload: dict, *, event: str = "push", signature: str | None = None):
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-GitHub-Event": event,
        "X-Hub-Signature-256": _sign(body) if signature is None else signature,
    }
    return client.post("/webhook", data=body, headers=headers)


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "ok"}

    def test_status_reports_counters(self, client):
        data = client.get("/status").get_json()
        assert data["health"] == "healthy"
        assert data["active_jobs"] == 0
        assert data["total_jobs"] == 0
        assert data["pipelines"] == ["ci", "ci_cd"]


class TestPipelines:
    def test_list_pipelines(self, client):
        data = client.get("/pipelines").get_json()
        assert [p["name"] for p in data["pipelines"]] == ["ci", "ci_cd"]

    def test_register_pipeline(self, client, engine):
        resp = client.post(
            "/pipelines",
            json={"name": "echo", "steps": [{"name": "say", "command": ["echo", "hi"]}]},
        )
        assert resp.status_code == 201
        assert resp.get_json()["steps"][0]["kind"] == "command"
        assert "echo" in engine.list_registered()

    def test_register_invalid_pipeline(self, client):
        resp = client.post("/pipelines", json={"name": "bad", "steps": [{"name": "deploy"}]})
        assert resp.status_code == 400
        assert resp.get_json()["error"].startswith("Invalid pipeline:")

    def test_run_unknown_pipeline(self, client):
        resp = client.post("/pipelines/nope/run", json={})
        assert resp.status_code == 404

    def test_run_pipeline_returns_result(self, client):
        client.post(
            "/pipelines",
            json={
                "name": "py",
                "steps": [{"name": "say", "command": [sys.executable, "-c", "print('hi')"]}],
            },
        )
        resp = client.post("/pipelines/py/run", json={"repository": "org/demo"})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["success"] is True
        assert data["steps"][0]["output"].strip() == "hi"
        assert data["context"]["repository"] == "org/demo"

    def test_failed_run_is_still_200(self, client):
        client.post(
            "/pipelines",
            json={
                "name": "fails",
                "steps": [{"name": "x", "command": [sys.executable, "-c", "raise SystemExit(1)"]}],
            },
        )
        resp = client.post("/pipelines/fails/run", json={})
        assert resp.status_code == 200
        assert resp.get_json()["success"] is False

    def test_run_with_invalid_context(self, client):
        resp = client.post("/pipelines/ci/run", json={"commits": "not-a-list"})
        assert resp.status_code == 400


class TestWebhook:
    def test_signature_helper(self):
        body = b'{"a": 1}'
        assert verify_signature(SECRET, body, _sign(body))
        assert not verify_signature(SECRET, body, _sign(body, "other"))
        assert not verify_signature(SECRET, body, "")
        assert not verify_signature(SECRET, body, "sha1=deadbeef")

    def test_bad_signature_is_rejected(self, client, source_dir, dispatched):
        resp = _post_webhook(client, _push_payload(str(source_dir)), signature="sha256=00")
        assert resp.status_code == 401
        assert dispatched == []

    def test_ping(self, client):
        resp = _post_webhook(client, {"zen": "Keep it simple."}, event="ping")
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "pong"}

    def test_other_events_are_ignored(self, client, dispatched):
        resp = _post_webhook(client, {"action": "opened"}, event="pull_request")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ignored"
        assert dispatched == []

    def test_malformed_payload(self, client):
        resp = _post_webhook(client, {"ref": "refs/heads/main"})
        assert resp.status_code == 400
        assert "malformed payload" in resp.get_json()["error"]

    def test_untracked_branch_is_ignored(self, client, source_dir, dispatched):
        resp = _post_webhook(client, _push_payload(str(source_dir), "refs/heads/feature"))
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "ignored"
        assert dispatched == []

    def test_push_is_accepted_and_runs_pipeline(self, client, source_dir, engine, dispatched):
        resp = _post_webhook(client, _push_payload(str(source_dir)))

        assert resp.status_code == 202
        assert resp.get_json() == {
            "status": "accepted",
            "pipeline": "ci",
            "repository": "org/demo",
            "ref": "refs/heads/main",
        }
        assert dispatched == ["webhook-org/demo"]
        assert engine.total_count() == 1
        assert engine.active_count() == 0


class TestAppValidation:
    def test_missing_app_path(self, client):
        resp = client.post("/test-app", json={})
        assert resp.status_code == 400

    def test_unknown_app_path(self, client, tmp_path: Path):
        resp = client.post("/test-app", json={"app_path": str(tmp_path / "absent")})
        assert resp.status_code == 404

    def test_validation_report_is_returned_and_saved(self, client, tmp_path: Path):
        app_dir = tmp_path / "generated"
        app_dir.mkdir()
        (app_dir / "main.py").write_text("print('hello')\n", encoding="utf-8")

        resp = client.post(
            "/test-app",
            json={"app_path": str(app_dir), "app_type": "cli", "name": "generated-cli"},
        )

        assert resp.status_code == 200
        data = resp.get_json()
        assert data["name"] == "generated-cli"
        assert data["total_tests"] == 6
        assert data["overall_status"] == "success"
        saved = app_dir / RESULTS_FILENAME
        assert data["results_path"] == str(saved)
        assert json.loads(saved.read_text(encoding="utf-8"))["name"] == "generated-cli"

    def test_save_can_be_disabled(self, client, tmp_path: Path):
        app_dir = tmp_path / "generated"
        app_dir.mkdir()

        resp = client.post(
            "/test-app",
            json={"app_path": str(app_dir), "app_type": "cli", "save_results": False},
        )

        assert resp.status_code == 200
        assert "results_path" not in resp.get_json()
        assert not (app_dir / RESULTS_FILENAME).exists()

    def test_non_object_body_is_rejected(self, client):
        resp = client.post("/test-app", json=["app_path"])
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "request body must be a JSON object"

    def test_non_list_endpoints_are_rejected(self, client, tmp_path: Path):
        resp = client.post("/test-app", json={"app_path": str(tmp_path), "endpoints": 5})
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "endpoints must be a list"

    def test_malformed_endpoint_entry_is_rejected(self, client, tmp_path: Path):
        resp = client.post("/test-app", json={"app_path": str(tmp_path), "endpoints": [5]})
        assert resp.status_code == 400
        assert resp.get_json()["error"].startswith("Invalid request:")
