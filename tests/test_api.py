"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from workflow_runner.config import AppEnv
from workflow_runner.core.exceptions import ProviderError
from workflow_runner.core.tool_registry import ToolRegistry
from workflow_runner.factory import create_app
from workflow_runner.seed import FEED_DISCOVERY_EVAL_NAME, FEED_DISCOVERY_SLUG
from workflow_runner.storage.database import reset_database_engine
from workflow_runner.storage.repository import WorkflowRepository

from conftest import FakeProvider


def lookup_feeds(params):
    """Return canned feeds for a topic."""
    return {"feeds": [{"rss_url": f"https://{params.get('topic', 'news')}.example/rss"}]}


DEFINITION = {
    "name": "Topic feeds",
    "steps": [
        {
            "id": "lookup",
            "name": "Lookup",
            "type": "tool",
            "tool_name": "lookup_feeds",
            "input_mapping": {"topic": "input.topic"},
        },
        {"id": "summarize", "name": "Summarize", "type": "llm", "prompt_user": "Summarize {{feeds}}"},
    ],
}


@pytest.fixture
def llm():
    return FakeProvider(["A short summary."])


@pytest.fixture
def app(config, llm):
    registry = ToolRegistry()
    registry.register_tool("lookup_feeds", lookup_feeds, "Canned feed lookup")
    yield create_app(config=config, tool_registry=registry, llm_providers={"openai": llm})
    reset_database_engine()


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def workflow(client):
    response = client.post(
        "/api/v1/workflows", json={"slug": "topic-feeds", "name": "Topic feeds", "definition_json": DEFINITION}
    )
    assert response.status_code == 201
    return response.json()


class TestWorkflowEndpoints:
    """Test cases for workflow CRUD."""

    def test_create_and_get(self, client, workflow):
        assert workflow["version"] == 1
        assert workflow["env"] == "dev"

        response = client.get("/api/v1/workflows/topic-feeds")
        assert response.status_code == 200
        assert response.json()["id"] == workflow["id"]

        listed = client.get("/api/v1/workflows").json()
        assert [w["slug"] for w in listed] == ["topic-feeds"]

    def test_invalid_definition_is_400(self, client):
        response = client.post("/api/v1/workflows", json={
            "slug": "bad", "name": "Bad", "definition_json": {"name": "Bad", "steps": []}
        })
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "ConfigurationError"
        assert body["message"] == "Invalid workflow definition"
        assert body["details"]["error_type"] == "configuration"
        assert body["details"]["validation_errors"]

    def test_duplicate_slug_is_400(self, client, workflow):
        response = client.post(
            "/api/v1/workflows", json={"slug": "topic-feeds", "name": "Again", "definition_json": DEFINITION}
        )
        assert response.status_code == 400

    def test_unknown_workflow_is_404(self, client):
        response = client.get("/api/v1/workflows/nope")
        assert response.status_code == 404
        assert response.json()["message"] == "Workflow not found: nope"

    def test_update_bumps_version(self, client, workflow):
        response = client.put("/api/v1/workflows/topic-feeds", json={"definition_json": DEFINITION, "name": "Renamed"})
        assert response.status_code == 200
        assert response.json()["version"] == 2
        assert response.json()["name"] == "Renamed"


class TestRunEndpoints:
    """Test cases for starting, reading and cancelling runs."""

    def test_run_and_wait(self, client, workflow, llm):
        response = client.post("/api/v1/workflows/topic-feeds/run?wait=true", json={"input": {"topic": "ai"}})

        assert response.status_code == 200
        run = response.json()
        assert run["status"] == "completed"
        assert run["output_json"] == "A short summary."
        assert [step["status"] for step in run["steps"]] == ["completed", "completed"]
        assert run["steps"][0]["output_json"] == {"feeds": [{"rss_url": "https://ai.example/rss"}]}
        assert run["actual_cost"] > 0
        assert "https://ai.example/rss" in llm.calls[0]["messages"][-1]["content"]

        fetched = client.get(f"/api/v1/workflows/runs/{run['id']}").json()
        assert fetched["status"] == "completed"
        runs = client.get("/api/v1/workflows/topic-feeds/runs").json()
        assert [r["id"] for r in runs] == [run["id"]]

    def test_run_without_wait_is_accepted(self, client, workflow):
        response = client.post("/api/v1/workflows/topic-feeds/run", json={"input": {"topic": "ai"}})
        assert response.status_code == 202
        assert response.json()["status"] == "pending"

    def test_run_requires_input(self, client, workflow):
        response = client.post("/api/v1/workflows/topic-feeds/run", json={})
        assert response.status_code == 400
        assert response.json()["details"]["error_type"] == "invalid_input"

    def test_resume_from_step(self, client, workflow, llm):
        llm.responses = [ProviderError("bad request", status_code=400), "Second try."]
        first = client.post("/api/v1/workflows/topic-feeds/run?wait=true", json={"input": {"topic": "ai"}}).json()
        assert first["status"] == "partial"

        response = client.post("/api/v1/workflows/topic-feeds/run?wait=true", json={
            "from_step_id": "summarize", "original_run_id": first["id"]
        })

        resumed = response.json()
        assert resumed["status"] == "completed"
        assert resumed["resumed_from_run_id"] == first["id"]
        assert resumed["steps"][0]["status"] == "skipped"
        assert resumed["output_json"] == "Second try."

    def test_resume_with_unknown_step_is_400(self, client, workflow):
        first = client.post("/api/v1/workflows/topic-feeds/run?wait=true", json={"input": {"topic": "ai"}}).json()
        response = client.post("/api/v1/workflows/topic-feeds/run", json={
            "from_step_id": "nope", "original_run_id": first["id"]
        })
        assert response.status_code == 400

    def test_cancel_terminal_run_is_400(self, client, workflow):
        run = client.post("/api/v1/workflows/topic-feeds/run?wait=true", json={"input": {"topic": "ai"}}).json()
        response = client.post(f"/api/v1/workflows/runs/{run['id']}/cancel")
        assert response.status_code == 400
        assert response.json()["error"] == "InvalidTransitionError"

    def test_unknown_run_is_404(self, client):
        assert client.get("/api/v1/workflows/runs/missing").status_code == 404
        assert client.post("/api/v1/workflows/runs/missing/cancel").status_code == 404

    def test_run_from_other_env_is_403(self, client, app):
        prod = WorkflowRepository(AppEnv.PROD, app.state.components.session_factory)
        other = prod.create_workflow("prod-only", "Prod only", DEFINITION)
        run = prod.create_workflow_run(other.id, 1, {"topic": "ai"})

        response = client.get(f"/api/v1/workflows/runs/{run.id}")

        assert response.status_code == 403
        assert client.get("/api/v1/workflows/prod-only").status_code == 404


class TestSeedAndEvalEndpoints:
    """Test cases for seeding and evals."""

    def test_seed_is_repeatable(self, client):
        first = client.post("/api/v1/workflows/seed")
        assert first.status_code == 200
        assert first.json()["workflows"][0]["slug"] == FEED_DISCOVERY_SLUG

        second = client.post("/api/v1/workflows/seed").json()
        assert second["workflows"][0]["version"] == 2
        assert second["eval_ids"] == first.json()["eval_ids"]

        eval_record = client.get(f"/api/v1/evals/{second['eval_ids'][0]}").json()
        assert eval_record["name"] == FEED_DISCOVERY_EVAL_NAME
        assert len(eval_record["cases_json"]) == 5

    def test_create_and_run_eval(self, client, workflow):
        response = client.post("/api/v1/evals", json={
            "workflow_id": workflow["id"],
            "name": "Smoke",
            "cases": [{"id": "c1", "name": "Text output", "input": {"topic": "ai"}, "expected_output": "A short summary."}],
        })
        assert response.status_code == 201
        eval_id = response.json()["id"]

        eval_run = client.post(f"/api/v1/evals/{eval_id}/run").json()

        assert eval_run["passed"] is True
        assert eval_run["score"] == 100
        assert client.get(f"/api/v1/evals/runs/{eval_run['id']}").json()["id"] == eval_run["id"]
        assert [r["id"] for r in client.get(f"/api/v1/evals/{eval_id}/runs").json()] == [eval_run["id"]]
        assert [e["id"] for e in client.get(f"/api/v1/evals/workflow/{workflow['id']}").json()] == [eval_id]

    def test_eval_for_unknown_workflow_is_404(self, client):
        response = client.post("/api/v1/evals", json={"workflow_id": "missing", "name": "Smoke", "cases": []})
        assert response.status_code == 404

    def test_unknown_eval_is_404(self, client):
        assert client.get("/api/v1/evals/missing").status_code == 404
        assert client.post("/api/v1/evals/missing/run").status_code == 404
        assert client.get("/api/v1/evals/missing/runs").status_code == 404


class TestToolAndHealthEndpoints:
    """Test cases for tool listing and health checks."""

    def test_list_and_get_tools(self, client):
        tools = client.get("/api/v1/tools").json()
        assert [tool["name"] for tool in tools] == ["lookup_feeds"]

        tool = client.get("/api/v1/tools/lookup_feeds").json()
        assert tool["description"] == "Canned feed lookup"
        assert tool["is_async"] is False
        assert client.get("/api/v1/tools/nope").status_code == 404

    def test_call_tool(self, client):
        response = client.post("/api/v1/tools/lookup_feeds", json={"topic": "ml"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"] == {"feeds": [{"rss_url": "https://ml.example/rss"}]}
        assert body["metadata"]["tool_name"] == "lookup_feeds"

    def test_call_tool_failure_is_a_result(self, client, app):
        def broken(params):
            raise ValueError("topic is required")

        app.state.components.tool_registry.register_tool("broken", broken)
        body = client.post("/api/v1/tools/broken", json={}).json()

        assert body["success"] is False
        assert body["error"] == "topic is required"
        assert body["metadata"]["error_type"] == "invalid_input"

    def test_call_unknown_tool_is_404(self, client):
        assert client.post("/api/v1/tools/nope", json={}).status_code == 404

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["env"] == "dev"
        assert client.get("/health/live").json()["alive"] is True

    def test_detailed_health(self, client):
        response = client.get("/health/detailed")
        assert response.status_code == 200
        body = response.json()
        assert body["overall_status"] == "healthy"
        assert set(body["checks"]) == {"database", "tool_registry", "llm_providers"}
        assert body["active_runs"] == 0

    def test_readiness(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["ready"] is True

    def test_missing_provider_keys_degrade_health(self, config):
        keyless = config.model_copy(update={"openai_api_key": None})
        app = create_app(config=keyless, tool_registry=ToolRegistry(), llm_providers={})
        try:
            with TestClient(app) as client:
                body = client.get("/health/detailed").json()
                assert body["overall_status"] == "degraded"
                assert body["checks"]["llm_providers"]["status"] == "degraded"
        finally:
            reset_database_engine()

    def test_monitoring_middleware_adds_headers(self, config):
        monitored = config.model_copy(update={"enable_performance_monitoring": True})
        app = create_app(config=monitored, tool_registry=ToolRegistry(), llm_providers={})
        try:
            with TestClient(app) as client:
                response = client.get("/health")
                assert response.headers["X-Request-ID"]
                assert response.headers["X-Response-Time"].endswith("s")

                missing = client.get("/api/v1/workflows/nope")
                assert missing.status_code == 404
                assert missing.headers["X-Request-ID"]
        finally:
            reset_database_engine()
