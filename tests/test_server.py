from __future__ import annotations

import json
from pathlib import Path
from typing import List

import httpx
import pytest
import yaml
from fastapi.testclient import TestClient

from agent_server.client import HttpServiceClient, RecordingServiceClient
from agent_server.server import create_app

ADMIN = {"X-Caller-Id": "root"}
SERVICE = {"X-Caller-Id": "oracle"}


@pytest.fixture
def recorder() -> RecordingServiceClient:
    return RecordingServiceClient()


@pytest.fixture
def config_file(tmp_data_dir: Path, clean_env) -> Path:
    cfg = {
        "access": {"admin": "root", "service": "oracle"},
        "agent": {"system_prompt": "Be brief."},
        "storage": {
            "runs_dir": str(tmp_data_dir / "runs"),
            "events_path": str(tmp_data_dir / "events.jsonl"),
        },
    }
    path = tmp_data_dir / "config.yaml"
    path.write_text(yaml.safe_dump(cfg), encoding="utf-8")
    return path


@pytest.fixture
def api(config_file: Path, recorder: RecordingServiceClient) -> TestClient:
    return TestClient(create_app(str(config_file), client=recorder))


def test_health(api: TestClient):
    r = api.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert r.json()["runs"] == 0


def test_run_roundtrip(api: TestClient, recorder: RecordingServiceClient):
    """Create a run, answer it, and read it back through the query endpoints."""
    r = api.post("/runs", json={"query": "hi", "max_iterations": 1}, headers={"X-Caller-Id": "alice"})
    assert r.status_code == 200
    run_id = r.json()["run_id"]
    assert run_id == 0
    assert recorder.last.kind == "completion"

    r = api.post(
        "/callbacks/completion",
        json={"run_id": run_id, "result": {"content": "hello"}, "error": ""},
        headers=SERVICE,
    )
    assert r.status_code == 200

    assert api.get(f"/runs/{run_id}/messages/contents").json() == ["Be brief.", "hi", "hello"]
    assert api.get(f"/runs/{run_id}/messages/roles").json() == ["system", "user", "assistant"]
    assert api.get(f"/runs/{run_id}/finished").json() == {"finished": True}

    record = api.get(f"/runs/{run_id}").json()
    assert record["owner"] == "alice"
    assert record["response_count"] == 1
    assert record["state"] == "finished"


def test_function_callback_flow(api: TestClient, recorder: RecordingServiceClient):
    run_id = api.post("/runs", json={"query": "search", "max_iterations": 5}).json()["run_id"]
    api.post(
        "/callbacks/completion",
        json={
            "run_id": run_id,
            "result": {"content": "X", "function_name": "web_search", "function_arguments": '{"query":"q"}'},
        },
        headers=SERVICE,
    )
    assert recorder.last.kind == "function"
    assert api.get(f"/runs/{run_id}").json()["state"] == "waiting_function"

    r = api.post("/callbacks/function", json={"run_id": run_id, "result": "results..."}, headers=SERVICE)
    assert r.status_code == 200
    record = api.get(f"/runs/{run_id}").json()
    assert record["state"] == "waiting_completion"
    assert record["response_count"] == 2
    assert record["messages"][-1] == {"role": "user", "content": "results..."}


def test_anonymous_owner(api: TestClient):
    run_id = api.post("/runs", json={"query": "hi", "max_iterations": 1}).json()["run_id"]
    assert api.get(f"/runs/{run_id}").json()["owner"] == "anonymous"


@pytest.mark.parametrize(
    "body",
    [
        {"query": "hi", "max_iterations": 0},
        {"query": "hi", "max_iterations": 256},
        {"query": "", "max_iterations": 1},
        {"max_iterations": 1},
    ],
)
def test_create_validation(api: TestClient, body):
    assert api.post("/runs", json=body).status_code == 422
    assert api.get("/health").json()["runs"] == 0


def test_callbacks_require_service_identity(api: TestClient):
    run_id = api.post("/runs", json={"query": "hi", "max_iterations": 1}).json()["run_id"]
    for headers in ({}, {"X-Caller-Id": "alice"}, ADMIN):
        r = api.post("/callbacks/completion", json={"run_id": run_id, "result": {"content": "x"}}, headers=headers)
        assert r.status_code == 403
        r = api.post("/callbacks/function", json={"run_id": run_id, "result": "x"}, headers=headers)
        assert r.status_code == 403
    assert api.get(f"/runs/{run_id}/messages/contents").json() == ["Be brief.", "hi"]


def test_invalid_state_is_409(api: TestClient):
    run_id = api.post("/runs", json={"query": "hi", "max_iterations": 1}).json()["run_id"]
    r = api.post("/callbacks/function", json={"run_id": run_id, "result": "early"}, headers=SERVICE)
    assert r.status_code == 409

    api.post("/callbacks/completion", json={"run_id": run_id, "result": {"content": "done"}}, headers=SERVICE)
    r = api.post("/callbacks/function", json={"run_id": run_id, "result": "late"}, headers=SERVICE)
    assert r.status_code == 409
    assert api.get(f"/runs/{run_id}/messages/contents").json()[-1] == "done"


def test_unknown_run_is_404(api: TestClient):
    assert api.get("/runs/42/finished").status_code == 404
    assert api.get("/runs/42/messages/contents").status_code == 404
    assert api.get("/runs/42/messages/roles").status_code == 404
    r = api.post("/callbacks/completion", json={"run_id": 42, "result": {}}, headers=SERVICE)
    assert r.status_code == 404
    assert api.get("/health").json()["runs"] == 0


def test_admin_endpoint(api: TestClient, recorder: RecordingServiceClient, tmp_data_dir: Path):
    r = api.put("/admin/endpoint", json={"endpoint": "http://svc"}, headers=SERVICE)
    assert r.status_code == 403
    assert recorder.endpoint == ""

    r = api.put("/admin/endpoint", json={"endpoint": "http://svc"}, headers=ADMIN)
    assert r.status_code == 200
    assert recorder.endpoint == "http://svc"
    assert api.get("/health").json()["service_endpoint"] == "http://svc"

    lines = (tmp_data_dir / "events.jsonl").read_text(encoding="utf-8").splitlines()
    assert any('"endpoint_updated"' in line for line in lines)


def test_runs_persist_across_app_restarts(config_file: Path):
    first = TestClient(create_app(str(config_file), client=RecordingServiceClient()))
    assert first.post("/runs", json={"query": "a", "max_iterations": 1}).json()["run_id"] == 0

    second = TestClient(create_app(str(config_file), client=RecordingServiceClient()))
    assert second.get("/runs/0/messages/contents").json() == ["Be brief.", "a"]
    assert second.post("/runs", json={"query": "b", "max_iterations": 1}).json()["run_id"] == 1


def test_endpoint_set_at_runtime_enables_delivery(config_file: Path):
    """Without a configured endpoint requests are dropped until an admin sets one."""
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    app = create_app(str(config_file), transport=httpx.MockTransport(handler))
    client = app.state.controller.client
    assert isinstance(client, HttpServiceClient)

    with TestClient(app) as api:
        api.post("/runs", json={"query": "early", "max_iterations": 1})
        client.flush()
        assert seen == []

        assert api.put("/admin/endpoint", json={"endpoint": "http://svc"}, headers=ADMIN).status_code == 200
        run_id = api.post("/runs", json={"query": "hi", "max_iterations": 1}).json()["run_id"]
        client.flush()

    assert [str(r.url) for r in seen] == ["http://svc/completions"]
    body = json.loads(seen[0].content)
    assert body["run_id"] == run_id == 1
    assert body["messages"][-1] == {"role": "user", "content": "hi"}


class ClosingClient(RecordingServiceClient):
    def __init__(self):
        super().__init__()
        self.closed = 0

    def close(self):
        self.closed += 1


def test_shutdown_closes_service_client(config_file: Path):
    spy = ClosingClient()
    with TestClient(create_app(str(config_file), client=spy)) as api:
        api.post("/runs", json={"query": "hi", "max_iterations": 1})
        assert spy.closed == 0
    assert spy.closed == 1


def test_shutdown_closes_http_client(config_file: Path):
    app = create_app(str(config_file), transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    with TestClient(app):
        pass
    assert app.state.controller.client._http.is_closed
