import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError
from starlette.websockets import WebSocketDisconnect

from flashflow.api.error_handling import _error_code_for_status
from flashflow.api.schemas import MAX_JSON_DEPTH, Envelope, ErrorBody, RunRequest
from flashflow.app import app


def _workflow():
    return {
        "title": "Echo",
        "nodes": [
            {"id": "in", "type": "input", "data": {"label": "Input"}},
            {"id": "llm", "type": "llm", "data": {"label": "Writer", "inputMappings": {"user_input": "{{Input.user_input}}"}}},
            {
                "id": "out",
                "type": "output",
                "data": {
                    "label": "Output",
                    "inputMappings": {"mode": "direct", "sources": [{"type": "variable", "value": "{{Writer.response}}"}]},
                },
            },
        ],
        "edges": [{"source": "in", "target": "llm"}, {"source": "llm", "target": "out"}],
    }


def _broken_workflow():
    workflow = _workflow()
    # Writer reads from a node that only runs after it
    workflow["nodes"][1]["data"]["inputMappings"]["user_input"] = "{{Output.text}}"
    return workflow


@pytest.fixture
def client():
    return TestClient(app)


def test_health_and_request_id(client):
    response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["llm_backend"] == "echo"
    assert body["active_runs"] == 0
    assert response.headers["X-Request-ID"] == "req-123"


def test_validate_endpoint_reports_issues(client):
    response = client.post("/v1/workflows/validate", json=_workflow())
    assert response.status_code == 200
    assert response.json()["data"] == {"valid": True, "hardErrors": [], "warnings": []}

    response = client.post("/v1/workflows/validate", json=_broken_workflow())
    data = response.json()["data"]
    assert data["valid"] is False
    assert [issue["code"] for issue in data["hardErrors"]] == ["FFV-VAR-002"]


def test_validate_endpoint_accepts_malformed_shapes(client):
    response = client.post("/v1/workflows/validate", json={"nodes": "nope"})
    assert response.status_code == 200
    assert response.json()["data"]["valid"] is False


def test_save_and_load_flow(client):
    response = client.put("/v1/flows/demo-1", json=_workflow())
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["flow_id"] == "demo-1"
    assert data["validation"]["valid"] is True

    response = client.get("/v1/flows/demo-1")
    assert response.status_code == 200
    assert response.json()["data"]["workflow"]["title"] == "Echo"


def test_missing_flow_uses_error_envelope(client):
    response = client.get("/v1/flows/unknown")
    assert response.status_code == 404
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "not_found"
    assert body["error"]["details"] == {"flow_id": "unknown"}
    assert body["request_id"]


def test_bad_flow_id_is_a_validation_error(client):
    response = client.get("/v1/flows/bad$id")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_run_inline_graph(client):
    response = client.post("/v1/workflows/run", json={"graph": _workflow(), "input": "hello there"})
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "completed"
    assert data["final_output"] == {"text": "hello there"}
    assert data["node_status"] == {"in": "completed", "llm": "completed", "out": "completed"}


def test_run_saved_flow_with_structured_input(client):
    client.put("/v1/flows/saved", json=_workflow())
    response = client.post(
        "/v1/workflows/run",
        json={"flow_id": "saved", "input": {"text": "from text field"}},
    )
    assert response.status_code == 200
    assert response.json()["data"]["final_output"] == {"text": "from text field"}


def test_run_rejects_invalid_graph(client):
    response = client.post("/v1/workflows/run", json={"graph": _broken_workflow(), "input": "x"})
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "validation_error"
    assert [issue["code"] for issue in error["details"]["hardErrors"]] == ["FFV-VAR-002"]


def test_run_requires_a_graph_source(client):
    response = client.post("/v1/workflows/run", json={"input": "x"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_run_unknown_flow_is_not_found(client):
    response = client.post("/v1/workflows/run", json={"flow_id": "ghost"})
    assert response.status_code == 404


def test_cancel_unknown_run(client):
    response = client.post("/v1/runs/nope/cancel")
    assert response.status_code == 200
    assert response.json()["data"] == {"run_id": "nope", "cancelled": False}


def test_stream_emits_events_until_completion(client):
    with client.websocket_connect("/v1/workflows/stream") as ws:
        ws.send_json({"graph": _workflow(), "input": "stream me"})
        events = []
        while True:
            message = ws.receive_json()
            events.append(message)
            if message["event"] in ("run-completed", "run-failed", "run-cancelled"):
                break

    names = [e["event"] for e in events]
    assert names[0] == "run-started"
    assert names[-1] == "run-completed"
    assert "stream-chunk" in names
    chunks = "".join(e["data"]["chunk"] for e in events if e["event"] == "stream-chunk")
    assert chunks == "stream me"
    assert events[-1]["data"]["result"]["final_output"] == {"text": "stream me"}


def test_stream_rejects_unknown_flow(client):
    with client.websocket_connect("/v1/workflows/stream") as ws:
        ws.send_json({"flow_id": "ghost"})
        envelope = ws.receive_json()
        assert envelope["status"] == "error"
        assert envelope["error"]["code"] == "not_found"
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()
        assert exc_info.value.code == 1008


def test_stream_rejects_invalid_request(client):
    with client.websocket_connect("/v1/workflows/stream") as ws:
        ws.send_json({"input": "no graph"})
        envelope = ws.receive_json()
        assert envelope["error"]["code"] == "validation_error"
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()
        assert exc_info.value.code == 1003


def test_envelope_and_request_schemas():
    assert Envelope(status="ok").request_id
    with pytest.raises(ValidationError):
        Envelope(status="maybe")
    assert ErrorBody(code="conflict", message="busy").details is None
    assert _error_code_for_status(409) == "conflict"
    assert _error_code_for_status(418) == "server_error"

    deep = {}
    cursor = deep
    for _ in range(MAX_JSON_DEPTH + 2):
        cursor["next"] = {}
        cursor = cursor["next"]
    with pytest.raises(ValidationError):
        RunRequest(flow_id="f", input=deep)
