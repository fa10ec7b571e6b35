import types

import pytest
from fastapi.testclient import TestClient

from mail_queue import api
from mail_queue.api import create_app, API_TOKEN_HEADER_NAME


API_TOKEN = "secret-token"

MESSAGE = {
    "id": "m1",
    "recipient_email": "ada@example.com",
    "recipient_name": "Ada",
    "subject": "Hello",
    "body": "<p>Hi</p>",
    "kind": "registration_confirmation",
    "status": "PENDING",
    "scheduled_at": 100,
    "created_at": 100,
}

CAMPAIGN = {
    "id": "c1",
    "name": "Spring update",
    "subject": "Hi {{fullName}}",
    "body": "<p>News</p>",
    "campaign_type": "announcement",
    "status": "SENT",
    "created_by": "admin",
    "created_at": 100,
}


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.results = {}

    def status(self):
        return {"ok": True, "running": True, "processing": False, "started_at": 100}

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd in self.results:
            return self.results[cmd]
        if cmd == "retrySweep":
            return {"ok": True, "requeued": 2}
        if cmd in ("addMessage", "getMessage"):
            return {"ok": True, "message": MESSAGE}
        if cmd == "listMessages":
            return {"ok": True, "items": [MESSAGE], "total": 1, "page": 0, "page_size": 50}
        if cmd == "stats":
            return {"ok": True, "processor": {"ticks_run": 1}, "messages": {"total": 1}, "campaigns": {"total": 0}}
        if cmd == "listCampaigns":
            return {"ok": True, "campaigns": [CAMPAIGN]}
        if cmd in ("sendCampaign", "cancelCampaign"):
            return {"ok": True, "campaign": CAMPAIGN}
        return {"ok": True}


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    original_token = getattr(api.app.state, "api_token", None)
    api.service = None
    api.app.state.api_token = None
    try:
        yield
    finally:
        api.service = original
        api.app.state.api_token = original_token


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_returns_500_when_service_missing():
    create_app(DummyService(), api_token=API_TOKEN)
    api.service = None
    client = TestClient(api.app)
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_rejects_missing_or_wrong_token():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))

    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"

    response = client.get("/status", headers={API_TOKEN_HEADER_NAME: "wrong"})
    assert response.status_code == 401
    assert svc.calls == []


def test_no_token_configured_accepts_requests():
    client = TestClient(create_app(DummyService()))
    assert client.get("/status").status_code == 200


def test_basic_endpoints_dispatch_to_service(client_and_service):
    client, svc = client_and_service

    assert client.get("/status").json() == {"ok": True, "running": True, "processing": False, "started_at": 100}
    assert client.post("/commands/run-now").json() == {"ok": True}
    assert client.post("/commands/retry-sweep").json() == {"ok": True, "requeued": 2}

    listed = client.get("/messages", params={"status": "FAILED", "page": 1, "page_size": 10}).json()
    assert listed["total"] == 1
    assert listed["items"][0]["id"] == "m1"

    assert client.get("/messages/m1").json()["message"]["recipient_email"] == "ada@example.com"
    assert client.post("/messages/m1/retry").json() == {"ok": True}
    assert client.post("/messages/m1/cancel").json() == {"ok": True}
    assert client.get("/stats").json()["processor"] == {"ticks_run": 1}
    assert client.get("/campaigns", params={"status": "SENT"}).json()["campaigns"][0]["id"] == "c1"
    assert client.post("/campaigns/c1/send").json()["campaign"]["status"] == "SENT"
    assert client.post("/campaigns/c1/cancel").json()["ok"] is True

    assert svc.calls == [
        ("run now", {}),
        ("retrySweep", {}),
        (
            "listMessages",
            {
                "status": "FAILED",
                "campaign_id": None,
                "kind": None,
                "correlation_id": None,
                "page": 1,
                "page_size": 10,
            },
        ),
        ("getMessage", {"id": "m1"}),
        ("retryMessage", {"id": "m1"}),
        ("cancelMessage", {"id": "m1"}),
        ("stats", {}),
        ("listCampaigns", {"status": "SENT"}),
        ("sendCampaign", {"id": "c1"}),
        ("cancelCampaign", {"id": "c1"}),
    ]


def test_add_message_forwards_payload(client_and_service):
    client, svc = client_and_service

    response = client.post(
        "/messages",
        json={
            "recipient_email": "ada@example.com",
            "subject": "Hello",
            "body": "<p>Hi</p>",
            "kind": "registration_confirmation",
            "scheduled_at": 500,
        },
    )

    assert response.status_code == 200
    assert response.json()["message"]["id"] == "m1"
    cmd, payload = svc.calls[-1]
    assert cmd == "addMessage"
    assert payload["kind"] == "registration_confirmation"
    assert payload["scheduled_at"] == 500
    assert payload["priority"] is None


def test_add_message_rejects_unknown_kind(client_and_service):
    client, svc = client_and_service

    response = client.post(
        "/messages",
        json={"recipient_email": "ada@example.com", "subject": "S", "body": "B", "kind": "spam"},
    )

    assert response.status_code == 422
    assert svc.calls == []


@pytest.mark.parametrize(
    "cmd,path,error_code,expected",
    [
        ("getMessage", ("get", "/messages/nope"), "not_found", 404),
        ("retryMessage", ("post", "/messages/nope/retry"), "not_found", 404),
        ("cancelMessage", ("post", "/messages/nope/cancel"), "not_found", 404),
        ("sendCampaign", ("post", "/campaigns/c1/send"), "campaign_state", 409),
        ("cancelCampaign", ("post", "/campaigns/nope/cancel"), "not_found", 404),
        ("addMessage", ("post", "/messages"), "validation_error", 400),
    ],
)
def test_command_errors_map_to_http_status(client_and_service, cmd, path, error_code, expected):
    client, svc = client_and_service
    svc.results[cmd] = {"ok": False, "error": "boom", "error_code": error_code}
    method, url = path
    kwargs = {}
    if cmd == "addMessage":
        kwargs["json"] = {"recipient_email": "x@example.com", "subject": "S", "body": "B", "kind": "campaign"}

    response = getattr(client, method)(url, **kwargs)

    assert response.status_code == expected
    assert response.json()["detail"] == "boom"


def test_retry_and_cancel_conflicts(client_and_service):
    client, svc = client_and_service
    svc.results["retryMessage"] = {"ok": False}
    svc.results["cancelMessage"] = {"ok": False}

    assert client.post("/messages/m1/retry").status_code == 409
    assert client.post("/messages/m1/cancel").status_code == 409


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.content == b"metrics-data"
