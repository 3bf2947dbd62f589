import types

import pytest
from fastapi.testclient import TestClient

from async_message_service import api
from async_message_service.api import API_TOKEN_HEADER_NAME, create_app

API_TOKEN = "secret-token"

CHANNEL = {
    "state": "ready",
    "ready": True,
    "has_qr": False,
    "has_session": True,
    "last_error": None,
    "last_disconnect_reason": None,
}

JOB = {
    "id": "job-1",
    "message_id": "msg-1",
    "chat_id": "6281234567890@c.us",
    "message": "hello",
    "formatted_number": "6281234567890",
    "original_number": "081234567890",
    "priority": "NORMAL",
    "status": "waiting",
    "attempts": 0,
    "max_attempts": 5,
    "progress": 0,
    "created_at": 1700000000000,
}


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"ams_sent_total 3.0\n")
        self.responses = {
            "getQueueStatus": {
                "ok": True,
                "processor": {"is_processing": True, "currently_processing": 0},
                "channel": CHANNEL,
                "recovery": {"recovering": False, "attempts": 0, "last_delay": None},
            },
            "channelStatus": {"ok": True, "channel": CHANNEL},
            "connect": {"ok": True, "channel": CHANNEL},
            "resetSession": {"ok": True, "channel": {**CHANNEL, "state": "idle", "ready": False}},
            "sendMessage": {
                "ok": True,
                "job_id": "job-1",
                "message_id": "msg-1",
                "status": "waiting",
                "priority": "NORMAL",
                "to": "6281234567890",
                "chat_id": "6281234567890@c.us",
            },
            "getJob": {"ok": True, "job": JOB},
            "getJobs": {"ok": True, "jobs": [JOB]},
            "getStats": {"ok": True, "stats": {"waiting": 1, "total": 1}},
            "pauseQueue": {"ok": True, "paused": 1},
            "resumeQueue": {"ok": True, "resumed": 1},
            "clearQueue": {"ok": True, "removed": 2},
            "cleanQueue": {"ok": True, "removed": 0},
            "retryJob": {"ok": True, "job_id": "job-1"},
            "removeJob": {"ok": True, "job_id": "job-1"},
            "runNow": {"ok": True},
            "updateConfig": {
                "ok": True,
                "applied": {"max_concurrent": 4},
                "config": {"max_concurrent": 4, "process_interval_ms": 5000, "stalled_timeout_ms": 300000},
            },
        }

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        return self.responses.get(cmd, {"ok": False, "error": "unknown command"})


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    api.service = None
    try:
        yield
    finally:
        api.service = original


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_returns_500_when_service_missing():
    app = create_app(DummyService(), api_token=API_TOKEN)
    api.service = None
    client = TestClient(app)
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_rejects_missing_or_wrong_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"
    assert client.get("/stats", headers={API_TOKEN_HEADER_NAME: "nope"}).status_code == 401


def test_no_token_configured_allows_requests():
    client = TestClient(create_app(DummyService()))
    assert client.get("/stats").json() == {"ok": True, "stats": {"waiting": 1, "total": 1}}


def test_send_message_forwards_payload(client_and_service):
    client, svc = client_and_service
    response = client.post("/messages", json={"number": "081234567890", "message": "hello", "priority": "high"})
    assert response.status_code == 200
    body = response.json()
    assert body["job_id"] == "job-1"
    assert body["chat_id"] == "6281234567890@c.us"
    assert svc.calls[-1] == ("sendMessage", {"number": "081234567890", "message": "hello", "priority": "high"})


def test_send_message_schema_rejects_empty_message(client_and_service):
    client, svc = client_and_service
    response = client.post("/messages", json={"number": "081234567890", "message": ""})
    assert response.status_code == 422
    assert svc.calls == []


def test_command_failure_maps_to_400(client_and_service):
    client, svc = client_and_service
    svc.responses["sendMessage"] = {
        "ok": False,
        "error": "Invalid phone number length. Must be 10-15 digits.",
        "code": "validation_error",
        "field": "number",
    }
    response = client.post("/messages", json={"number": "12", "message": "hi"})
    assert response.status_code == 400
    assert response.json()["detail"] == {
        "error": "Invalid phone number length. Must be 10-15 digits.",
        "code": "validation_error",
        "field": "number",
    }


def test_batch_reports_rejected_entries(client_and_service):
    client, svc = client_and_service
    svc.responses["sendMessages"] = {
        "ok": True,
        "queued": [svc.responses["sendMessage"]],
        "rejected": [{"index": 1, "message_id": None, "reason": "invalid payload"}],
    }
    response = client.post(
        "/messages/batch",
        json={"messages": [{"number": "081234567890", "message": "a"}, {"number": "1", "message": "b"}]},
    )
    assert response.status_code == 200
    assert response.json()["rejected"] == [{"index": 1, "reason": "invalid payload"}]
    assert len(svc.calls[-1][1]["messages"]) == 2


def test_job_lookup_and_not_found(client_and_service):
    client, svc = client_and_service
    assert client.get("/jobs/job-1").json()["job"]["message_id"] == "msg-1"
    assert svc.calls[-1] == ("getJob", {"job_id": "job-1"})

    svc.responses["getJob"] = {"ok": False, "error": "job not found"}
    response = client.get("/jobs/missing")
    assert response.status_code == 404
    assert response.json()["detail"] == "job not found"

    jobs = client.get("/jobs", params={"status": "waiting", "start": 0, "end": 5}).json()
    assert len(jobs["jobs"]) == 1
    assert svc.calls[-1] == ("getJobs", {"status": "waiting", "start": 0, "end": 5})


def test_control_commands(client_and_service):
    client, svc = client_and_service
    assert client.post("/commands/pause").json() == {"ok": True, "paused": 1}
    assert client.post("/commands/resume").json() == {"ok": True, "resumed": 1}
    assert client.post("/commands/clear").json() == {"ok": True, "removed": 2}
    assert client.post("/commands/clean", json={"retention_hours": 2}).json() == {"ok": True, "removed": 0}
    assert svc.calls[-1] == ("cleanQueue", {"retention_hours": 2})
    assert client.post("/commands/run-now").json() == {"ok": True}
    assert client.post("/jobs/job-1/retry").json() == {"ok": True}
    assert client.delete("/jobs/job-1").json() == {"ok": True}
    assert svc.calls[-1] == ("removeJob", {"job_id": "job-1"})


def test_channel_endpoints(client_and_service):
    client, svc = client_and_service
    assert client.get("/channel").json()["channel"]["state"] == "ready"
    assert client.post("/channel/connect").json()["channel"]["has_session"] is True
    assert client.post("/channel/reset").json()["channel"]["state"] == "idle"
    status = client.get("/status").json()
    assert status["recovery"]["recovering"] is False
    assert status["channel"]["ready"] is True


def test_config_update(client_and_service):
    client, svc = client_and_service
    response = client.post("/config", json={"max_concurrent": 4})
    assert response.json()["config"]["max_concurrent"] == 4
    assert svc.calls[-1] == ("updateConfig", {"max_concurrent": 4})

    svc.responses["updateConfig"] = {
        "ok": False,
        "error": "max_concurrent must be between 1 and 10",
        "code": "configuration_error",
    }
    response = client.post("/config", json={"max_concurrent": 40})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "configuration_error"


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.text == "ams_sent_total 3.0\n"
    assert response.headers["content-type"].startswith("text/plain")


def test_channel_status_exposes_pairing_code(client_and_service):
    client, svc = client_and_service
    svc.responses["channelStatus"] = {
        "ok": True,
        "channel": {**CHANNEL, "state": "initializing", "ready": False, "has_qr": True, "qr": "2@pairing"},
    }
    body = client.get("/channel").json()
    assert body["channel"]["qr"] == "2@pairing"
    assert body["channel"]["has_qr"] is True
