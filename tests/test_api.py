import types

import pytest
from fastapi.testclient import TestClient

from async_dispatch_service import api
from async_dispatch_service.api import create_app
from async_dispatch_service.crm import CRMError, CRMTransientError
from async_dispatch_service.registrar import InboundResult, RetryLaterError, SignatureError

SECRET = "scheduler-secret"
AUTH = {"Authorization": f"Bearer {SECRET}"}


class DummyService:
    def __init__(self):
        self.calls = []
        self.webhooks = []
        self.webhook_error = None
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd == "processQueue":
            return {"ok": True, "run_id": "run-1", "processed": 2, "sent": 1, "deferred": 1}
        if cmd == "queueStats":
            return {"ok": True, "pending": 3, "sending": 0, "sent_today": 7, "failed_last_24h": 1}
        if cmd == "pollIntegrations":
            return {
                "ok": True,
                "integrations": 2,
                "polled": 1,
                "downgraded": 1,
                "events_emitted": 4,
                "errors": [{"integration_id": "crm-2", "error": "HTTP 429"}],
            }
        if cmd == "addJobs":
            jobs = payload.get("jobs", [])
            if any(job["recipient"] == "bad" for job in jobs):
                return {"ok": False, "error": "all jobs rejected", "rejected": [{"id": "J9", "reason": "bad recipient"}]}
            return {"ok": True, "queued": len(jobs), "rejected": []}
        if cmd == "listJobs":
            return {
                "ok": True,
                "jobs": [
                    {
                        "id": "J1",
                        "tenant_id": "t1",
                        "account_id": "wa-1",
                        "recipient": "49151000",
                        "payload": {"text": "hi"},
                        "priority": 2,
                        "source": "agent",
                        "status": payload.get("status") or "pending",
                        "attempts": 0,
                        "created_ts": 1759737600,
                    }
                ],
            }
        if cmd == "dismissJob":
            if payload["id"] == "sent-job":
                return {"ok": False, "error": "job is not pending"}
            return {"ok": True}
        if cmd == "addAgent":
            if payload.get("working_windows") == {"bad": True}:
                return {"ok": False, "error": "invalid working windows"}
            return {"ok": True}
        if cmd == "addIntegration":
            return {"ok": True, "sync_mode": payload.get("sync_mode") or "webhook"}
        if cmd == "listEvents":
            if payload["integration_id"] != "crm-1":
                return {"ok": False, "error": f"unknown integration '{payload['integration_id']}'"}
            return {
                "ok": True,
                "events": [
                    {
                        "provider": "pipedrive",
                        "provider_event_id": "deal:42:2025-10-06T10:00:00.000000Z",
                        "integration_id": "crm-1",
                        "entity_type": "deal",
                        "entity_id": "42",
                        "change_kind": "created",
                        "status": "done",
                        "jobs_created": 0,
                        "is_test": True,
                        "event_data": {"contact": {"first_name": "Ada"}},
                        "created_ts": 1759737600,
                        "processed_ts": 1759737600,
                    }
                ],
            }
        if cmd == "listIntegrations":
            return {
                "ok": True,
                "integrations": [
                    {"id": "crm-1", "tenant_id": "t1", "provider": "pipedrive", "sync_mode": "polling", "active": True}
                ],
            }
        return {"ok": True}

    async def handle_webhook(self, provider, integration_id, body, headers):
        self.webhooks.append((provider, integration_id, body, headers))
        if self.webhook_error:
            raise self.webhook_error
        return InboundResult(events=1, accepted=1)


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    original_secret = getattr(api.app.state, "scheduler_secret", None)
    api.service = None
    api.app.state.scheduler_secret = None
    try:
        yield
    finally:
        api.service = original
        api.app.state.scheduler_secret = original_secret


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, scheduler_secret=SECRET))
    client.headers.update(AUTH)
    return client, svc


def test_rejects_missing_and_wrong_secret():
    client = TestClient(create_app(DummyService(), scheduler_secret=SECRET))

    missing = client.post("/queue/process")
    assert missing.status_code == 401
    assert missing.json()["detail"] == "Invalid or missing scheduler secret"

    wrong = client.post("/queue/process", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401


def test_rejects_everything_when_no_secret_configured():
    client = TestClient(create_app(DummyService(), scheduler_secret=None))
    response = client.post("/queue/process", headers=AUTH)
    assert response.status_code == 401


def test_returns_500_when_service_missing():
    create_app(DummyService(), scheduler_secret=SECRET)
    api.service = None
    client = TestClient(api.app)
    response = client.post("/queue/process", headers=AUTH)
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_scheduler_endpoints(client_and_service):
    client, svc = client_and_service

    assert client.get("/status").json() == {"ok": True}

    run = client.post("/queue/process").json()
    assert run["run_id"] == "run-1"
    assert run["sent"] == 1
    assert run["deferred"] == 1

    stats = client.get("/queue/stats").json()
    assert stats == {"ok": True, "pending": 3, "sending": 0, "sent_today": 7, "failed_last_24h": 1}

    sync = client.post("/sync/poll").json()
    assert sync["downgraded"] == 1
    assert sync["events_emitted"] == 4
    assert sync["errors"] == [{"integration_id": "crm-2", "error": "HTTP 429"}]

    assert [cmd for cmd, _ in svc.calls] == ["processQueue", "queueStats", "pollIntegrations"]


def test_add_jobs_forwards_batch(client_and_service):
    client, svc = client_and_service
    body = {
        "jobs": [
            {
                "id": "J1",
                "tenant_id": "t1",
                "account_id": "wa-1",
                "recipient": "49151000",
                "payload": {"text": "Hello"},
                "priority": "high",
            }
        ]
    }

    response = client.post("/queue/jobs", json=body)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "queued": 1, "rejected": []}
    cmd, payload = svc.calls[-1]
    assert cmd == "addJobs"
    assert payload["jobs"][0]["priority"] == "high"
    assert payload["jobs"][0]["payload"] == {"text": "Hello"}
    assert "agent_id" not in payload["jobs"][0]


def test_add_jobs_rejection_is_400(client_and_service):
    client, _ = client_and_service
    body = {
        "jobs": [{"id": "J9", "tenant_id": "t1", "account_id": "wa-1", "recipient": "bad", "payload": {"text": "x"}}]
    }

    response = client.post("/queue/jobs", json=body)

    assert response.status_code == 400
    assert response.json()["detail"] == {
        "error": "all jobs rejected",
        "rejected": [{"id": "J9", "reason": "bad recipient"}],
    }


def test_add_jobs_validates_body(client_and_service):
    client, svc = client_and_service
    response = client.post("/queue/jobs", json={"jobs": [{"id": "J1"}]})
    assert response.status_code == 422
    assert svc.calls == []


def test_list_and_dismiss_jobs(client_and_service):
    client, svc = client_and_service

    jobs = client.get("/queue/jobs", params={"status": "failed"}).json()["jobs"]
    assert jobs[0]["status"] == "failed"
    assert svc.calls[-1] == ("listJobs", {"status": "failed"})

    assert client.post("/queue/jobs/J1/dismiss").json() == {"ok": True}
    conflict = client.post("/queue/jobs/sent-job/dismiss")
    assert conflict.status_code == 409
    assert conflict.json()["detail"] == "job is not pending"


def test_admin_endpoints(client_and_service):
    client, svc = client_and_service

    account = {"id": "wa-1", "tenant_id": "t1", "instance_name": "acme", "status": "connected"}
    assert client.post("/accounts", json=account).json() == {"ok": True}

    assert client.post("/agents", json={"id": "ag-1", "tenant_id": "t1", "working_windows": []}).status_code == 200
    bad_agent = client.post("/agents", json={"id": "ag-2", "tenant_id": "t1", "working_windows": {"bad": True}})
    assert bad_agent.status_code == 400

    created = client.post(
        "/integrations",
        json={"id": "crm-1", "tenant_id": "t1", "provider": "pipedrive", "credentials": {"api_token": "x"}},
    )
    assert created.json() == {"ok": True, "sync_mode": "webhook"}
    assert "sync_mode" not in svc.calls[-1][1]

    unknown = client.post("/integrations", json={"id": "crm-2", "tenant_id": "t1", "provider": "salesforce"})
    assert unknown.status_code == 422

    listed = client.get("/integrations").json()["integrations"]
    assert listed[0]["provider"] == "pipedrive"
    assert "credentials" not in listed[0]


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.content == b"metrics-data"
    assert response.headers["content-type"].startswith("text/plain")


def test_webhook_needs_no_scheduler_secret():
    svc = DummyService()
    client = TestClient(create_app(svc, scheduler_secret=SECRET))

    response = client.post("/webhooks/pipedrive/crm-1", content=b'{"meta": {}}', headers={"X-Test": "1"})

    assert response.status_code == 200
    assert response.json() == {"ok": True, "events": 1, "accepted": 1, "duplicates": 0}
    provider, integration_id, body, headers = svc.webhooks[0]
    assert (provider, integration_id, body) == ("pipedrive", "crm-1", b'{"meta": {}}')
    assert headers["x-test"] == "1"


@pytest.mark.parametrize(
    "error, expected",
    [
        (SignatureError("Invalid webhook signature"), 401),
        (CRMTransientError("HTTP 429", provider="pipedrive", status=429), 503),
        (CRMError("HTTP 401", provider="pipedrive", status=401), 502),
        (RetryLaterError("deal:42 is still being processed"), 503),
    ],
)
def test_webhook_error_mapping(error, expected):
    svc = DummyService()
    svc.webhook_error = error
    client = TestClient(create_app(svc, scheduler_secret=SECRET))

    response = client.post("/webhooks/pipedrive/crm-1", content=b"{}")

    assert response.status_code == expected


def test_unexpected_webhook_failure_reports_the_error():
    svc = DummyService()
    svc.webhook_error = KeyError("account_id")
    client = TestClient(create_app(svc, scheduler_secret=SECRET))

    response = client.post("/webhooks/pipedrive/crm-1", content=b"{}")

    assert response.status_code == 500
    detail = response.json()["detail"]
    assert detail["error"] == "Webhook processing failed"
    assert detail["type"] == "KeyError"
    assert "account_id" in detail["message"]


def test_list_integration_events(client_and_service):
    client, svc = client_and_service

    response = client.get("/integrations/crm-1/events", params={"test_only": "true", "limit": 5})

    assert response.status_code == 200
    events = response.json()["events"]
    assert events[0]["is_test"] is True
    assert events[0]["event_data"] == {"contact": {"first_name": "Ada"}}
    assert svc.calls[-1] == ("listEvents", {"integration_id": "crm-1", "test_only": True, "limit": 5})

    assert client.get("/integrations/nope/events").status_code == 404
    assert client.get("/integrations/crm-1/events", headers={"Authorization": "Bearer wrong"}).status_code == 401
