from datetime import datetime, timezone

import pytest

from async_dispatch_service.crm import Contact, CRMTransientError, NormalizedEvent, WebhookRegistrationError
from async_dispatch_service.persistence import Persistence
from async_dispatch_service.pipeline import EventPipeline
from async_dispatch_service.poller import CursorPoller
from async_dispatch_service.registrar import WebhookRegistrar
from async_dispatch_service.sync import SyncOrchestrator

NOW = int(datetime(2025, 10, 6, 12, 0, tzinfo=timezone.utc).timestamp())
CURSOR = "2025-10-06T11:30:00.000000Z"


def deal_event(integration_id, entity_id="42"):
    return NormalizedEvent(
        provider="fakecrm",
        integration_id=integration_id,
        entity_type="deal",
        entity_id=entity_id,
        change_kind="created",
        provider_event_id=f"deal:{entity_id}:{CURSOR}",
        cursor=CURSOR,
        occurred_at=datetime(2025, 10, 6, 11, 30, tzinfo=timezone.utc),
        contact=Contact(phone="+49151000", first_name="Ada"),
    )


class FakeAdapter:
    provider = "fakecrm"
    supports_webhooks = True
    supports_polling = True

    def __init__(self, integration, crm):
        self.integration = integration
        self.crm = crm

    def missing_credentials(self, *, for_webhooks=False):
        return []

    async def register_webhook(self, callback_url):
        raise WebhookRegistrationError("HTTP 500 from provider", provider="fakecrm", status=500)

    async def fetch_changed_since(self, cursor):
        self.crm.polled.append(self.integration["id"])
        failure = self.crm.failures.get(self.integration["id"])
        if failure:
            raise failure
        return [deal_event(self.integration["id"])]

    async def parse_webhook(self, payload):
        return [deal_event(self.integration["id"])]


class FakeCRM:
    def __init__(self):
        self.polled = []
        self.failures = {}

    def factory(self, integration):
        return FakeAdapter(integration, self)


async def build(tmp_path, integrations):
    p = Persistence(str(tmp_path / "sync.db"))
    await p.init_db()
    for item in integrations:
        record = {
            "tenant_id": "t1",
            "provider": "fakecrm",
            "settings": {"account_id": "wa-1", "message_template": "Hi {first_name}"},
        }
        record.update(item)
        await p.add_integration(record)
    crm = FakeCRM()
    pipeline = EventPipeline(p)
    registrar = WebhookRegistrar(
        p, pipeline, public_base_url="https://dispatch.example.com", adapter_factory=crm.factory
    )
    poller = CursorPoller(p, pipeline, adapter_factory=crm.factory)
    return SyncOrchestrator(p, registrar, poller), p, crm


@pytest.mark.asyncio
async def test_failed_webhook_registration_is_polled_on_next_tick(tmp_path):
    orchestrator, p, crm = await build(tmp_path, [{"id": "crm-1", "sync_mode": "webhook"}])

    first = await orchestrator.run_polling_tick(now_ts=NOW)

    assert first["downgraded"] == 1
    assert first["polled"] == 0
    assert crm.polled == []
    stored = await p.get_integration("crm-1")
    assert stored["sync_mode"] == "polling"
    assert stored["sync_mode_reason"] == "webhook registration failed: HTTP 500 from provider"

    second = await orchestrator.run_polling_tick(now_ts=NOW + 60)

    assert second["polled"] == 1
    assert second["events_emitted"] == 1
    assert crm.polled == ["crm-1"]
    assert len(await p.list_jobs()) == 1
    assert (await p.get_integration("crm-1"))["cursor"] == CURSOR


@pytest.mark.asyncio
async def test_event_seen_by_webhook_is_a_duplicate_when_polled(tmp_path):
    orchestrator, p, crm = await build(tmp_path, [{"id": "crm-1", "sync_mode": "polling", "webhook_secret": "s"}])
    pipeline = orchestrator.poller.pipeline
    integration = await p.get_integration("crm-1")
    await pipeline.emit(integration, deal_event("crm-1"))

    summary = await orchestrator.run_polling_tick(now_ts=NOW)

    assert summary["events_emitted"] == 0
    assert summary["duplicates"] == 1
    assert len(await p.list_jobs()) == 1


@pytest.mark.asyncio
async def test_one_failing_integration_does_not_stop_the_others(tmp_path):
    orchestrator, p, crm = await build(
        tmp_path,
        [
            {"id": "crm-1", "sync_mode": "polling"},
            {"id": "crm-2", "sync_mode": "polling"},
            {"id": "crm-3", "sync_mode": "polling", "active": False},
        ],
    )
    crm.failures["crm-1"] = CRMTransientError("HTTP 429", provider="fakecrm", status=429)

    summary = await orchestrator.run_polling_tick(now_ts=NOW)

    assert summary["ok"] is True
    assert summary["integrations"] == 2
    assert summary["polled"] == 2
    assert summary["events_emitted"] == 1
    assert summary["errors"] == [{"integration_id": "crm-1", "error": "HTTP 429"}]
    assert sorted(crm.polled) == ["crm-1", "crm-2"]


@pytest.mark.asyncio
async def test_expired_time_budget_starts_nothing(tmp_path):
    orchestrator, _, crm = await build(tmp_path, [{"id": "crm-1", "sync_mode": "polling"}])

    summary = await orchestrator.run_polling_tick(time_budget=-1, now_ts=NOW)

    assert summary["not_started"] == 1
    assert summary["polled"] == 0
    assert crm.polled == []
