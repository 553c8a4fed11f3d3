import time
from datetime import datetime, timezone

import pytest

from async_dispatch_service.crm import Contact, CRMTransientError, NormalizedEvent, to_cursor
from async_dispatch_service.persistence import Persistence
from async_dispatch_service.pipeline import EventPipeline
from async_dispatch_service.poller import CursorPoller

NOW = int(datetime(2025, 10, 6, 12, 0, tzinfo=timezone.utc).timestamp())
C1 = "2025-10-06T10:00:00.000000Z"
C2 = "2025-10-06T10:05:00.000000Z"
C3 = "2025-10-06T10:10:00.000000Z"


def event(entity_id, cursor):
    return NormalizedEvent(
        provider="fakecrm",
        integration_id="crm-1",
        entity_type="person",
        entity_id=entity_id,
        change_kind="updated",
        provider_event_id=f"person:{entity_id}:{cursor}",
        cursor=cursor,
        occurred_at=datetime(2025, 10, 6, 10, tzinfo=timezone.utc),
        contact=Contact(phone="+4915100" + entity_id),
    )


class FakeAdapter:
    provider = "fakecrm"
    supports_webhooks = False
    supports_polling = True

    def __init__(self, events=None, error=None):
        self.events = events or []
        self.error = error
        self.since = []

    def missing_credentials(self, *, for_webhooks=False):
        return []

    async def fetch_changed_since(self, cursor):
        self.since.append(cursor)
        if self.error:
            raise self.error
        # Unordered on purpose; the poller sorts by cursor.
        return list(reversed(self.events))


class SelectiveMapper:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.seen = []

    async def map_event(self, integration, event):
        if event.entity_id in self.fail_for:
            raise RuntimeError(f"cannot map {event.entity_id}")
        self.seen.append(event.entity_id)
        return []


async def setup(tmp_path, adapter, mapper, cursor=None, **kwargs):
    p = Persistence(str(tmp_path / "poll.db"))
    await p.init_db()
    await p.add_integration({"id": "crm-1", "tenant_id": "t1", "provider": "fakecrm", "cursor": cursor})
    poller = CursorPoller(p, EventPipeline(p, mapper), adapter_factory=lambda integration: adapter, **kwargs)
    return poller, p


@pytest.mark.asyncio
async def test_events_are_emitted_in_cursor_order(tmp_path):
    adapter = FakeAdapter([event("1", C1), event("2", C2), event("3", C3)])
    mapper = SelectiveMapper()
    poller, p = await setup(tmp_path, adapter, mapper)

    result = await poller.poll_once(await p.get_integration("crm-1"), now_ts=NOW)

    assert mapper.seen == ["1", "2", "3"]
    assert result.emitted == 3
    assert result.new_cursor == C3
    stored = await p.get_integration("crm-1")
    assert stored["cursor"] == C3
    assert stored["last_polled_ts"] == NOW


@pytest.mark.asyncio
async def test_interrupted_poll_resumes_after_last_emitted_event(tmp_path):
    adapter = FakeAdapter([event("1", C1), event("2", C2), event("3", C3)])
    mapper = SelectiveMapper(fail_for={"2"})
    poller, p = await setup(tmp_path, adapter, mapper)

    first = await poller.poll_once(await p.get_integration("crm-1"), now_ts=NOW)

    assert first.emitted == 1
    assert "cannot map 2" in first.error
    assert (await p.get_integration("crm-1"))["cursor"] == C1

    mapper.fail_for.clear()
    second = await poller.poll_once(await p.get_integration("crm-1"), now_ts=NOW + 60)

    assert second.error is None
    assert second.duplicates == 1
    assert second.emitted == 2
    assert mapper.seen == ["1", "2", "3"]
    assert (await p.get_integration("crm-1"))["cursor"] == C3


@pytest.mark.asyncio
async def test_event_claimed_by_another_worker_stops_the_poll(tmp_path):
    adapter = FakeAdapter([event("1", C1), event("2", C2), event("3", C3)])
    mapper = SelectiveMapper()
    poller, p = await setup(tmp_path, adapter, mapper)
    await p.claim_event({"provider": "fakecrm", "provider_event_id": f"person:2:{C2}"}, int(time.time()))

    result = await poller.poll_once(await p.get_integration("crm-1"), now_ts=NOW)

    assert result.emitted == 1
    assert "still being processed" in result.error
    assert mapper.seen == ["1"]
    assert (await p.get_integration("crm-1"))["cursor"] == C1


@pytest.mark.asyncio
async def test_fetch_window_overlaps_the_stored_cursor(tmp_path):
    adapter = FakeAdapter()
    poller, p = await setup(tmp_path, adapter, SelectiveMapper(), cursor=C2, overlap_seconds=300)

    result = await poller.poll_once(await p.get_integration("crm-1"), now_ts=NOW)

    assert adapter.since == [C1]
    assert result.new_cursor == C2
    assert (await p.get_integration("crm-1"))["cursor"] == C2


@pytest.mark.asyncio
async def test_first_poll_looks_back_from_now(tmp_path):
    adapter = FakeAdapter()
    poller, p = await setup(tmp_path, adapter, SelectiveMapper(), initial_lookback_seconds=7200)

    await poller.poll_once(await p.get_integration("crm-1"), now_ts=NOW)

    assert adapter.since == [to_cursor(NOW - 7200)]


@pytest.mark.asyncio
async def test_locked_integration_is_not_polled(tmp_path):
    adapter = FakeAdapter([event("1", C1)])
    poller, p = await setup(tmp_path, adapter, SelectiveMapper())
    assert await p.acquire_integration_lease("crm-1", "other-run", NOW, 600)

    result = await poller.poll_once(await p.get_integration("crm-1"), now_ts=NOW)

    assert result.locked is True
    assert adapter.since == []
    assert (await p.get_integration("crm-1"))["cursor"] is None


@pytest.mark.asyncio
async def test_adapter_error_keeps_cursor_and_releases_lease(tmp_path):
    adapter = FakeAdapter(error=CRMTransientError("HTTP 503", provider="fakecrm", status=503))
    poller, p = await setup(tmp_path, adapter, SelectiveMapper(), cursor=C1)

    result = await poller.poll_once(await p.get_integration("crm-1"), now_ts=NOW)

    assert result.error == "HTTP 503"
    assert result.emitted == 0
    assert (await p.get_integration("crm-1"))["cursor"] == C1
    assert await p.acquire_integration_lease("crm-1", "next-run", NOW, 600)
