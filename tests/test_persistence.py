import asyncio

import aiosqlite
import pytest

from async_dispatch_service.persistence import EVENT_CLAIMED, EVENT_DUPLICATE, EVENT_IN_PROGRESS, Persistence

NOW = 1_760_000_000


async def make_db(tmp_path, name="test.db"):
    p = Persistence(str(tmp_path / name))
    await p.init_db()
    await p.add_account({"id": "wa-1", "tenant_id": "t1", "status": "connected"})
    return p


async def set_quota(p, account_id, day, sent):
    async with aiosqlite.connect(p.db_path) as db:
        await db.execute(
            "UPDATE accounts SET quota_day=?, messages_sent_today=? WHERE id=?", (day, sent, account_id)
        )
        await db.commit()


def job(job_id, **extra):
    data = {
        "id": job_id,
        "tenant_id": "t1",
        "account_id": "wa-1",
        "recipient": "+49 151 000",
        "payload": {"text": "hello"},
    }
    data.update(extra)
    return data


@pytest.mark.asyncio
async def test_account_crud_keeps_quota_counters(tmp_path):
    p = await make_db(tmp_path)
    await set_quota(p, "wa-1", "2025-10-06", 5)
    await p.add_account({"id": "wa-1", "tenant_id": "t1", "status": "connected", "daily_limit": 50})

    acc = await p.get_account("wa-1")
    assert acc["instance_name"] == "wa-1"
    assert acc["daily_limit"] == 50
    assert acc["messages_sent_today"] == 5
    assert acc["quota_day"] == "2025-10-06"

    await p.set_account_status("wa-1", "disconnected")
    assert (await p.get_account("wa-1"))["status"] == "disconnected"

    with pytest.raises(ValueError):
        await p.get_account("missing")


@pytest.mark.asyncio
async def test_increment_quota_restarts_on_new_day(tmp_path):
    p = await make_db(tmp_path)
    await set_quota(p, "wa-1", "2025-10-06", 5)

    assert await p.increment_quota("wa-1", "2025-10-06") == 6
    assert await p.increment_quota("wa-1", "2025-10-07") == 1
    assert await p.increment_quota("wa-1", "2025-10-07") == 2


@pytest.mark.asyncio
async def test_agents_and_conversations(tmp_path):
    p = await make_db(tmp_path)
    windows = [{"weekday": 0, "start": "09:00", "end": "17:00"}]
    await p.add_agent({"id": "ag-1", "tenant_id": "t1", "working_windows": windows})

    agent = await p.get_agent("ag-1")
    assert agent["working_windows"] == windows
    assert agent["timezone"] == "Europe/Berlin"
    assert await p.get_agent(None) is None

    assert await p.get_conversation_status("c-1") is None
    await p.set_conversation_status("c-1", "open", "t1")
    await p.set_conversation_status("c-1", "closed")
    assert await p.get_conversation_status("c-1") == "closed"


@pytest.mark.asyncio
async def test_insert_jobs_defaults_and_pending_only_replace(tmp_path):
    p = await make_db(tmp_path)
    assert await p.insert_jobs([job("j1")], NOW) == ["j1"]

    stored = await p.get_job("j1")
    assert stored["status"] == "pending"
    assert stored["priority"] == 2
    assert stored["source"] == "agent"
    assert stored["not_before_ts"] == NOW
    assert stored["payload"] == {"text": "hello"}

    assert await p.insert_jobs([job("j1", payload={"text": "updated"})], NOW) == ["j1"]
    assert (await p.get_job("j1"))["payload"] == {"text": "updated"}

    claimed = await p.claim_jobs(owner="run-a", limit=10, now_ts=NOW, lease_seconds=60)
    assert [j["id"] for j in claimed] == ["j1"]
    assert await p.insert_jobs([job("j1", payload={"text": "late"})], NOW) == []
    assert (await p.get_job("j1"))["payload"] == {"text": "updated"}


@pytest.mark.asyncio
async def test_claim_orders_by_priority_and_skips_future_jobs(tmp_path):
    p = await make_db(tmp_path)
    await p.insert_jobs(
        [
            job("low", priority=3),
            job("urgent", priority=0),
            job("later", priority=0, not_before_ts=NOW + 3600),
        ],
        NOW,
    )

    claimed = await p.claim_jobs(owner="run-a", limit=10, now_ts=NOW, lease_seconds=60)
    assert [j["id"] for j in claimed] == ["urgent", "low"]
    assert all(j["status"] == "sending" and j["lease_owner"] == "run-a" for j in claimed)


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_job(tmp_path):
    p = await make_db(tmp_path)
    await p.insert_jobs([job(f"j{i}") for i in range(20)], NOW)

    first, second = await asyncio.gather(
        p.claim_jobs(owner="run-a", limit=20, now_ts=NOW, lease_seconds=60),
        p.claim_jobs(owner="run-b", limit=20, now_ts=NOW, lease_seconds=60),
    )
    ids_a = {j["id"] for j in first}
    ids_b = {j["id"] for j in second}
    assert not ids_a & ids_b
    assert len(ids_a | ids_b) == 20


@pytest.mark.asyncio
async def test_transitions_require_lease_owner(tmp_path):
    p = await make_db(tmp_path)
    await p.insert_jobs([job("j1"), job("j2")], NOW)
    await p.claim_jobs(owner="run-a", limit=10, now_ts=NOW, lease_seconds=60)

    assert await p.mark_sent("j1", "run-b", NOW, "msg-x") is False
    assert await p.mark_sent("j1", "run-a", NOW, "msg-1") is True
    assert await p.mark_sent("j1", "run-a", NOW, "msg-1") is False

    sent = await p.get_job("j1")
    assert sent["status"] == "sent"
    assert sent["provider_message_id"] == "msg-1"
    assert sent["lease_owner"] is None

    assert await p.requeue("j2", "run-a", not_before_ts=NOW + 60, now_ts=NOW, error="boom", attempts=1)
    requeued = await p.get_job("j2")
    assert requeued["status"] == "pending"
    assert requeued["attempts"] == 1
    assert requeued["last_error"] == "boom"
    assert requeued["not_before_ts"] == NOW + 60


@pytest.mark.asyncio
async def test_expired_leases_and_released_claims_return_to_pending(tmp_path):
    p = await make_db(tmp_path)
    await p.insert_jobs([job("j1"), job("j2")], NOW)
    await p.claim_jobs(owner="dead-run", limit=1, now_ts=NOW, lease_seconds=60)
    await p.claim_jobs(owner="run-b", limit=1, now_ts=NOW, lease_seconds=600)

    assert await p.release_expired_leases(NOW + 30) == 0
    assert await p.release_expired_leases(NOW + 120) == 1
    assert await p.release_claims("other", ["j2"], NOW) == 0
    assert await p.release_claims("run-b", ["j2"], NOW) == 1
    assert {j["status"] for j in await p.list_jobs()} == {"pending"}


@pytest.mark.asyncio
async def test_dismiss_and_stats(tmp_path):
    p = await make_db(tmp_path)
    await p.insert_jobs([job("j1"), job("j2"), job("j3")], NOW)
    assert await p.dismiss_job("j3", NOW) is True
    assert await p.dismiss_job("j3", NOW) is False

    await p.claim_jobs(owner="run-a", limit=2, now_ts=NOW, lease_seconds=60)
    await p.mark_sent("j1", "run-a", NOW, None)
    await p.mark_failed("j2", "run-a", NOW, "invalid_recipient")

    stats = await p.queue_stats(now_ts=NOW, day_start_ts=NOW - 3600)
    assert stats == {"pending": 0, "sending": 0, "sent_today": 1, "failed_last_24h": 1}
    assert await p.count_active_jobs() == 0
    assert (await p.get_job("j3"))["status"] == "skipped"


@pytest.mark.asyncio
async def test_integration_state(tmp_path):
    p = await make_db(tmp_path)
    await p.add_integration(
        {
            "id": "i1",
            "tenant_id": "t1",
            "provider": "pipedrive",
            "credentials": {"api_token": "tok"},
            "settings": {"account_id": "wa-1"},
            "sync_mode": "webhook",
        }
    )
    await p.set_webhook_secret("i1", "s3cret")
    await p.store_webhook("i1", "hook-1", "https://svc/webhooks/pipedrive/i1")

    integration = await p.get_integration("i1")
    assert integration["credentials"] == {"api_token": "tok"}
    assert integration["active"] is True
    assert integration["webhook_id"] == "hook-1"

    await p.add_integration({"id": "i1", "tenant_id": "t1", "provider": "pipedrive", "sync_mode": "webhook"})
    assert (await p.get_integration("i1"))["webhook_secret"] == "s3cret"

    await p.set_sync_mode("i1", "polling", "registration failed")
    integration = await p.get_integration("i1")
    assert integration["sync_mode"] == "polling"
    assert integration["sync_mode_reason"] == "registration failed"
    assert integration["webhook_id"] is None

    with pytest.raises(ValueError):
        await p.set_sync_mode("i1", "carrier-pigeon", None)


@pytest.mark.asyncio
async def test_cursor_never_moves_backwards(tmp_path):
    p = await make_db(tmp_path)
    await p.add_integration({"id": "i1", "tenant_id": "t1", "provider": "hubspot"})

    assert await p.advance_cursor("i1", "2025-10-06T10:00:00.000000Z", NOW) is True
    assert await p.advance_cursor("i1", "2025-10-06T09:00:00.000000Z", NOW + 1) is False
    assert await p.advance_cursor("i1", None, NOW + 2) is False

    integration = await p.get_integration("i1")
    assert integration["cursor"] == "2025-10-06T10:00:00.000000Z"
    assert integration["last_polled_ts"] == NOW + 2


@pytest.mark.asyncio
async def test_integration_lease(tmp_path):
    p = await make_db(tmp_path)
    await p.add_integration({"id": "i1", "tenant_id": "t1", "provider": "hubspot"})

    assert await p.acquire_integration_lease("i1", "a", NOW, 60) is True
    assert await p.acquire_integration_lease("i1", "b", NOW + 10, 60) is False
    assert await p.acquire_integration_lease("i1", "b", NOW + 120, 60) is True
    await p.release_integration_lease("i1", "a")
    assert await p.acquire_integration_lease("i1", "c", NOW + 130, 60) is False
    await p.release_integration_lease("i1", "b")
    assert await p.acquire_integration_lease("i1", "c", NOW + 130, 60) is True


@pytest.mark.asyncio
async def test_event_ledger(tmp_path):
    p = await make_db(tmp_path)
    event = {"provider": "pipedrive", "provider_event_id": "deal:1:c", "integration_id": "i1"}

    assert await p.claim_event(event, NOW) == EVENT_CLAIMED
    assert await p.claim_event(event, NOW) == EVENT_IN_PROGRESS

    await p.release_event("pipedrive", "deal:1:c")
    assert await p.claim_event(event, NOW) == EVENT_CLAIMED
    await p.complete_event("pipedrive", "deal:1:c", NOW, 2)
    await p.release_event("pipedrive", "deal:1:c")
    assert await p.claim_event(event, NOW + 3600) == EVENT_DUPLICATE

    rows = await p.list_processed_events(provider="pipedrive")
    assert len(rows) == 1
    assert rows[0]["status"] == "done"
    assert rows[0]["jobs_created"] == 2
    assert rows[0]["is_test"] is False


@pytest.mark.asyncio
async def test_abandoned_event_claim_is_taken_over(tmp_path):
    p = await make_db(tmp_path)
    event = {"provider": "hubspot", "provider_event_id": "contact:9:c", "integration_id": "i1"}
    assert await p.claim_event(event, NOW) == EVENT_CLAIMED

    assert await p.claim_event(event, NOW + 599, stale_after=600) == EVENT_IN_PROGRESS
    assert await p.claim_event(event, NOW + 601, stale_after=600) == EVENT_CLAIMED
    # The takeover restarts the clock for everyone else.
    assert await p.claim_event(event, NOW + 602, stale_after=600) == EVENT_IN_PROGRESS

    rows = await p.list_processed_events(integration_id="i1")
    assert rows[0]["created_ts"] == NOW + 601
    assert rows[0]["status"] == "processing"


@pytest.mark.asyncio
async def test_list_processed_events_filters(tmp_path):
    p = await make_db(tmp_path)
    for idx, integration_id in enumerate(["i1", "i1", "i2"]):
        event = {"provider": "monday", "provider_event_id": f"item:{idx}", "integration_id": integration_id}
        await p.claim_event(event, NOW + idx)
    await p.complete_event("monday", "item:1", NOW + 5, 0, is_test=True, event_data={"entity_id": "1"})

    rows = await p.list_processed_events(integration_id="i1")
    assert [row["provider_event_id"] for row in rows] == ["item:1", "item:0"]
    assert rows[0]["is_test"] is True
    assert rows[0]["event_data"] == {"entity_id": "1"}

    tests_only = await p.list_processed_events(test_only=True)
    assert [row["provider_event_id"] for row in tests_only] == ["item:1"]
    assert len(await p.list_processed_events(limit=1)) == 1


@pytest.mark.asyncio
async def test_renewed_leases_survive_expiry_sweep(tmp_path):
    p = await make_db(tmp_path)
    await p.insert_jobs([job("j1"), job("j2")], NOW)
    await p.claim_jobs(owner="run-a", limit=2, now_ts=NOW, lease_seconds=60)
    assert await p.acquire_account_lease("wa-1", "run-a", NOW, 60) is True

    assert await p.renew_leases("run-a", ["j1", "j2"], NOW + 50, 60, account_ids=["wa-1"]) == 2
    assert await p.renew_leases("run-b", ["j1"], NOW + 50, 60) == 0

    assert await p.release_expired_leases(NOW + 100) == 0
    assert await p.acquire_account_lease("wa-1", "run-b", NOW + 100, 60) is False
    assert await p.release_expired_leases(NOW + 111) == 2
    assert await p.renew_lease("j1", "run-a", NOW + 111, 60) is False


@pytest.mark.asyncio
async def test_account_lease(tmp_path):
    p = await make_db(tmp_path)

    assert await p.acquire_account_lease("wa-1", "run-a", NOW, 60) is True
    assert await p.acquire_account_lease("wa-1", "run-a", NOW + 1, 60) is True
    assert await p.acquire_account_lease("wa-1", "run-b", NOW + 10, 60) is False
    await p.release_account_lease("wa-1", "run-b")
    assert await p.acquire_account_lease("wa-1", "run-b", NOW + 10, 60) is False
    await p.release_account_lease("wa-1", "run-a")
    assert await p.acquire_account_lease("wa-1", "run-b", NOW + 10, 60) is True
    assert await p.acquire_account_lease("missing", "run-b", NOW, 60) is False
    assert await p.has_account("missing") is False


@pytest.mark.asyncio
async def test_claim_can_exclude_accounts(tmp_path):
    p = await make_db(tmp_path)
    await p.add_account({"id": "wa-2", "tenant_id": "t1", "status": "connected"})
    await p.insert_jobs([job("j1"), job("j2", account_id="wa-2")], NOW)

    claimed = await p.claim_jobs(owner="run-a", limit=10, now_ts=NOW, lease_seconds=60, exclude_accounts={"wa-1"})

    assert [j["id"] for j in claimed] == ["j2"]
    assert (await p.get_job("j1"))["status"] == "pending"
