"""Outbound queue processor triggered by the external scheduler."""

from __future__ import annotations

import asyncio
import uuid
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from .gateway import DeliveryGateway, DeliveryResult, ERROR_ACCOUNT_DISCONNECTED, TRANSIENT
from .guard import REASON_DISCONNECTED, SendGuard, resolve_zone
from .logger import get_logger
from .persistence import Persistence
from .prometheus import DispatchMetrics

DEFAULT_MAX_RETRIES = 5
DEFAULT_RETRY_DELAYS = [60, 300, 900, 3600, 7200]  # 1min, 5min, 15min, 1h, 2h
DEFAULT_MAX_JOB_AGE = 7 * 24 * 3600
CLOSED_CONVERSATION_STATUSES = ("closed", "escalated")


def _calculate_retry_delay(attempt: int, delays: Optional[List[int]] = None) -> int:
    """Return the back-off (seconds) for the given 1-based attempt, capped at the last delay."""
    delays = delays or DEFAULT_RETRY_DELAYS
    index = max(0, attempt - 1)
    if index >= len(delays):
        return delays[-1]
    return delays[index]


@dataclass
class RunSummary:
    """Counters returned by one invocation of the processor."""

    run_id: str
    ok: bool = True
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    deferred: int = 0
    retried: int = 0
    failed: int = 0
    expired: int = 0
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _RunState:
    outstanding: Set[str] = field(default_factory=set)
    held_accounts: Set[str] = field(default_factory=set)
    busy_accounts: Set[str] = field(default_factory=set)


class QueueProcessor:
    """Claim due jobs, apply the send guard and hand allowed ones to the gateway.

    Jobs that share an account are delivered one after the other; different
    accounts run concurrently up to ``max_concurrency``. The run id doubles as
    the lease owner, so every status transition is conditional on this run
    still holding the claim. A background heartbeat keeps the claims alive
    while the run lasts, and each account is leased to one run at a time so
    quota checks and counter updates for it never interleave across runs.
    """

    def __init__(
        self,
        persistence: Persistence,
        guard: SendGuard,
        gateway: DeliveryGateway,
        *,
        metrics: DispatchMetrics | None = None,
        logger=None,
        batch_size: int = 50,
        max_batches: int = 20,
        lease_seconds: int = 300,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: Optional[List[int]] = None,
        max_job_age_seconds: int = DEFAULT_MAX_JOB_AGE,
        policy_retry_seconds: int = 900,
        max_concurrency: int = 10,
        time_budget: Optional[float] = None,
        log_delivery_activity: bool = False,
    ):
        self.persistence = persistence
        self.guard = guard
        self.gateway = gateway
        self.metrics = metrics or DispatchMetrics()
        self.logger = logger or get_logger("QueueProcessor")
        self._batch_size = max(1, int(batch_size))
        self._max_batches = max(1, int(max_batches))
        self._lease_seconds = max(1, int(lease_seconds))
        self._max_retries = max(0, int(max_retries))
        self._retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self._max_job_age = int(max_job_age_seconds)
        self._policy_retry_seconds = max(1, int(policy_retry_seconds))
        self._max_concurrency = max(1, int(max_concurrency))
        self._time_budget = time_budget
        self._log_delivery_activity = bool(log_delivery_activity)

    @staticmethod
    def _utc_now_epoch() -> int:
        return int(datetime.now(timezone.utc).timestamp())

    # ------------------------------------------------------------------ public
    async def process_queued_messages(
        self, now_ts: Optional[int] = None, time_budget: Optional[float] = None
    ) -> RunSummary:
        """Process every due job once. Never raises: failures end up in the summary."""
        summary = RunSummary(run_id=uuid.uuid4().hex)
        clock: Callable[[], int] = (lambda: now_ts) if now_ts is not None else self._utc_now_epoch
        budget = time_budget if time_budget is not None else self._time_budget
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget if budget else None

        def budget_left() -> bool:
            return deadline is None or loop.time() < deadline

        state = _RunState()
        heartbeat = asyncio.create_task(self._keep_leases_alive(summary.run_id, state, clock))
        try:
            released = await self.persistence.release_expired_leases(clock())
            if released:
                self.logger.warning("Released %d job(s) whose lease had expired", released)
            for _ in range(self._max_batches):
                if not budget_left():
                    self.logger.info("Run %s stopped claiming: time budget exhausted", summary.run_id)
                    break
                batch = await self.persistence.claim_jobs(
                    owner=summary.run_id,
                    limit=self._batch_size,
                    now_ts=clock(),
                    lease_seconds=self._lease_seconds,
                    exclude_accounts=state.busy_accounts,
                )
                if not batch:
                    break
                state.outstanding.update(job["id"] for job in batch)
                self.logger.debug("Run %s claimed %d job(s)", summary.run_id, len(batch))
                await self._process_batch(batch, summary, state, clock, budget_left)
                if len(batch) < self._batch_size:
                    break
        except Exception as exc:
            self.logger.exception("Queue run %s failed: %s", summary.run_id, exc)
            summary.ok = False
            summary.error = str(exc)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            if state.outstanding:
                try:
                    returned = await self.persistence.release_claims(summary.run_id, state.outstanding, clock())
                    self.logger.info("Run %s returned %d unprocessed job(s) to the queue", summary.run_id, returned)
                except Exception as exc:
                    # The leases expire on their own and the next run picks the jobs up.
                    self.logger.exception("Run %s could not release its claims: %s", summary.run_id, exc)
                    summary.ok = False
                    summary.error = summary.error or str(exc)
        await self._refresh_queue_gauge()
        self.logger.info(
            "Queue run %s: processed=%d sent=%d deferred=%d retried=%d failed=%d skipped=%d expired=%d",
            summary.run_id,
            summary.processed,
            summary.sent,
            summary.deferred,
            summary.retried,
            summary.failed,
            summary.skipped,
            summary.expired,
        )
        return summary

    async def get_queue_stats(self, now_ts: Optional[int] = None) -> Dict[str, int]:
        """Return ``pending``, ``sending``, ``sent_today`` and ``failed_last_24h`` counters."""
        now_ts = now_ts if now_ts is not None else self._utc_now_epoch()
        tz = resolve_zone(self.guard.default_timezone)
        local_now = datetime.fromtimestamp(now_ts, tz)
        day_start = datetime(local_now.year, local_now.month, local_now.day, tzinfo=tz)
        return await self.persistence.queue_stats(now_ts=now_ts, day_start_ts=int(day_start.timestamp()))

    # --------------------------------------------------------------- internals
    async def _refresh_queue_gauge(self) -> None:
        try:
            count = await self.persistence.count_active_jobs()
        except Exception:  # pragma: no cover - metrics must not break a run
            self.logger.debug("Could not refresh pending gauge", exc_info=True)
            return
        self.metrics.set_pending(count)

    async def _keep_leases_alive(self, owner: str, state: "_RunState", clock: Callable[[], int]) -> None:
        """Extend the run's job and account leases until the run is cancelled."""
        interval = self._lease_seconds / 3
        while True:
            await asyncio.sleep(interval)
            if not state.outstanding and not state.held_accounts:
                continue
            try:
                await self.persistence.renew_leases(
                    owner,
                    list(state.outstanding),
                    clock(),
                    self._lease_seconds,
                    account_ids=list(state.held_accounts),
                )
            except Exception:
                self.logger.exception("Run %s could not renew its leases", owner)

    async def _process_batch(
        self,
        batch: List[Dict[str, Any]],
        summary: RunSummary,
        state: "_RunState",
        clock: Callable[[], int],
        budget_left: Callable[[], bool],
    ) -> None:
        by_account: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        for job in batch:
            by_account.setdefault(job["account_id"], []).append(job)

        owner = summary.run_id
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run_account(account_id: str, jobs: List[Dict[str, Any]]) -> None:
            async with semaphore:
                held = await self.persistence.acquire_account_lease(account_id, owner, clock(), self._lease_seconds)
                if not held and await self.persistence.has_account(account_id):
                    # Another run is delivering through this account; leave its jobs for later.
                    ids = [job["id"] for job in jobs]
                    await self.persistence.release_claims(owner, ids, clock())
                    state.outstanding.difference_update(ids)
                    state.busy_accounts.add(account_id)
                    self.logger.debug("Account %s is busy in another run, returned %d job(s)", account_id, len(ids))
                    return
                if held:
                    state.held_accounts.add(account_id)
                try:
                    for job in jobs:
                        if not budget_left():
                            return
                        try:
                            await self._process_job(job, summary, clock)
                        except Exception as exc:
                            self.logger.exception("Unexpected error while processing job %s", job["id"])
                            await self._handle_failure(
                                job,
                                summary,
                                clock(),
                                DeliveryResult(False, error_kind=TRANSIENT, error_code="internal_error", error=str(exc)),
                            )
                        summary.processed += 1
                        state.outstanding.discard(job["id"])
                finally:
                    if held:
                        state.held_accounts.discard(account_id)
                        await self.persistence.release_account_lease(account_id, owner)

        await asyncio.gather(*(run_account(account_id, jobs) for account_id, jobs in by_account.items()))

    async def _process_job(self, job: Dict[str, Any], summary: RunSummary, clock: Callable[[], int]) -> None:
        owner = job["lease_owner"]
        job_id = job["id"]
        now_ts = clock()
        now = datetime.fromtimestamp(now_ts, timezone.utc)

        conversation_status = await self.persistence.get_conversation_status(job.get("conversation_id"))
        if conversation_status in CLOSED_CONVERSATION_STATUSES:
            await self.persistence.mark_skipped(job_id, owner, now_ts, f"conversation {conversation_status}")
            summary.skipped += 1
            self.metrics.inc_skipped(job["account_id"])
            return

        try:
            account = await self.persistence.get_account(job["account_id"])
        except ValueError as exc:
            await self.persistence.mark_failed(job_id, owner, now_ts, str(exc))
            summary.failed += 1
            self.metrics.inc_error(job["account_id"])
            return
        agent = await self.persistence.get_agent(job.get("agent_id"))

        decision = self.guard.can_send(agent, account, now)
        if not decision.allowed:
            if decision.reason == REASON_DISCONNECTED:
                await self.persistence.mark_failed(job_id, owner, now_ts, REASON_DISCONNECTED)
                summary.failed += 1
                self.metrics.inc_error(account["id"])
                return
            if self._max_job_age > 0 and now_ts - int(job["created_ts"]) > self._max_job_age:
                await self.persistence.mark_failed(job_id, owner, now_ts, "expired")
                summary.expired += 1
                self.metrics.inc_error(account["id"])
                return
            retry_at = decision.retry_at or now_ts + self._policy_retry_seconds
            await self.persistence.requeue(job_id, owner, not_before_ts=max(retry_at, now_ts + 1), now_ts=now_ts, error=decision.reason)
            summary.deferred += 1
            self.metrics.inc_deferred(account["id"], decision.reason)
            self.logger.debug("Job %s deferred (%s) until %s", job_id, decision.reason, retry_at)
            return

        if not await self.persistence.renew_lease(job_id, owner, clock(), self._lease_seconds):
            self.logger.warning("Job %s is no longer claimed by this run; not sending it", job_id)
            return

        if self._log_delivery_activity:
            self.logger.info("Attempting delivery for job %s to %s (account=%s)", job_id, job["recipient"], account["id"])
        result = await self.gateway.send(account["instance_name"], job["recipient"], job.get("payload") or {})
        if not result.success:
            await self._handle_failure(job, summary, clock(), result)
            if result.error_code == ERROR_ACCOUNT_DISCONNECTED:
                await self.persistence.set_account_status(account["id"], "disconnected")
                self.logger.warning("Account %s reported as disconnected by the gateway", account["id"])
            return

        sent_ts = clock()
        if await self.persistence.mark_sent(job_id, owner, sent_ts, result.provider_message_id):
            day = self.guard.quota_day_for(account, datetime.fromtimestamp(sent_ts, timezone.utc), agent)
            await self.persistence.increment_quota(account["id"], day)
            summary.sent += 1
            self.metrics.inc_sent(account["id"])
        else:
            self.logger.warning("Job %s was sent but its claim had been lost", job_id)

    async def _handle_failure(self, job: Dict[str, Any], summary: RunSummary, now_ts: int, result: DeliveryResult) -> None:
        """Retry transient failures with back-off, fail permanent ones immediately."""
        job_id = job["id"]
        owner = job["lease_owner"]
        attempts = int(job.get("attempts") or 0) + 1
        error_info = f"{result.error_code}: {result.error}" if result.error_code else str(result.error)
        should_retry = result.error_kind == TRANSIENT and attempts <= self._max_retries

        if should_retry:
            delay = _calculate_retry_delay(attempts, self._retry_delays)
            await self.persistence.requeue(
                job_id, owner, not_before_ts=now_ts + delay, now_ts=now_ts, error=error_info, attempts=attempts
            )
            summary.retried += 1
            self.metrics.inc_deferred(job["account_id"], "retry")
            self.logger.warning(
                "Temporary error for job %s (attempt %d/%d): %s - retrying in %ds",
                job_id,
                attempts,
                self._max_retries,
                error_info,
                delay,
            )
            return

        if result.error_kind == TRANSIENT:
            error_info = f"Max retries ({self._max_retries}) exceeded: {error_info}"
            self.logger.error("Job %s failed permanently after %d attempts: %s", job_id, attempts, error_info)
        else:
            self.logger.error("Job %s failed with permanent error: %s", job_id, error_info)
        await self.persistence.mark_failed(job_id, owner, now_ts, error_info, attempts=attempts)
        summary.failed += 1
        self.metrics.inc_error(job["account_id"])
