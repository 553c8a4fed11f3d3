"""Service wiring and command dispatch for the async dispatch service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .crm import ADAPTERS, AdapterFactory, get_adapter
from .gateway import DeliveryGateway
from .guard import DEFAULT_DAILY_LIMIT, DEFAULT_TIMEZONE, SendGuard, parse_windows
from .logger import get_logger
from .persistence import Persistence, SYNC_MODES
from .pipeline import EventMapper, EventPipeline, validate_action_settings
from .poller import CursorPoller
from .processor import DEFAULT_MAX_JOB_AGE, DEFAULT_MAX_RETRIES, QueueProcessor
from .prometheus import DispatchMetrics
from .registrar import InboundResult, WebhookRegistrar
from .sync import SyncOrchestrator

PRIORITY_LABELS = {
    0: "immediate",
    1: "high",
    2: "medium",
    3: "low",
}
LABEL_TO_PRIORITY = {label: value for value, label in PRIORITY_LABELS.items()}
DEFAULT_PRIORITY = 2

ACCOUNT_STATUSES = ("connected", "disconnected", "connecting")


class DispatchService:
    """Own the collaborators shared by the queue processor and the CRM sync layer."""

    def __init__(
        self,
        *,
        db_path: str | None = "/data/dispatch_service.db",
        logger=None,
        metrics: DispatchMetrics | None = None,
        gateway: DeliveryGateway | None = None,
        gateway_url: str | None = None,
        gateway_api_key: str | None = None,
        gateway_timeout: float = 30.0,
        public_base_url: str | None = None,
        default_timezone: str = DEFAULT_TIMEZONE,
        default_daily_limit: int = DEFAULT_DAILY_LIMIT,
        open_when_unconfigured: bool = True,
        batch_size: int = 50,
        max_batches: int = 20,
        lease_seconds: int = 300,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: Optional[List[int]] = None,
        max_job_age_seconds: int = DEFAULT_MAX_JOB_AGE,
        policy_retry_seconds: int = 900,
        max_concurrency: int = 10,
        run_time_budget: Optional[float] = None,
        poll_overlap_seconds: int = 300,
        initial_lookback_seconds: int = 3600,
        sync_concurrency: int = 5,
        sync_time_budget: Optional[float] = None,
        crm_timeout: float = 15.0,
        max_enqueue_batch: int = 1000,
        log_delivery_activity: bool = False,
        adapter_factory: AdapterFactory | None = None,
        mapper: EventMapper | None = None,
    ):
        """Prepare the runtime collaborators."""
        self.logger = logger or get_logger()
        self.metrics = metrics or DispatchMetrics()
        self.persistence = Persistence(db_path or ":memory:")
        self.guard = SendGuard(
            open_when_unconfigured=open_when_unconfigured,
            default_daily_limit=default_daily_limit,
            default_timezone=default_timezone,
        )
        self.gateway = gateway or DeliveryGateway(gateway_url, gateway_api_key, timeout=gateway_timeout)
        self.processor = QueueProcessor(
            self.persistence,
            self.guard,
            self.gateway,
            metrics=self.metrics,
            batch_size=batch_size,
            max_batches=max_batches,
            lease_seconds=lease_seconds,
            max_retries=max_retries,
            retry_delays=retry_delays,
            max_job_age_seconds=max_job_age_seconds,
            policy_retry_seconds=policy_retry_seconds,
            max_concurrency=max_concurrency,
            time_budget=run_time_budget,
            log_delivery_activity=log_delivery_activity,
        )
        if adapter_factory is None:
            def adapter_factory(integration: Mapping[str, Any]):
                return get_adapter(integration, timeout=crm_timeout)
        self.pipeline = EventPipeline(self.persistence, mapper, metrics=self.metrics)
        self.registrar = WebhookRegistrar(
            self.persistence,
            self.pipeline,
            public_base_url=public_base_url,
            adapter_factory=adapter_factory,
            metrics=self.metrics,
        )
        self.poller = CursorPoller(
            self.persistence,
            self.pipeline,
            adapter_factory=adapter_factory,
            overlap_seconds=poll_overlap_seconds,
            initial_lookback_seconds=initial_lookback_seconds,
            metrics=self.metrics,
        )
        self.orchestrator = SyncOrchestrator(
            self.persistence,
            self.registrar,
            self.poller,
            max_concurrency=sync_concurrency,
            time_budget=sync_time_budget,
        )
        self._max_enqueue_batch = max(1, int(max_enqueue_batch))

    @staticmethod
    def _utc_now_epoch() -> int:
        """Return the current UTC timestamp as seconds since epoch."""
        return int(datetime.now(timezone.utc).timestamp())

    async def init(self) -> None:
        """Create the schema and publish the initial queue gauge."""
        await self.persistence.init_db()
        self.metrics.set_pending(await self.persistence.count_active_jobs())

    # ------------------------------------------------------------- scheduler
    async def process_queue(self, now_ts: Optional[int] = None) -> Dict[str, Any]:
        summary = await self.processor.process_queued_messages(now_ts=now_ts)
        return summary.as_dict()

    async def queue_stats(self) -> Dict[str, Any]:
        stats = await self.processor.get_queue_stats()
        return {"ok": True, **stats}

    async def poll_integrations(self) -> Dict[str, Any]:
        return await self.orchestrator.run_polling_tick()

    async def handle_webhook(
        self, provider: str, integration_id: str, body: bytes, headers: Mapping[str, str]
    ) -> InboundResult:
        return await self.registrar.handle_inbound(provider, integration_id, body, headers)

    # -------------------------------------------------------------- commands
    def _normalise_priority(self, value: Any, default: int = DEFAULT_PRIORITY) -> int:
        """Coerce a label or number into the 0..3 priority range."""
        if value is None:
            priority = default
        elif isinstance(value, str) and value.lower() in LABEL_TO_PRIORITY:
            priority = LABEL_TO_PRIORITY[value.lower()]
        else:
            try:
                priority = int(value)
            except (TypeError, ValueError):
                priority = default
        return max(0, min(priority, max(PRIORITY_LABELS)))

    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external control commands."""
        payload = payload or {}
        if cmd == "processQueue":
            return await self.process_queue()
        if cmd == "queueStats":
            return await self.queue_stats()
        if cmd == "pollIntegrations":
            return await self.poll_integrations()
        if cmd == "addAccount":
            if not payload.get("id") or not payload.get("tenant_id"):
                return {"ok": False, "error": "missing 'id' or 'tenant_id'"}
            status = payload.get("status", "disconnected")
            if status not in ACCOUNT_STATUSES:
                return {"ok": False, "error": f"invalid status '{status}'"}
            await self.persistence.add_account(payload)
            return {"ok": True}
        if cmd == "listAccounts":
            accounts = await self.persistence.list_accounts()
            return {"ok": True, "accounts": accounts}
        if cmd == "setAccountStatus":
            status = payload.get("status")
            if not payload.get("id") or status not in ACCOUNT_STATUSES:
                return {"ok": False, "error": "missing 'id' or invalid 'status'"}
            await self.persistence.set_account_status(payload["id"], status)
            return {"ok": True}
        if cmd == "addAgent":
            if not payload.get("id") or not payload.get("tenant_id"):
                return {"ok": False, "error": "missing 'id' or 'tenant_id'"}
            try:
                parse_windows(payload.get("working_windows"))
            except (KeyError, TypeError, ValueError) as exc:
                return {"ok": False, "error": f"invalid working windows: {exc}"}
            await self.persistence.add_agent(payload)
            return {"ok": True}
        if cmd == "setConversationStatus":
            if not payload.get("id") or not payload.get("status"):
                return {"ok": False, "error": "missing 'id' or 'status'"}
            await self.persistence.set_conversation_status(payload["id"], payload["status"], payload.get("tenant_id"))
            return {"ok": True}
        if cmd == "addIntegration":
            return await self._handle_add_integration(payload)
        if cmd == "listIntegrations":
            integrations = await self.persistence.list_integrations(active_only=False)
            return {"ok": True, "integrations": [self._public_integration(item) for item in integrations]}
        if cmd == "listEvents":
            integration_id = payload.get("integration_id")
            if not integration_id:
                return {"ok": False, "error": "missing 'integration_id'"}
            if await self.persistence.get_integration(integration_id) is None:
                return {"ok": False, "error": f"unknown integration '{integration_id}'"}
            events = await self.persistence.list_processed_events(
                integration_id=integration_id,
                test_only=bool(payload.get("test_only")),
                limit=int(payload.get("limit") or 100),
            )
            return {"ok": True, "events": events}
        if cmd == "addJobs":
            return await self._handle_add_jobs(payload)
        if cmd == "listJobs":
            jobs = await self.persistence.list_jobs(status=payload.get("status"))
            return {"ok": True, "jobs": jobs}
        if cmd == "dismissJob":
            job_id = payload.get("id")
            if not job_id:
                return {"ok": False, "error": "missing 'id'"}
            if not await self.persistence.dismiss_job(job_id, self._utc_now_epoch()):
                return {"ok": False, "error": f"job '{job_id}' is not pending"}
            return {"ok": True}
        return {"ok": False, "error": "unknown command"}

    @staticmethod
    def _public_integration(integration: Dict[str, Any]) -> Dict[str, Any]:
        """Drop secrets before an integration leaves the service."""
        data = dict(integration)
        data.pop("credentials", None)
        data.pop("webhook_secret", None)
        return data

    async def _handle_add_integration(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        provider = str(payload.get("provider") or "").lower()
        if provider not in ADAPTERS:
            return {"ok": False, "error": f"unsupported provider '{provider}'"}
        if not payload.get("id") or not payload.get("tenant_id"):
            return {"ok": False, "error": "missing 'id' or 'tenant_id'"}
        sync_mode = payload.get("sync_mode") or ("webhook" if ADAPTERS[provider].supports_webhooks else "polling")
        if sync_mode not in SYNC_MODES:
            return {"ok": False, "error": f"invalid sync mode '{sync_mode}'"}
        problems = validate_action_settings(payload.get("settings"))
        if problems:
            return {"ok": False, "error": "invalid settings: " + "; ".join(problems)}
        await self.persistence.add_integration(dict(payload, provider=provider, sync_mode=sync_mode))
        return {"ok": True, "sync_mode": sync_mode}

    async def _validate_job(self, item: Dict[str, Any], known_accounts: set) -> Tuple[bool, Optional[str]]:
        for field in ("id", "tenant_id", "account_id", "recipient"):
            if not item.get(field):
                return False, f"missing {field}"
        payload = item.get("payload")
        if not isinstance(payload, dict) or not (payload.get("text") or (payload.get("media") or {}).get("url")):
            return False, "payload needs text or media.url"
        if item["account_id"] not in known_accounts:
            return False, "unknown account"
        return True, None

    async def _handle_add_jobs(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        jobs = payload.get("jobs") if isinstance(payload, dict) else None
        if not isinstance(jobs, list):
            return {"ok": False, "error": "jobs must be a list"}
        if len(jobs) > self._max_enqueue_batch:
            return {"ok": False, "error": f"Cannot enqueue more than {self._max_enqueue_batch} jobs at once"}

        known_accounts = {acc["id"] for acc in await self.persistence.list_accounts()}
        validated: List[Dict[str, Any]] = []
        rejected: List[Dict[str, Any]] = []
        for item in jobs:
            if not isinstance(item, dict):
                rejected.append({"id": None, "reason": "invalid payload"})
                continue
            is_valid, reason = await self._validate_job(item, known_accounts)
            if not is_valid:
                rejected.append({"id": item.get("id"), "reason": reason})
                continue
            validated.append(dict(item, priority=self._normalise_priority(item.get("priority"))))

        if not validated:
            return {"ok": False, "error": "all jobs rejected", "rejected": rejected}

        inserted = await self.persistence.insert_jobs(validated, self._utc_now_epoch())
        for job in validated:
            if job["id"] not in inserted:
                rejected.append({"id": job["id"], "reason": "job already processed"})
        self.metrics.set_pending(await self.persistence.count_active_jobs())
        return {"ok": True, "queued": len(inserted), "rejected": rejected}
