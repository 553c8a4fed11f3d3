"""
FastAPI application factory and HTTP schemas for the async dispatch service.

The module exposes a `create_app` function that builds the REST API used by
the external scheduler to trigger queue runs and CRM sync ticks, the inbound
webhook endpoint called by CRM providers, and a handful of admin commands.
Scheduler and admin endpoints require ``Authorization: Bearer <secret>``;
webhook calls are authenticated by the provider signature instead.
"""

import hmac
from typing import Optional, Dict, Any, List, Literal, Union, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from .core import DispatchService
from .crm import CRMError, CRMTransientError
from .logger import get_logger
from .registrar import InboundWebhookError

app = FastAPI(title="Async Dispatch Service")
service: DispatchService | None = None
bearer_scheme = HTTPBearer(auto_error=False)
app.state.scheduler_secret = None
logger = get_logger("DispatchAPI")


async def require_secret(
    request: Request, credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme)
) -> None:
    """Validate the scheduler secret carried as a bearer token.

    Requests are rejected with ``401`` when the header is missing, when the
    token differs, and when no secret has been configured at all.
    """
    expected = getattr(request.app.state, "scheduler_secret", None)
    if not expected or credentials is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing scheduler secret")
    if not hmac.compare_digest(credentials.credentials.encode(), str(expected).encode()):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing scheduler secret")

auth_dependency = Depends(require_secret)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class RunSummaryResponse(CommandStatus):
    """Counters of one queue processing run."""
    run_id: str
    processed: int = 0
    sent: int = 0
    skipped: int = 0
    deferred: int = 0
    retried: int = 0
    failed: int = 0
    expired: int = 0


class QueueStatsResponse(CommandStatus):
    pending: int = 0
    sending: int = 0
    sent_today: int = 0
    failed_last_24h: int = 0


class SyncError(BaseModel):
    integration_id: str
    error: str


class SyncSummaryResponse(CommandStatus):
    """Counters of one CRM sync tick."""
    integrations: int = 0
    polled: int = 0
    webhook: int = 0
    downgraded: int = 0
    locked: int = 0
    not_started: int = 0
    events_emitted: int = 0
    duplicates: int = 0
    test_events: int = 0
    errors: List[SyncError] = Field(default_factory=list)


class AccountPayload(BaseModel):
    """Messaging account (gateway instance) definition."""
    id: str
    tenant_id: str
    instance_name: Optional[str] = None
    status: Literal["connected", "disconnected", "connecting"] = "disconnected"
    timezone: Optional[str] = None
    daily_limit: Optional[int] = None


class AgentPayload(BaseModel):
    """Agent definition with its working windows."""
    id: str
    tenant_id: str
    name: Optional[str] = None
    timezone: Optional[str] = None
    working_windows: Optional[Union[List[Dict[str, Any]], Dict[str, Any]]] = None


class IntegrationPayload(BaseModel):
    """CRM integration definition."""
    id: str
    tenant_id: str
    provider: Literal["pipedrive", "monday", "hubspot", "close", "activecampaign"]
    credentials: Dict[str, Any] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)
    sync_mode: Optional[Literal["webhook", "polling"]] = None
    active: bool = True


class IntegrationInfo(BaseModel):
    """Stored integration as returned by ``listIntegrations`` (secrets removed)."""
    id: str
    tenant_id: str
    provider: str
    settings: Dict[str, Any] = Field(default_factory=dict)
    sync_mode: str
    sync_mode_reason: Optional[str] = None
    webhook_id: Optional[str] = None
    webhook_url: Optional[str] = None
    cursor: Optional[str] = None
    last_polled_ts: Optional[int] = None
    active: bool = True


class IntegrationsResponse(CommandStatus):
    integrations: List[IntegrationInfo]


class AddIntegrationResponse(CommandStatus):
    sync_mode: Optional[str] = None


class ProcessedEvent(BaseModel):
    """Ledger row of one CRM event; test-mode captures carry the extracted data."""
    provider: str
    provider_event_id: str
    integration_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    change_kind: Optional[str] = None
    status: str
    jobs_created: int = 0
    is_test: bool = False
    event_data: Optional[Dict[str, Any]] = None
    created_ts: int
    processed_ts: Optional[int] = None


class ProcessedEventsResponse(CommandStatus):
    events: List[ProcessedEvent]


class MediaPayload(BaseModel):
    url: str
    mediatype: Optional[str] = None
    mimetype: Optional[str] = None
    file_name: Optional[str] = None
    caption: Optional[str] = None


class JobContent(BaseModel):
    text: Optional[str] = None
    media: Optional[MediaPayload] = None


class JobPayload(BaseModel):
    """Outbound message accepted by the ``addJobs`` command."""
    id: str
    tenant_id: str
    account_id: str
    recipient: str
    payload: JobContent
    agent_id: Optional[str] = None
    conversation_id: Optional[str] = None
    priority: Optional[Union[int, Literal["immediate", "high", "medium", "low"]]] = None
    not_before_ts: Optional[int] = None


class EnqueueJobsPayload(BaseModel):
    jobs: List[JobPayload]


class RejectedJob(BaseModel):
    id: Optional[str] = None
    reason: str


class AddJobsResponse(CommandStatus):
    queued: int = 0
    rejected: List[RejectedJob] = Field(default_factory=list)


class JobRecord(BaseModel):
    """Full representation of a queued job."""
    id: str
    tenant_id: str
    account_id: str
    agent_id: Optional[str] = None
    conversation_id: Optional[str] = None
    recipient: str
    payload: Dict[str, Any]
    priority: int
    source: str
    status: str
    attempts: int = 0
    not_before_ts: Optional[int] = None
    created_ts: Optional[int] = None
    sent_ts: Optional[int] = None
    last_error: Optional[str] = None
    provider_message_id: Optional[str] = None


class JobsResponse(CommandStatus):
    jobs: List[JobRecord]


def create_app(
    svc: DispatchService,
    scheduler_secret: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`async_dispatch_service.core.DispatchService` that
        implements the business logic for each command.
    scheduler_secret:
        Bearer secret expected by scheduler and admin endpoints. When it is
        not configured those endpoints reject every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Async Dispatch Service", lifespan=lifespan)
    else:
        api = app

    api.state.scheduler_secret = scheduler_secret
    router = APIRouter(dependencies=[auth_dependency])

    def current_service() -> DispatchService:
        if not service:
            raise HTTPException(500, "Service not initialized")
        return service

    @router.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def status_():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @router.post("/queue/process", response_model=RunSummaryResponse, response_model_exclude_none=True)
    async def process_queue():
        """Run the queue processor until the queue is drained or the run budget is spent."""
        result = await current_service().handle_command("processQueue", {})
        return RunSummaryResponse.model_validate(result)

    @router.get("/queue/stats", response_model=QueueStatsResponse, response_model_exclude_none=True)
    async def queue_stats():
        result = await current_service().handle_command("queueStats", {})
        return QueueStatsResponse.model_validate(result)

    @router.post("/sync/poll", response_model=SyncSummaryResponse, response_model_exclude_none=True)
    async def sync_poll():
        """Register pending webhooks and poll every polling-mode integration once."""
        result = await current_service().handle_command("pollIntegrations", {})
        return SyncSummaryResponse.model_validate(result)

    @router.post("/accounts", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def add_account(acc: AccountPayload):
        result = await current_service().handle_command("addAccount", acc.model_dump())
        return BasicOkResponse.model_validate(result)

    @router.post("/agents", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def add_agent(agent: AgentPayload):
        result = await current_service().handle_command("addAgent", agent.model_dump())
        if result.get("ok") is not True:
            raise HTTPException(status_code=400, detail=result.get("error"))
        return BasicOkResponse.model_validate(result)

    @router.post("/integrations", response_model=AddIntegrationResponse, response_model_exclude_none=True)
    async def add_integration(integration: IntegrationPayload):
        result = await current_service().handle_command("addIntegration", integration.model_dump(exclude_none=True))
        if result.get("ok") is not True:
            raise HTTPException(status_code=400, detail=result.get("error"))
        return AddIntegrationResponse.model_validate(result)

    @router.get("/integrations", response_model=IntegrationsResponse, response_model_exclude_none=True)
    async def list_integrations():
        result = await current_service().handle_command("listIntegrations", {})
        return IntegrationsResponse.model_validate(result)

    @router.get(
        "/integrations/{integration_id}/events",
        response_model=ProcessedEventsResponse,
        response_model_exclude_none=True,
    )
    async def list_events(integration_id: str, test_only: bool = False, limit: int = 50):
        """Recent events of one integration, e.g. the captures of a test-mode session."""
        result = await current_service().handle_command(
            "listEvents", {"integration_id": integration_id, "test_only": test_only, "limit": limit}
        )
        if result.get("ok") is not True:
            raise HTTPException(status_code=404, detail=result.get("error"))
        return ProcessedEventsResponse.model_validate(result)

    @router.post("/queue/jobs", response_model=AddJobsResponse, response_model_exclude_none=True)
    async def add_jobs(payload: EnqueueJobsPayload):
        """Push a batch of outbound messages into the queue."""
        data = {"jobs": [job.model_dump(exclude_none=True) for job in payload.jobs]}
        result = await current_service().handle_command("addJobs", data)
        if not isinstance(result, dict) or result.get("ok") is not True:
            detail = {"error": result.get("error"), "rejected": result.get("rejected")}
            raise HTTPException(status_code=400, detail=detail)
        return AddJobsResponse.model_validate(result)

    @router.get("/queue/jobs", response_model=JobsResponse, response_model_exclude_none=True)
    async def list_jobs(status: Optional[str] = None):
        result = await current_service().handle_command("listJobs", {"status": status})
        return JobsResponse.model_validate(result)

    @router.post("/queue/jobs/{job_id}/dismiss", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def dismiss_job(job_id: str):
        result = await current_service().handle_command("dismissJob", {"id": job_id})
        if result.get("ok") is not True:
            raise HTTPException(status_code=409, detail=result.get("error"))
        return BasicOkResponse.model_validate(result)

    @router.get("/metrics")
    async def metrics():
        """Expose Prometheus metrics collected by the dispatcher."""
        return Response(content=current_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    @api.post("/webhooks/{provider}/{integration_id}")
    async def inbound_webhook(provider: str, integration_id: str, request: Request):
        """Receive a CRM notification; authenticated by the provider signature."""
        svc_ = current_service()
        body = await request.body()
        try:
            result = await svc_.handle_webhook(provider, integration_id, body, dict(request.headers))
        except InboundWebhookError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc))
        except CRMTransientError as exc:
            logger.warning("Webhook %s/%s deferred: %s", provider, integration_id, exc)
            raise HTTPException(status_code=503, detail="Provider temporarily unavailable")
        except CRMError as exc:
            logger.error("Webhook %s/%s failed: %s", provider, integration_id, exc)
            raise HTTPException(status_code=502, detail="Provider lookup failed")
        except Exception as exc:
            logger.exception("Webhook %s/%s could not be processed", provider, integration_id)
            raise HTTPException(
                status_code=500,
                detail={"error": "Webhook processing failed", "type": type(exc).__name__, "message": str(exc)},
            )
        return JSONResponse(result.as_dict())

    api.include_router(router)
    return api
