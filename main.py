import os
import configparser
from pathlib import Path
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from async_dispatch_service.api import create_app
from async_dispatch_service.config_loader import load_integrations_from_config
from async_dispatch_service.core import DispatchService
from async_dispatch_service.logger import configure_logging, get_logger

configure_logging(os.getenv("ADS_LOG_LEVEL", "INFO"))
logger = get_logger("main")


def load_settings() -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with ADS_):
      ADS_CONFIG - Path to config.ini file (default: config.ini)
      ADS_LOG_LEVEL - Logging level (default: INFO)
      ADS_DB_PATH - Database path (default: /data/dispatch_service.db)
      ADS_HOST - Server host (default: 0.0.0.0)
      ADS_PORT - Server port (default: 8000)
      ADS_SCHEDULER_SECRET - Bearer secret required by scheduler and admin endpoints
      ADS_PUBLIC_BASE_URL - Public URL providers call back for webhooks
      ADS_GATEWAY_URL - Messaging gateway base URL
      ADS_GATEWAY_API_KEY - Messaging gateway API key
      ADS_GATEWAY_TIMEOUT - Gateway request timeout in seconds (default: 30)
      ADS_BATCH_SIZE - Jobs claimed per batch (default: 50)
      ADS_MAX_BATCHES - Batches per run (default: 20)
      ADS_MAX_RETRIES - Transient delivery retries before failing a job (default: 5)
      ADS_MAX_JOB_AGE_SECONDS - Deferred jobs older than this are failed (default: 7 days)
      ADS_MAX_CONCURRENCY - Accounts delivered in parallel (default: 10)
      ADS_LEASE_SECONDS - Claim lease in seconds, renewed while a run is alive (default: 300)
      ADS_RUN_TIME_BUDGET - Seconds after which a run stops claiming (default: unlimited)
      ADS_DEFAULT_TIMEZONE - Timezone used when account and agent have none (default: Europe/Berlin)
      ADS_DEFAULT_DAILY_LIMIT - Daily quota for accounts without one (default: 100)
      ADS_OPEN_WHEN_UNCONFIGURED - Allow sending for agents without working windows (default: True)
      ADS_POLL_OVERLAP_SECONDS - Polling look-back behind the stored cursor (default: 300)
      ADS_INITIAL_LOOKBACK_SECONDS - First poll look-back (default: 3600)
      ADS_SYNC_CONCURRENCY - Integrations synced in parallel (default: 5)
      ADS_SYNC_TIME_BUDGET - Seconds after which a sync tick starts no new integration (default: unlimited)
      ADS_CRM_TIMEOUT - CRM request timeout in seconds (default: 15)
      ADS_LOG_DELIVERY_ACTIVITY - Log each delivery attempt (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, scheduler_secret, public_base_url
      [gateway] url, api_key, timeout
      [delivery] batch_size, max_batches, max_retries, max_job_age_seconds, max_concurrency, run_time_budget,
                 lease_seconds
      [guard] default_timezone, default_daily_limit, open_when_unconfigured
      [sync] poll_overlap_seconds, initial_lookback_seconds, concurrency, time_budget, crm_timeout
      [logging] delivery_activity
      [integrations] integration.<id>.<field> (see IntegrationConfigLoader)
    """
    config_path = Path(os.getenv("ADS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    settings = {
        "config_path": str(config_path),
        "db_path": get("storage", "db_path", os.getenv("ADS_DB_PATH", "/data/dispatch_service.db")),
        "http_host": get("server", "host", os.getenv("ADS_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("ADS_PORT", "8000")),
        "scheduler_secret": get("server", "scheduler_secret", os.getenv("ADS_SCHEDULER_SECRET")),
        "public_base_url": get("server", "public_base_url", os.getenv("ADS_PUBLIC_BASE_URL")),
        "gateway_url": get("gateway", "url", os.getenv("ADS_GATEWAY_URL")),
        "gateway_api_key": get("gateway", "api_key", os.getenv("ADS_GATEWAY_API_KEY")),
        "gateway_timeout": get_float("gateway", "timeout", os.getenv("ADS_GATEWAY_TIMEOUT"), default=30.0),
        "batch_size": get_int("delivery", "batch_size", os.getenv("ADS_BATCH_SIZE"), default=50),
        "max_batches": get_int("delivery", "max_batches", os.getenv("ADS_MAX_BATCHES"), default=20),
        "max_retries": get_int("delivery", "max_retries", os.getenv("ADS_MAX_RETRIES"), default=5),
        "max_job_age_seconds": get_int(
            "delivery",
            "max_job_age_seconds",
            os.getenv("ADS_MAX_JOB_AGE_SECONDS"),
            default=7 * 24 * 3600,
        ),
        "max_concurrency": get_int("delivery", "max_concurrency", os.getenv("ADS_MAX_CONCURRENCY"), default=10),
        "run_time_budget": get_float("delivery", "run_time_budget", os.getenv("ADS_RUN_TIME_BUDGET")),
        "lease_seconds": get_int("delivery", "lease_seconds", os.getenv("ADS_LEASE_SECONDS"), default=300),
        "default_timezone": get("guard", "default_timezone", os.getenv("ADS_DEFAULT_TIMEZONE", "Europe/Berlin")),
        "default_daily_limit": get_int(
            "guard",
            "default_daily_limit",
            os.getenv("ADS_DEFAULT_DAILY_LIMIT"),
            default=100,
        ),
        "open_when_unconfigured": get_bool(
            "guard",
            "open_when_unconfigured",
            os.getenv("ADS_OPEN_WHEN_UNCONFIGURED"),
            default=True,
        ),
        "poll_overlap_seconds": get_int("sync", "poll_overlap_seconds", os.getenv("ADS_POLL_OVERLAP_SECONDS"), default=300),
        "initial_lookback_seconds": get_int(
            "sync",
            "initial_lookback_seconds",
            os.getenv("ADS_INITIAL_LOOKBACK_SECONDS"),
            default=3600,
        ),
        "sync_concurrency": get_int("sync", "concurrency", os.getenv("ADS_SYNC_CONCURRENCY"), default=5),
        "sync_time_budget": get_float("sync", "time_budget", os.getenv("ADS_SYNC_TIME_BUDGET")),
        "crm_timeout": get_float("sync", "crm_timeout", os.getenv("ADS_CRM_TIMEOUT"), default=15.0),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("ADS_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    secret = settings.get("scheduler_secret")
    if isinstance(secret, str):
        secret = secret.strip() or None
    settings["scheduler_secret"] = secret
    return settings


def build_service(settings: dict[str, object]) -> DispatchService:
    return DispatchService(
        db_path=settings["db_path"],
        gateway_url=settings.get("gateway_url"),
        gateway_api_key=settings.get("gateway_api_key"),
        gateway_timeout=float(settings.get("gateway_timeout") or 30.0),
        public_base_url=settings.get("public_base_url"),
        default_timezone=str(settings.get("default_timezone")),
        default_daily_limit=int(settings.get("default_daily_limit")),
        open_when_unconfigured=bool(settings.get("open_when_unconfigured")),
        batch_size=int(settings.get("batch_size")),
        max_batches=int(settings.get("max_batches")),
        max_retries=int(settings.get("max_retries")),
        max_job_age_seconds=int(settings.get("max_job_age_seconds")),
        max_concurrency=int(settings.get("max_concurrency")),
        run_time_budget=settings.get("run_time_budget"),
        lease_seconds=int(settings.get("lease_seconds") or 300),
        poll_overlap_seconds=int(settings.get("poll_overlap_seconds")),
        initial_lookback_seconds=int(settings.get("initial_lookback_seconds")),
        sync_concurrency=int(settings.get("sync_concurrency")),
        sync_time_budget=settings.get("sync_time_budget"),
        crm_timeout=float(settings.get("crm_timeout") or 15.0),
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
    )


if __name__ == "__main__":
    settings = load_settings()
    service = build_service(settings)
    if not settings.get("scheduler_secret"):
        logger.warning("No scheduler secret configured: scheduler and admin endpoints will reject every request")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.init()
        if Path(str(settings["config_path"])).exists():
            await load_integrations_from_config(str(settings["config_path"]), service.persistence)
        yield

    app = create_app(service, scheduler_secret=settings.get("scheduler_secret"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
