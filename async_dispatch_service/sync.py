"""Sync orchestrator: one scheduler tick across every active CRM integration."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Optional

from .logger import get_logger
from .persistence import Persistence
from .poller import CursorPoller
from .registrar import WebhookRegistrar


class SyncOrchestrator:
    """Route each integration to webhook registration or to a poll.

    A webhook integration whose registration fails is downgraded to polling
    by the registrar; it is polled from the following tick on.
    """

    def __init__(
        self,
        persistence: Persistence,
        registrar: WebhookRegistrar,
        poller: CursorPoller,
        *,
        max_concurrency: int = 5,
        time_budget: Optional[float] = None,
        logger=None,
    ):
        self.persistence = persistence
        self.registrar = registrar
        self.poller = poller
        self._max_concurrency = max(1, int(max_concurrency))
        self._time_budget = time_budget
        self.logger = logger or get_logger("SyncOrchestrator")

    async def run_polling_tick(self, time_budget: Optional[float] = None, now_ts: Optional[int] = None) -> Dict[str, Any]:
        """Process every active integration once and return counters."""
        summary: Dict[str, Any] = {
            "ok": True,
            "integrations": 0,
            "polled": 0,
            "webhook": 0,
            "downgraded": 0,
            "locked": 0,
            "not_started": 0,
            "events_emitted": 0,
            "duplicates": 0,
            "test_events": 0,
            "errors": [],
        }
        budget = time_budget if time_budget is not None else self._time_budget
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget if budget else None
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run_one(integration: Mapping[str, Any]) -> None:
            async with semaphore:
                if deadline is not None and loop.time() >= deadline:
                    summary["not_started"] += 1
                    return
                if integration.get("sync_mode") == "webhook":
                    registration = await self.registrar.ensure_registered(integration)
                    if registration.registered:
                        summary["webhook"] += 1
                    else:
                        summary["downgraded"] += 1
                    return
                result = await self.poller.poll_once(integration, now_ts=now_ts)
                if result.locked:
                    summary["locked"] += 1
                    return
                summary["polled"] += 1
                summary["events_emitted"] += result.emitted
                summary["duplicates"] += result.duplicates
                summary["test_events"] += result.test_events
                if result.error:
                    summary["errors"].append({"integration_id": result.integration_id, "error": result.error})

        try:
            integrations: List[Dict[str, Any]] = await self.persistence.list_integrations(active_only=True)
            summary["integrations"] = len(integrations)
            outcomes = await asyncio.gather(*(run_one(item) for item in integrations), return_exceptions=True)
            for integration, outcome in zip(integrations, outcomes):
                if isinstance(outcome, BaseException):
                    self.logger.error("Sync of integration %s failed: %s", integration["id"], outcome)
                    summary["errors"].append({"integration_id": integration["id"], "error": str(outcome)})
        except Exception as exc:
            self.logger.exception("Sync tick failed: %s", exc)
            summary["ok"] = False
            summary["error"] = str(exc)
        self.logger.info(
            "Sync tick: integrations=%d polled=%d webhook=%d downgraded=%d emitted=%d duplicates=%d errors=%d",
            summary["integrations"],
            summary["polled"],
            summary["webhook"],
            summary["downgraded"],
            summary["events_emitted"],
            summary["duplicates"],
            len(summary["errors"]),
        )
        return summary
