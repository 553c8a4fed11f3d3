"""Cursor-based polling for CRM integrations without (working) webhooks."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from .crm import AdapterFactory, CRMError, get_adapter, shift_cursor, to_cursor
from .logger import get_logger
from .persistence import Persistence
from .pipeline import DUPLICATE, TEST, EventInProgressError, EventPipeline
from .prometheus import DispatchMetrics


@dataclass
class PollResult:
    integration_id: str
    events: int = 0
    emitted: int = 0
    duplicates: int = 0
    test_events: int = 0
    new_cursor: Optional[str] = None
    locked: bool = False
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CursorPoller:
    """Fetch changes since the stored cursor and feed them to the pipeline in order.

    The stored cursor only ever moves to the cursor of the last event the
    pipeline accepted (or recognised as a duplicate), so an interrupted poll
    resumes exactly where it stopped. Fetches reach back ``overlap_seconds``
    behind the cursor; the ledger drops what was already handled.
    """

    def __init__(
        self,
        persistence: Persistence,
        pipeline: EventPipeline,
        *,
        adapter_factory: AdapterFactory = get_adapter,
        overlap_seconds: int = 300,
        initial_lookback_seconds: int = 3600,
        lease_seconds: int = 600,
        metrics: DispatchMetrics | None = None,
        logger=None,
    ):
        self.persistence = persistence
        self.pipeline = pipeline
        self.adapter_factory = adapter_factory
        self.overlap_seconds = max(0, int(overlap_seconds))
        self.initial_lookback_seconds = max(0, int(initial_lookback_seconds))
        self.lease_seconds = max(1, int(lease_seconds))
        self.metrics = metrics or DispatchMetrics()
        self.logger = logger or get_logger("CursorPoller")

    def _since(self, stored: Optional[str], now_ts: int) -> str:
        if stored:
            return shift_cursor(stored, -self.overlap_seconds)
        start = datetime.fromtimestamp(now_ts, timezone.utc) - timedelta(seconds=self.initial_lookback_seconds)
        return to_cursor(start)

    async def poll_once(self, integration: Mapping[str, Any], now_ts: Optional[int] = None) -> PollResult:
        """Run one poll for ``integration``; errors are reported in the result, not raised."""
        integration_id = str(integration["id"])
        now_ts = now_ts if now_ts is not None else int(datetime.now(timezone.utc).timestamp())
        result = PollResult(integration_id=integration_id, new_cursor=integration.get("cursor"))
        owner = uuid.uuid4().hex
        if not await self.persistence.acquire_integration_lease(integration_id, owner, now_ts, self.lease_seconds):
            self.logger.debug("Integration %s is already being polled", integration_id)
            result.locked = True
            return result

        last_emitted: Optional[str] = None
        try:
            adapter = self.adapter_factory(integration)
            since = self._since(integration.get("cursor"), now_ts)
            events = await adapter.fetch_changed_since(since)
            events = sorted(events, key=lambda event: (event.cursor, event.provider_event_id))
            result.events = len(events)
            for event in events:
                try:
                    outcome = await self.pipeline.emit(integration, event)
                except EventInProgressError as exc:
                    result.error = str(exc)
                    self.logger.warning("Integration %s stopped: %s", integration_id, exc)
                    break
                except Exception as exc:
                    result.error = f"event {event.provider_event_id}: {exc}"
                    self.logger.exception(
                        "Integration %s stopped at event %s", integration_id, event.provider_event_id
                    )
                    break
                if outcome == DUPLICATE:
                    result.duplicates += 1
                elif outcome == TEST:
                    result.test_events += 1
                else:
                    result.emitted += 1
                last_emitted = event.cursor
        except CRMError as exc:
            result.error = str(exc)
            self.metrics.inc_sync_error(str(integration.get("provider")))
            self.logger.warning("Polling integration %s failed: %s", integration_id, exc)
        except Exception as exc:
            result.error = str(exc)
            self.metrics.inc_sync_error(str(integration.get("provider")))
            self.logger.exception("Unexpected error while polling integration %s", integration_id)
        finally:
            try:
                await self.persistence.advance_cursor(integration_id, last_emitted, now_ts)
            finally:
                await self.persistence.release_integration_lease(integration_id, owner)
        if last_emitted and (result.new_cursor is None or last_emitted > result.new_cursor):
            result.new_cursor = last_emitted
        self.logger.info(
            "Polled integration %s: events=%d emitted=%d duplicates=%d cursor=%s",
            integration_id,
            result.events,
            result.emitted,
            result.duplicates,
            result.new_cursor,
        )
        return result
