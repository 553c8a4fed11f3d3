"""Webhook registration with providers and handling of inbound notifications."""

from __future__ import annotations

import json
import secrets
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Mapping, Optional

from .crm import AdapterFactory, CRMError, get_adapter
from .logger import get_logger
from .persistence import Persistence
from .pipeline import DUPLICATE, TEST, EventInProgressError, EventPipeline
from .prometheus import DispatchMetrics


class InboundWebhookError(Exception):
    """Base class for rejected inbound webhook calls."""

    status_code = 400


class IntegrationNotFoundError(InboundWebhookError):
    status_code = 404


class WebhookNotSupportedError(InboundWebhookError):
    status_code = 400


class MalformedPayloadError(InboundWebhookError):
    status_code = 400


class SignatureError(InboundWebhookError):
    status_code = 401


class RetryLaterError(InboundWebhookError):
    """The provider should deliver the notification again later."""

    status_code = 503


@dataclass
class RegistrationResult:
    integration_id: str
    registered: bool
    sync_mode: str
    webhook_id: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class InboundResult:
    challenge: Optional[Dict[str, Any]] = None
    events: int = 0
    accepted: int = 0
    duplicates: int = 0
    test_events: int = 0
    errors: list = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        if self.challenge is not None:
            return dict(self.challenge)
        data: Dict[str, Any] = {
            "ok": True,
            "events": self.events,
            "accepted": self.accepted,
            "duplicates": self.duplicates,
        }
        if self.test_events:
            data["mode"] = "test"
            data["test_events"] = self.test_events
        return data


class WebhookRegistrar:
    """Keep provider webhooks registered and turn inbound calls into pipeline events."""

    def __init__(
        self,
        persistence: Persistence,
        pipeline: EventPipeline,
        *,
        public_base_url: Optional[str] = None,
        adapter_factory: AdapterFactory = get_adapter,
        metrics: DispatchMetrics | None = None,
        logger=None,
    ):
        self.persistence = persistence
        self.pipeline = pipeline
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.adapter_factory = adapter_factory
        self.metrics = metrics or DispatchMetrics()
        self.logger = logger or get_logger("WebhookRegistrar")

    def callback_url(self, integration: Mapping[str, Any]) -> Optional[str]:
        if not self.public_base_url:
            return None
        return f"{self.public_base_url}/webhooks/{integration['provider']}/{integration['id']}"

    async def _downgrade(self, integration: Mapping[str, Any], reason: str) -> RegistrationResult:
        await self.persistence.set_sync_mode(integration["id"], "polling", reason)
        self.metrics.inc_sync_error(str(integration.get("provider")))
        self.logger.warning(
            "Integration %s (%s) switched to polling: %s", integration["id"], integration.get("provider"), reason
        )
        return RegistrationResult(str(integration["id"]), registered=False, sync_mode="polling", reason=reason)

    async def ensure_registered(self, integration: Mapping[str, Any]) -> RegistrationResult:
        """Make sure the provider knows our callback URL, or fall back to polling.

        An integration that already holds a webhook id for the current
        callback URL is left untouched and no provider call is made.
        """
        integration_id = str(integration["id"])
        url = self.callback_url(integration)
        if not url:
            return await self._downgrade(integration, "public base URL not configured")
        try:
            adapter = self.adapter_factory(integration)
        except CRMError as exc:
            return await self._downgrade(integration, str(exc))
        if not adapter.supports_webhooks:
            return await self._downgrade(integration, f"{adapter.provider} has no webhook API")

        if integration.get("webhook_id") and integration.get("webhook_url") == url:
            return RegistrationResult(
                integration_id, registered=True, sync_mode="webhook", webhook_id=str(integration["webhook_id"])
            )

        if not integration.get("webhook_secret"):
            secret = secrets.token_urlsafe(32)
            await self.persistence.set_webhook_secret(integration_id, secret)
            integration = dict(integration, webhook_secret=secret)
            adapter = self.adapter_factory(integration)

        missing = adapter.missing_credentials(for_webhooks=True)
        if missing:
            return await self._downgrade(integration, f"missing credentials: {', '.join(missing)}")
        stale_id = integration.get("webhook_id")
        if stale_id:
            try:
                await adapter.delete_webhook(str(stale_id))
            except CRMError as exc:
                self.logger.warning(
                    "Could not delete old %s webhook %s for integration %s: %s",
                    adapter.provider,
                    stale_id,
                    integration_id,
                    exc,
                )
            else:
                self.logger.info("Deleted old %s webhook %s for integration %s", adapter.provider, stale_id, integration_id)
        try:
            handle = await adapter.register_webhook(url)
        except CRMError as exc:
            return await self._downgrade(integration, f"webhook registration failed: {exc}")

        await self.persistence.store_webhook(integration_id, handle.webhook_id, handle.callback_url)
        self.logger.info("Registered %s webhook %s for integration %s", adapter.provider, handle.webhook_id, integration_id)
        return RegistrationResult(integration_id, registered=True, sync_mode="webhook", webhook_id=handle.webhook_id)

    async def handle_inbound(
        self, provider: str, integration_id: str, body: bytes, headers: Mapping[str, str]
    ) -> InboundResult:
        """Verify and process one inbound webhook call.

        Raises an :class:`InboundWebhookError` subclass for calls that must be
        rejected. Events already in the ledger are counted as duplicates and
        cause no side effects.
        """
        integration = await self.persistence.get_integration(integration_id)
        if integration is None or not integration.get("active", True):
            raise IntegrationNotFoundError(f"Unknown integration '{integration_id}'")
        if str(integration["provider"]) != provider:
            raise WebhookNotSupportedError(f"Integration '{integration_id}' is not a {provider} integration")
        try:
            adapter = self.adapter_factory(integration)
        except CRMError as exc:
            raise WebhookNotSupportedError(str(exc)) from exc
        if not adapter.supports_webhooks:
            raise WebhookNotSupportedError(f"{provider} does not deliver webhooks")

        try:
            payload = json.loads(body or b"null")
        except ValueError as exc:
            raise MalformedPayloadError("Webhook body is not valid JSON") from exc

        challenge = adapter.webhook_challenge(payload)
        if challenge is not None:
            return InboundResult(challenge=challenge)

        if not adapter.verify_webhook_signature(body, headers):
            self.logger.warning("Rejected %s webhook for integration %s: bad signature", provider, integration_id)
            raise SignatureError("Invalid webhook signature")

        try:
            events = await adapter.parse_webhook(payload)
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedPayloadError(f"Unrecognised {provider} payload: {exc}") from exc

        result = InboundResult(events=len(events))
        for event in events:
            try:
                outcome = await self.pipeline.emit(integration, event)
            except EventInProgressError as exc:
                raise RetryLaterError(str(exc)) from exc
            if outcome == DUPLICATE:
                result.duplicates += 1
            elif outcome == TEST:
                result.test_events += 1
            else:
                result.accepted += 1
        return result
