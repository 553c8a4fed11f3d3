"""Pipedrive adapter: native webhooks plus polling through ``/v1/recents``."""

from __future__ import annotations

import base64
import hmac
from typing import Any, Dict, List, Mapping, Optional

from .base import (
    CHANGE_CREATED,
    CHANGE_STAGE,
    CHANGE_UPDATED,
    DEFAULT_TIMEOUT,
    Contact,
    CRMError,
    NormalizedEvent,
    WebhookHandle,
    WebhookRegistrationError,
    credential,
    first_value,
    header,
    make_event_id,
    matches_filters,
    parse_timestamp,
    request_json,
    sort_events,
    split_settings,
    to_cursor,
)

API_BASE = "https://api.pipedrive.com"
WEBHOOK_USER = "dispatch"

TRIGGER_EVENTS = {
    "deal_created": ("added", "deal"),
    "deal_updated": ("updated", "deal"),
    "deal_stage_changed": ("updated", "deal"),
    "person_created": ("added", "person"),
    "person_updated": ("updated", "person"),
    "activity_created": ("added", "activity"),
    "activity_updated": ("updated", "activity"),
}
ACTIONS_CREATED = ("added", "create")


class PipedriveAdapter:
    provider = "pipedrive"
    supports_webhooks = True
    supports_polling = True

    def __init__(self, integration: Mapping[str, Any], *, timeout: float = DEFAULT_TIMEOUT, base_url: str = API_BASE):
        self.integration = integration
        self.integration_id = str(integration["id"])
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.api_token = credential(integration, "api_token", "apiToken", "pipedrive_api_token")
        self.settings, self.filters = split_settings(integration)
        self.trigger_event = self.settings.get("trigger_event") or "deal_updated"
        self.event_action, self.entity_type = TRIGGER_EVENTS.get(self.trigger_event, ("*", "deal"))

    def missing_credentials(self, *, for_webhooks: bool = False) -> List[str]:
        missing = [] if self.api_token else ["api_token"]
        if for_webhooks and not self.integration.get("webhook_secret"):
            missing.append("webhook_secret")
        return missing

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        query = dict(params or {})
        query["api_token"] = self.api_token or ""
        return await request_json(
            "GET", f"{self.base_url}{path}", provider=self.provider, params=query, timeout=self.timeout
        )

    # ------------------------------------------------------------------ polling
    async def fetch_changed_since(self, cursor: Optional[str]) -> List[NormalizedEvent]:
        if not self.api_token:
            raise CRMError("Pipedrive API token required", provider=self.provider)
        params: Dict[str, Any] = {"items": self.entity_type, "limit": 500}
        if cursor:
            # Pipedrive expects UTC "YYYY-MM-DD HH:MM:SS"
            params["since_timestamp"] = parse_timestamp(cursor).strftime("%Y-%m-%d %H:%M:%S")
        data = await self._get("/v1/recents", params)
        events: List[NormalizedEvent] = []
        for item in (data or {}).get("data") or []:
            record = item.get("data") if isinstance(item, Mapping) else None
            if not isinstance(record, Mapping) or item.get("item") != self.entity_type:
                continue
            if not matches_filters(record, self.filters):
                continue
            contact = await self._contact_for(record)
            events.append(self._event_from_record(record, contact, self._change_kind_from_record(record)))
        return sort_events(events, cursor)

    @staticmethod
    def _change_kind_from_record(record: Mapping[str, Any]) -> str:
        updated = record.get("update_time")
        if updated and record.get("add_time") == updated:
            return CHANGE_CREATED
        if updated and record.get("stage_change_time") == updated:
            return CHANGE_STAGE
        return CHANGE_UPDATED

    async def _contact_for(self, record: Mapping[str, Any]) -> Contact:
        if self.entity_type == "person":
            return self._contact_from_person(record)
        person = record.get("person_id")
        if isinstance(person, Mapping):
            contact = self._contact_from_person(person)
            if contact.phone:
                return contact
            person = person.get("value")
        if not person:
            return Contact()
        data = await self._get(f"/v1/persons/{person}")
        person_data = (data or {}).get("data")
        return self._contact_from_person(person_data) if isinstance(person_data, Mapping) else Contact()

    @staticmethod
    def _contact_from_person(person: Mapping[str, Any]) -> Contact:
        first = person.get("first_name") or person.get("firstname")
        last = person.get("last_name") or person.get("lastname")
        phone = first_value(person.get("phone"))
        email = first_value(person.get("email"))
        if not first and not last:
            return Contact.from_full_name(person.get("name"), phone=phone, email=email)
        return Contact(phone=phone, first_name=first, last_name=last, email=email)

    def _event_from_record(self, record: Mapping[str, Any], contact: Contact, change_kind: str) -> NormalizedEvent:
        occurred = parse_timestamp(record.get("update_time") or record.get("add_time"))
        cursor = to_cursor(occurred)
        entity_id = str(record.get("id"))
        return NormalizedEvent(
            provider=self.provider,
            integration_id=self.integration_id,
            entity_type=self.entity_type,
            entity_id=entity_id,
            change_kind=change_kind,
            provider_event_id=make_event_id(self.entity_type, entity_id, cursor),
            cursor=cursor,
            occurred_at=occurred,
            contact=contact,
            payload=dict(record),
        )

    # ----------------------------------------------------------------- webhooks
    async def register_webhook(self, callback_url: str) -> WebhookHandle:
        if self.missing_credentials(for_webhooks=True):
            raise WebhookRegistrationError("Pipedrive API token and webhook secret required", provider=self.provider)
        body = {
            "subscription_url": callback_url,
            "event_action": self.event_action,
            "event_object": self.entity_type,
            "http_auth_user": WEBHOOK_USER,
            "http_auth_password": self.integration["webhook_secret"],
        }
        try:
            data = await request_json(
                "POST",
                f"{self.base_url}/v1/webhooks",
                provider=self.provider,
                params={"api_token": self.api_token},
                json_body=body,
                timeout=self.timeout,
            )
        except CRMError as exc:
            raise WebhookRegistrationError(str(exc), provider=self.provider, status=exc.status) from exc
        webhook_id = ((data or {}).get("data") or {}).get("id")
        if not (data or {}).get("success", True) or not webhook_id:
            raise WebhookRegistrationError(
                str((data or {}).get("error") or "Pipedrive did not return a webhook id"), provider=self.provider
            )
        return WebhookHandle(webhook_id=str(webhook_id), callback_url=callback_url)

    async def delete_webhook(self, webhook_id: str) -> None:
        """Remove a subscription created by :meth:`register_webhook`."""
        await request_json(
            "DELETE",
            f"{self.base_url}/v1/webhooks/{webhook_id}",
            provider=self.provider,
            params={"api_token": self.api_token or ""},
            timeout=self.timeout,
        )

    def verify_webhook_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """Pipedrive sends the basic-auth credentials configured at registration."""
        secret = self.integration.get("webhook_secret")
        value = header(headers, "Authorization") or ""
        if not secret or not value.lower().startswith("basic "):
            return False
        expected = base64.b64encode(f"{WEBHOOK_USER}:{secret}".encode()).decode()
        return hmac.compare_digest(value[6:].strip(), expected)

    def webhook_challenge(self, payload: Any) -> Optional[Dict[str, Any]]:
        return None

    async def parse_webhook(self, payload: Any) -> List[NormalizedEvent]:
        """Normalise a v1 (``current``/``previous``) or v2 (``data``/``previous``) notification."""
        if not isinstance(payload, Mapping):
            raise ValueError("Pipedrive webhook payload must be an object")
        meta = payload.get("meta") or {}
        record = payload.get("current") or payload.get("data")
        if not isinstance(record, Mapping):
            return []
        entity_type = meta.get("object") or meta.get("entity") or self.entity_type
        if entity_type != self.entity_type or not matches_filters(record, self.filters):
            return []
        previous = payload.get("previous") or {}
        action = str(meta.get("action") or "")
        if action in ACTIONS_CREATED:
            change_kind = CHANGE_CREATED
        elif isinstance(previous, Mapping) and "stage_id" in previous and previous.get("stage_id") != record.get("stage_id"):
            change_kind = CHANGE_STAGE
        else:
            change_kind = CHANGE_UPDATED
        if not (record.get("update_time") or record.get("add_time")):
            record = dict(record, update_time=meta.get("timestamp"))
        contact = await self._contact_for(record)
        return [self._event_from_record(record, contact, change_kind)]
