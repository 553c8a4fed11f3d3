"""Close adapter, polled through the lead search endpoint with basic auth."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from .base import (
    CHANGE_CREATED,
    CHANGE_UPDATED,
    DEFAULT_TIMEOUT,
    Contact,
    CRMError,
    NormalizedEvent,
    credential,
    make_event_id,
    matches_filters,
    parse_timestamp,
    request_json,
    sort_events,
    split_settings,
    to_cursor,
)

API_BASE = "https://api.close.com"
PAGE_SIZE = 100
MAX_PAGES = 10


class CloseAdapter:
    provider = "close"
    supports_webhooks = False
    supports_polling = True
    entity_type = "lead"

    def __init__(self, integration: Mapping[str, Any], *, timeout: float = DEFAULT_TIMEOUT, base_url: str = API_BASE):
        self.integration_id = str(integration["id"])
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.api_key = credential(integration, "api_key", "apiKey", "close_api_key")
        self.settings, self.filters = split_settings(integration)

    def missing_credentials(self, *, for_webhooks: bool = False) -> List[str]:
        return [] if self.api_key else ["api_key"]

    async def fetch_changed_since(self, cursor: Optional[str]) -> List[NormalizedEvent]:
        if not self.api_key:
            raise CRMError("Close API key required", provider=self.provider)
        params: Dict[str, Any] = {"_limit": PAGE_SIZE, "_order_by": "date_updated"}
        if cursor:
            params["date_updated__gte"] = parse_timestamp(cursor).isoformat()
        auth = aiohttp.BasicAuth(self.api_key, "")
        events: List[NormalizedEvent] = []
        for page in range(MAX_PAGES):
            params["_skip"] = page * PAGE_SIZE
            data = await request_json(
                "GET",
                f"{self.base_url}/api/v1/lead/",
                provider=self.provider,
                params=params,
                auth=auth,
                timeout=self.timeout,
            )
            for lead in (data or {}).get("data") or []:
                event = self._event_from_lead(lead)
                if event is not None:
                    events.append(event)
            if not (data or {}).get("has_more"):
                break
        return sort_events(events, cursor)

    def _event_from_lead(self, lead: Mapping[str, Any]) -> Optional[NormalizedEvent]:
        updated = lead.get("date_updated") or lead.get("date_created")
        if not updated or not matches_filters(lead, self.filters):
            return None
        occurred = parse_timestamp(updated)
        created = lead.get("date_created")
        change_kind = CHANGE_CREATED if created and parse_timestamp(created) == occurred else CHANGE_UPDATED
        contacts = lead.get("contacts") or []
        person = contacts[0] if contacts and isinstance(contacts[0], Mapping) else {}
        phones = person.get("phones") or []
        emails = person.get("emails") or []
        contact = Contact.from_full_name(
            person.get("name") or lead.get("display_name"),
            phone=phones[0].get("phone") if phones else None,
            email=emails[0].get("email") if emails else None,
        )
        cursor = to_cursor(occurred)
        entity_id = str(lead.get("id"))
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
            payload=dict(lead),
        )
