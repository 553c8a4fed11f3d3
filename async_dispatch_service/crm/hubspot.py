"""HubSpot adapter. Webhooks need a marketplace app, so this provider is polled."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

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

API_BASE = "https://api.hubapi.com"
MAX_PAGES = 10
PROPERTIES = [
    "firstname",
    "lastname",
    "email",
    "phone",
    "mobilephone",
    "createdate",
    "hs_lastmodifieddate",
    "dealname",
    "dealstage",
    "pipeline",
]


class HubSpotAdapter:
    provider = "hubspot"
    supports_webhooks = False
    supports_polling = True

    def __init__(self, integration: Mapping[str, Any], *, timeout: float = DEFAULT_TIMEOUT, base_url: str = API_BASE):
        self.integration_id = str(integration["id"])
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.access_token = credential(integration, "access_token", "accessToken", "api_token")
        self.settings, self.filters = split_settings(integration)
        self.object_type = self.settings.get("object_type") or "contacts"

    def missing_credentials(self, *, for_webhooks: bool = False) -> List[str]:
        return [] if self.access_token else ["access_token"]

    async def fetch_changed_since(self, cursor: Optional[str]) -> List[NormalizedEvent]:
        if not self.access_token:
            raise CRMError("HubSpot access token required", provider=self.provider)
        since_ms = int(parse_timestamp(cursor).timestamp() * 1000) if cursor else 0
        body: Dict[str, Any] = {
            "filterGroups": [
                {"filters": [{"propertyName": "hs_lastmodifieddate", "operator": "GTE", "value": str(since_ms)}]}
            ],
            "properties": PROPERTIES,
            "sorts": [{"propertyName": "hs_lastmodifieddate", "direction": "ASCENDING"}],
            "limit": 100,
        }
        events: List[NormalizedEvent] = []
        for _ in range(MAX_PAGES):
            data = await request_json(
                "POST",
                f"{self.base_url}/crm/v3/objects/{self.object_type}/search",
                provider=self.provider,
                headers={"Authorization": f"Bearer {self.access_token}"},
                json_body=body,
                timeout=self.timeout,
            )
            for record in (data or {}).get("results") or []:
                event = self._event_from_record(record)
                if event is not None:
                    events.append(event)
            after = (((data or {}).get("paging") or {}).get("next") or {}).get("after")
            if not after:
                break
            body = dict(body, after=after)
        return sort_events(events, cursor)

    def _event_from_record(self, record: Mapping[str, Any]) -> Optional[NormalizedEvent]:
        props = record.get("properties") or {}
        modified = props.get("hs_lastmodifieddate") or record.get("updatedAt")
        if not modified or not matches_filters(props, self.filters):
            return None
        occurred = parse_timestamp(modified)
        created = props.get("createdate") or record.get("createdAt")
        change_kind = CHANGE_CREATED if created and parse_timestamp(created) == occurred else CHANGE_UPDATED
        cursor = to_cursor(occurred)
        entity_type = self.object_type.rstrip("s")
        entity_id = str(record.get("id"))
        return NormalizedEvent(
            provider=self.provider,
            integration_id=self.integration_id,
            entity_type=entity_type,
            entity_id=entity_id,
            change_kind=change_kind,
            provider_event_id=make_event_id(entity_type, entity_id, cursor),
            cursor=cursor,
            occurred_at=occurred,
            contact=Contact(
                phone=props.get("phone") or props.get("mobilephone"),
                first_name=props.get("firstname"),
                last_name=props.get("lastname"),
                email=props.get("email"),
            ),
            payload=dict(record),
        )
