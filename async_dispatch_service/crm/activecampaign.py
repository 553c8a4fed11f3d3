"""ActiveCampaign adapter, polled through ``/api/3/contacts``.

The ``updated_after`` filter is applied server side in the account's own
timezone, so the query reaches back ``LOOKBACK_SECONDS`` further than the
cursor and the exact cut is done here.
"""

from __future__ import annotations

from datetime import timedelta
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

LOOKBACK_SECONDS = 1800
PAGE_SIZE = 100
MAX_PAGES = 10


def normalise_base_url(api_url: str) -> str:
    base = api_url.rstrip("/")
    if base.endswith("/api/3"):
        base = base[: -len("/api/3")]
    return base.rstrip("/")


class ActiveCampaignAdapter:
    provider = "activecampaign"
    supports_webhooks = False
    supports_polling = True
    entity_type = "contact"

    def __init__(self, integration: Mapping[str, Any], *, timeout: float = DEFAULT_TIMEOUT, base_url: Optional[str] = None):
        self.integration_id = str(integration["id"])
        self.timeout = timeout
        self.api_key = credential(integration, "api_key", "apiKey", "activecampaign_api_key")
        api_url = base_url or credential(integration, "api_url", "apiUrl", "activecampaign_api_url")
        self.base_url = normalise_base_url(api_url) if api_url else None
        self.settings, self.filters = split_settings(integration)

    def missing_credentials(self, *, for_webhooks: bool = False) -> List[str]:
        return [name for name, value in (("api_url", self.base_url), ("api_key", self.api_key)) if not value]

    async def fetch_changed_since(self, cursor: Optional[str]) -> List[NormalizedEvent]:
        if self.missing_credentials():
            raise CRMError("ActiveCampaign API URL and key required", provider=self.provider)
        params: Dict[str, Any] = {"orders[udate]": "ASC", "limit": PAGE_SIZE}
        if cursor:
            since = parse_timestamp(cursor) - timedelta(seconds=LOOKBACK_SECONDS)
            params["filters[updated_after]"] = since.strftime("%Y-%m-%d %H:%M:%S")
        list_id = self.settings.get("list_id")
        if list_id:
            params["listid"] = list_id
        events: List[NormalizedEvent] = []
        for page in range(MAX_PAGES):
            params["offset"] = page * PAGE_SIZE
            data = await request_json(
                "GET",
                f"{self.base_url}/api/3/contacts",
                provider=self.provider,
                headers={"Api-Token": self.api_key or ""},
                params=params,
                timeout=self.timeout,
            )
            records = (data or {}).get("contacts") or []
            for record in records:
                event = self._event_from_record(record)
                if event is not None:
                    events.append(event)
            total = int(((data or {}).get("meta") or {}).get("total") or 0)
            if len(records) < PAGE_SIZE or (page + 1) * PAGE_SIZE >= total:
                break
        return sort_events(events, cursor)

    def _event_from_record(self, record: Mapping[str, Any]) -> Optional[NormalizedEvent]:
        updated = record.get("updated_timestamp") or record.get("udate") or record.get("cdate")
        if not updated or not matches_filters(record, self.filters):
            return None
        occurred = parse_timestamp(updated)
        created = record.get("created_timestamp") or record.get("cdate")
        change_kind = CHANGE_CREATED if created and parse_timestamp(created) == occurred else CHANGE_UPDATED
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
            contact=Contact(
                phone=record.get("phone") or None,
                first_name=record.get("firstName") or None,
                last_name=record.get("lastName") or None,
                email=record.get("email") or None,
            ),
            payload=dict(record),
        )
