"""Monday.com adapter: GraphQL webhooks (JWT signed) plus ``items_page`` polling."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional

import jwt

from .base import (
    CHANGE_CREATED,
    CHANGE_STAGE,
    CHANGE_UPDATED,
    DEFAULT_TIMEOUT,
    Contact,
    CRMError,
    CRMTransientError,
    NormalizedEvent,
    WebhookHandle,
    WebhookRegistrationError,
    credential,
    header,
    make_event_id,
    matches_filters,
    parse_timestamp,
    request_json,
    sort_events,
    split_settings,
    to_cursor,
)

API_URL = "https://api.monday.com/v2"
API_VERSION = "2024-01"
MAX_PAGES = 10
MAX_SCANNED_PAGES = 50
LAST_UPDATED_COLUMN = "__last_updated__"

TRIGGER_EVENTS = {
    "item_created": "create_item",
    "item_updated": "change_column_value",
    "item_moved_to_group": "move_item_to_group",
    "column_changed": "change_column_value",
    "status_changed": "change_status_column_value",
}
CREATED_TYPES = ("create_pulse", "create_item")
STAGE_TYPES = ("move_pulse_into_group", "move_item_to_group", "update_status_column_value")
TRANSIENT_GRAPHQL_CODES = ("ComplexityException", "RateLimitExceeded", "maxConcurrencyExceeded")

ITEM_FIELDS = """
    id
    name
    created_at
    updated_at
    group { id title }
    column_values { id type text value }
"""

FIRST_PAGE_QUERY = (
    "query ($board: [ID!], $limit: Int!, $query: ItemsQuery) "
    "{ boards(ids: $board) { items_page(limit: $limit, query_params: $query) { cursor items {"
    + ITEM_FIELDS
    + "} } } }"
)
NEXT_PAGE_QUERY = (
    "query ($cursor: String!, $limit: Int!) { next_items_page(cursor: $cursor, limit: $limit) { cursor items {"
    + ITEM_FIELDS
    + "} } }"
)
CREATE_WEBHOOK_MUTATION = (
    "mutation ($board: ID!, $url: String!, $event: WebhookEventType!) "
    "{ create_webhook(board_id: $board, url: $url, event: $event) { id board_id } }"
)
DELETE_WEBHOOK_MUTATION = "mutation ($id: ID!) { delete_webhook(id: $id) { id board_id } }"


class MondayAdapter:
    provider = "monday"
    supports_webhooks = True
    supports_polling = True
    entity_type = "item"

    def __init__(self, integration: Mapping[str, Any], *, timeout: float = DEFAULT_TIMEOUT, base_url: str = API_URL):
        self.integration = integration
        self.integration_id = str(integration["id"])
        self.timeout = timeout
        self.api_url = base_url
        self.api_token = credential(integration, "api_token", "apiToken", "monday_api_token")
        self.signing_secret = credential(integration, "signing_secret")
        self.settings, self.filters = split_settings(integration)
        self.board_id = self.settings.get("board_id") or credential(integration, "board_id")
        self.phone_column_id = self.settings.get("phone_column_id")
        self.trigger_event = self.settings.get("trigger_event") or "item_updated"

    def missing_credentials(self, *, for_webhooks: bool = False) -> List[str]:
        missing = [name for name, value in (("api_token", self.api_token), ("board_id", self.board_id)) if not value]
        if for_webhooks and not self.signing_secret:
            missing.append("signing_secret")
        return missing

    async def _graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        data = await request_json(
            "POST",
            self.api_url,
            provider=self.provider,
            headers={"Authorization": self.api_token or "", "API-Version": API_VERSION},
            json_body={"query": query, "variables": variables},
            timeout=self.timeout,
        )
        errors = (data or {}).get("errors") or []
        if errors:
            first = errors[0] if isinstance(errors[0], Mapping) else {"message": str(errors[0])}
            code = str((first.get("extensions") or {}).get("code") or "")
            message = f"Monday GraphQL error: {first.get('message') or code or 'unknown'}"
            if code in TRANSIENT_GRAPHQL_CODES:
                raise CRMTransientError(message, provider=self.provider)
            raise CRMError(message, provider=self.provider)
        return (data or {}).get("data") or {}

    # ------------------------------------------------------------------ polling
    @staticmethod
    def items_query(cursor: Optional[str]) -> Dict[str, Any]:
        """``query_params`` asking Monday for items in ascending ``updated_at`` order.

        Monday compares ``__last_updated__`` by day, so the rule only narrows
        the scan; the exact cut at ``cursor`` happens on our side.
        """
        params: Dict[str, Any] = {"order_by": [{"column_id": LAST_UPDATED_COLUMN, "direction": "asc"}]}
        if cursor:
            params["rules"] = [
                {
                    "column_id": LAST_UPDATED_COLUMN,
                    "compare_value": ["EXACT", parse_timestamp(cursor).date().isoformat()],
                    "operator": "greater_than_or_equals",
                }
            ]
        return params

    async def fetch_changed_since(self, cursor: Optional[str]) -> List[NormalizedEvent]:
        """Page through the board oldest change first and keep items updated at or after ``cursor``.

        At most ``MAX_PAGES`` pages holding new changes are read per call.
        Because the feed is ordered, anything beyond them is newer than every
        returned event and is picked up by the next poll.
        """
        missing = self.missing_credentials()
        if missing:
            raise CRMError(f"Monday integration missing {', '.join(missing)}", provider=self.provider)
        data = await self._graphql(
            FIRST_PAGE_QUERY,
            {"board": [str(self.board_id)], "limit": 100, "query": self.items_query(cursor)},
        )
        boards = data.get("boards") or []
        page = (boards[0] or {}).get("items_page") if boards else None
        events: List[NormalizedEvent] = []
        fresh_pages = 0
        for _ in range(MAX_SCANNED_PAGES):
            if not page:
                break
            found = 0
            for item in page.get("items") or []:
                event = self._event_from_item(item)
                if event is not None and (cursor is None or event.cursor >= cursor):
                    events.append(event)
                    found += 1
            if found:
                fresh_pages += 1
            next_cursor = page.get("cursor")
            if not next_cursor or fresh_pages >= MAX_PAGES:
                break
            data = await self._graphql(NEXT_PAGE_QUERY, {"cursor": next_cursor, "limit": 100})
            page = data.get("next_items_page")
        return sort_events(events, cursor)

    def _contact_from_columns(self, name: Optional[str], columns: List[Mapping[str, Any]]) -> Contact:
        phone = email = None
        for column in columns:
            column_id = str(column.get("id") or "")
            raw = column.get("value")
            try:
                parsed = json.loads(raw) if isinstance(raw, str) and raw else {}
            except ValueError:
                parsed = {}
            if not isinstance(parsed, Mapping):
                parsed = {}
            if phone is None and (column_id == self.phone_column_id or column.get("type") == "phone" or "phone" in column_id):
                phone = parsed.get("phone") or column.get("text") or None
            if email is None and (column.get("type") == "email" or "email" in column_id):
                email = parsed.get("email") or column.get("text") or None
        return Contact.from_full_name(name, phone=phone, email=email)

    def _event_from_item(self, item: Mapping[str, Any]) -> Optional[NormalizedEvent]:
        if not item.get("updated_at") or not matches_filters(item, self.filters):
            return None
        occurred = parse_timestamp(item["updated_at"])
        created = item.get("created_at")
        change_kind = CHANGE_CREATED if created and parse_timestamp(created) == occurred else CHANGE_UPDATED
        return self._build_event(
            str(item.get("id")),
            occurred,
            change_kind,
            self._contact_from_columns(item.get("name"), item.get("column_values") or []),
            dict(item),
        )

    def _build_event(self, entity_id: str, occurred, change_kind: str, contact: Contact, payload: Dict[str, Any]) -> NormalizedEvent:
        cursor = to_cursor(occurred)
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
            payload=payload,
        )

    # ----------------------------------------------------------------- webhooks
    async def register_webhook(self, callback_url: str) -> WebhookHandle:
        missing = self.missing_credentials(for_webhooks=True)
        if missing:
            raise WebhookRegistrationError(f"Monday integration missing {', '.join(missing)}", provider=self.provider)
        event = TRIGGER_EVENTS.get(self.trigger_event, "change_column_value")
        try:
            data = await self._graphql(
                CREATE_WEBHOOK_MUTATION, {"board": str(self.board_id), "url": callback_url, "event": event}
            )
        except CRMError as exc:
            raise WebhookRegistrationError(str(exc), provider=self.provider, status=exc.status) from exc
        webhook_id = (data.get("create_webhook") or {}).get("id")
        if not webhook_id:
            raise WebhookRegistrationError("Monday did not return a webhook id", provider=self.provider)
        return WebhookHandle(webhook_id=str(webhook_id), callback_url=callback_url)

    async def delete_webhook(self, webhook_id: str) -> None:
        await self._graphql(DELETE_WEBHOOK_MUTATION, {"id": str(webhook_id)})

    def verify_webhook_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """Check the HS256 JWT Monday puts in ``Authorization``."""
        token = header(headers, "Authorization") or ""
        if token.lower().startswith("bearer "):
            token = token[7:]
        if not token or not self.signing_secret:
            return False
        try:
            jwt.decode(token.strip(), self.signing_secret, algorithms=["HS256"], options={"verify_aud": False})
        except jwt.InvalidTokenError:
            return False
        return True

    def webhook_challenge(self, payload: Any) -> Optional[Dict[str, Any]]:
        if isinstance(payload, Mapping) and "challenge" in payload and "event" not in payload:
            return {"challenge": payload["challenge"]}
        return None

    async def parse_webhook(self, payload: Any) -> List[NormalizedEvent]:
        if not isinstance(payload, Mapping):
            raise ValueError("Monday webhook payload must be an object")
        event = payload.get("event")
        if not isinstance(event, Mapping) or not event.get("pulseId"):
            return []
        if not matches_filters(event, self.filters):
            return []
        event_type = str(event.get("type") or "")
        if event_type in CREATED_TYPES:
            change_kind = CHANGE_CREATED
        elif event_type in STAGE_TYPES or event.get("columnType") in ("color", "status"):
            change_kind = CHANGE_STAGE
        else:
            change_kind = CHANGE_UPDATED
        value = event.get("value") if isinstance(event.get("value"), Mapping) else {}
        phone = None
        if value and (event.get("columnId") == self.phone_column_id or "phone" in value):
            phone = value.get("phone") or value.get("text")
        contact = Contact.from_full_name(event.get("pulseName"), phone=phone)
        occurred = parse_timestamp(event.get("triggerTime") or event.get("changedAt"))
        return [self._build_event(str(event["pulseId"]), occurred, change_kind, contact, dict(event))]
