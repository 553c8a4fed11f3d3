"""Shared types, errors and HTTP helpers for the CRM adapters."""

from __future__ import annotations

import asyncio
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

import aiohttp

CHANGE_CREATED = "created"
CHANGE_UPDATED = "updated"
CHANGE_STAGE = "stage_changed"
CHANGE_KINDS = (CHANGE_CREATED, CHANGE_UPDATED, CHANGE_STAGE)

DEFAULT_TIMEOUT = 15.0

JsonDict = Dict[str, Any]


class CRMError(RuntimeError):
    """A CRM call failed in a way that retrying will not fix (bad credentials, bad request)."""

    def __init__(self, message: str, *, provider: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status = status


class CRMTransientError(CRMError):
    """A CRM call failed temporarily (rate limit, 5xx, timeout, network)."""


class WebhookRegistrationError(CRMError):
    """The provider refused to create the webhook subscription."""


class UnknownProviderError(CRMError):
    """No adapter is registered for the requested provider."""


# ---------------------------------------------------------------------- cursors
def to_cursor(value: Any) -> str:
    """Return the fixed-width UTC cursor for a timestamp.

    Accepts aware or naive (UTC) datetimes, ISO-8601 strings with or without
    offset, ``"YYYY-MM-DD HH:MM:SS"`` strings and epoch seconds or milliseconds.
    Cursors compare correctly as plain strings.
    """
    return parse_timestamp(value).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: Any) -> datetime:
    """Parse any provider timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        number = float(value)
        if number > 1e11:
            number /= 1000.0
        dt = datetime.fromtimestamp(number, timezone.utc)
    elif isinstance(value, str) and value.strip():
        dt = datetime.fromisoformat(value.strip())
    else:
        raise ValueError(f"Cannot parse timestamp {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def shift_cursor(cursor: str, seconds: float) -> str:
    """Move a cursor by ``seconds`` (negative values go back in time)."""
    return to_cursor(parse_timestamp(cursor) + timedelta(seconds=seconds))


def make_event_id(entity_type: str, entity_id: Any, cursor: str) -> str:
    """Deterministic id: the same change seen by a webhook and by a poll gets the same id."""
    return f"{entity_type}:{entity_id}:{cursor}"


# ------------------------------------------------------------------------ model
@dataclass
class Contact:
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None

    @property
    def full_name(self) -> Optional[str]:
        return " ".join(part for part in (self.first_name, self.last_name) if part) or None

    @classmethod
    def from_full_name(cls, name: Optional[str], **kwargs: Any) -> "Contact":
        parts = (name or "").split()
        return cls(first_name=parts[0] if parts else None, last_name=" ".join(parts[1:]) or None, **kwargs)


@dataclass
class NormalizedEvent:
    """Provider-independent description of one change in a CRM."""

    provider: str
    integration_id: str
    entity_type: str
    entity_id: str
    change_kind: str
    provider_event_id: str
    cursor: str
    occurred_at: datetime
    contact: Contact = field(default_factory=Contact)
    payload: JsonDict = field(default_factory=dict)

    def as_dict(self) -> JsonDict:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        data["contact"]["full_name"] = self.contact.full_name
        return data


@dataclass
class WebhookHandle:
    webhook_id: str
    callback_url: str


# -------------------------------------------------------------------- protocols
@runtime_checkable
class CRMAdapter(Protocol):
    """What every provider adapter offers."""

    provider: str
    supports_webhooks: bool
    supports_polling: bool

    def missing_credentials(self, *, for_webhooks: bool = False) -> List[str]:
        ...

    async def fetch_changed_since(self, cursor: Optional[str]) -> List[NormalizedEvent]:
        """Return changes with ``event.cursor >= cursor`` in ascending cursor order."""
        ...


@runtime_checkable
class WebhookCapableAdapter(CRMAdapter, Protocol):
    """Extra operations offered by providers with a webhook API."""

    async def register_webhook(self, callback_url: str) -> WebhookHandle:
        ...

    async def delete_webhook(self, webhook_id: str) -> None:
        ...

    def verify_webhook_signature(self, body: bytes, headers: Mapping[str, str]) -> bool:
        ...

    def webhook_challenge(self, payload: Any) -> Optional[JsonDict]:
        ...

    async def parse_webhook(self, payload: Any) -> List[NormalizedEvent]:
        ...


# ---------------------------------------------------------------------- helpers
def get_nested_value(obj: Any, path: str) -> Any:
    """Resolve a dotted path (``"current.stage_id"``) inside nested mappings."""
    if not path or obj is None:
        return None
    current = obj
    for key in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(key)
        else:
            return None
    return current


def matches_filters(record: Any, filters: Optional[Mapping[str, Any]]) -> bool:
    """Return ``True`` when every filter path equals the record value.

    Missing values do not exclude a record; comma separated record values
    match when any element equals the expected value.
    """
    for key, expected in (filters or {}).items():
        actual = get_nested_value(record, key)
        if actual is None:
            continue
        if isinstance(expected, (list, tuple, set)):
            wanted = {str(item) for item in expected}
        else:
            wanted = {str(expected)}
        if str(actual) in wanted:
            continue
        if "," in str(actual) and wanted & {part.strip() for part in str(actual).split(",")}:
            continue
        return False
    return True


def sort_events(events: List[NormalizedEvent], since: Optional[str]) -> List[NormalizedEvent]:
    """Drop events before ``since`` and order the rest by cursor, then id."""
    kept = [event for event in events if since is None or event.cursor >= since]
    return sorted(kept, key=lambda event: (event.cursor, event.provider_event_id))


def first_value(items: Any, key: str = "value") -> Optional[str]:
    """Pick the first ``{"value": ...}`` entry of Pipedrive-style phone/email lists."""
    if isinstance(items, list):
        for item in items:
            if isinstance(item, Mapping) and item.get(key):
                return str(item[key])
            if isinstance(item, str) and item:
                return item
        return None
    if isinstance(items, str) and items:
        return items
    return None


def header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup over a plain mapping."""
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


async def request_json(
    method: str,
    url: str,
    *,
    provider: str,
    headers: Optional[Mapping[str, str]] = None,
    params: Optional[Mapping[str, Any]] = None,
    json_body: Any = None,
    auth: Optional[aiohttp.BasicAuth] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Any:
    """Perform one HTTP call and decode the JSON answer.

    Raises :class:`CRMTransientError` for 429, 5xx, timeouts and connection
    errors and :class:`CRMError` for any other non-2xx answer.
    """
    try:
        async with asyncio.timeout(timeout):
            async with aiohttp.ClientSession() as session:
                async with session.request(
                    method, url, headers=headers, params=params, json=json_body, auth=auth
                ) as resp:
                    text = await resp.text()
                    status = resp.status
    except (asyncio.TimeoutError, TimeoutError) as exc:
        raise CRMTransientError(f"{provider} request timed out after {timeout}s", provider=provider) from exc
    except aiohttp.ClientError as exc:
        raise CRMTransientError(f"{provider} request failed: {exc}", provider=provider) from exc

    if status == 429 or status >= 500:
        raise CRMTransientError(f"{provider} API error: HTTP {status}", provider=provider, status=status)
    if status >= 400:
        raise CRMError(f"{provider} API error: HTTP {status}: {text[:200]}", provider=provider, status=status)
    if not text:
        return {}
    try:
        return json.loads(text)
    except ValueError as exc:
        raise CRMError(f"{provider} returned invalid JSON", provider=provider, status=status) from exc


def credential(integration: Mapping[str, Any], *names: str) -> Optional[str]:
    """Return the first non-empty credential among ``names``."""
    creds = integration.get("credentials") or {}
    for name in names:
        value = creds.get(name)
        if value:
            return str(value)
    return None


def split_settings(integration: Mapping[str, Any]) -> Tuple[JsonDict, JsonDict]:
    """Return ``(settings, filters)`` of an integration."""
    settings = dict(integration.get("settings") or {})
    filters = dict(settings.get("filters") or {})
    return settings, filters
