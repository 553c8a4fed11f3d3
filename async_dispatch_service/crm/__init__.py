"""CRM adapters and the registry that picks one per integration."""

from typing import Any, Callable, Dict, Mapping

from .activecampaign import ActiveCampaignAdapter
from .base import (
    CHANGE_CREATED,
    CHANGE_KINDS,
    CHANGE_STAGE,
    CHANGE_UPDATED,
    Contact,
    CRMAdapter,
    CRMError,
    CRMTransientError,
    NormalizedEvent,
    UnknownProviderError,
    WebhookCapableAdapter,
    WebhookHandle,
    WebhookRegistrationError,
    shift_cursor,
    to_cursor,
)
from .close import CloseAdapter
from .hubspot import HubSpotAdapter
from .monday import MondayAdapter
from .pipedrive import PipedriveAdapter

AdapterFactory = Callable[[Mapping[str, Any]], CRMAdapter]

ADAPTERS: Dict[str, Callable[..., CRMAdapter]] = {
    PipedriveAdapter.provider: PipedriveAdapter,
    MondayAdapter.provider: MondayAdapter,
    HubSpotAdapter.provider: HubSpotAdapter,
    CloseAdapter.provider: CloseAdapter,
    ActiveCampaignAdapter.provider: ActiveCampaignAdapter,
}


def get_adapter(integration: Mapping[str, Any], **kwargs: Any) -> CRMAdapter:
    """Instantiate the adapter registered for ``integration["provider"]``."""
    provider = str(integration.get("provider") or "").lower()
    try:
        adapter_cls = ADAPTERS[provider]
    except KeyError:
        raise UnknownProviderError(f"Unsupported CRM provider '{provider}'", provider=provider) from None
    return adapter_cls(integration, **kwargs)


__all__ = [
    "ADAPTERS",
    "AdapterFactory",
    "ActiveCampaignAdapter",
    "CHANGE_CREATED",
    "CHANGE_KINDS",
    "CHANGE_STAGE",
    "CHANGE_UPDATED",
    "CloseAdapter",
    "Contact",
    "CRMAdapter",
    "CRMError",
    "CRMTransientError",
    "HubSpotAdapter",
    "MondayAdapter",
    "NormalizedEvent",
    "PipedriveAdapter",
    "UnknownProviderError",
    "WebhookCapableAdapter",
    "WebhookHandle",
    "WebhookRegistrationError",
    "get_adapter",
    "shift_cursor",
    "to_cursor",
]
