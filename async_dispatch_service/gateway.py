"""HTTP client for the messaging gateway that actually delivers WhatsApp messages."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from .logger import get_logger

TRANSIENT = "transient"
PERMANENT = "permanent"

ERROR_INVALID_RECIPIENT = "invalid_recipient"
ERROR_ACCOUNT_DISCONNECTED = "account_disconnected"
ERROR_RATE_LIMITED = "rate_limited"
ERROR_GATEWAY_UNAVAILABLE = "gateway_unavailable"
ERROR_TIMEOUT = "timeout"
ERROR_REJECTED = "rejected"

MAX_ERROR_LENGTH = 500

JsonDict = Dict[str, Any]
SendCallable = Callable[[str, str, JsonDict], Awaitable["DeliveryResult"]]


@dataclass
class DeliveryResult:
    """Outcome of one delivery attempt."""

    success: bool
    provider_message_id: Optional[str] = None
    error_kind: Optional[str] = None
    error_code: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_transient(self) -> bool:
        return not self.success and self.error_kind == TRANSIENT


class GatewayConfigurationError(RuntimeError):
    """Raised when the gateway is used without a base URL."""


def _truncate(text: Any) -> str:
    value = str(text or "")
    if len(value) > MAX_ERROR_LENGTH:
        return value[: MAX_ERROR_LENGTH - 3] + "..."
    return value


def classify_http_status(status: int) -> tuple[str, str]:
    """
    Classify a non-2xx gateway response.

    Returns:
        tuple: (error_kind, error_code)
            - 429 and 5xx are transient and will be retried
            - 401/403 mean the account lost its session
            - any other 4xx is a permanent rejection of this message
    """
    if status == 429:
        return TRANSIENT, ERROR_RATE_LIMITED
    if status >= 500:
        return TRANSIENT, ERROR_GATEWAY_UNAVAILABLE
    if status in (401, 403):
        return PERMANENT, ERROR_ACCOUNT_DISCONNECTED
    if status in (400, 404, 422):
        return PERMANENT, ERROR_INVALID_RECIPIENT
    return PERMANENT, ERROR_REJECTED


def build_request(recipient: str, payload: JsonDict) -> tuple[str, JsonDict]:
    """Return ``(endpoint, body)`` for a text or media payload."""
    number = "".join(ch for ch in str(recipient) if ch.isdigit())
    if not number:
        raise ValueError("recipient has no digits")
    media = payload.get("media")
    if media:
        body: JsonDict = {
            "number": number,
            "mediatype": media.get("mediatype") or "image",
            "media": media["url"],
        }
        if media.get("caption") or payload.get("text"):
            body["caption"] = media.get("caption") or payload.get("text")
        if media.get("file_name"):
            body["fileName"] = media["file_name"]
        if media.get("mimetype"):
            body["mimetype"] = media["mimetype"]
        return "sendMedia", body
    text = payload.get("text")
    if not text:
        raise ValueError("payload has neither text nor media")
    return "sendText", {"number": number, "text": text}


class DeliveryGateway:
    """Send messages through an Evolution-style REST gateway."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        timeout: float = 30.0,
        send_callable: Optional[SendCallable] = None,
        logger=None,
    ):
        """Initialise the gateway; ``send_callable`` replaces HTTP delivery in tests."""
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self.timeout = float(timeout)
        self.send_callable = send_callable
        self.logger = logger or get_logger("DeliveryGateway")

    def _endpoint(self, action: str, account_handle: str) -> str:
        if not self.base_url:
            raise GatewayConfigurationError("Delivery gateway base URL is not configured")
        return f"{self.base_url}/message/{action}/{account_handle}"

    @staticmethod
    def _extract_message_id(data: Any) -> Optional[str]:
        if not isinstance(data, dict):
            return None
        key = data.get("key")
        if isinstance(key, dict) and key.get("id"):
            return str(key["id"])
        for field in ("messageId", "id"):
            if data.get(field):
                return str(data[field])
        return None

    async def send(self, account_handle: str, recipient: str, payload: JsonDict) -> DeliveryResult:
        """Deliver ``payload`` to ``recipient`` through the account ``account_handle``.

        Never raises for delivery problems: transport failures and timeouts are
        reported as transient results, malformed payloads as permanent ones.
        """
        if self.send_callable is not None:
            return await self.send_callable(account_handle, recipient, payload)
        try:
            action, body = build_request(recipient, payload)
        except (KeyError, ValueError) as exc:
            return DeliveryResult(False, error_kind=PERMANENT, error_code=ERROR_INVALID_RECIPIENT, error=str(exc))

        url = self._endpoint(action, account_handle)
        headers = {"apikey": self.api_key or "", "Content-Type": "application/json"}
        try:
            async with asyncio.timeout(self.timeout):
                async with aiohttp.ClientSession() as session:
                    async with session.post(url, json=body, headers=headers) as resp:
                        text = await resp.text()
                        if resp.status >= 400:
                            kind, code = classify_http_status(resp.status)
                            self.logger.warning(
                                "Gateway rejected message for %s via %s: HTTP %s",
                                body["number"],
                                account_handle,
                                resp.status,
                            )
                            return DeliveryResult(False, error_kind=kind, error_code=code, error=_truncate(f"HTTP {resp.status}: {text}"))
                        try:
                            data = json.loads(text) if text else {}
                        except ValueError:
                            data = {}
        except (asyncio.TimeoutError, TimeoutError):
            return DeliveryResult(False, error_kind=TRANSIENT, error_code=ERROR_TIMEOUT, error=f"Gateway timeout after {self.timeout}s")
        except (aiohttp.ClientError, OSError) as exc:
            return DeliveryResult(False, error_kind=TRANSIENT, error_code=ERROR_GATEWAY_UNAVAILABLE, error=_truncate(exc))
        return DeliveryResult(True, provider_message_id=self._extract_message_id(data))
