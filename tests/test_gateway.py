import asyncio

import aiohttp
import pytest
from aioresponses import aioresponses
from yarl import URL

from async_dispatch_service.gateway import (
    DeliveryGateway,
    DeliveryResult,
    GatewayConfigurationError,
    PERMANENT,
    TRANSIENT,
    build_request,
    classify_http_status,
)

BASE = "http://gateway.local"
TEXT_URL = f"{BASE}/message/sendText/acme-sales"
MEDIA_URL = f"{BASE}/message/sendMedia/acme-sales"


def test_classify_http_status():
    assert classify_http_status(429) == (TRANSIENT, "rate_limited")
    assert classify_http_status(503) == (TRANSIENT, "gateway_unavailable")
    assert classify_http_status(401) == (PERMANENT, "account_disconnected")
    assert classify_http_status(400) == (PERMANENT, "invalid_recipient")
    assert classify_http_status(409) == (PERMANENT, "rejected")


def test_build_request_text_and_media():
    assert build_request("+49 (151) 000-1", {"text": "Hi"}) == ("sendText", {"number": "491510001", "text": "Hi"})

    action, body = build_request(
        "4915100",
        {"text": "See attached", "media": {"url": "https://cdn/x.pdf", "mediatype": "document", "file_name": "x.pdf"}},
    )
    assert action == "sendMedia"
    assert body == {
        "number": "4915100",
        "mediatype": "document",
        "media": "https://cdn/x.pdf",
        "caption": "See attached",
        "fileName": "x.pdf",
    }

    with pytest.raises(ValueError):
        build_request("no digits", {"text": "Hi"})
    with pytest.raises(ValueError):
        build_request("4915100", {})


@pytest.mark.asyncio
async def test_send_text_success_reads_message_id():
    gateway = DeliveryGateway(BASE + "/", "key-1")
    with aioresponses() as m:
        m.post(TEXT_URL, status=201, payload={"key": {"id": "WAMID-1"}, "status": "PENDING"})
        result = await gateway.send("acme-sales", "+49151000", {"text": "Hello"})

        request = m.requests[("POST", URL(TEXT_URL))][0]
        assert request.kwargs["headers"]["apikey"] == "key-1"
        assert request.kwargs["json"] == {"number": "49151000", "text": "Hello"}

    assert result.success is True
    assert result.provider_message_id == "WAMID-1"


@pytest.mark.asyncio
async def test_send_media_uses_media_endpoint():
    gateway = DeliveryGateway(BASE, "key-1")
    with aioresponses() as m:
        m.post(MEDIA_URL, status=200, payload={"messageId": "m-2"})
        result = await gateway.send("acme-sales", "49151000", {"media": {"url": "https://cdn/a.png"}})

    assert result.success is True
    assert result.provider_message_id == "m-2"


@pytest.mark.asyncio
async def test_http_errors_are_classified():
    gateway = DeliveryGateway(BASE, "key-1")
    with aioresponses() as m:
        m.post(TEXT_URL, status=503, body="upstream down")
        m.post(TEXT_URL, status=401, body="x" * 2000)
        unavailable = await gateway.send("acme-sales", "49151000", {"text": "Hello"})
        unauthorized = await gateway.send("acme-sales", "49151000", {"text": "Hello"})

    assert unavailable.is_transient
    assert unavailable.error_code == "gateway_unavailable"
    assert unauthorized.is_transient is False
    assert unauthorized.error_code == "account_disconnected"
    assert len(unauthorized.error) == 500


@pytest.mark.asyncio
async def test_transport_failures_are_transient():
    gateway = DeliveryGateway(BASE, "key-1", timeout=0.5)
    with aioresponses() as m:
        m.post(TEXT_URL, exception=aiohttp.ClientConnectionError("refused"))
        m.post(TEXT_URL, exception=asyncio.TimeoutError())
        refused = await gateway.send("acme-sales", "49151000", {"text": "Hello"})
        timed_out = await gateway.send("acme-sales", "49151000", {"text": "Hello"})

    assert refused.error_kind == TRANSIENT
    assert refused.error_code == "gateway_unavailable"
    assert timed_out.error_kind == TRANSIENT
    assert timed_out.error_code == "timeout"


@pytest.mark.asyncio
async def test_invalid_payload_is_permanent_without_request():
    gateway = DeliveryGateway(BASE, "key-1")
    with aioresponses() as m:
        result = await gateway.send("acme-sales", "49151000", {"text": ""})
        assert not m.requests

    assert result.success is False
    assert result.error_kind == PERMANENT
    assert result.error_code == "invalid_recipient"


@pytest.mark.asyncio
async def test_missing_base_url_is_a_configuration_error():
    with pytest.raises(GatewayConfigurationError):
        await DeliveryGateway(None).send("acme-sales", "49151000", {"text": "Hello"})


@pytest.mark.asyncio
async def test_send_callable_replaces_http():
    calls = []

    async def fake_send(handle, recipient, payload):
        calls.append((handle, recipient, payload))
        return DeliveryResult(True, provider_message_id="fake")

    result = await DeliveryGateway(send_callable=fake_send).send("h", "1", {"text": "x"})
    assert result.provider_message_id == "fake"
    assert calls == [("h", "1", {"text": "x"})]
