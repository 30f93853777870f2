"""
Tests for webhook alert delivery.
"""

import json

import httpx

from bastion.alerts.dispatcher import AlertEvent, WebhookAlert

EVENT = AlertEvent(
    level="critical",
    title="Request neutralized",
    message="XSS payload from 203.0.113.10",
    source_ip="203.0.113.10",
    incident_id="DEF-TEST-ABCDEF",
    metadata={"score": 97.5},
)


async def test_unconfigured_webhook_skips(config):
    assert await WebhookAlert(config=config).send(EVENT) is False


async def test_payload_posted():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(204)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        alert = WebhookAlert(url="http://hooks.test/bastion", client=client)
        assert await alert.send(EVENT) is True

    assert received == [{
        "level": "critical",
        "title": "Request neutralized",
        "message": "XSS payload from 203.0.113.10",
        "source_ip": "203.0.113.10",
        "incident_id": "DEF-TEST-ABCDEF",
        "metadata": {"score": 97.5},
    }]


async def test_delivery_failure_is_reported_not_raised():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))) as client:
        assert await WebhookAlert(url="http://hooks.test/bastion", client=client).send(EVENT) is False

    def down(request):
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(down)) as client:
        assert await WebhookAlert(url="http://hooks.test/bastion", client=client).send(EVENT) is False
