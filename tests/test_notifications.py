"""Unit tests for outbound notifications (autoship.notifications).

Tests cover:
- Console fallback without credentials
- Resend and SendGrid request payloads
- Urgent subject prefix for high-priority notifications
- Delivery failures reported, never raised
"""

from __future__ import annotations

import json

import httpx
import pytest

from autoship.config import NotificationConfig
from autoship.models import Notification, NotificationPriority
from autoship.notifications import (
    RESEND_URL,
    SENDGRID_URL,
    Notifier,
    RecordingNotifier,
    render_html,
)


def _capture(status: int = 200) -> tuple[httpx.MockTransport, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status, json={"id": "msg-1"})

    return httpx.MockTransport(handler), seen


CONFIGURED = {"api_key": "re_test", "from_address": "bot@example.com", "to_address": "ops@example.com"}


class TestNotifier:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_console_fallback_without_key(self):
        transport, seen = _capture()
        sent = await Notifier(NotificationConfig(), transport).send(Notification(subject="s", body="b"))
        assert sent is False
        assert seen == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resend_payload(self):
        transport, seen = _capture()
        notifier = Notifier(NotificationConfig(**CONFIGURED), transport)

        sent = await notifier.send(Notification(subject="Task Completed", body="<done>"))

        assert sent
        request = seen[0]
        assert str(request.url) == RESEND_URL
        assert request.headers["Authorization"] == "Bearer re_test"
        payload = json.loads(request.content)
        assert payload["to"] == ["ops@example.com"]
        assert payload["subject"] == "Task Completed"
        assert "&lt;done&gt;" in payload["html"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sendgrid_payload_and_urgency(self):
        transport, seen = _capture(202)
        notifier = Notifier(NotificationConfig(provider="sendgrid", **CONFIGURED), transport)

        await notifier.send(
            Notification(subject="LOOP DETECTED: x", body="b", priority=NotificationPriority.HIGH)
        )

        request = seen[0]
        assert str(request.url) == SENDGRID_URL
        payload = json.loads(request.content)
        assert payload["subject"] == "[URGENT] LOOP DETECTED: x"
        assert payload["personalizations"] == [{"to": [{"email": "ops@example.com"}]}]
        assert payload["from"] == {"email": "bot@example.com"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_error_not_raised(self):
        transport, _ = _capture(500)
        sent = await Notifier(NotificationConfig(**CONFIGURED), transport).send(Notification(subject="s", body="b"))
        assert sent is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_not_raised(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("no route", request=request)

        notifier = Notifier(NotificationConfig(**CONFIGURED), httpx.MockTransport(handler))
        assert await notifier.send(Notification(subject="s", body="b")) is False


class TestHelpers:
    @pytest.mark.unit
    def test_render_html_escapes(self):
        assert "&lt;script&gt;" in render_html("<script>")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_recording_notifier(self):
        notifier = RecordingNotifier()
        await notifier.send(Notification(subject="a", body="b"))
        assert notifier.subjects() == ["a"]
