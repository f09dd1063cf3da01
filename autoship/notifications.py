"""Outbound notifications.

Sends workflow notifications by e-mail through Resend or SendGrid. Without
an API key the notification is printed to the console instead. Delivery
failures are reported and never raised; a notification must not change the
outcome of a workflow.
"""

from __future__ import annotations

import html

import httpx
from rich.console import Console
from rich.panel import Panel

from autoship.config import NotificationConfig
from autoship.models import Notification, NotificationPriority

console = Console()

RESEND_URL = "https://api.resend.com/emails"
SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"

_PRIORITY_STYLE = {
    NotificationPriority.LOW: "dim",
    NotificationPriority.NORMAL: "cyan",
    NotificationPriority.HIGH: "bold red",
}


def render_html(body: str) -> str:
    return f"<pre style=\"font-family: monospace; white-space: pre-wrap;\">{html.escape(body)}</pre>"


class Notifier:
    """Delivers notifications to the configured e-mail provider."""

    def __init__(self, config: NotificationConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0), transport=self._transport)

    def _request(self, notification: Notification) -> tuple[str, dict[str, str], dict]:
        subject = notification.subject
        if notification.priority is NotificationPriority.HIGH:
            subject = f"[URGENT] {subject}"
        content = render_html(notification.body)

        if self.config.provider == "sendgrid":
            return (
                SENDGRID_URL,
                {"Authorization": f"Bearer {self.config.api_key}"},
                {
                    "personalizations": [{"to": [{"email": self.config.to_address}]}],
                    "from": {"email": self.config.from_address},
                    "subject": subject,
                    "content": [{"type": "text/html", "value": content}],
                },
            )
        return (
            RESEND_URL,
            {"Authorization": f"Bearer {self.config.api_key}"},
            {
                "from": self.config.from_address,
                "to": [self.config.to_address],
                "subject": subject,
                "html": content,
            },
        )

    async def send(self, notification: Notification) -> bool:
        """Deliver ``notification``. Returns whether it was sent by e-mail."""
        if not self.config.api_key or not self.config.to_address:
            style = _PRIORITY_STYLE.get(notification.priority, "cyan")
            console.print(Panel(notification.body, title=notification.subject, border_style=style))
            return False

        url, headers, payload = self._request(notification)
        try:
            async with self._client() as client:
                response = await client.post(url, headers=headers, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            console.print(f"[yellow]Notification '{notification.subject}' not delivered: {exc}[/yellow]")
            return False

        console.print(f"[dim]Notification sent via {self.config.provider}: {notification.subject}[/dim]")
        return True


class RecordingNotifier:
    """Keeps notifications in memory. Used by tests and dry runs."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> bool:
        self.sent.append(notification)
        return True

    def subjects(self) -> list[str]:
        return [n.subject for n in self.sent]
