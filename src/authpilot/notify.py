"""Webhook alerts for security incidents.

:class:`WebhookNotifier` posts a Discord-compatible payload: a mention in
``content`` so the alert pings people, and a red embed listing the
account, the reason and the action taken. Delivery is best-effort; HTTP
failures are logged as warnings and never raised.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from authpilot import output
from authpilot.collaborators import IncidentNotifier
from authpilot.models import NotificationConfig, SecurityIncident, Severity
from authpilot.output import redact_email

_COLORS = {Severity.CRITICAL: 0xFF0000, Severity.WARNING: 0xFFA500}


def build_payload(incident: SecurityIncident, severity: Severity, config: NotificationConfig) -> dict[str, Any]:
    """Return the JSON body posted to the webhook."""
    account = redact_email(incident.account) if config.redact_emails else incident.account
    title = "Global security standby engaged"
    lines = [
        f"Account: {account}",
        f"Reason: {incident.kind.value}",
        *(f"Details: {detail}" for detail in incident.details),
        "Action: Pausing all further accounts until this is reviewed.",
    ]
    if incident.docs_url:
        lines.append(f"Docs: {incident.docs_url}")
    content = f"{config.mention} {title}".strip() if config.mention else title
    return {
        "username": config.username,
        "content": content,
        "embeds": [
            {
                "title": f"{title} ({severity.value})",
                "description": "\n".join(lines),
                "color": _COLORS.get(severity, 0xFF0000),
            }
        ],
    }


class WebhookNotifier(IncidentNotifier):
    """Posts incident alerts to a webhook URL with :mod:`httpx`.

    Args:
        config: Webhook URL and formatting options. Without a URL the
            notifier does nothing.
        transport: Optional transport, used by tests to intercept requests.
    """

    def __init__(
        self,
        config: NotificationConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config
        self._transport = transport

    async def send_incident_alert(self, incident: SecurityIncident, severity: Severity) -> None:
        if not self._config.webhook_url:
            output.log("ALERT", "No webhook configured; incident alert not sent", "debug")
            return
        payload = build_payload(incident, severity, self._config)
        try:
            async with httpx.AsyncClient(
                timeout=self._config.timeout, transport=self._transport
            ) as client:
                response = await client.post(self._config.webhook_url, json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            output.log("ALERT", f"Failed to send standby alert: {exc}", "warn")
            return
        output.log("ALERT", "Security standby alert sent")
