import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

import httpx
from fastapi.encoders import jsonable_encoder

from dynacrud.core.schemas import NotificationTarget, WebhookConfig

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def replace_placeholders(text: str, data: Mapping[str, Any], record_id: int) -> str:
    """Fill {{field}} and {{id}} placeholders in a subject or template."""

    def substitute(match):
        key = match.group(1)
        if key == "id":
            return str(record_id)
        return str(data.get(key, ""))

    return PLACEHOLDER.sub(substitute, text)


class NotificationManager:
    """
    Builds email and webhook notifications for created/updated entities.

    Delivery is left to subclasses: override send_email and call_webhook to
    plug in a transport. The base class only logs and records what it would
    have sent, which is what the tests inspect.
    """

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def send_email_notifications(
        self, config: NotificationTarget, data: Mapping[str, Any], record_id: int
    ) -> None:
        if not config.email:
            return

        subject = replace_placeholders(config.subject, data, record_id)
        for recipient in config.email:
            if config.template:
                body = replace_placeholders(config.template, data, record_id)
            else:
                body = str(jsonable_encoder(dict(data)))
            self.send_email(recipient, subject, body)

    def trigger_webhooks(
        self, webhooks: List[WebhookConfig], event: str, data: Mapping[str, Any], record_id: int
    ) -> None:
        for webhook in webhooks:
            if webhook.event is not None and webhook.event != event:
                continue

            payload = {
                "event": event,
                "id": record_id,
                "data": jsonable_encoder(dict(data)),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
            self.call_webhook(webhook.url, webhook.method, payload, webhook.headers)

    def send_email(self, to: str, subject: str, body: str) -> None:
        logger.info(f"Email notification to {to}: {subject}")
        self.sent.append({"kind": "email", "to": to, "subject": subject, "body": body})

    def call_webhook(
        self, url: str, method: str, payload: Dict[str, Any], headers: Dict[str, str]
    ) -> None:
        logger.info(f"Webhook {method} {url} for event {payload['event']}")
        self.sent.append(
            {"kind": "webhook", "url": url, "method": method, "payload": payload, "headers": headers}
        )


class HttpNotificationManager(NotificationManager):
    """Delivers webhooks over HTTP. Email still goes through send_email."""

    def __init__(self, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        super().__init__()
        self.timeout = timeout
        self.transport = transport

    def call_webhook(
        self, url: str, method: str, payload: Dict[str, Any], headers: Dict[str, str]
    ) -> None:
        super().call_webhook(url, method, payload, headers)

        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.request(method, url, json=payload, headers=headers)
            response.raise_for_status()
