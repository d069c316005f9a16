from __future__ import annotations

import logging
import os
from typing import Any, Mapping, MutableMapping, Optional, Protocol

import httpx
from fastapi.encoders import jsonable_encoder

from .models import ActiveThreat
from .persistence import threat_to_document


logger = logging.getLogger(__name__)


class AlertBroadcaster(Protocol):
    def publish(self, category: str, snapshot: Mapping[str, Any]) -> None: ...


def resolve_webhook_url(default: Optional[str] = None) -> Optional[str]:
    """Return the alert webhook URL from environment or provided default."""
    return os.getenv("ALERT_WEBHOOK_URL", default)


def build_alert_payload(threat: ActiveThreat, *, event: str) -> MutableMapping[str, Any]:
    """Create a JSON-serializable snapshot of a threat for subscribers."""
    payload: MutableMapping[str, Any] = {"event": event, "threat": threat_to_document(threat)}
    return jsonable_encoder(payload)


def deliver_webhook(webhook_url: Optional[str], payload: Mapping[str, Any], timeout: float = 5.0) -> None:
    """Send the payload to the configured webhook endpoint if present."""
    if not webhook_url:
        return

    try:
        with httpx.Client(timeout=timeout) as client:
            response = client.post(str(webhook_url), json=payload)
            response.raise_for_status()
    except Exception as exc:  # delivery is fire-and-forget
        logger.warning("Failed to deliver alert webhook to %s: %s", webhook_url, exc)


class WebhookBroadcaster:
    def __init__(self, webhook_url: str, timeout: float = 5.0):
        self.webhook_url = webhook_url
        self.timeout = timeout

    def publish(self, category: str, snapshot: Mapping[str, Any]) -> None:
        deliver_webhook(self.webhook_url, {"category": category, **snapshot}, timeout=self.timeout)


class LoggingBroadcaster:
    """Fallback used when no webhook is configured."""

    def publish(self, category: str, snapshot: Mapping[str, Any]) -> None:
        threat = snapshot.get("threat", {})
        logger.info(
            "Alert %s [%s] for %s: score=%s",
            snapshot.get("event"),
            category,
            threat.get("employee_id"),
            threat.get("risk_score"),
        )


def default_broadcaster() -> AlertBroadcaster:
    webhook_url = resolve_webhook_url()
    if webhook_url:
        return WebhookBroadcaster(webhook_url)
    return LoggingBroadcaster()
