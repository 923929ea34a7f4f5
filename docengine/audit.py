"""
Audit event sinks.

Every gatekeeper classify/route decision emits a structured event. Delivery
is best-effort: a failing sink logs a warning and never affects the caller.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

import httpx

logger = logging.getLogger(__name__)


# Event kinds
DOC_GATEKEEPER_CLASSIFY_REQUESTED = "DOC_GATEKEEPER_CLASSIFY_REQUESTED"
DOC_GATEKEEPER_CLASSIFIED = "DOC_GATEKEEPER_CLASSIFIED"
DOC_GATEKEEPER_CLASSIFY_FAILED = "DOC_GATEKEEPER_CLASSIFY_FAILED"
DOC_ROUTED_TO_GOOGLE_DOCAI = "DOC_ROUTED_TO_GOOGLE_DOCAI"
DOC_ROUTED_TO_STANDARD = "DOC_ROUTED_TO_STANDARD"
DOC_ROUTED_TO_REVIEW = "DOC_ROUTED_TO_REVIEW"


@dataclass
class AuditEvent:
    """One structured audit event."""
    kind: str
    deal_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    emitted_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "deal_id": self.deal_id,
            "payload": self.payload,
            "emitted_at": self.emitted_at,
        }


class AuditSink:
    """Audit sink interface."""

    def emit(self, event: AuditEvent) -> None:
        raise NotImplementedError


class InMemoryAuditSink(AuditSink):
    """Keeps events in memory."""

    def __init__(self):
        self.events: List[AuditEvent] = []
        self._lock = threading.Lock()

    def emit(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)

    def kinds(self) -> List[str]:
        return [e.kind for e in self.events]


class WebhookAuditSink(AuditSink):
    """POSTs each event as JSON to a webhook URL."""

    def __init__(self, url: str, client: Optional[httpx.Client] = None, timeout: float = 5.0):
        self.url = url
        self.client = client or httpx.Client(
            timeout=timeout,
            headers={"Content-Type": "application/json"},
        )

    def emit(self, event: AuditEvent) -> None:
        response = self.client.post(self.url, json=event.to_dict())
        response.raise_for_status()

    def close(self) -> None:
        self.client.close()


def safe_emit(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """Emit an event, logging and swallowing any delivery failure."""
    if sink is None:
        return
    try:
        sink.emit(event)
    except Exception as e:
        logger.warning(f"Audit event {event.kind} for deal {event.deal_id} not delivered: {e}")


def build_audit_sink(webhook_url: Optional[str]) -> AuditSink:
    """Webhook sink when a URL is configured, else in-memory."""
    if webhook_url:
        return WebhookAuditSink(webhook_url)
    return InMemoryAuditSink()
