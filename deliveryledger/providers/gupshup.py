"""
Gupshup WhatsApp callbacks.

Envelope: {"app", "timestamp", "type": "message-event", "payload": {"id", "gsId",
"type": "delivered", "destination", "payload": {"code", "reason"}}}
"""
from datetime import datetime
from typing import Optional

from deliveryledger.providers.base import ProviderAdapter, parse_timestamp
from deliveryledger.schemas.normalized_event import NormalizedEvent
from deliveryledger.schemas.webhook_payloads import GupshupWebhookPayload

_GUPSHUP_TYPES = ("message", "message-event", "template-event", "user-event")


class GupshupAdapter(ProviderAdapter):
    name = "gupshup"
    payload_model = GupshupWebhookPayload

    def matches(self, payload: dict) -> bool:
        return "app" in payload or payload.get("type") in _GUPSHUP_TYPES

    def categorize(self, payload: dict) -> str:
        kind = payload.get("type")
        if kind == "message-event":
            inner = payload.get("payload") or {}
            return self.status_category(inner.get("type") if isinstance(inner, dict) else None)
        if kind == "message":
            return "inbound"
        if kind == "template-event":
            return "template_status"
        if kind == "user-event":
            return "system"
        return "unknown"

    def normalize_all(
        self, payload: dict, received_at: Optional[datetime] = None,
    ) -> list[NormalizedEvent]:
        parsed = self.parse(payload)
        if parsed is None or parsed.type != "message-event":
            return []

        event = parsed.payload
        message_id = event.gsId or event.id
        if not message_id:
            return []

        raw_status = event.type or ""
        return [
            NormalizedEvent(
                provider=self.name,
                event_type=self.map_status(raw_status),
                raw_status=raw_status,
                provider_message_id=message_id,
                provider_event_id=parsed.eventId or f"{message_id}_{raw_status}",
                event_timestamp=parse_timestamp(parsed.timestamp or event.payload.ts, received_at),
                status_code=event.payload.code,
                error_reason=event.payload.reason,
                destination=event.destination,
                raw_payload=payload,
            )
        ]
