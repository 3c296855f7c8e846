"""
Generic WABA implementers and anything we can't identify.
Flat payload: message_id/id, status/event, event_id, timestamp, phone/to.
"""
from datetime import datetime
from typing import Optional

from deliveryledger.providers.base import ProviderAdapter, parse_timestamp
from deliveryledger.schemas.normalized_event import NormalizedEvent
from deliveryledger.schemas.webhook_payloads import GenericStatusPayload


class GenericAdapter(ProviderAdapter):
    name = "generic"
    payload_model = GenericStatusPayload
    detectable = False

    def matches(self, payload: dict) -> bool:
        return False

    def categorize(self, payload: dict) -> str:
        raw_status = payload.get("status") or payload.get("event") or payload.get("event_type")
        if raw_status:
            return self.status_category(str(raw_status))
        if payload.get("message") is not None or payload.get("text") is not None:
            return "inbound"
        return "unknown"

    def normalize_all(
        self, payload: dict, received_at: Optional[datetime] = None,
    ) -> list[NormalizedEvent]:
        parsed = self.parse(payload)
        if parsed is None:
            return []

        message_id = parsed.message_id or parsed.id
        raw_status = parsed.status or parsed.event or parsed.event_type
        if not message_id or not raw_status:
            return []

        error_reason = parsed.error_message
        if error_reason is None and parsed.error is not None:
            error_reason = str(parsed.error)

        return [
            NormalizedEvent(
                provider=self.name,
                event_type=self.map_status(raw_status),
                raw_status=raw_status,
                provider_message_id=message_id,
                provider_event_id=parsed.event_id or f"{message_id}_{raw_status}",
                event_timestamp=parse_timestamp(parsed.timestamp, received_at),
                status_code=parsed.error_code,
                error_reason=error_reason,
                destination=parsed.phone or parsed.to,
                raw_payload=payload,
            )
        ]
