"""
Twilio status callbacks, forwarded as JSON. Twilio sends no event time,
so the receipt time stands in for it.
"""
from datetime import datetime
from typing import Optional

from deliveryledger.providers.base import ProviderAdapter, STATUS_MAP, parse_timestamp
from deliveryledger.schemas.normalized_event import NormalizedEvent
from deliveryledger.schemas.webhook_payloads import TwilioStatusPayload


class TwilioAdapter(ProviderAdapter):
    name = "twilio"
    payload_model = TwilioStatusPayload
    status_map = {**STATUS_MAP, "receiving": "pending", "received": "pending"}

    def matches(self, payload: dict) -> bool:
        return "AccountSid" in payload or "MessageSid" in payload

    def categorize(self, payload: dict) -> str:
        if payload.get("MessageStatus"):
            return self.status_category(payload["MessageStatus"])
        if payload.get("Body") is not None:
            return "inbound"
        return "unknown"

    def normalize_all(
        self, payload: dict, received_at: Optional[datetime] = None,
    ) -> list[NormalizedEvent]:
        parsed = self.parse(payload)
        if parsed is None or not parsed.MessageSid or not parsed.MessageStatus:
            return []

        return [
            NormalizedEvent(
                provider=self.name,
                event_type=self.map_status(parsed.MessageStatus),
                raw_status=parsed.MessageStatus,
                provider_message_id=parsed.MessageSid,
                provider_event_id=f"{parsed.MessageSid}_{parsed.MessageStatus}",
                event_timestamp=parse_timestamp(None, received_at),
                status_code=parsed.ErrorCode,
                error_reason=parsed.ErrorMessage,
                destination=parsed.To,
                raw_payload=payload,
            )
        ]
