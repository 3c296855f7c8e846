"""
Meta WhatsApp Cloud API webhooks. One call may batch several statuses
across entries and changes; each becomes its own NormalizedEvent.
"""
from datetime import datetime
from typing import Optional

from deliveryledger.providers.base import ProviderAdapter, parse_timestamp
from deliveryledger.schemas.normalized_event import NormalizedEvent
from deliveryledger.schemas.webhook_payloads import MetaWebhookPayload

META_OBJECT = "whatsapp_business_account"


class MetaAdapter(ProviderAdapter):
    name = "meta"
    payload_model = MetaWebhookPayload

    def matches(self, payload: dict) -> bool:
        return payload.get("object") == META_OBJECT

    def categorize(self, payload: dict) -> str:
        try:
            value = payload["entry"][0]["changes"][0]["value"]
        except (KeyError, IndexError, TypeError):
            return "unknown"
        if value.get("statuses"):
            return self.status_category(value["statuses"][0].get("status"))
        if value.get("messages"):
            return "inbound"
        if payload["entry"][0]["changes"][0].get("field") == "message_template_status_update":
            return "template_status"
        return "system"

    def normalize_all(
        self, payload: dict, received_at: Optional[datetime] = None,
    ) -> list[NormalizedEvent]:
        parsed = self.parse(payload)
        if parsed is None:
            return []

        events = []
        for entry in parsed.entry:
            for change in entry.changes:
                for status in change.value.statuses:
                    error = status.errors[0] if status.errors else None
                    events.append(
                        NormalizedEvent(
                            provider=self.name,
                            event_type=self.map_status(status.status),
                            raw_status=status.status,
                            provider_message_id=status.id,
                            provider_event_id=f"{status.id}_{status.status}_{status.timestamp or ''}",
                            event_timestamp=parse_timestamp(status.timestamp, received_at),
                            status_code=error.code if error else None,
                            error_reason=(error.title or error.message) if error else None,
                            destination=status.recipient_id,
                            raw_payload=payload,
                        )
                    )
        return events
