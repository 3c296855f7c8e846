"""
NormalizedEvent - the canonical delivery report every provider payload is
mapped into. The delivery state machine only ever sees this shape.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

# Statuses that move a MessageLog; anything else is recorded as ignored
EVENT_TYPES = ("sent", "delivered", "read", "failed", "rejected", "expired")
TERMINAL_EVENT_TYPES = ("failed", "rejected", "expired")


class NormalizedEvent(BaseModel):
    """One status change for one outbound message, as asserted by a provider."""
    provider: str = Field(..., description="gupshup, meta, twilio, generic or unknown")
    event_type: str = Field(..., description="Canonical status: pending, sent, delivered, read, failed, rejected, expired")
    raw_status: Optional[str] = Field(default=None, description="Status string exactly as the provider sent it")
    provider_message_id: str
    provider_event_id: Optional[str] = Field(default=None, description="Provider-scoped id used for idempotency")
    event_timestamp: datetime = Field(..., description="Provider-asserted event time (UTC)")
    status_code: Optional[str] = None
    error_reason: Optional[str] = None
    destination: Optional[str] = None
    raw_payload: dict = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.event_type in TERMINAL_EVENT_TYPES

    @property
    def is_status_event(self) -> bool:
        return self.event_type in EVENT_TYPES
