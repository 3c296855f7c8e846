"""
Webhook payload schemas - raw delivery-report input from each provider.
Each provider adapter validates into its own model before normalizing,
so field presence is checked once at the boundary.
"""
from typing import Any, Optional, Union
from pydantic import BaseModel, ConfigDict, Field

Timestamp = Union[int, float, str]


class _ProviderPayload(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)


# --- Gupshup ---

class GupshupEventDetail(_ProviderPayload):
    """Innermost payload: error details for failed events."""
    ts: Optional[Timestamp] = None
    code: Optional[str] = None
    reason: Optional[str] = None


class GupshupMessageEvent(_ProviderPayload):
    id: Optional[str] = None
    gsId: Optional[str] = None
    type: Optional[str] = None  # enqueued, sent, delivered, read, failed
    destination: Optional[str] = None
    payload: GupshupEventDetail = Field(default_factory=GupshupEventDetail)


class GupshupWebhookPayload(_ProviderPayload):
    """Gupshup WhatsApp callback (v2 envelope)."""
    app: Optional[str] = None
    timestamp: Optional[Timestamp] = None
    version: Optional[str] = None
    type: str  # message-event, message, template-event, user-event
    eventId: Optional[str] = None
    payload: GupshupMessageEvent = Field(default_factory=GupshupMessageEvent)


# --- Meta Cloud API ---

class MetaStatusError(_ProviderPayload):
    code: Optional[str] = None
    title: Optional[str] = None
    message: Optional[str] = None


class MetaStatus(_ProviderPayload):
    id: str
    status: str  # sent, delivered, read, failed, deleted
    timestamp: Optional[Timestamp] = None
    recipient_id: Optional[str] = None
    errors: list[MetaStatusError] = Field(default_factory=list)


class MetaChangeValue(_ProviderPayload):
    messaging_product: Optional[str] = None
    metadata: Optional[dict] = None
    statuses: list[MetaStatus] = Field(default_factory=list)
    messages: list[dict] = Field(default_factory=list)


class MetaChange(_ProviderPayload):
    field: Optional[str] = None
    value: MetaChangeValue = Field(default_factory=MetaChangeValue)


class MetaEntry(_ProviderPayload):
    id: Optional[str] = None
    changes: list[MetaChange] = Field(default_factory=list)


class MetaWebhookPayload(_ProviderPayload):
    """Meta WhatsApp Business Account webhook."""
    object: str
    entry: list[MetaEntry] = Field(default_factory=list)


# --- Twilio ---

class TwilioStatusPayload(_ProviderPayload):
    """Twilio delivery status callback (JSON-forwarded form fields)."""
    MessageSid: Optional[str] = None
    MessageStatus: Optional[str] = None  # queued, sent, delivered, undelivered, failed, read
    AccountSid: Optional[str] = None
    To: Optional[str] = None
    From: Optional[str] = None
    Body: Optional[str] = None
    ErrorCode: Optional[str] = None
    ErrorMessage: Optional[str] = None


# --- Generic WABA implementers ---

class GenericStatusPayload(_ProviderPayload):
    """Loosely specified flat payload from generic WABA implementers."""
    message_id: Optional[str] = None
    id: Optional[str] = None
    status: Optional[str] = None
    event: Optional[str] = None
    event_type: Optional[str] = None
    event_id: Optional[str] = None
    timestamp: Optional[Timestamp] = None
    phone: Optional[str] = None
    to: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error: Optional[Any] = None
    message: Optional[Any] = None
