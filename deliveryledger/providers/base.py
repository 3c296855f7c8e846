"""
Provider adapter interface - every messaging provider implements this.
Adapters are pure: payload dict in, NormalizedEvent out. No I/O.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ValidationError

from deliveryledger.schemas.normalized_event import NormalizedEvent, EVENT_TYPES

logger = logging.getLogger(__name__)

# Shared status table. Unmapped strings fall back to pending.
STATUS_MAP: dict[str, str] = {
    "enqueued": "pending",
    "queued": "pending",
    "accepted": "pending",
    "scheduled": "pending",
    "submitted": "pending",
    "sending": "pending",
    "sent": "sent",
    "delivered": "delivered",
    "read": "read",
    "seen": "read",
    "failed": "failed",
    "undelivered": "failed",
    "error": "failed",
    "canceled": "failed",
    "rejected": "rejected",
    "blocked": "rejected",
    "expired": "expired",
    "deleted": "expired",
}

# Epoch values above this are milliseconds
_EPOCH_MS_THRESHOLD = 10**12


def parse_timestamp(value, fallback: Optional[datetime] = None) -> datetime:
    """
    Parse a provider timestamp: epoch seconds, epoch milliseconds or ISO-8601.
    Missing or unparseable values fall back to the given time (or now).
    """
    if value is not None and value != "":
        try:
            if isinstance(value, (int, float)) or str(value).replace(".", "", 1).isdigit():
                number = float(value)
                if number > _EPOCH_MS_THRESHOLD:
                    number = number / 1000
                return datetime.fromtimestamp(number, tz=timezone.utc)
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
        except (ValueError, OverflowError, OSError):
            logger.debug("Unparseable provider timestamp %r, using fallback", value)
    return fallback or datetime.now(timezone.utc)


class ProviderAdapter(ABC):
    """Base class for provider adapters. Subclasses register via register_adapter()."""

    name: str = ""
    payload_model: type[BaseModel]
    status_map: dict[str, str] = STATUS_MAP
    # Generic adapters serve unknown payloads but never claim them by shape
    detectable: bool = True

    def map_status(self, raw_status: Optional[str]) -> str:
        if not raw_status:
            return "pending"
        return self.status_map.get(raw_status.strip().lower(), "pending")

    def status_category(self, raw_status: Optional[str]) -> str:
        """Category for a status string: one of the event types, or unknown."""
        mapped = self.map_status(raw_status)
        return mapped if mapped in EVENT_TYPES else "unknown"

    def parse(self, payload: dict) -> Optional[BaseModel]:
        """Validate the raw payload into this provider's schema. None if it doesn't fit."""
        try:
            return self.payload_model.model_validate(payload)
        except ValidationError as e:
            logger.warning(
                "%s payload failed validation: %d errors",
                self.name, e.error_count(),
                extra={"provider": self.name},
            )
            return None

    @abstractmethod
    def matches(self, payload: dict) -> bool:
        """Shape heuristic: does this payload look like it came from this provider?"""
        ...

    @abstractmethod
    def categorize(self, payload: dict) -> str:
        """
        Classify a payload: sent, delivered, read, failed, rejected, expired,
        inbound, template_status, system or unknown.
        """
        ...

    @abstractmethod
    def normalize_all(
        self, payload: dict, received_at: Optional[datetime] = None,
    ) -> list[NormalizedEvent]:
        """Every delivery report in the payload, in payload order."""
        ...

    def normalize(
        self, payload: dict, received_at: Optional[datetime] = None,
    ) -> Optional[NormalizedEvent]:
        events = self.normalize_all(payload, received_at)
        return events[0] if events else None
