"""
Provider registry - detection and dispatch over the registered adapters.

Adding a provider means writing an adapter and calling register_adapter();
the state machine never branches on provider names.
"""
import logging
from datetime import datetime
from typing import Mapping, Optional

from deliveryledger.providers.base import ProviderAdapter
from deliveryledger.providers.generic import GenericAdapter
from deliveryledger.providers.gupshup import GupshupAdapter
from deliveryledger.providers.meta import MetaAdapter
from deliveryledger.providers.twilio import TwilioAdapter
from deliveryledger.schemas.normalized_event import NormalizedEvent

logger = logging.getLogger(__name__)

UNKNOWN_PROVIDER = "unknown"
PROVIDER_HEADER = "x-provider"

# Insertion order is detection order
_ADAPTERS: dict[str, ProviderAdapter] = {}
_FALLBACK = GenericAdapter()


def register_adapter(adapter: ProviderAdapter) -> None:
    if not adapter.name:
        raise ValueError("Provider adapter must declare a name")
    _ADAPTERS[adapter.name] = adapter


def registered_providers() -> list[str]:
    return list(_ADAPTERS)


def get_adapter(provider: Optional[str]) -> ProviderAdapter:
    """Adapter for a provider name. Unknown names are served by the generic adapter."""
    if provider and provider in _ADAPTERS:
        return _ADAPTERS[provider]
    return _FALLBACK


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def detect_provider(
    headers: Mapping[str, str],
    payload: dict,
    hint: Optional[str] = None,
) -> str:
    """
    Work out which provider sent a payload.

    Priority: explicit hint (route path), X-Provider header, then payload
    shape heuristics in registration order. Never fails: unrecognised
    payloads are attributed to "unknown".
    """
    for explicit in (hint, _header(headers, PROVIDER_HEADER)):
        if explicit:
            name = explicit.strip().lower()
            if name in _ADAPTERS:
                return name
            logger.debug("Ignoring unregistered provider hint %r", explicit)

    if isinstance(payload, dict):
        for name, adapter in _ADAPTERS.items():
            if adapter.detectable and adapter.matches(payload):
                return name
    return UNKNOWN_PROVIDER


def categorize(payload: dict, provider: str) -> str:
    if not isinstance(payload, dict):
        return "unknown"
    return get_adapter(provider).categorize(payload)


def normalize(
    payload: dict, provider: str, received_at: Optional[datetime] = None,
) -> Optional[NormalizedEvent]:
    """First delivery report in the payload, or None."""
    events = normalize_all(payload, provider, received_at)
    return events[0] if events else None


def normalize_all(
    payload: dict, provider: str, received_at: Optional[datetime] = None,
) -> list[NormalizedEvent]:
    if not isinstance(payload, dict):
        return []
    events = get_adapter(provider).normalize_all(payload, received_at)
    if provider == UNKNOWN_PROVIDER:
        # Keep attribution honest for payloads served by the fallback adapter
        events = [e.model_copy(update={"provider": UNKNOWN_PROVIDER}) for e in events]
    return events


for _adapter in (MetaAdapter(), GupshupAdapter(), TwilioAdapter(), GenericAdapter()):
    register_adapter(_adapter)
