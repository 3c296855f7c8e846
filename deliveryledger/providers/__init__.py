from deliveryledger.providers.registry import (
    UNKNOWN_PROVIDER,
    categorize,
    detect_provider,
    get_adapter,
    normalize,
    normalize_all,
    register_adapter,
    registered_providers,
)

__all__ = [
    "UNKNOWN_PROVIDER",
    "categorize",
    "detect_provider",
    "get_adapter",
    "normalize",
    "normalize_all",
    "register_adapter",
    "registered_providers",
]
