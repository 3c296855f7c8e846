"""
Critical alerting - notifies operators of failures the providers never see.

Alert channels:
1. Structured log (always) - at ERROR/CRITICAL level
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var

Rate limiting: per-type cooldowns stored in Redis (SET NX EX), with an
in-memory fallback when Redis is unavailable.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "webhook_signature_invalid": 900,
    "reconciliation_anomalies": 3600,
}

# alert_type -> monotonic expiry, used only when Redis is down
_local_cooldowns: dict[str, float] = {}


def _get_cooldown_seconds(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


class AlertType:
    """Alert type constants."""
    WEBHOOK_PROCESSING_FAILED = "webhook_processing_failed"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    RECONCILIATION_FAILED = "reconciliation_failed"
    RECONCILIATION_ANOMALIES = "reconciliation_anomalies"
    HEALTH_CHECK_FAILED = "health_check_failed"


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> bool:
    """
    Send an alert through all configured channels.
    Returns False when suppressed by the cooldown.
    """
    if not await _acquire_cooldown(alert_type):
        return False

    from deliveryledger.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, severity, cid, extra)
    return True


async def _acquire_cooldown(alert_type: str) -> bool:
    """Atomically check-and-set the cooldown for an alert type. True if the alert may fire."""
    cooldown = _get_cooldown_seconds(alert_type)

    try:
        from deliveryledger.utils.cache import get_redis
        redis = await get_redis()
        acquired = await redis.set(
            f"deliveryledger:alert_cooldown:{alert_type}", "1", nx=True, ex=cooldown,
        )
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        if now < _local_cooldowns.get(alert_type, 0):
            return False
        _local_cooldowns[alert_type] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Post the alert to the configured Discord/Slack webhook."""
    try:
        from deliveryledger.config import get_settings
        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        import httpx

        content = f"[{severity.upper()}] **{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        if extra:
            for key, val in extra.items():
                content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content})
    except Exception as e:
        # Alert delivery must never take down the caller
        logger.warning("Failed to send webhook alert: %s", str(e))
