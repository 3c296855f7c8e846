"""
Tests for deliveryledger/utils - locks, alert cooldowns, structured logging
and timing helpers.
"""
import json
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from deliveryledger.utils import alerting
from deliveryledger.utils.alerting import AlertType, send_alert
from deliveryledger.utils.locks import LockTimeoutError, message_lock
from deliveryledger.utils.logging import (
    StructuredJsonFormatter,
    generate_correlation_id,
    mask_phone,
    set_correlation_id,
)
from deliveryledger.utils.metrics import Timer, as_utc, seconds_between


# ---------------------------------------------------------------------------
# message_lock
# ---------------------------------------------------------------------------


class TestMessageLock:
    async def test_acquire_and_release(self, mock_redis):
        async with message_lock("log-1"):
            pass

        key = mock_redis.set.await_args.args[0]
        assert key == "deliveryledger:lock:message:log-1"
        assert mock_redis.set.await_args.kwargs == {"nx": True, "ex": 30}
        mock_redis.eval.assert_awaited_once()

    async def test_timeout_raises_without_release(self, mock_redis):
        mock_redis.set.return_value = False

        with patch("deliveryledger.utils.locks.LOCK_POLL_INTERVAL", 0.01):
            with pytest.raises(LockTimeoutError):
                async with message_lock("log-1", wait=0.02):
                    pass

        mock_redis.eval.assert_not_awaited()

    async def test_redis_down_proceeds(self, mock_redis):
        mock_redis.set.side_effect = ConnectionError("down")
        entered = False
        async with message_lock("log-1"):
            entered = True
        assert entered is True


# ---------------------------------------------------------------------------
# send_alert
# ---------------------------------------------------------------------------


class TestSendAlert:
    async def test_sends_when_cooldown_free(self, mock_redis):
        with patch("deliveryledger.utils.alerting._send_webhook_alert") as mock_webhook:
            sent = await send_alert(AlertType.RECONCILIATION_FAILED, "run failed")

        assert sent is True
        mock_webhook.assert_awaited_once()
        assert mock_redis.set.await_args.kwargs["ex"] == 300

    async def test_suppressed_during_cooldown(self, mock_redis):
        mock_redis.set.return_value = None
        with patch("deliveryledger.utils.alerting._send_webhook_alert") as mock_webhook:
            sent = await send_alert(AlertType.RECONCILIATION_FAILED, "run failed")

        assert sent is False
        mock_webhook.assert_not_awaited()

    async def test_per_type_cooldown_override(self, mock_redis):
        with patch("deliveryledger.utils.alerting._send_webhook_alert"):
            await send_alert(AlertType.RECONCILIATION_ANOMALIES, "3 critical")
        assert mock_redis.set.await_args.kwargs["ex"] == 3600

    async def test_in_memory_fallback(self, mock_redis):
        mock_redis.set.side_effect = ConnectionError("down")
        alerting._local_cooldowns.clear()
        with patch("deliveryledger.utils.alerting._send_webhook_alert"):
            first = await send_alert(AlertType.HEALTH_CHECK_FAILED, "db down")
            second = await send_alert(AlertType.HEALTH_CHECK_FAILED, "db down")
        alerting._local_cooldowns.clear()

        assert first is True
        assert second is False

    async def test_webhook_skipped_without_url(self):
        settings = MagicMock(alert_webhook_url="")
        with patch("deliveryledger.config.get_settings", return_value=settings), \
                patch("httpx.AsyncClient") as mock_client:
            await alerting._send_webhook_alert("x", "msg", "error", None, None)
        mock_client.assert_not_called()


# ---------------------------------------------------------------------------
# logging
# ---------------------------------------------------------------------------


class TestStructuredLogging:
    def test_json_line_with_correlation_and_extras(self):
        set_correlation_id("cid-42")
        record = logging.LogRecord("deliveryledger.test", logging.INFO, __file__, 1, "hello %s", ("world",), None)
        record.provider = "meta"
        record.report_id = "r-1"

        line = json.loads(StructuredJsonFormatter().format(record))

        assert line["message"] == "hello world"
        assert line["correlation_id"] == "cid-42"
        assert line["provider"] == "meta"
        assert line["report_id"] == "r-1"
        assert line["level"] == "INFO"

    def test_correlation_id_shape(self):
        assert len(generate_correlation_id()) == 32

    def test_mask_phone(self):
        assert mask_phone("+6281234567890") == "+62812***"
        assert mask_phone(None) == ""


# ---------------------------------------------------------------------------
# metrics
# ---------------------------------------------------------------------------


class TestTiming:
    def test_timer_unstarted(self):
        assert Timer().elapsed_ms == 0

    def test_timer_stop(self):
        timer = Timer().start()
        assert timer.stop() >= 0

    def test_as_utc_naive(self):
        naive = datetime(2024, 3, 1, 12, 0)
        assert as_utc(naive) == datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def test_seconds_between(self):
        start = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert seconds_between(start, start + timedelta(seconds=42)) == 42
        assert seconds_between(start, start - timedelta(seconds=1)) is None
        assert seconds_between(None, start) is None
