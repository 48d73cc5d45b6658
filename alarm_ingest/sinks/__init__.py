"""Sinks del fan-out: estado actual, history log y canal de alertas."""

from .current_state import (
    CurrentStateStore,
    InMemoryCurrentStateStore,
    RedisCurrentStateStore,
    sensor_path,
    SYSTEM_STATUS,
    SYSTEM_BATTERY,
    SYSTEM_LAST_UPDATE,
)
from .history import HistoryLog
from .alert_channel import (
    AlertChannel,
    AlertMessage,
    LoggingAlertChannel,
    WebhookAlertChannel,
    build_alert_message,
)

__all__ = [
    "CurrentStateStore",
    "InMemoryCurrentStateStore",
    "RedisCurrentStateStore",
    "sensor_path",
    "SYSTEM_STATUS",
    "SYSTEM_BATTERY",
    "SYSTEM_LAST_UPDATE",
    "HistoryLog",
    "AlertChannel",
    "AlertMessage",
    "LoggingAlertChannel",
    "WebhookAlertChannel",
    "build_alert_message",
]
