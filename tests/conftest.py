"""Fixtures compartidas de los tests de ingesta."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from alarm_ingest.classification.thresholds import ThresholdConfig
from alarm_ingest.classification.transition_tracker import TransitionTracker
from alarm_ingest.pipeline.dispatcher import FanOutDispatcher
from alarm_ingest.sinks.alert_channel import LoggingAlertChannel
from alarm_ingest.sinks.current_state import InMemoryCurrentStateStore
from alarm_ingest.sinks.history import HistoryLog
from common.config import get_settings

DEVICE_ID = "esp32-fire-001"

_ENV_VARS = (
    "DEVICE_ID",
    "INGEST_SOURCE",
    "MQTT_BROKER_HOST",
    "MQTT_BROKER_PORT",
    "MQTT_TOPIC",
    "MQTT_TLS",
    "REDIS_URL",
    "STATE_BACKEND",
    "HISTORY_DB_URL",
    "NOTIFIER_URL",
    "NOTIFIER_API_KEY",
    "INGEST_MAX_DEVICES",
    "INGEST_ALLOWED_DEVICES",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Entorno sin variables de la app ni .env."""
    monkeypatch.setenv("IOT_ENV_FILE", str(tmp_path / "missing.env"))
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def settings(clean_env):
    return get_settings()


@pytest.fixture
def thresholds() -> ThresholdConfig:
    return ThresholdConfig()


@pytest.fixture
def engine():
    """SQLite en memoria compartida entre threads."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    yield eng
    eng.dispose()


@pytest.fixture
def history(engine) -> HistoryLog:
    log = HistoryLog(engine)
    log.ensure_schema()
    return log


@pytest.fixture
def state_store() -> InMemoryCurrentStateStore:
    return InMemoryCurrentStateStore()


@pytest.fixture
def alert_channel() -> LoggingAlertChannel:
    return LoggingAlertChannel()


@pytest.fixture
def tracker() -> TransitionTracker:
    return TransitionTracker()


@pytest.fixture
def dispatcher(state_store, history, alert_channel, tracker, thresholds):
    """Dispatcher sincrónico: historial y alertas en línea."""
    d = FanOutDispatcher(
        state_store,
        history=history,
        alert_channel=alert_channel,
        tracker=tracker,
        thresholds=thresholds,
        background=False,
    )
    yield d
    d.close()
