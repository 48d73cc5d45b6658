"""Tests del fan-out a estado actual, historial y alertas."""

from unittest.mock import MagicMock

import pytest

from alarm_ingest.errors import AlertDeliveryFailed, StoreWriteFailed
from alarm_ingest.models import Metric, NormalizedPacket, Reading
from alarm_ingest.pipeline.dispatcher import FanOutDispatcher
from alarm_ingest.sinks.alert_channel import LoggingAlertChannel
from alarm_ingest.sinks.current_state import InMemoryCurrentStateStore

DEVICE = "esp32-fire-001"


def _reading(metric, value, ts=1_700_000_000):
    return Reading(device_id=DEVICE, metric=metric, value=value, timestamp=ts)


# =============================================================================
# FAN-OUT NORMAL
# =============================================================================

class TestFanOut:

    def test_state_written_with_status(self, dispatcher, state_store):
        dispatcher.dispatch(_reading(Metric.GAS, 1500))

        assert state_store.get_sensor(DEVICE, Metric.GAS) == {
            "value": 1500,
            "timestamp": 1_700_000_000,
            "status": "warning",
        }

    def test_history_appended(self, dispatcher, history):
        dispatcher.dispatch(_reading(Metric.TEMPERATURE, 24.0, ts=10))
        dispatcher.dispatch(_reading(Metric.TEMPERATURE, 25.0, ts=11))

        rows = history.recent(DEVICE, Metric.TEMPERATURE)
        assert [r["value"] for r in rows] == [25.0, 24.0]

    def test_alert_on_entering_warning(self, dispatcher, alert_channel):
        dispatcher.dispatch(_reading(Metric.GAS, 1000))
        dispatcher.dispatch(_reading(Metric.GAS, 1500))

        assert [m.title for m in alert_channel.sent] == ["Gas Warning"]
        assert alert_channel.sent[0].severity == "warning"

    def test_sustained_danger_alerts_once(self, dispatcher, alert_channel):
        for _ in range(5):
            dispatcher.dispatch(_reading(Metric.TEMPERATURE, 80.0))

        assert [m.title for m in alert_channel.sent] == ["Overheat Alert"]

    def test_recovery_recorded_not_alerted(self, dispatcher, alert_channel, history):
        dispatcher.dispatch(_reading(Metric.FIRE, 1, ts=1))
        event = dispatcher.dispatch(_reading(Metric.FIRE, 0, ts=2))

        assert event.is_recovery
        assert [m.title for m in alert_channel.sent] == ["FIRE Detected"]

        alarms = history.recent_alarms(DEVICE)
        assert [(a["from_status"], a["to_status"]) for a in alarms] == [
            ("danger", "normal"),
            ("unknown", "danger"),
        ]

    def test_dispatch_packet_updates_system(self, dispatcher, state_store):
        packet = NormalizedPacket(
            device_id=DEVICE,
            timestamp=1_700_000_123,
            readings=[_reading(Metric.HUMIDITY, 45.0)],
            battery_level=76.0,
        )
        dispatcher.dispatch_packet(packet)

        system = state_store.get_system(DEVICE)
        assert system["lastUpdate"] == 1_700_000_123
        assert system["battery"] == 76.0

    def test_set_online(self, dispatcher, state_store):
        dispatcher.set_online(DEVICE, True)
        assert state_store.get_system(DEVICE)["status"] is True
        dispatcher.set_online(DEVICE, False)
        assert state_store.get_system(DEVICE)["status"] is False


# =============================================================================
# AISLAMIENTO DE FALLOS
# =============================================================================

class TestSinkIsolation:

    def test_history_failure_does_not_block_state_or_alert(self, state_store, alert_channel):
        history = MagicMock()
        history.append.side_effect = StoreWriteFailed("history", "k", RuntimeError("db down"))
        dispatcher = FanOutDispatcher(state_store, history=history, alert_channel=alert_channel, background=False)

        dispatcher.dispatch(_reading(Metric.GAS, 1900))

        assert state_store.get_sensor(DEVICE, Metric.GAS)["status"] == "danger"
        assert [m.title for m in alert_channel.sent] == ["Gas Alert"]
        assert dispatcher.stats["sink_failures"]["history"] == 1

    def test_state_failure_does_not_block_history_or_alert(self, history, alert_channel):
        store = MagicMock()
        store.set_sensor.side_effect = StoreWriteFailed("current_state", "k")
        dispatcher = FanOutDispatcher(store, history=history, alert_channel=alert_channel, background=False)

        dispatcher.dispatch(_reading(Metric.GAS, 1900))

        assert len(history.recent(DEVICE, Metric.GAS)) == 1
        assert len(alert_channel.sent) == 1
        assert dispatcher.stats["sink_failures"]["current_state"] == 1

    def test_alert_failure_counted(self, state_store):
        channel = MagicMock()
        channel.send.side_effect = AlertDeliveryFailed("webhook", "timeout")
        dispatcher = FanOutDispatcher(state_store, alert_channel=channel, background=False)

        event = dispatcher.dispatch(_reading(Metric.FIRE, 1))

        assert event is not None
        assert dispatcher.tracker.get_status(DEVICE, Metric.FIRE).value == "danger"
        assert dispatcher.stats["sink_failures"]["alert"] == 1
        assert dispatcher.stats["alerts_forwarded"] == 0


# =============================================================================
# BACKGROUND
# =============================================================================

class TestBackgroundSinks:

    def test_flush_waits_for_pending_writes(self, history):
        store = InMemoryCurrentStateStore()
        channel = LoggingAlertChannel()
        dispatcher = FanOutDispatcher(store, history=history, alert_channel=channel, max_workers=2)
        try:
            for i in range(20):
                dispatcher.dispatch(_reading(Metric.GAS, 100 + i, ts=i))
            assert dispatcher.flush(timeout=5.0) is True
            assert len(history.recent(DEVICE, Metric.GAS, limit=100)) == 20
        finally:
            dispatcher.close()

    def test_dispatch_after_close_runs_inline(self, history):
        dispatcher = FanOutDispatcher(InMemoryCurrentStateStore(), history=history)
        dispatcher.close()

        # Sin executor propio tras close: escritura en línea
        dispatcher.dispatch(_reading(Metric.GAS, 100))
        assert len(history.recent(DEVICE, Metric.GAS)) == 1

    @pytest.mark.parametrize("background", [True, False])
    def test_close_is_safe_twice(self, state_store, background):
        dispatcher = FanOutDispatcher(state_store, background=background)
        dispatcher.close()
        dispatcher.close()
