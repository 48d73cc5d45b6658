"""Tests de normalización de payloads crudos."""

import json
import math
import time

import pytest

from alarm_ingest.errors import MalformedPayload
from alarm_ingest.classification import classify
from alarm_ingest.models import Metric, SensorStatus
from alarm_ingest.normalization import decode_payload, normalize, normalize_packet

DEVICE = "esp32-fire-001"
NOW = 1_700_000_500.7


def _now():
    return NOW


def _values(readings):
    return {r.metric: r.value for r in readings}


# =============================================================================
# CAMPOS
# =============================================================================

class TestFieldResolution:

    def test_full_payload(self):
        payload = {"temperature": 25.5, "humidity": 40.0, "gas_raw": 1234, "fire": 0, "ts": 1_700_000_000}
        packet = normalize_packet(DEVICE, payload, now=_now)

        values = _values(packet.readings)
        assert values == {
            Metric.TEMPERATURE: 25.5,
            Metric.HUMIDITY: 40.0,
            Metric.GAS: 1234,
            Metric.FIRE: 0,
            Metric.BUZZER: False,
        }
        assert packet.timestamp == 1_700_000_000
        assert packet.used_fallback_ts is False
        assert all(r.timestamp == 1_700_000_000 for r in packet.readings)
        assert all(r.device_id == DEVICE for r in packet.readings)

    def test_alarm_payload_classified(self):
        """temp + gas + fire en alarma: todas las lecturas con el mismo ts."""
        readings = normalize(DEVICE, {"temp": 55, "gas_raw": 1900, "fire": True, "ts": 1000})

        statuses = {r.metric: (r.value, classify(r.metric, r.value)) for r in readings}
        assert statuses == {
            Metric.TEMPERATURE: (55, SensorStatus.WARNING),
            Metric.GAS: (1900, SensorStatus.DANGER),
            Metric.FIRE: (1, SensorStatus.DANGER),
            Metric.BUZZER: (True, SensorStatus.DANGER),
        }
        assert {r.timestamp for r in readings} == {1000}

    def test_temperature_preferred_over_temp(self):
        values = _values(normalize(DEVICE, {"temperature": 30.0, "temp": 99.0, "ts": 1}))
        assert values[Metric.TEMPERATURE] == 30.0

    def test_temp_alias(self):
        values = _values(normalize(DEVICE, {"temp": 31.5, "ts": 1}))
        assert values[Metric.TEMPERATURE] == 31.5

    def test_gas_rounded_half_up(self):
        assert _values(normalize(DEVICE, {"gas_raw": 1234.5, "ts": 1}))[Metric.GAS] == 1235
        assert _values(normalize(DEVICE, {"gas_raw": 1234.4, "ts": 1}))[Metric.GAS] == 1234

    def test_gas_alias(self):
        assert _values(normalize(DEVICE, {"gas": 1500.2, "ts": 1}))[Metric.GAS] == 1500

    def test_fire_boolean(self):
        assert _values(normalize(DEVICE, {"fire": True, "ts": 1}))[Metric.FIRE] == 1
        assert _values(normalize(DEVICE, {"fire": False, "ts": 1}))[Metric.FIRE] == 0

    def test_flame_alias(self):
        assert _values(normalize(DEVICE, {"flame": 1, "ts": 1}))[Metric.FIRE] == 1

    def test_battery(self):
        packet = normalize_packet(DEVICE, {"battery": 87.5, "ts": 1})
        assert packet.battery_level == 87.5

    def test_unknown_keys_ignored(self):
        values = _values(normalize(DEVICE, {"gas_raw": 100, "rssi": -70, "ts": 1}))
        assert set(values) == {Metric.GAS, Metric.BUZZER}


# =============================================================================
# AUSENCIAS Y TIMESTAMP
# =============================================================================

class TestMissingValues:

    def test_missing_metrics_produce_no_reading(self):
        """Nunca un 0 de relleno para métricas ausentes."""
        values = _values(normalize(DEVICE, {"humidity": 50.0, "ts": 1}))
        assert Metric.TEMPERATURE not in values
        assert Metric.GAS not in values
        assert Metric.FIRE not in values

    def test_buzzer_always_emitted(self):
        values = _values(normalize(DEVICE, {}, now=_now))
        assert values == {Metric.BUZZER: False}

    def test_buzzer_derived_from_payload(self):
        assert _values(normalize(DEVICE, {"temperature": 55.0, "ts": 1}))[Metric.BUZZER] is True
        assert _values(normalize(DEVICE, {"gas_raw": 1900, "ts": 1}))[Metric.BUZZER] is True

    def test_non_finite_value_treated_as_absent(self):
        values = _values(normalize(DEVICE, {"temperature": math.nan, "temp": 22.0, "ts": 1}))
        assert values[Metric.TEMPERATURE] == 22.0

    def test_missing_ts_uses_wall_clock(self):
        packet = normalize_packet(DEVICE, {"gas_raw": 100}, now=_now)
        assert packet.timestamp == int(NOW)
        assert packet.used_fallback_ts is True

    def test_missing_ts_close_to_real_clock(self):
        before = time.time()
        reading = normalize(DEVICE, {"gas_raw": 100})[0]
        assert abs(reading.timestamp - before) <= 2

    def test_non_finite_ts_uses_wall_clock(self):
        packet = normalize_packet(DEVICE, '{"gas_raw": 100, "ts": NaN}', now=_now)
        assert packet.timestamp == int(NOW)
        assert packet.used_fallback_ts is True


# =============================================================================
# PAYLOADS MALFORMADOS
# =============================================================================

class TestMalformedPayloads:

    @pytest.mark.parametrize("raw", [
        b"not json",
        "[1, 2, 3]",
        '"just a string"',
        b"\xff\xfe",
        {"gas_raw": "abc"},
        {"temperature": True},
    ])
    def test_rejected(self, raw):
        with pytest.raises(MalformedPayload) as exc:
            normalize_packet(DEVICE, raw)
        assert exc.value.device_id == DEVICE

    def test_bytes_and_str_equivalent(self):
        payload = {"temperature": 21.0, "ts": 5}
        from_bytes = normalize(DEVICE, json.dumps(payload).encode())
        from_str = normalize(DEVICE, json.dumps(payload))
        assert from_bytes == from_str

    def test_decode_passes_dict_through(self):
        data = {"gas_raw": 1}
        assert decode_payload(data) is data

    def test_stream_fields_as_bytes(self):
        """Campos de Redis Stream crudos: strings numéricos en bytes."""
        packet = normalize_packet(DEVICE, {b"temperature": b"30.5", "gas_raw": b"1500", "ts": "7"})

        values = _values(packet.readings)
        assert values[Metric.TEMPERATURE] == 30.5
        assert values[Metric.GAS] == 1500
        assert packet.timestamp == 7

    def test_undecodable_stream_field_rejected(self):
        with pytest.raises(MalformedPayload) as exc:
            normalize_packet(DEVICE, {"temperature": b"\xff\xfe"})
        assert exc.value.device_id == DEVICE
        assert "utf-8" in exc.value.reason
