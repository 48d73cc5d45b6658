"""Tests de las fuentes de ingesta (MQTT y Redis Streams).

Sin broker real: el cliente paho y el cliente redis son mocks.
"""

import dataclasses
import threading
import time
from unittest.mock import MagicMock

import pytest
import redis

from alarm_ingest.errors import TransportDisconnected
from alarm_ingest.redis_connection import RedisConnection
from alarm_ingest.resilience.retry import RetryConfig
from alarm_ingest.sources import (
    MQTTIngestionSource,
    RedisStreamIngestionSource,
    create_source,
    device_id_from_topic,
)

DEVICE = "esp32-fire-001"


@pytest.fixture
def mqtt_client():
    return MagicMock()


@pytest.fixture
def mqtt_source(mqtt_client):
    source = MQTTIngestionSource(DEVICE, client=mqtt_client, connect_timeout=0.01)
    yield source
    source.stop()


def _message(topic, payload=b"{}"):
    msg = MagicMock()
    msg.topic = topic
    msg.payload = payload
    return msg


# =============================================================================
# TOPICS
# =============================================================================

class TestTopicRouting:

    @pytest.mark.parametrize("topic,expected", [
        ("iot/firealarm/esp32-fire-001/telemetry", "esp32-fire-001"),
        ("iot/firealarm/dev-2", "dev-2"),
        ("iot/firealarm", None),
        ("iot/other/dev-3/telemetry", None),
        ("iot/firealarm/+/telemetry", None),
    ])
    def test_device_id_from_topic(self, topic, expected):
        assert device_id_from_topic(topic) == expected


# =============================================================================
# MQTT
# =============================================================================

class TestMQTTSource:

    def test_start_does_not_block_without_broker(self, mqtt_source, mqtt_client):
        handle = mqtt_source.start(MagicMock())

        assert handle is not None
        assert mqtt_source.is_running
        assert not mqtt_source.is_connected
        mqtt_client.connect_async.assert_called_once()
        mqtt_client.loop_start.assert_called_once()

    def test_on_connect_subscribes_and_notifies(self, mqtt_source, mqtt_client):
        listener = MagicMock()
        mqtt_source.start(MagicMock(), on_connection_change=listener)

        mqtt_source._on_connect(mqtt_client, None, None, 0)

        mqtt_client.subscribe.assert_called_once_with(f"iot/firealarm/{DEVICE}/#", qos=1)
        assert mqtt_source.is_connected
        listener.assert_called_once_with(DEVICE, True)

    def test_failed_connect_not_connected(self, mqtt_source, mqtt_client):
        mqtt_source.start(MagicMock())
        mqtt_source._on_connect(mqtt_client, None, None, 5)

        mqtt_client.subscribe.assert_not_called()
        assert not mqtt_source.is_connected

    def test_message_routed_by_topic(self, mqtt_source, mqtt_client):
        handler = MagicMock()
        mqtt_source.start(handler)

        mqtt_source._on_message(mqtt_client, None, _message("iot/firealarm/dev-2/telemetry", b'{"gas_raw": 1}'))
        mqtt_source._on_message(mqtt_client, None, _message("custom/topic"))

        assert handler.call_args_list[0].args == ("dev-2", b'{"gas_raw": 1}')
        assert handler.call_args_list[1].args == (DEVICE, b"{}")
        assert mqtt_source.stats["messages_received"] == 2

    def test_handler_error_does_not_escape(self, mqtt_source, mqtt_client):
        handler = MagicMock(side_effect=RuntimeError("boom"))
        mqtt_source.start(handler)

        mqtt_source._on_message(mqtt_client, None, _message("iot/firealarm/dev-2/x"))

        assert mqtt_source.stats["messages_failed"] == 1

    def test_disconnect_counts_reconnect(self, mqtt_source, mqtt_client):
        listener = MagicMock()
        mqtt_source.start(MagicMock(), on_connection_change=listener)
        mqtt_source._on_connect(mqtt_client, None, None, 0)

        mqtt_source._on_disconnect(mqtt_client, None, None, 7)

        assert not mqtt_source.is_connected
        assert mqtt_source.stats["reconnect_count"] == 1
        assert listener.call_args_list[-1].args == (DEVICE, False)

        # paho reconecta y on_connect vuelve a suscribir
        mqtt_source._on_connect(mqtt_client, None, None, 0)
        assert mqtt_client.subscribe.call_count == 2

    def test_stop_is_idempotent(self, mqtt_source, mqtt_client):
        handle = mqtt_source.start(MagicMock())

        handle.close()
        handle.close()
        mqtt_source.stop()

        mqtt_client.disconnect.assert_called_once()
        mqtt_client.loop_stop.assert_called_once()
        assert handle.closed
        assert not mqtt_source.is_running

    def test_no_delivery_after_stop(self, mqtt_source, mqtt_client):
        handler = MagicMock()
        mqtt_source.start(handler)
        mqtt_source.stop()

        mqtt_source._on_message(mqtt_client, None, _message("iot/firealarm/dev-2/x"))

        handler.assert_not_called()

    def test_start_twice_raises(self, mqtt_source):
        mqtt_source.start(MagicMock())
        with pytest.raises(RuntimeError):
            mqtt_source.start(MagicMock())

    def test_disconnect_error_still_stops_loop(self, mqtt_source, mqtt_client):
        mqtt_client.disconnect.side_effect = OSError("socket closed")
        mqtt_source.start(MagicMock())

        mqtt_source.stop()

        mqtt_client.loop_stop.assert_called_once()


# =============================================================================
# REDIS STREAMS
# =============================================================================

class TestRedisStreamSource:

    def _xread_script(self, batches):
        """Respuestas sucesivas de XREAD; al agotarse, vacío."""
        pending = list(batches)

        def xread(streams, count=None, block=None):
            if pending:
                item = pending.pop(0)
                if isinstance(item, Exception):
                    raise item
                return item
            time.sleep(0.01)
            return []

        return xread

    def test_reads_entries_and_reconnects(self):
        client = MagicMock()
        client.xread.side_effect = self._xread_script([
            redis.ConnectionError("connection reset"),
            [("firealarm:esp32-fire-001:telemetry", [
                ("1-0", {"payload": '{"gas_raw": 1500}'}),
                ("1-1", {"device_id": "dev-9", "temperature": "30"}),
            ])],
        ])
        conn = RedisConnection(client=client)

        received = []
        done = threading.Event()

        def handler(device_id, payload):
            received.append((device_id, payload))
            if len(received) == 2:
                done.set()

        source = RedisStreamIngestionSource(
            DEVICE,
            stream="firealarm:esp32-fire-001:telemetry",
            connection=conn,
            block_ms=10,
            connect_timeout=1.0,
            retry_config=RetryConfig(
                base_delay=0.01,
                max_delay=0.02,
                jitter=False,
                retryable_exceptions=(TransportDisconnected,),
            ),
        )
        handle = source.start(handler)
        try:
            assert done.wait(timeout=5.0)
        finally:
            handle.close()

        assert received == [
            (DEVICE, '{"gas_raw": 1500}'),
            ("dev-9", {"temperature": "30"}),
        ]
        assert source.last_id == "1-1"
        assert source.stats["reconnect_count"] == 1
        client.close.assert_not_called()

    def _source(self, client):
        return RedisStreamIngestionSource(
            DEVICE,
            stream="s",
            connection=RedisConnection(client=client),
            block_ms=10,
            connect_timeout=1.0,
            retry_config=RetryConfig(
                base_delay=0.01,
                max_delay=0.02,
                jitter=False,
                retryable_exceptions=(TransportDisconnected,),
            ),
        )

    def _collect(self, source, expected):
        received = []
        done = threading.Event()

        def handler(device_id, payload):
            received.append((device_id, payload))
            if len(received) == expected:
                done.set()

        handle = source.start(handler)
        try:
            assert done.wait(timeout=5.0)
            alive = source._thread.is_alive()
        finally:
            handle.close()
        return received, alive

    @pytest.mark.parametrize("error", [
        redis.ResponseError("WRONGTYPE Operation against a key holding the wrong kind of value"),
        UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"),
    ])
    def test_read_error_does_not_kill_reader(self, error):
        client = MagicMock()
        client.xread.side_effect = self._xread_script([
            error,
            [("s", [(b"2-0", {b"payload": b'{"gas_raw": 1900}'})])],
        ])
        source = self._source(client)

        received, alive = self._collect(source, expected=1)

        assert received == [(DEVICE, b'{"gas_raw": 1900}')]
        assert alive
        assert source.last_id == "2-0"
        assert source.stats["read_errors"] == 1
        assert source.stats["reconnect_count"] == 1

    def test_read_error_marks_disconnected(self):
        blocked = threading.Event()

        def xread(streams, count=None, block=None):
            blocked.set()
            raise redis.ResponseError("NOGROUP")

        client = MagicMock()
        client.xread.side_effect = xread
        source = RedisStreamIngestionSource(
            DEVICE,
            stream="s",
            connection=RedisConnection(client=client),
            block_ms=10,
            connect_timeout=1.0,
            retry_config=RetryConfig(base_delay=5.0, max_delay=5.0, jitter=False),
        )
        listener = MagicMock()
        handle = source.start(MagicMock(), on_connection_change=listener)
        try:
            assert blocked.wait(timeout=5.0)
            deadline = time.time() + 5.0
            while source.is_connected and time.time() < deadline:
                time.sleep(0.01)
            assert not source.is_connected
            assert source.health_check()["healthy"] is False
        finally:
            handle.close()

        assert (DEVICE, False) in [c.args for c in listener.call_args_list]

    def test_undecodable_entry_reaches_consumer_as_bytes(self):
        """El lector no decodifica: la entrada inválida sigue cruda y la próxima también llega."""
        client = MagicMock()
        client.xread.side_effect = self._xread_script([
            [("s", [
                (b"3-0", {b"payload": b"\xff\xfe"}),
                (b"3-1", {b"device_id": b"\xff", b"payload": b"{}"}),
                (b"3-2", {b"device_id": b"dev-7", b"temperature": b"30"}),
            ])],
        ])
        source = self._source(client)

        received, alive = self._collect(source, expected=2)

        assert received == [
            (DEVICE, b"\xff\xfe"),
            ("dev-7", {"temperature": b"30"}),
        ]
        assert alive
        assert source.stats["entries_skipped"] == 1
        assert source.last_id == "3-2"

    def test_owned_connection_reads_raw_bytes(self, monkeypatch):
        from_url = MagicMock(return_value=MagicMock())
        monkeypatch.setattr(redis.Redis, "from_url", from_url)

        source = RedisStreamIngestionSource(DEVICE, stream="s", redis_url="redis://localhost:6379/0")
        assert source._connect() is from_url.return_value

        assert from_url.call_args.kwargs["decode_responses"] is False

    def test_unreachable_redis_retries_until_stopped(self):
        client = MagicMock()
        client.ping.side_effect = redis.ConnectionError("refused")
        conn = RedisConnection(client=client)

        source = RedisStreamIngestionSource(
            DEVICE,
            stream="s",
            connection=conn,
            block_ms=10,
            connect_timeout=0.05,
            retry_config=RetryConfig(base_delay=0.01, max_delay=0.01, retryable_exceptions=(TransportDisconnected,)),
        )
        handle = source.start(MagicMock())
        time.sleep(0.1)
        handle.close()

        assert not source.is_connected
        assert source.stats["retry"]["total_retries"] >= 1
        client.xread.assert_not_called()


# =============================================================================
# FACTORY
# =============================================================================

class TestCreateSource:

    def test_mqtt_default(self, settings):
        source = create_source(settings)
        assert isinstance(source, MQTTIngestionSource)
        assert source.topic == f"iot/firealarm/{DEVICE}/#"
        assert source.broker_host == "broker.hivemq.com"

    def test_redis(self, settings):
        source = create_source(dataclasses.replace(settings, ingest_source="redis"))
        assert isinstance(source, RedisStreamIngestionSource)
        assert source.stream == f"firealarm:{DEVICE}:telemetry"

    def test_unsupported(self, settings):
        with pytest.raises(ValueError):
            create_source(dataclasses.replace(settings, ingest_source="kafka"))
