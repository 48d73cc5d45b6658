"""Fuente MQTT usando paho-mqtt directamente.

Flujo:
  MQTT topic iot/firealarm/{device_id}/...
  → MQTTIngestionSource (este archivo)
  → handler(device_id, payload) → PayloadConsumer

Reconexión: paho reintenta solo (connect_async + loop_start) con
backoff exponencial acotado por ``reconnect_delay_set``. La suscripción
se renueva en cada ``on_connect``, así el consumidor no tiene que
volver a registrarse tras una caída.
"""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Optional

import paho.mqtt.client as mqtt

from ..errors import TransportDisconnected
from .base import IngestionSource

logger = logging.getLogger(__name__)

DEFAULT_TOPIC_PREFIX = "iot/firealarm"


def device_id_from_topic(
    topic: str,
    prefix: str = DEFAULT_TOPIC_PREFIX,
) -> Optional[str]:
    """Extrae el device_id de ``<prefix>/<device_id>/...``.

    >>> device_id_from_topic("iot/firealarm/esp32-fire-001/telemetry")
    'esp32-fire-001'
    """
    prefix_parts = [p for p in prefix.split("/") if p]
    parts = topic.split("/")
    if len(parts) <= len(prefix_parts):
        return None
    if parts[: len(prefix_parts)] != prefix_parts:
        return None
    device_id = parts[len(prefix_parts)]
    if not device_id or device_id in ("+", "#"):
        return None
    return device_id


class MQTTIngestionSource(IngestionSource):
    """Suscriptor MQTT para telemetría de alarmas de incendio.

    Soporta transporte TCP o websockets (broker público vía ws/wss) y
    TLS opcional.
    """

    name = "mqtt"

    def __init__(
        self,
        default_device_id: str,
        broker_host: str = "localhost",
        broker_port: int = 1883,
        topic: Optional[str] = None,
        topic_prefix: str = DEFAULT_TOPIC_PREFIX,
        transport: str = "tcp",
        ws_path: str = "/mqtt",
        use_tls: bool = False,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: str = "alarm-ingest",
        keepalive: int = 30,
        qos: int = 1,
        connect_timeout: float = 5.0,
        reconnect_min_delay: int = 1,
        reconnect_max_delay: int = 30,
        client: Optional[mqtt.Client] = None,
    ):
        super().__init__(default_device_id, connect_timeout=connect_timeout)
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.topic = topic or f"{topic_prefix}/{default_device_id}/#"
        self.topic_prefix = topic_prefix
        self.transport = transport
        self.ws_path = ws_path
        self.use_tls = use_tls
        self.username = username
        self.password = password
        self.client_id = f"{client_id}-{uuid.uuid4().hex[:8]}"
        self.keepalive = keepalive
        self.qos = qos
        self.reconnect_min_delay = reconnect_min_delay
        self.reconnect_max_delay = reconnect_max_delay

        self._client: Optional[mqtt.Client] = client
        self._connected_event = threading.Event()

    def _build_client(self) -> mqtt.Client:
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
            transport=self.transport,
        )
        if self.transport == "websockets":
            client.ws_set_options(path=self.ws_path)
        if self.use_tls:
            client.tls_set()
        if self.username and self.password:
            client.username_pw_set(self.username, self.password)
        return client

    def _open(self) -> bool:
        if self._client is None:
            self._client = self._build_client()

        client = self._client
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        client.reconnect_delay_set(
            min_delay=self.reconnect_min_delay,
            max_delay=self.reconnect_max_delay,
        )

        logger.info(
            "[MQTT] Connecting to %s:%d transport=%s topic=%s",
            self.broker_host,
            self.broker_port,
            self.transport,
            self.topic,
        )

        # connect_async + loop_start: el thread de red reintenta la primera
        # conexión y las siguientes sin bloquear al llamador
        client.connect_async(self.broker_host, self.broker_port, keepalive=self.keepalive)
        client.loop_start()

        return self._connected_event.wait(self.connect_timeout)

    def _close(self) -> None:
        client = self._client
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            # loop_stop detiene el thread de red y cualquier reintento pendiente
            client.loop_stop()

    # ------------------------------------------------------------------
    # Callbacks paho (thread de red)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        """Callback de conexión."""
        if reason_code == 0:
            logger.info("[MQTT] Connected to broker")
            client.subscribe(self.topic, qos=self.qos)
            logger.info("[MQTT] Subscribed to %s", self.topic)
            self._connected_event.set()
            self._set_connected(True)
        else:
            logger.error("[MQTT] Connection failed: rc=%s", reason_code)
            self._connected_event.clear()
            self._set_connected(False)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        """Callback de desconexión."""
        self._connected_event.clear()
        if self._stopped:
            return
        logger.warning("[MQTT] %s, paho will retry", TransportDisconnected(self.name, f"rc={reason_code}"))
        self._set_connected(False)

    def _on_message(self, client, userdata, msg):
        """Callback de mensaje: solo etiqueta y entrega, sin procesar."""
        device_id = device_id_from_topic(msg.topic, self.topic_prefix) or self.default_device_id
        logger.debug("[MQTT] Received: topic=%s bytes=%d", msg.topic, len(msg.payload or b""))
        self._deliver(device_id, msg.payload)

    @property
    def stats(self) -> dict:
        stats = super().stats
        stats.update({
            "broker": f"{self.broker_host}:{self.broker_port}",
            "topic": self.topic,
        })
        return stats
