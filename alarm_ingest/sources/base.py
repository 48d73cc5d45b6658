"""Interfaz abstracta de fuente de ingesta.

Una fuente produce una secuencia viva (posiblemente infinita) de payloads
crudos etiquetados con el device_id de origen. Entrega best-effort: sin
cola ni replay, at-least-once entre reconexiones.

Implementaciones:
- MQTTIngestionSource: suscripción a broker MQTT (paho-mqtt)
- RedisStreamIngestionSource: change feed sobre Redis Streams
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Union

from ..metrics import SOURCE_CONNECTED, SOURCE_RECONNECTS

logger = logging.getLogger(__name__)

RawPayload = Union[bytes, str, dict]
PayloadHandler = Callable[[str, RawPayload], object]
ConnectionListener = Callable[[str, bool], None]


class SubscriptionHandle:
    """Handle devuelto por ``IngestionSource.start``.

    ``close()`` libera la suscripción; es idempotente y no lanza aunque
    la fuente ya se haya detenido sola.
    """

    def __init__(self, source: "IngestionSource"):
        self._source = source
        self._closed = False
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def source(self) -> "IngestionSource":
        return self._source

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._source.stop()

    def __enter__(self) -> "SubscriptionHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class IngestionSource(ABC):
    """Fuente de payloads crudos.

    Subclases implementan ``_open`` y ``_close``; el ciclo de vida,
    las estadísticas y la entrega al handler viven aquí.
    """

    name = "source"

    def __init__(self, default_device_id: str, connect_timeout: float = 5.0):
        self.default_device_id = default_device_id
        self.connect_timeout = connect_timeout

        self._handler: Optional[PayloadHandler] = None
        self._listener: Optional[ConnectionListener] = None
        self._handle: Optional[SubscriptionHandle] = None

        self._running = False
        self._stopped = False
        self._connected = False
        self._lifecycle_lock = threading.Lock()

        # Stats
        self._messages_received = 0
        self._messages_failed = 0
        self._reconnect_count = 0
        self._last_message_at: float = 0

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    def start(
        self,
        handler: PayloadHandler,
        on_connection_change: Optional[ConnectionListener] = None,
    ) -> SubscriptionHandle:
        """Comienza a entregar payloads a ``handler(device_id, payload)``.

        No bloquea más de ``connect_timeout``: si la conexión no se
        establece a tiempo la fuente sigue reintentando en background.

        Raises:
            RuntimeError: Si la fuente ya fue iniciada
        """
        with self._lifecycle_lock:
            if self._running or self._stopped:
                raise RuntimeError(f"Source '{self.name}' already started")
            self._handler = handler
            self._listener = on_connection_change
            self._running = True
            self._handle = SubscriptionHandle(self)

        connected = self._open()
        if connected:
            logger.info("[%s] Started successfully", self.name.upper())
        else:
            logger.warning(
                "[%s] Not connected after %.1fs, retrying in background",
                self.name.upper(),
                self.connect_timeout,
            )
        return self._handle

    def stop(self) -> None:
        """Detiene la fuente. Idempotente, nunca lanza."""
        with self._lifecycle_lock:
            if self._stopped:
                return
            self._stopped = True
            was_running = self._running
            self._running = False

        if was_running:
            try:
                self._close()
            except Exception as e:
                logger.warning("[%s] Error stopping: %s", self.name.upper(), e)

        self._set_connected(False)
        logger.info(
            "[%s] Stopped. Stats: received=%d failed=%d reconnects=%d",
            self.name.upper(),
            self._messages_received,
            self._messages_failed,
            self._reconnect_count,
        )

    @abstractmethod
    def _open(self) -> bool:
        """Abre el transporte. Retorna True si conectó dentro del timeout."""

    @abstractmethod
    def _close(self) -> None:
        """Libera el transporte y cualquier thread/timer de reconexión."""

    # ------------------------------------------------------------------
    # Helpers para subclases
    # ------------------------------------------------------------------

    def _deliver(self, device_id: str, payload: RawPayload) -> None:
        """Entrega un payload al handler sin dejar escapar excepciones."""
        if not self._running or self._handler is None:
            return

        self._messages_received += 1
        self._last_message_at = time.time()
        try:
            self._handler(device_id, payload)
        except Exception as e:
            self._messages_failed += 1
            logger.exception("[%s] Handler error device=%s: %s", self.name.upper(), device_id, e)

    def _set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        was_connected = self._connected
        self._connected = connected
        SOURCE_CONNECTED.labels(source=self.name).set(1 if connected else 0)

        if was_connected and not connected and not self._stopped:
            self._reconnect_count += 1
            SOURCE_RECONNECTS.labels(source=self.name).inc()

        # La fuente solo conoce su dispositivo por defecto; el consumidor
        # extiende el estado a los demás dispositivos que ya vio.
        if self._listener is not None:
            try:
                self._listener(self.default_device_id, connected)
            except Exception as e:
                logger.warning("[%s] Connection listener error: %s", self.name.upper(), e)

    # ------------------------------------------------------------------
    # Estado
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def stats(self) -> dict:
        return {
            "source": self.name,
            "running": self._running,
            "connected": self._connected,
            "messages_received": self._messages_received,
            "messages_failed": self._messages_failed,
            "reconnect_count": self._reconnect_count,
            "last_message_at": self._last_message_at,
        }

    def health_check(self) -> dict:
        """Health check para monitoreo."""
        return {
            "healthy": self._running and self._connected,
            "running": self._running,
            "connected": self._connected,
            "reconnect_count": self._reconnect_count,
            "last_message_age_seconds": (
                time.time() - self._last_message_at if self._last_message_at > 0 else None
            ),
        }
