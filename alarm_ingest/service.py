"""Ensamblado del servicio de ingesta.

Flujo:
  IngestionSource (MQTT o Redis Stream)
  → PayloadConsumer (cola + worker por dispositivo)
  → FanOutDispatcher (estado actual, historial, alertas)
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from common.config import Settings, get_settings
from common.db import get_engine, reset_engine

from .classification.thresholds import ThresholdConfig
from .pipeline.consumer import PayloadConsumer
from .pipeline.dispatcher import FanOutDispatcher
from .redis_connection import RedisConnection
from .sinks.alert_channel import AlertChannel, LoggingAlertChannel, WebhookAlertChannel
from .sinks.current_state import CurrentStateStore, InMemoryCurrentStateStore, RedisCurrentStateStore
from .sinks.history import HistoryLog
from .sources import IngestionSource, SubscriptionHandle, create_source

logger = logging.getLogger(__name__)


def build_state_store(settings: Settings) -> CurrentStateStore:
    if settings.state_backend == "redis":
        conn = RedisConnection(url=settings.redis_url, connect_timeout=settings.connect_timeout_seconds)
        if not conn.connect():
            logger.warning("[SERVICE] Redis state store unavailable, writes will fail until it recovers")
        return RedisCurrentStateStore(conn)
    if settings.state_backend != "memory":
        raise ValueError(f"Unsupported STATE_BACKEND '{settings.state_backend}'")
    return InMemoryCurrentStateStore()


def build_alert_channel(settings: Settings) -> AlertChannel:
    if settings.notifier_url:
        return WebhookAlertChannel(settings.notifier_url, api_key=settings.notifier_key)
    logger.info("[SERVICE] NOTIFIER_URL not set, alerts go to the log")
    return LoggingAlertChannel()


class IngestionService:
    """Servicio completo: fuente + consumidor + fan-out.

    Todos los componentes se pueden inyectar (tests); lo que no se
    inyecta se construye a partir de ``Settings``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        source: Optional[IngestionSource] = None,
        state_store: Optional[CurrentStateStore] = None,
        history: Optional[HistoryLog] = None,
        alert_channel: Optional[AlertChannel] = None,
        thresholds: Optional[ThresholdConfig] = None,
    ):
        self.settings = settings or get_settings()
        self.thresholds = thresholds or ThresholdConfig.from_env()

        self.state_store = state_store or build_state_store(self.settings)
        # El engine singleton se libera en stop() solo si lo creó el servicio
        self._owns_engine = history is None
        if history is None:
            history = HistoryLog(get_engine())
            history.ensure_schema()
        self.history = history
        self.alert_channel = alert_channel or build_alert_channel(self.settings)

        self.dispatcher = FanOutDispatcher(
            self.state_store,
            history=self.history,
            alert_channel=self.alert_channel,
            thresholds=self.thresholds,
            max_workers=self.settings.sink_workers,
        )
        self.consumer = PayloadConsumer(
            self.dispatcher,
            thresholds=self.thresholds,
            max_queue_size=self.settings.device_queue_size,
            max_devices=self.settings.max_devices,
            allowed_devices=self.settings.allowed_devices,
        )
        self.source = source or create_source(self.settings)

        self._handle: Optional[SubscriptionHandle] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._handle is not None and not self._handle.closed

    def start(self) -> bool:
        """Inicia la suscripción. Retorna True si la fuente quedó conectada."""
        with self._lock:
            if self._handle is not None:
                return self.source.is_connected
            logger.info(
                "[SERVICE] Starting ingestion device=%s source=%s",
                self.settings.device_id,
                self.source.name,
            )
            self._handle = self.source.start(
                self.consumer.handle,
                on_connection_change=self.consumer.on_connection_change,
            )
        return self.source.is_connected

    def stop(self, timeout: float = 10.0) -> None:
        """Detiene fuente, consumidor, sinks y engine del historial en ese orden.

        Cada paso corre aunque el anterior falle, así no quedan threads
        ni conexiones colgadas.
        """
        with self._lock:
            handle, self._handle = self._handle, None

        try:
            if handle is not None:
                handle.close()
        finally:
            try:
                self.consumer.stop(drain=True, timeout=timeout)
            finally:
                try:
                    self.dispatcher.close(timeout=timeout)
                finally:
                    if self._owns_engine:
                        reset_engine()
        logger.info("[SERVICE] Stopped")

    def health_check(self) -> dict:
        source = self.source.health_check()
        consumer = self.consumer.health_check()
        state = self.state_store.health_check()
        return {
            "healthy": source["healthy"] and consumer["healthy"] and state["healthy"],
            "source": source,
            "consumer": consumer,
            "state_store": state,
        }

    @property
    def stats(self) -> dict:
        return {
            "source": self.source.stats,
            "consumer": self.consumer.stats,
            "dispatcher": self.dispatcher.stats,
            "history": self.history.stats,
        }


# ----------------------------------------------------------------------
# Singleton de proceso
# ----------------------------------------------------------------------

_service: Optional[IngestionService] = None


def get_service() -> Optional[IngestionService]:
    """Obtiene el servicio singleton (None si no se inició)."""
    return _service


def start_service(service: Optional[IngestionService] = None) -> IngestionService:
    """Inicia el servicio singleton."""
    global _service

    if _service is None:
        _service = service or IngestionService()
    _service.start()
    return _service


def stop_service() -> None:
    """Detiene el servicio singleton."""
    global _service

    if _service is not None:
        _service.stop()
        _service = None
