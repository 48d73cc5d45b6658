"""Fuente de change feed sobre Redis Streams.

Cada entrada del stream es una actualización publicada por el equipo (o
por un bridge) con los campos:
- payload: JSON crudo (mismo formato que MQTT)
- device_id: opcional, default el dispositivo configurado

Si la entrada no trae ``payload``, el resto de campos se toma como el
payload mismo.

Las entradas se leen como bytes crudos (``decode_responses=False``): el
decode UTF-8 lo hace el normalizador, así una entrada inválida se
descarta sola como MalformedPayload y el lector sigue con la próxima.

Ante ConnectionError/TimeoutError reintenta con backoff exponencial
acotado y retoma desde el último id leído (best-effort, sin garantía
de orden entre reconexiones). Cualquier otro error de lectura
(ResponseError, WRONGTYPE, etc.) marca la fuente como desconectada y
espera un backoff antes de volver a leer; el thread lector nunca termina
salvo por ``stop``.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

import redis

from ..errors import TransportDisconnected
from ..redis_connection import RedisConnection
from ..resilience.retry import RetryConfig, RetryExecutor
from .base import IngestionSource

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_MS = 1000
DEFAULT_BATCH = 100


class RedisStreamIngestionSource(IngestionSource):
    """Lee un Redis Stream con XREAD BLOCK en un thread dedicado."""

    name = "redis"

    def __init__(
        self,
        default_device_id: str,
        stream: str,
        connection: Optional[RedisConnection] = None,
        redis_url: Optional[str] = None,
        start_id: str = "$",
        block_ms: int = DEFAULT_BLOCK_MS,
        batch_size: int = DEFAULT_BATCH,
        connect_timeout: float = 5.0,
        retry_config: Optional[RetryConfig] = None,
    ):
        super().__init__(default_device_id, connect_timeout=connect_timeout)
        self.stream = stream
        self.block_ms = block_ms
        self.batch_size = batch_size

        self._owns_connection = connection is None
        self._conn = connection or RedisConnection(
            url=redis_url,
            socket_timeout=max(connect_timeout, block_ms / 1000.0 + 1.0),
            connect_timeout=connect_timeout,
            decode_responses=False,
        )
        self._last_id = start_id
        self._stop_event = threading.Event()
        self._connected_event = threading.Event()
        self._retry_config = retry_config or RetryConfig(
            base_delay=1.0,
            max_delay=30.0,
            retryable_exceptions=(TransportDisconnected,),
        )
        self._retry = RetryExecutor(self._retry_config, stop_event=self._stop_event)
        self._thread: Optional[threading.Thread] = None

        # Errores de lectura consecutivos (backoff) y totales
        self._consecutive_errors = 0
        self._read_errors = 0
        self._entries_skipped = 0

    @property
    def last_id(self) -> str:
        return self._last_id

    def _open(self) -> bool:
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"redis-source-{self.stream}",
        )
        self._thread.start()
        return self._connected_event.wait(self.connect_timeout)

    def _close(self) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.block_ms / 1000.0 + self.connect_timeout + 1.0)
            if self._thread.is_alive():
                logger.warning("[REDIS_SOURCE] Reader thread did not stop in time")
        if self._owns_connection:
            self._conn.disconnect()

    # ------------------------------------------------------------------
    # Loop de lectura
    # ------------------------------------------------------------------

    def _connect(self) -> redis.Redis:
        if not self._conn.connect():
            raise TransportDisconnected(self.name, f"cannot reach {self._conn.safe_url}")
        return self._conn.client

    def _run(self) -> None:
        while not self._stop_event.is_set():
            client = self._retry.execute(self._connect)
            if client is None:
                # Detenido durante el backoff
                break

            self._connected_event.set()
            self._set_connected(True)

            try:
                self._read_until_error(client)
            except (redis.ConnectionError, redis.TimeoutError) as e:
                self._mark_down()
                if self._stop_event.is_set():
                    break
                logger.warning("[REDIS_SOURCE] %s", TransportDisconnected(self.name, str(e)))
                self._set_connected(False)
            except redis.RedisError as e:
                self._mark_down()
                logger.error("[REDIS_SOURCE] Stream read failed stream=%s: %s", self.stream, e)
                self._set_connected(False)
                self._backoff()
            except Exception as e:
                self._mark_down()
                logger.exception("[REDIS_SOURCE] Unexpected reader error stream=%s: %s", self.stream, e)
                self._set_connected(False)
                self._backoff()

    def _mark_down(self) -> None:
        self._connected_event.clear()
        self._conn.mark_disconnected()
        self._read_errors += 1
        self._consecutive_errors += 1

    def _backoff(self) -> None:
        delay = self._retry_config.calculate_delay(self._consecutive_errors)
        self._stop_event.wait(delay)

    def _read_until_error(self, client: redis.Redis) -> None:
        while not self._stop_event.is_set():
            response = client.xread(
                {self.stream: self._last_id},
                count=self.batch_size,
                block=self.block_ms,
            )
            self._consecutive_errors = 0
            if not response:
                continue

            for _stream_name, entries in response:
                for entry_id, fields in entries:
                    self._last_id = _text(entry_id)
                    self._handle_entry(self._last_id, fields or {})

    def _handle_entry(self, entry_id: str, fields: dict) -> None:
        # Nombres de campo a str; los valores siguen crudos hacia el normalizador
        fields = {_text(k, errors="replace"): v for k, v in fields.items()}
        raw_device = fields.pop("device_id", None)
        try:
            device_id = _text(raw_device) or self.default_device_id
        except UnicodeDecodeError:
            self._entries_skipped += 1
            logger.warning("[REDIS_SOURCE] Skipping entry id=%s: device_id is not valid utf-8", entry_id)
            return

        payload = fields.pop("payload", None)
        if payload is None:
            payload = fields
        logger.debug("[REDIS_SOURCE] Entry id=%s device=%s", entry_id, device_id)
        self._deliver(device_id, payload)

    @property
    def stats(self) -> dict:
        stats = super().stats
        stats.update({
            "stream": self.stream,
            "last_id": self._last_id,
            "read_errors": self._read_errors,
            "entries_skipped": self._entries_skipped,
            "retry": self._retry.stats,
        })
        return stats


def _text(value, errors: str = "strict"):
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors)
    return value
