"""Consumidor de payloads con un worker por dispositivo.

El callback de la fuente (thread de red de paho o loop de Redis) solo
encola (~0.01ms). Cada dispositivo tiene una cola acotada y un único
worker, así los payloads de un mismo dispositivo se procesan en orden
de llegada y sin solaparse: el read-modify-write del TransitionTracker
no necesita lock por dispositivo.

Cola llena → el payload se descarta y se cuenta (backpressure).

El device_id viene del topic o del stream, así que la cantidad de
workers está acotada: ``max_devices`` y, opcionalmente, una allowlist.
Un dispositivo fuera del tope se rechaza y se cuenta.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable, Dict, Iterable, Optional, Union

from ..classification.thresholds import ThresholdConfig
from ..errors import MalformedPayload
from ..metrics import FALLBACK_TIMESTAMPS, PAYLOADS_RECEIVED, PROCESSING_LATENCY
from ..models import AlertEvent
from ..normalization.normalizer import normalize_packet
from .dispatcher import FanOutDispatcher

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_MAX_DEVICES = 64

RawPayload = Union[bytes, str, dict]

_STOP = object()


class _DeviceWorker:
    """Cola acotada + thread único para un dispositivo."""

    def __init__(
        self,
        device_id: str,
        process: Callable[[str, RawPayload], object],
        max_queue_size: int,
    ):
        self.device_id = device_id
        self._process = process
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._abort = threading.Event()
        self._thread = threading.Thread(
            target=self._loop,
            daemon=True,
            name=f"device-worker-{device_id}",
        )

    def start(self) -> None:
        self._thread.start()

    def enqueue(self, payload: RawPayload) -> bool:
        try:
            self._queue.put_nowait(payload)
            return True
        except queue.Full:
            return False

    def _loop(self) -> None:
        while not self._abort.is_set():
            try:
                item = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue

            try:
                if item is _STOP:
                    return
                self._process(self.device_id, item)
            except Exception as e:
                # Nunca debe detener el loop de ingesta
                logger.exception("[CONSUMER] Worker %s error: %s", self.device_id, e)
            finally:
                self._queue.task_done()

    def stop(self, drain: bool = True, timeout: float = 5.0) -> None:
        if drain:
            try:
                self._queue.put(_STOP, timeout=timeout)
            except queue.Full:
                logger.warning("[CONSUMER] Queue full at shutdown, aborting device=%s", self.device_id)
                self._abort.set()
        else:
            self._abort.set()

        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            self._abort.set()
            self._thread.join(timeout=1.0)

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive()


class PayloadConsumer:
    """Normaliza y despacha payloads crudos serializando por dispositivo.

    Uso:
        consumer = PayloadConsumer(dispatcher)
        source.start(consumer.handle)
        ...
        consumer.stop()
    """

    def __init__(
        self,
        dispatcher: FanOutDispatcher,
        thresholds: Optional[ThresholdConfig] = None,
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
        now: Callable[[], float] = time.time,
        max_devices: int = DEFAULT_MAX_DEVICES,
        allowed_devices: Optional[Iterable[str]] = None,
    ):
        self._dispatcher = dispatcher
        self._thresholds = thresholds
        self._max_queue_size = max_queue_size
        self._now = now
        self._max_devices = max_devices
        self._allowed = frozenset(allowed_devices) if allowed_devices else None

        self._workers: Dict[str, _DeviceWorker] = {}
        self._workers_lock = threading.Lock()
        self._stopped = False

        # Stats
        self._received = 0
        self._processed = 0
        self._malformed = 0
        self._dropped = 0
        self._rejected = 0
        self._last_message_at: float = 0
        self._stats_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Entrada desde la fuente
    # ------------------------------------------------------------------

    def handle(self, device_id: str, payload: RawPayload) -> bool:
        """Callback de la fuente: encola el payload para su dispositivo.

        Returns:
            False si se descartó (cola llena, consumidor detenido o
            dispositivo no admitido)
        """
        with self._stats_lock:
            self._received += 1
            self._last_message_at = time.time()

        if not self._admits(device_id):
            with self._stats_lock:
                self._rejected += 1
            PAYLOADS_RECEIVED.labels(status="rejected").inc()
            logger.warning("[CONSUMER] Payload rejected device=%s (not allowed or device limit reached)", device_id)
            return False

        worker = self._get_worker(device_id)
        if worker is None or not worker.enqueue(payload):
            with self._stats_lock:
                self._dropped += 1
            PAYLOADS_RECEIVED.labels(status="dropped").inc()
            logger.warning("[CONSUMER] Payload dropped device=%s (queue full or stopped)", device_id)
            return False
        return True

    def _admits(self, device_id: str) -> bool:
        if self._allowed is not None and device_id not in self._allowed:
            return False
        with self._workers_lock:
            return device_id in self._workers or len(self._workers) < self._max_devices

    def _get_worker(self, device_id: str) -> Optional[_DeviceWorker]:
        with self._workers_lock:
            if self._stopped:
                return None
            worker = self._workers.get(device_id)
            if worker is None:
                if len(self._workers) >= self._max_devices:
                    return None
                worker = _DeviceWorker(device_id, self.process, self._max_queue_size)
                worker.start()
                self._workers[device_id] = worker
                logger.info("[CONSUMER] Worker started device=%s", device_id)
            return worker

    # ------------------------------------------------------------------
    # Procesamiento
    # ------------------------------------------------------------------

    def process(self, device_id: str, payload: RawPayload) -> list[AlertEvent]:
        """Procesa un payload en el thread actual.

        Un payload malformado se descarta completo: no toca el estado
        actual ni el TransitionTracker.
        """
        start = time.perf_counter()
        try:
            packet = normalize_packet(device_id, payload, thresholds=self._thresholds, now=self._now)
        except MalformedPayload as e:
            with self._stats_lock:
                self._malformed += 1
            PAYLOADS_RECEIVED.labels(status="malformed").inc()
            logger.warning("[CONSUMER] Discarded payload: %s", e)
            return []

        if packet.used_fallback_ts:
            FALLBACK_TIMESTAMPS.inc()

        events = self._dispatcher.dispatch_packet(packet)

        PROCESSING_LATENCY.observe(time.perf_counter() - start)
        PAYLOADS_RECEIVED.labels(status="processed").inc()
        with self._stats_lock:
            self._processed += 1
            processed = self._processed

        # Log periódico
        if processed % 100 == 0:
            logger.info("[CONSUMER] %s", self._format_stats())

        return events

    def on_connection_change(self, device_id: str, connected: bool) -> None:
        """Listener de conexión de la fuente → system/status.

        La conexión es del transporte, no de un equipo: el estado se
        escribe para el dispositivo recibido y para todos los que ya
        tienen worker.
        """
        with self._workers_lock:
            devices = [device_id] + sorted(d for d in self._workers if d != device_id)
        for device in devices:
            self._dispatcher.set_online(device, connected)

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    def stop(self, drain: bool = True, timeout: float = 5.0) -> None:
        """Detiene todos los workers. Seguro de llamar varias veces."""
        with self._workers_lock:
            if self._stopped:
                return
            self._stopped = True
            workers = list(self._workers.values())

        for worker in workers:
            worker.stop(drain=drain, timeout=timeout)

        logger.info("[CONSUMER] Stopped. %s", self._format_stats())

    def _format_stats(self) -> str:
        s = self.stats
        return (
            f"received={s['received']} processed={s['processed']} "
            f"malformed={s['malformed']} dropped={s['dropped']} rejected={s['rejected']}"
        )

    @property
    def stats(self) -> dict:
        with self._workers_lock:
            queues = {d: w.queue_depth for d, w in self._workers.items()}
        with self._stats_lock:
            return {
                "received": self._received,
                "processed": self._processed,
                "malformed": self._malformed,
                "dropped": self._dropped,
                "rejected": self._rejected,
                "last_message_at": self._last_message_at,
                "queue_depth": queues,
            }

    def health_check(self) -> dict:
        with self._workers_lock:
            alive = all(w.is_alive for w in self._workers.values())
            devices = sorted(self._workers)
        return {
            "healthy": not self._stopped and alive,
            "stopped": self._stopped,
            "devices": devices,
            "last_message_age_seconds": (
                time.time() - self._last_message_at if self._last_message_at > 0 else None
            ),
        }
