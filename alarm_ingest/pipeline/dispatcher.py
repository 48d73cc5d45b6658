"""Fan-out de lecturas normalizadas.

Por cada Reading:
1. Sobrescribe sensors/<metric> en el store de estado actual
2. Agrega la lectura al history log (background, fire-and-forget)
3. Classifier → TransitionTracker; si la transición entra en
   WARNING/DANGER se envía al canal de alertas (background)

Cada sink es independiente: un fallo en uno se loguea y no impide ni
revierte los otros.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from typing import Callable, Optional

from ..classification.classifier import classify
from ..classification.thresholds import ThresholdConfig
from ..classification.transition_tracker import TransitionTracker
from ..errors import AlarmIngestError
from ..metrics import ALERTS_EMITTED, READINGS_DISPATCHED, SINK_FAILURES
from ..models import AlertEvent, NormalizedPacket, Reading
from ..sinks.alert_channel import AlertChannel, build_alert_message
from ..sinks.current_state import (
    SYSTEM_BATTERY,
    SYSTEM_LAST_UPDATE,
    SYSTEM_STATUS,
    CurrentStateStore,
)
from ..sinks.history import HistoryLog

logger = logging.getLogger(__name__)

DEFAULT_SINK_WORKERS = 4


class FanOutDispatcher:
    """Distribuye cada lectura a estado, historial y alertas.

    Uso:
        dispatcher = FanOutDispatcher(store, history, channel)
        dispatcher.dispatch_packet(packet)
        ...
        dispatcher.close()

    Con ``background=False`` historial y alertas se ejecutan en línea
    (útil en tests y en scripts de un solo disparo).
    """

    def __init__(
        self,
        state_store: CurrentStateStore,
        history: Optional[HistoryLog] = None,
        alert_channel: Optional[AlertChannel] = None,
        tracker: Optional[TransitionTracker] = None,
        thresholds: Optional[ThresholdConfig] = None,
        executor: Optional[Executor] = None,
        max_workers: int = DEFAULT_SINK_WORKERS,
        background: bool = True,
    ):
        self._state = state_store
        self._history = history
        self._alerts = alert_channel
        self._tracker = tracker or TransitionTracker()
        self._thresholds = thresholds

        self._owns_executor = False
        self._executor: Optional[Executor] = executor
        if self._executor is None and background:
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sink")
            self._owns_executor = True

        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

        self._dispatched = 0
        self._alerts_forwarded = 0
        self._sink_failures = {"current_state": 0, "history": 0, "alarm_history": 0, "alert": 0}
        self._stats_lock = threading.Lock()

    @property
    def tracker(self) -> TransitionTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def dispatch(self, reading: Reading) -> Optional[AlertEvent]:
        """Distribuye una lectura a los tres sinks.

        Returns:
            AlertEvent si la lectura produjo una transición de estado
        """
        status = classify(reading.metric, reading.value, self._thresholds)

        # 1. Estado actual (last-write-wins por orden de procesamiento)
        try:
            self._state.set_sensor(reading.device_id, reading.metric, reading.to_state_data(status))
        except Exception as e:
            self._record_failure("current_state", e)

        # 2. Historial
        if self._history is not None:
            self._submit("history", self._history.append, reading)

        # 3. Transiciones y alertas
        event = self._tracker.observe(
            reading.device_id,
            reading.metric,
            status,
            value=reading.value,
            timestamp=reading.timestamp,
        )
        if event is not None:
            logger.info(
                "[DISPATCH] Transition device=%s metric=%s %s -> %s value=%s",
                event.device_id,
                event.metric.value,
                event.from_status.value,
                event.to_status.value,
                event.value,
            )
            if self._history is not None:
                self._submit("alarm_history", self._history.append_alarm, event)
            if event.is_alerting and self._alerts is not None:
                self._submit("alert", self._deliver_alert, event)

        READINGS_DISPATCHED.labels(metric=reading.metric.value).inc()
        with self._stats_lock:
            self._dispatched += 1

        return event

    def dispatch_packet(self, packet: NormalizedPacket) -> list[AlertEvent]:
        """Distribuye todas las lecturas de un payload y actualiza system/*."""
        events = []
        for reading in packet.readings:
            event = self.dispatch(reading)
            if event is not None:
                events.append(event)

        self._write_system(packet.device_id, SYSTEM_LAST_UPDATE, packet.timestamp)
        if packet.battery_level is not None:
            self._write_system(packet.device_id, SYSTEM_BATTERY, packet.battery_level)

        return events

    def set_online(self, device_id: str, online: bool) -> None:
        """Actualiza system/status (conexión de la fuente)."""
        self._write_system(device_id, SYSTEM_STATUS, bool(online))

    def _write_system(self, device_id: str, path: str, value) -> None:
        try:
            self._state.write(device_id, path, value)
        except Exception as e:
            self._record_failure("current_state", e)

    def _deliver_alert(self, event: AlertEvent) -> None:
        message = build_alert_message(event)
        self._alerts.send(message)
        ALERTS_EMITTED.labels(metric=event.metric.value, severity=message.severity).inc()
        with self._stats_lock:
            self._alerts_forwarded += 1

    # ------------------------------------------------------------------
    # Ejecución de sinks
    # ------------------------------------------------------------------

    def _submit(self, sink: str, func: Callable, *args) -> None:
        def guarded():
            try:
                func(*args)
            except Exception as e:
                self._record_failure(sink, e)

        if self._executor is None:
            guarded()
            return

        try:
            future = self._executor.submit(guarded)
        except RuntimeError as e:
            # Executor cerrado durante shutdown
            self._record_failure(sink, e)
            return

        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard_pending)

    def _discard_pending(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _record_failure(self, sink: str, error: Exception) -> None:
        SINK_FAILURES.labels(sink=sink).inc()
        with self._stats_lock:
            self._sink_failures[sink] = self._sink_failures.get(sink, 0) + 1

        if isinstance(error, AlarmIngestError):
            logger.warning("[DISPATCH] Sink %s failed: %s", sink, error)
        else:
            logger.exception("[DISPATCH] Sink %s failed: %s", sink, error)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Espera a que terminen las escrituras en background.

        Returns:
            True si no quedó trabajo pendiente
        """
        with self._pending_lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self, timeout: Optional[float] = 10.0) -> None:
        """Drena el trabajo pendiente y libera el executor propio."""
        self.flush(timeout=timeout)
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        close_channel = getattr(self._alerts, "close", None)
        if callable(close_channel):
            close_channel()

    @property
    def stats(self) -> dict:
        with self._stats_lock:
            return {
                "readings_dispatched": self._dispatched,
                "alerts_forwarded": self._alerts_forwarded,
                "sink_failures": dict(self._sink_failures),
                "pending_sink_tasks": len(self._pending),
                "tracker": self._tracker.stats,
            }
