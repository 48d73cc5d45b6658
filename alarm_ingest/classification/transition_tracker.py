"""Tracker de transiciones de estado.

Recuerda el último estado conocido por (device_id, metric) y emite un
AlertEvent solo cuando el estado cambia (edge-triggered).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from ..models import AlertEvent, Metric, ReadingValue, SensorStatus

TrackerKey = Tuple[str, Metric]


@dataclass
class TransitionState:
    """Último estado conocido de un par (device_id, metric)."""
    last_status: SensorStatus = SensorStatus.UNKNOWN


class TransitionTracker:
    """Máquina de estados por (device_id, metric).

    Reglas:
    - Estado inicial UNKNOWN (también al reiniciar el proceso)
    - Mismo estado que el anterior: sin evento, estado sin cambios
    - Estado distinto: emite AlertEvent(from, to) y guarda el nuevo estado

    Un sensor que permanece en DANGER durante N lecturas emite exactamente
    un evento al entrar y uno al salir.
    """

    def __init__(self):
        self._states: Dict[TrackerKey, TransitionState] = {}
        self._lock = threading.Lock()
        self._events_emitted = 0

    def observe(
        self,
        device_id: str,
        metric: Metric,
        new_status: SensorStatus,
        value: ReadingValue = None,
        timestamp: int = 0,
    ) -> Optional[AlertEvent]:
        """Registra el estado de una lectura.

        Returns:
            AlertEvent si el estado cambió, None si no
        """
        key = (device_id, Metric(metric))

        with self._lock:
            state = self._states.get(key)
            if state is None:
                state = TransitionState()
                self._states[key] = state

            if state.last_status == new_status:
                return None

            previous = state.last_status
            state.last_status = new_status
            self._events_emitted += 1

        return AlertEvent(
            device_id=device_id,
            metric=key[1],
            from_status=previous,
            to_status=new_status,
            value=value,
            timestamp=timestamp,
        )

    def get_status(self, device_id: str, metric: Metric) -> SensorStatus:
        """Último estado conocido (UNKNOWN si nunca se observó)."""
        with self._lock:
            state = self._states.get((device_id, Metric(metric)))
            return state.last_status if state else SensorStatus.UNKNOWN

    def snapshot(self) -> Dict[TrackerKey, SensorStatus]:
        with self._lock:
            return {k: s.last_status for k, s in self._states.items()}

    def reset(self, device_id: Optional[str] = None) -> None:
        """Olvida el estado de un dispositivo (o de todos)."""
        with self._lock:
            if device_id is None:
                self._states.clear()
                return
            for key in [k for k in self._states if k[0] == device_id]:
                del self._states[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                "tracked_keys": len(self._states),
                "events_emitted": self._events_emitted,
            }
