"""Modelos de dominio del pipeline de ingesta.

Reading es el contrato único que fluye por todo el pipeline:
Source → Normalizer → {state, history} y Classifier → Tracker → alertas
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class Metric(str, Enum):
    """Métricas que reporta un equipo de alarma de incendio."""
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    GAS = "gas"
    FIRE = "fire"
    BUZZER = "buzzer"  # Derivada, nunca llega en el payload

    @property
    def is_derived(self) -> bool:
        return self is Metric.BUZZER


class SensorStatus(str, Enum):
    """Banda de severidad de una lectura.

    Orden total por severidad: UNKNOWN < NORMAL < WARNING < DANGER.
    """
    UNKNOWN = "unknown"
    NORMAL = "normal"
    WARNING = "warning"
    DANGER = "danger"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @property
    def is_alerting(self) -> bool:
        return self in (SensorStatus.WARNING, SensorStatus.DANGER)

    # str mixin trae comparación lexicográfica; se reemplaza por severidad
    def __lt__(self, other):
        if not isinstance(other, SensorStatus):
            return NotImplemented
        return self.severity < other.severity

    def __le__(self, other):
        if not isinstance(other, SensorStatus):
            return NotImplemented
        return self.severity <= other.severity

    def __gt__(self, other):
        if not isinstance(other, SensorStatus):
            return NotImplemented
        return self.severity > other.severity

    def __ge__(self, other):
        if not isinstance(other, SensorStatus):
            return NotImplemented
        return self.severity >= other.severity


_SEVERITY = {
    SensorStatus.UNKNOWN: 0,
    SensorStatus.NORMAL: 1,
    SensorStatus.WARNING: 2,
    SensorStatus.DANGER: 3,
}


ReadingValue = Union[float, bool]


@dataclass(frozen=True)
class Reading:
    """Observación normalizada de una métrica en un instante."""

    device_id: str
    metric: Metric
    value: ReadingValue
    timestamp: int  # epoch en segundos

    def to_state_data(self, status: SensorStatus) -> dict:
        """Formato de la proyección actual (sensors/<metric>)."""
        return {
            "value": self.value,
            "timestamp": self.timestamp,
            "status": status.value,
        }

    def to_history_row(self) -> dict:
        return {
            "device_id": self.device_id,
            "metric": self.metric.value,
            "value": float(self.value),
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class AlertEvent:
    """Cambio de estado de un par (device_id, metric).

    Se emite en cualquier transición; los consumidores filtran por
    ``is_alerting`` (WARNING/DANGER) o ``is_recovery``.
    """

    device_id: str
    metric: Metric
    from_status: SensorStatus
    to_status: SensorStatus
    value: ReadingValue
    timestamp: int

    @property
    def is_escalation(self) -> bool:
        return self.to_status > self.from_status

    @property
    def is_alerting(self) -> bool:
        return self.to_status.is_alerting

    @property
    def is_recovery(self) -> bool:
        return self.from_status.is_alerting and self.to_status == SensorStatus.NORMAL

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "metric": self.metric.value,
            "from_status": self.from_status.value,
            "to_status": self.to_status.value,
            "value": self.value,
            "timestamp": self.timestamp,
        }


@dataclass
class SystemStatus:
    """Salud del equipo (system/status, system/battery, system/lastUpdate)."""

    online: bool = False
    last_update: Optional[int] = None
    battery_level: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "online": self.online,
            "lastUpdate": self.last_update,
            "batteryLevel": self.battery_level,
        }


@dataclass
class NormalizedPacket:
    """Resultado de normalizar un payload completo."""

    device_id: str
    timestamp: int
    readings: list[Reading] = field(default_factory=list)
    battery_level: Optional[float] = None
    used_fallback_ts: bool = False

    def get(self, metric: Metric) -> Optional[Reading]:
        for reading in self.readings:
            if reading.metric == metric:
                return reading
        return None
