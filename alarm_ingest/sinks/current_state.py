"""Proyección del estado actual por dispositivo.

Claves (por dispositivo):
- sensors/<metric>  → {value, timestamp, status}
- system/status     → bool online
- system/battery    → nivel de batería
- system/lastUpdate → epoch del último payload procesado

Last-write-wins por orden de procesamiento, no por timestamp.
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import redis

from ..errors import StoreWriteFailed
from ..models import Metric
from ..redis_connection import RedisConnection

logger = logging.getLogger(__name__)

SYSTEM_STATUS = "system/status"
SYSTEM_BATTERY = "system/battery"
SYSTEM_LAST_UPDATE = "system/lastUpdate"
SYSTEM_PATHS = (SYSTEM_STATUS, SYSTEM_BATTERY, SYSTEM_LAST_UPDATE)


def sensor_path(metric: Metric | str) -> str:
    return f"sensors/{Metric(metric).value}"


class CurrentStateStore(ABC):
    """Interfaz del store de estado actual.

    Implementaciones:
    - InMemoryCurrentStateStore: dict protegido con lock (default/tests)
    - RedisCurrentStateStore: una clave Redis por path, escritura atómica
    """

    @abstractmethod
    def write(self, device_id: str, path: str, value: Any) -> None:
        """Sobrescribe un path.

        Raises:
            StoreWriteFailed: Si la escritura falla
        """

    @abstractmethod
    def read(self, device_id: str, path: str) -> Optional[Any]:
        """Lee un path, None si no existe."""

    def set_sensor(self, device_id: str, metric: Metric, data: dict) -> None:
        self.write(device_id, sensor_path(metric), data)

    def get_sensor(self, device_id: str, metric: Metric) -> Optional[dict]:
        return self.read(device_id, sensor_path(metric))

    def get_sensors(self, device_id: str) -> Dict[str, dict]:
        """Todas las métricas con valor conocido, por nombre."""
        result = {}
        for metric in Metric:
            data = self.get_sensor(device_id, metric)
            if data is not None:
                result[metric.value] = data
        return result

    def get_system(self, device_id: str) -> Dict[str, Any]:
        return {
            "status": self.read(device_id, SYSTEM_STATUS),
            "battery": self.read(device_id, SYSTEM_BATTERY),
            "lastUpdate": self.read(device_id, SYSTEM_LAST_UPDATE),
        }

    def health_check(self) -> dict:
        return {"healthy": True, "backend": type(self).__name__}


class InMemoryCurrentStateStore(CurrentStateStore):
    """Store en memoria, seguro para escrituras concurrentes."""

    def __init__(self):
        self._data: Dict[Tuple[str, str], Any] = {}
        self._lock = threading.Lock()

    def write(self, device_id: str, path: str, value: Any) -> None:
        with self._lock:
            self._data[(device_id, path)] = value

    def read(self, device_id: str, path: str) -> Optional[Any]:
        with self._lock:
            value = self._data.get((device_id, path))
            return dict(value) if isinstance(value, dict) else value

    def devices(self) -> list[str]:
        with self._lock:
            return sorted({device for device, _ in self._data})


class RedisCurrentStateStore(CurrentStateStore):
    """Store en Redis: clave ``<prefix>:<device_id>:<path>`` con valor JSON.

    Cada path es una sola clave, así cada escritura es atómica y no hace
    falta lock entre dispositivos.
    """

    def __init__(self, connection: RedisConnection, prefix: str = "firealarm"):
        self._conn = connection
        self._prefix = prefix

    def _key(self, device_id: str, path: str) -> str:
        return f"{self._prefix}:{device_id}:{path}"

    def write(self, device_id: str, path: str, value: Any) -> None:
        key = self._key(device_id, path)
        client = self._conn.client
        if client is None:
            raise StoreWriteFailed("current_state", key, RuntimeError("redis not connected"))
        try:
            client.set(key, json.dumps(value))
        except redis.RedisError as e:
            raise StoreWriteFailed("current_state", key, e) from e

    def read(self, device_id: str, path: str) -> Optional[Any]:
        client = self._conn.client
        if client is None:
            return None
        raw = client.get(self._key(device_id, path))
        if raw is None:
            return None
        return json.loads(raw)

    def health_check(self) -> dict:
        healthy = False
        try:
            healthy = bool(self._conn.client and self._conn.client.ping())
        except redis.RedisError as e:
            logger.warning("[STATE] Redis ping failed: %s", e)
        return {"healthy": healthy, "backend": "redis", "redis": self._conn.safe_url}
