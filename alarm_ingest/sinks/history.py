"""History log append-only por métrica.

Tablas:
- sensor_history: cada lectura {value, timestamp}; ``id`` es el orden
  de inserción asignado por la BD
- alarm_history: cada transición de estado (entrada y recuperación)

Consulta: últimas N lecturas ordenadas por timestamp descendente.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..errors import StoreWriteFailed
from ..models import AlertEvent, Metric, Reading

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
MAX_LIMIT = 1000

metadata = MetaData()

# BigInteger no es autoincrement en SQLite; se usa Integer en ese dialecto
_PK = BigInteger().with_variant(Integer(), "sqlite")

sensor_history = Table(
    "sensor_history",
    metadata,
    Column("id", _PK, primary_key=True, autoincrement=True),
    Column("device_id", String(64), nullable=False),
    Column("metric", String(32), nullable=False),
    Column("value", Float, nullable=False),
    Column("timestamp", BigInteger, nullable=False),
    Column("inserted_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index("ix_sensor_history_device_metric_ts", "device_id", "metric", "timestamp"),
)

alarm_history = Table(
    "alarm_history",
    metadata,
    Column("id", _PK, primary_key=True, autoincrement=True),
    Column("device_id", String(64), nullable=False),
    Column("metric", String(32), nullable=False),
    Column("from_status", String(16), nullable=False),
    Column("to_status", String(16), nullable=False),
    Column("value", Float, nullable=True),
    Column("timestamp", BigInteger, nullable=False),
    Column("inserted_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index("ix_alarm_history_device_ts", "device_id", "timestamp"),
)


def _clamp_limit(limit: int) -> int:
    return max(1, min(int(limit), MAX_LIMIT))


class HistoryLog:
    """Acceso al history log.

    Uso:
        log = HistoryLog(get_engine())
        log.ensure_schema()
        log.append(reading)
        rows = log.recent("esp32-fire-001", Metric.GAS, limit=50)
    """

    def __init__(self, engine: Engine):
        self._engine = engine
        self._appended = 0
        self._failed = 0

    def ensure_schema(self) -> None:
        """Crea las tablas si no existen. Seguro de llamar varias veces."""
        metadata.create_all(self._engine)
        logger.info("[HISTORY] Schema ready")

    def append(self, reading: Reading) -> int:
        """Agrega una lectura.

        Returns:
            id asignado (orden de inserción)

        Raises:
            StoreWriteFailed: Si la BD rechaza la escritura
        """
        try:
            with self._engine.begin() as conn:
                result = conn.execute(insert(sensor_history).values(**reading.to_history_row()))
                row_id = int(result.inserted_primary_key[0])
        except SQLAlchemyError as e:
            self._failed += 1
            raise StoreWriteFailed("history", f"{reading.device_id}/{reading.metric.value}", e) from e

        self._appended += 1
        return row_id

    def append_alarm(self, event: AlertEvent) -> int:
        """Registra una transición de estado en alarm_history."""
        value = None if event.value is None else float(event.value)
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    insert(alarm_history).values(
                        device_id=event.device_id,
                        metric=event.metric.value,
                        from_status=event.from_status.value,
                        to_status=event.to_status.value,
                        value=value,
                        timestamp=event.timestamp,
                    )
                )
                return int(result.inserted_primary_key[0])
        except SQLAlchemyError as e:
            raise StoreWriteFailed("alarm_history", f"{event.device_id}/{event.metric.value}", e) from e

    def recent(
        self,
        device_id: str,
        metric: Metric | str,
        limit: int = DEFAULT_LIMIT,
    ) -> list[dict]:
        """Últimas N lecturas de una métrica, timestamp descendente.

        Empates de timestamp se resuelven por orden de inserción.
        """
        metric = Metric(metric)
        stmt = (
            select(
                sensor_history.c.id,
                sensor_history.c.value,
                sensor_history.c.timestamp,
            )
            .where(sensor_history.c.device_id == device_id)
            .where(sensor_history.c.metric == metric.value)
            .order_by(sensor_history.c.timestamp.desc(), sensor_history.c.id.desc())
            .limit(_clamp_limit(limit))
        )
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [
            {"id": int(r["id"]), "value": float(r["value"]), "timestamp": int(r["timestamp"])}
            for r in rows
        ]

    def recent_alarms(
        self,
        device_id: str,
        limit: int = DEFAULT_LIMIT,
        metric: Optional[Metric | str] = None,
    ) -> list[dict]:
        stmt = select(alarm_history).where(alarm_history.c.device_id == device_id)
        if metric is not None:
            stmt = stmt.where(alarm_history.c.metric == Metric(metric).value)
        stmt = stmt.order_by(
            alarm_history.c.timestamp.desc(), alarm_history.c.id.desc()
        ).limit(_clamp_limit(limit))

        with self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [
            {
                "id": int(r["id"]),
                "metric": r["metric"],
                "from_status": r["from_status"],
                "to_status": r["to_status"],
                "value": r["value"],
                "timestamp": int(r["timestamp"]),
            }
            for r in rows
        ]

    @property
    def stats(self) -> dict:
        return {"appended": self._appended, "failed": self._failed}
