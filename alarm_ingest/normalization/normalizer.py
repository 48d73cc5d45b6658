"""Normalizador de payloads a lecturas canónicas.

Reglas por campo (en orden de prioridad):
- temperature: "temperature", si no "temp"
- humidity: "humidity"
- gas: "gas_raw" redondeado, si no "gas" redondeado
- fire: "fire" numérico, si no "fire" booleano (true→1), si no "flame"
- timestamp: "ts" si es finito, si no hora actual en segundos

Métricas ausentes no generan Reading (nunca un 0 de relleno): el
consumidor debe conservar el valor anterior. El buzzer derivado se
emite siempre.
"""

from __future__ import annotations

import logging
import math
import time
from typing import Callable, Optional, Union

from ..classification.classifier import derive_buzzer
from ..classification.thresholds import ThresholdConfig
from ..errors import MalformedPayload
from ..models import Metric, NormalizedPacket, Reading
from .payload import RawSensorPayload, parse_payload

logger = logging.getLogger(__name__)

RawInput = Union[bytes, bytearray, str, dict]


def _finite(v: Optional[float]) -> Optional[float]:
    if v is None or not math.isfinite(v):
        return None
    return v


def _round_half_up(v: float) -> int:
    # Mismo redondeo que el firmware/dashboard (x.5 hacia arriba)
    return int(math.floor(v + 0.5))


def resolve_temperature(p: RawSensorPayload) -> Optional[float]:
    t = _finite(p.temperature)
    if t is not None:
        return t
    return _finite(p.temp)


def resolve_gas(p: RawSensorPayload) -> Optional[int]:
    for candidate in (p.gas_raw, p.gas):
        v = _finite(candidate)
        if v is not None:
            return _round_half_up(v)
    return None


def resolve_fire(p: RawSensorPayload) -> Optional[float]:
    if isinstance(p.fire, bool):
        return 1 if p.fire else 0
    if p.fire is not None and math.isfinite(p.fire):
        return int(p.fire) if float(p.fire).is_integer() else p.fire
    flame = _finite(p.flame)
    if flame is not None:
        return int(flame) if flame.is_integer() else flame
    return None


def resolve_timestamp(
    p: RawSensorPayload,
    now: Callable[[], float] = time.time,
) -> tuple[int, bool]:
    """Retorna (timestamp, usó_fallback).

    El fallback a reloj local hace que fuentes distintas tengan semántica
    de recencia inconsistente; se marca para poder medirlo.
    """
    ts = _finite(p.ts)
    if ts is not None:
        return int(ts), False
    return int(now()), True


def normalize_packet(
    device_id: str,
    raw: RawInput,
    *,
    thresholds: Optional[ThresholdConfig] = None,
    now: Callable[[], float] = time.time,
) -> NormalizedPacket:
    """Normaliza un payload completo.

    Raises:
        MalformedPayload: Si el payload no se puede parsear. No se emite
            ninguna lectura parcial.
    """
    try:
        payload = parse_payload(raw)
    except MalformedPayload as e:
        e.device_id = device_id
        raise

    timestamp, fallback = resolve_timestamp(payload, now)
    if fallback:
        logger.debug("[NORMALIZER] Missing ts, using wall clock device=%s ts=%d", device_id, timestamp)

    temperature = resolve_temperature(payload)
    humidity = _finite(payload.humidity)
    gas = resolve_gas(payload)
    fire = resolve_fire(payload)

    readings: list[Reading] = []
    for metric, value in (
        (Metric.TEMPERATURE, temperature),
        (Metric.HUMIDITY, humidity),
        (Metric.GAS, gas),
        (Metric.FIRE, fire),
    ):
        if value is None:
            continue
        readings.append(Reading(device_id=device_id, metric=metric, value=value, timestamp=timestamp))

    buzzer = derive_buzzer(temperature=temperature, gas=gas, fire=fire, thresholds=thresholds)
    readings.append(Reading(device_id=device_id, metric=Metric.BUZZER, value=buzzer, timestamp=timestamp))

    return NormalizedPacket(
        device_id=device_id,
        timestamp=timestamp,
        readings=readings,
        battery_level=_finite(payload.battery),
        used_fallback_ts=fallback,
    )


def normalize(
    device_id: str,
    raw: RawInput,
    *,
    thresholds: Optional[ThresholdConfig] = None,
    now: Callable[[], float] = time.time,
) -> list[Reading]:
    """Normaliza un payload a la lista de lecturas canónicas."""
    return normalize_packet(device_id, raw, thresholds=thresholds, now=now).readings
