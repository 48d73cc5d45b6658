"""Clasificador de umbrales.

Funciones puras: mapean (métrica, valor) a una banda de severidad.
Sin I/O ni estado; límite inferior inclusivo en todas las bandas.
"""

from __future__ import annotations

import math
from typing import Optional, Union

from ..models import Metric, SensorStatus
from .thresholds import DEFAULT_THRESHOLDS, ThresholdConfig

Value = Union[float, int, bool, None]


def _finite_number(value: Value) -> Optional[float]:
    """Retorna el valor como float si es numérico y finito, None si no."""
    if value is None or isinstance(value, bool):
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(v):
        return None
    return v


def _as_flag(value: Value) -> Optional[int]:
    """Coerce bool/número a 0/1 (sensores binarios)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return 1 if value else 0
    try:
        return 1 if float(value) > 0 else 0
    except (TypeError, ValueError):
        return None


def classify_gas(raw: Value, thresholds: ThresholdConfig = DEFAULT_THRESHOLDS) -> SensorStatus:
    v = _finite_number(raw)
    if v is None:
        return SensorStatus.UNKNOWN
    if v >= thresholds.gas_danger_raw:
        return SensorStatus.DANGER
    if v >= thresholds.gas_warn_raw:
        return SensorStatus.WARNING
    return SensorStatus.NORMAL


def classify_temperature(temp: Value, thresholds: ThresholdConfig = DEFAULT_THRESHOLDS) -> SensorStatus:
    v = _finite_number(temp)
    if v is None:
        return SensorStatus.UNKNOWN
    if v >= thresholds.temp_danger_c:
        return SensorStatus.DANGER
    if v >= thresholds.temp_warn_c:
        return SensorStatus.WARNING
    return SensorStatus.NORMAL


def classify_fire(fire: Value) -> SensorStatus:
    # Sensor binario: no existe banda WARNING
    flag = _as_flag(fire)
    if flag is None:
        return SensorStatus.UNKNOWN
    return SensorStatus.DANGER if flag > 0 else SensorStatus.NORMAL


def classify_humidity(humidity: Value) -> SensorStatus:
    # Humedad es informativa, sin bandas de alarma
    if _finite_number(humidity) is None:
        return SensorStatus.UNKNOWN
    return SensorStatus.NORMAL


def classify_buzzer(buzzer: Value) -> SensorStatus:
    flag = _as_flag(buzzer)
    if flag is None:
        return SensorStatus.UNKNOWN
    return SensorStatus.DANGER if flag > 0 else SensorStatus.NORMAL


def classify(
    metric: Metric | str,
    value: Value,
    thresholds: Optional[ThresholdConfig] = None,
) -> SensorStatus:
    """Clasifica una lectura en su banda de severidad.

    Args:
        metric: Métrica (enum o su nombre)
        value: Valor crudo; None o no finito → UNKNOWN
        thresholds: Bandas a usar (default: firmware ESP32)

    Returns:
        SensorStatus de la lectura

    Raises:
        ValueError: Si la métrica no existe
    """
    th = thresholds or DEFAULT_THRESHOLDS
    metric = Metric(metric)

    if metric == Metric.GAS:
        return classify_gas(value, th)
    if metric == Metric.TEMPERATURE:
        return classify_temperature(value, th)
    if metric == Metric.FIRE:
        return classify_fire(value)
    if metric == Metric.HUMIDITY:
        return classify_humidity(value)
    return classify_buzzer(value)


def derive_buzzer(
    temperature: Value = None,
    gas: Value = None,
    fire: Value = None,
    thresholds: Optional[ThresholdConfig] = None,
) -> bool:
    """Estado del buzzer virtual.

    buzzer = fire > 0 OR temperature > 50 OR gas >= umbral DANGER de gas.
    Métricas ausentes no contribuyen.
    """
    th = thresholds or DEFAULT_THRESHOLDS

    if (_as_flag(fire) or 0) > 0:
        return True

    temp = _finite_number(temperature)
    if temp is not None and temp > th.buzzer_temp_c:
        return True

    gas_v = _finite_number(gas)
    if gas_v is not None and gas_v >= th.gas_danger_raw:
        return True

    return False
