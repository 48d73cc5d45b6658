"""Umbrales de clasificación por métrica.

Los valores por defecto coinciden con el firmware del ESP32:
gas en unidades crudas de ADC (0..4095), temperatura en °C.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

GAS_WARN_RAW = 1400
GAS_DANGER_RAW = 1800
TEMP_WARN_C = 50.0
TEMP_DANGER_C = 70.0

# El buzzer se enciende por temperatura estrictamente mayor a este valor
BUZZER_TEMP_C = 50.0


@dataclass(frozen=True)
class ThresholdConfig:
    """Bandas WARNING/DANGER (límite inferior inclusivo)."""
    gas_warn_raw: float = GAS_WARN_RAW
    gas_danger_raw: float = GAS_DANGER_RAW
    temp_warn_c: float = TEMP_WARN_C
    temp_danger_c: float = TEMP_DANGER_C
    buzzer_temp_c: float = BUZZER_TEMP_C

    def __post_init__(self):
        if self.gas_warn_raw > self.gas_danger_raw:
            raise ValueError(
                f"gas_warn_raw ({self.gas_warn_raw}) must be <= gas_danger_raw ({self.gas_danger_raw})"
            )
        if self.temp_warn_c > self.temp_danger_c:
            raise ValueError(
                f"temp_warn_c ({self.temp_warn_c}) must be <= temp_danger_c ({self.temp_danger_c})"
            )

    @classmethod
    def from_env(cls) -> "ThresholdConfig":
        return cls(
            gas_warn_raw=float(os.getenv("GAS_WARN_RAW", str(GAS_WARN_RAW))),
            gas_danger_raw=float(os.getenv("GAS_DANGER_RAW", str(GAS_DANGER_RAW))),
            temp_warn_c=float(os.getenv("TEMP_WARN_C", str(TEMP_WARN_C))),
            temp_danger_c=float(os.getenv("TEMP_DANGER_C", str(TEMP_DANGER_C))),
            buzzer_temp_c=float(os.getenv("BUZZER_TEMP_C", str(BUZZER_TEMP_C))),
        )


DEFAULT_THRESHOLDS = ThresholdConfig()
