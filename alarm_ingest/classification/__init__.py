"""Clasificación de lecturas y detección de transiciones.

Estructura modular:
- thresholds.py: Bandas WARNING/DANGER configurables
- classifier.py: Clasificador puro (métrica, valor) → SensorStatus
- transition_tracker.py: Máquina de estados edge-triggered por (device, metric)
"""

from .thresholds import ThresholdConfig, DEFAULT_THRESHOLDS
from .classifier import classify, derive_buzzer
from .transition_tracker import TransitionTracker, TransitionState

__all__ = [
    "ThresholdConfig",
    "DEFAULT_THRESHOLDS",
    "classify",
    "derive_buzzer",
    "TransitionTracker",
    "TransitionState",
]
