"""Ingesta de telemetría de alarmas de incendio (ESP32).

Fuente (MQTT / Redis Stream) → normalización → clasificación →
fan-out a estado actual, history log y canal de alertas.
"""

__version__ = "0.1.0"
