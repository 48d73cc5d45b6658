"""Excepciones del pipeline de ingesta.

Ninguna de estas condiciones es fatal para el proceso: se loguean,
se cuentan y el loop de ingesta continúa.
"""

from __future__ import annotations

from typing import Optional


class AlarmIngestError(Exception):
    """Base de errores del servicio."""


class MalformedPayload(AlarmIngestError):
    """Payload no parseable con la estructura esperada.

    El payload completo se descarta: no se emite ninguna lectura parcial.
    """

    def __init__(self, reason: str, device_id: Optional[str] = None):
        self.reason = reason
        self.device_id = device_id
        super().__init__(f"Malformed payload from device={device_id}: {reason}")


class TransportDisconnected(AlarmIngestError):
    """El transporte de la fuente perdió la conexión."""

    def __init__(self, source: str, detail: str = ""):
        self.source = source
        self.detail = detail
        super().__init__(f"Source '{source}' disconnected{': ' + detail if detail else ''}")


class StoreWriteFailed(AlarmIngestError):
    """Falló la escritura a un sink (state o history)."""

    def __init__(self, sink: str, key: str, cause: Optional[BaseException] = None):
        self.sink = sink
        self.key = key
        self.cause = cause
        super().__init__(f"Write to sink '{sink}' failed for key={key}: {cause}")


class AlertDeliveryFailed(AlarmIngestError):
    """El canal de alertas no pudo entregar el mensaje. Sin retry."""

    def __init__(self, channel: str, detail: str = ""):
        self.channel = channel
        self.detail = detail
        super().__init__(f"Alert delivery via '{channel}' failed: {detail}")
