"""Schema de validación del payload crudo del ESP32.

Formato esperado (todas las claves opcionales, con grafías alternativas):
{
    "temperature": 25.1,   # o "temp"
    "humidity": 40.0,
    "gas_raw": 1234,       # o "gas"
    "fire": 0,             # número, bool, o "flame"
    "ts": 1717171717,      # epoch segundos
    "battery": 87.5
}
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from ..errors import MalformedPayload

logger = logging.getLogger(__name__)


class RawSensorPayload(BaseModel):
    """Payload crudo tal como llega de la fuente.

    Valores no numéricos (ej: ``{"gas_raw": "abc"}``) invalidan el
    payload completo. Claves desconocidas se ignoran.

    Modo lax de pydantic: strings numéricos (``"55"``) se aceptan como
    número porque los campos de una entrada de Redis Stream siempre
    llegan como string.
    """

    model_config = ConfigDict(extra="ignore")

    temperature: Optional[float] = None
    temp: Optional[float] = None
    humidity: Optional[float] = None
    gas_raw: Optional[float] = None
    gas: Optional[float] = None
    fire: Optional[Union[bool, float]] = None
    flame: Optional[float] = None
    ts: Optional[float] = None
    battery: Optional[float] = None

    @field_validator(
        "temperature", "temp", "humidity", "gas_raw", "gas", "flame", "ts", "battery",
        mode="before",
    )
    @classmethod
    def reject_bool(cls, v):
        # bool es subclase de int; solo "fire" admite booleanos
        if isinstance(v, bool):
            raise ValueError("boolean is not a valid measurement")
        return v


def _utf8(value):
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return value


def _decode_fields(raw: dict) -> dict[str, Any]:
    # Entradas de Redis Stream: claves y valores pueden venir como bytes
    if not any(isinstance(x, (bytes, bytearray)) for item in raw.items() for x in item):
        return raw
    try:
        return {_utf8(k): _utf8(v) for k, v in raw.items()}
    except UnicodeDecodeError as e:
        raise MalformedPayload(f"invalid utf-8 field: {e}")


def decode_payload(raw: Union[bytes, bytearray, str, dict]) -> dict[str, Any]:
    """Decodifica el payload a dict.

    Raises:
        MalformedPayload: Si no es JSON válido, no es un objeto o tiene
            bytes que no son UTF-8
    """
    if isinstance(raw, dict):
        return _decode_fields(raw)

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedPayload(f"invalid utf-8: {e}")

    if not isinstance(raw, str):
        raise MalformedPayload(f"unsupported payload type {type(raw).__name__}")

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedPayload(f"invalid JSON: {e}")

    if not isinstance(data, dict):
        raise MalformedPayload(f"expected JSON object, got {type(data).__name__}")

    return data


def parse_payload(raw: Union[bytes, bytearray, str, dict]) -> RawSensorPayload:
    """Decodifica y valida el payload.

    Raises:
        MalformedPayload: Si el payload no cumple el schema
    """
    data = decode_payload(raw)
    try:
        return RawSensorPayload.model_validate(data)
    except ValidationError as e:
        fields = ",".join(str(err["loc"][0]) for err in e.errors() if err.get("loc"))
        raise MalformedPayload(f"invalid fields: {fields or e}")
