"""Normalización de payloads crudos a lecturas canónicas."""

from .payload import RawSensorPayload, decode_payload, parse_payload
from .normalizer import normalize, normalize_packet

__all__ = [
    "RawSensorPayload",
    "decode_payload",
    "parse_payload",
    "normalize",
    "normalize_packet",
]
