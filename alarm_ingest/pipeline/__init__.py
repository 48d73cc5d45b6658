"""Pipeline de ingesta: consumidor por dispositivo + fan-out."""

from .dispatcher import FanOutDispatcher
from .consumer import PayloadConsumer

__all__ = ["FanOutDispatcher", "PayloadConsumer"]
