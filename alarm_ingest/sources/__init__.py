"""Fuentes de ingesta: MQTT (broker público) o Redis Streams (change feed)."""

from __future__ import annotations

import logging

from common.config import Settings

from ..errors import TransportDisconnected
from ..resilience.retry import RetryConfig
from .base import IngestionSource, SubscriptionHandle
from .mqtt_source import MQTTIngestionSource, device_id_from_topic
from .redis_source import RedisStreamIngestionSource

logger = logging.getLogger(__name__)

SUPPORTED_SOURCES = ("mqtt", "redis")


def create_source(settings: Settings) -> IngestionSource:
    """Construye la fuente configurada en ``INGEST_SOURCE``.

    Raises:
        ValueError: Si el tipo de fuente no es soportado
    """
    kind = settings.ingest_source
    logger.info("[SOURCE] Creating source type=%s device=%s", kind, settings.device_id)

    if kind == "mqtt":
        return MQTTIngestionSource(
            default_device_id=settings.device_id,
            broker_host=settings.mqtt_host,
            broker_port=settings.mqtt_port,
            topic=settings.mqtt_topic,
            transport=settings.mqtt_transport,
            ws_path=settings.mqtt_ws_path,
            use_tls=settings.mqtt_tls,
            username=settings.mqtt_username,
            password=settings.mqtt_password,
            connect_timeout=settings.connect_timeout_seconds,
            reconnect_min_delay=settings.reconnect_min_delay,
            reconnect_max_delay=settings.reconnect_max_delay,
        )

    if kind == "redis":
        return RedisStreamIngestionSource(
            default_device_id=settings.device_id,
            stream=settings.redis_stream,
            redis_url=settings.redis_url,
            connect_timeout=settings.connect_timeout_seconds,
            retry_config=RetryConfig(
                base_delay=float(settings.reconnect_min_delay),
                max_delay=float(settings.reconnect_max_delay),
                retryable_exceptions=(TransportDisconnected,),
            ),
        )

    raise ValueError(f"Unsupported INGEST_SOURCE '{kind}', expected one of {SUPPORTED_SOURCES}")


__all__ = [
    "IngestionSource",
    "SubscriptionHandle",
    "MQTTIngestionSource",
    "RedisStreamIngestionSource",
    "device_id_from_topic",
    "create_source",
    "SUPPORTED_SOURCES",
]
