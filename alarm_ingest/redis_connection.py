"""Conexión a Redis compartida por el state store y la fuente de change feed."""

from __future__ import annotations

import logging
import os
from typing import Optional

import redis

logger = logging.getLogger(__name__)


class RedisConnection:
    """Gestiona la conexión a Redis."""

    def __init__(
        self,
        url: Optional[str] = None,
        socket_timeout: float = 5.0,
        connect_timeout: float = 5.0,
        client: Optional[redis.Redis] = None,
        decode_responses: bool = True,
    ):
        self._url = url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self._socket_timeout = socket_timeout
        self._connect_timeout = connect_timeout
        self._decode_responses = decode_responses
        self._client: Optional[redis.Redis] = client
        self._connected = client is not None

    @property
    def client(self) -> Optional[redis.Redis]:
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def safe_url(self) -> str:
        # No loguear credenciales
        return self._url.split("@")[-1]

    def connect(self) -> bool:
        """Conecta a Redis (reutiliza el cliente existente si lo hay)."""
        try:
            if self._client is None:
                self._client = redis.Redis.from_url(
                    self._url,
                    decode_responses=self._decode_responses,
                    socket_timeout=self._socket_timeout,
                    socket_connect_timeout=self._connect_timeout,
                )
            self._client.ping()
            self._connected = True
            logger.info("[REDIS] Connected: %s", self.safe_url)
            return True
        except redis.RedisError as e:
            self._connected = False
            logger.warning("[REDIS] Connection failed: %s", e)
            return False

    def mark_disconnected(self) -> None:
        self._connected = False

    def disconnect(self) -> None:
        """Desconecta de Redis."""
        if self._client:
            try:
                self._client.close()
            except redis.RedisError as e:
                logger.debug("[REDIS] Error closing client: %s", e)
        self._connected = False
