"""Backoff exponencial para reconexión de fuentes.

Usado por las fuentes de ingesta para reconectar tras una caída del
transporte sin que el consumidor tenga que volver a registrarse.
"""

from __future__ import annotations

import logging
import random
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Política de backoff: base * exponential_base^(n-1), acotada a max_delay."""

    max_attempts: int = 0  # 0 = reintentar indefinidamente
    base_delay: float = 1.0  # segundos
    max_delay: float = 30.0  # segundos
    exponential_base: float = 2.0
    jitter: bool = True  # ±25% para no sincronizar reconexiones
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,)

    def calculate_delay(self, attempt: int) -> float:
        """Delay antes del reintento ``attempt``.

        Args:
            attempt: Intento fallido (1 = primero)

        Returns:
            Delay en segundos, nunca mayor a max_delay
        """
        # Limitar el exponente evita OverflowError con muchos intentos
        exponent = min(max(attempt - 1, 0), 32)
        delay = self.base_delay * (self.exponential_base ** exponent)
        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return min(max(0.0, delay), self.max_delay)


class RetryExecutor:
    """Ejecuta una operación con retry interrumpible.

    A diferencia de un ``time.sleep``, la espera entre intentos se corta
    en cuanto se señala ``stop_event``, así un shutdown no queda colgado
    esperando un backoff.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        stop_event: Optional[threading.Event] = None,
    ):
        self._config = config or RetryConfig()
        self._stop_event = stop_event or threading.Event()
        self._total_attempts = 0
        self._total_retries = 0
        self._total_failures = 0

    @property
    def stats(self) -> dict:
        """Contadores acumulados desde la creación."""
        return {
            "total_attempts": self._total_attempts,
            "total_retries": self._total_retries,
            "total_failures": self._total_failures,
        }

    def execute(
        self,
        func: Callable[[], T],
        on_retry: Optional[Callable[[int, Exception], None]] = None,
    ) -> Optional[T]:
        """Ejecuta ``func`` con retry.

        Returns:
            Resultado de la función, o None si se detuvo antes de lograrlo

        Raises:
            La última excepción si se agotan los reintentos
        """
        attempt = 0
        while not self._stop_event.is_set():
            attempt += 1
            self._total_attempts += 1

            try:
                return func()

            except self._config.retryable_exceptions as e:
                if self._config.max_attempts and attempt >= self._config.max_attempts:
                    self._total_failures += 1
                    logger.error(
                        "RETRY_EXHAUSTED func=%s attempts=%d err=%s",
                        getattr(func, "__name__", "?"), attempt, e,
                    )
                    raise

                self._total_retries += 1
                delay = self._config.calculate_delay(attempt)
                logger.warning(
                    "RETRY func=%s attempt=%d delay=%.2fs err=%s",
                    getattr(func, "__name__", "?"), attempt, delay, e,
                )
                if on_retry:
                    on_retry(attempt, e)

                self._stop_event.wait(delay)

        return None
