"""Canal de alertas hacia el notificador externo.

El mensaje es {title, body, severity}. La entrega es best-effort: el
tracker garantiza a lo sumo un mensaje por transición, pero el canal
puede perderlo. No hay retry.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import asdict, dataclass
from typing import Deque, Optional

import requests

from ..errors import AlertDeliveryFailed
from ..models import AlertEvent, Metric, SensorStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertMessage:
    title: str
    body: str
    severity: str  # "warning" | "danger"
    device_id: str = ""
    metric: str = ""
    timestamp: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _fmt_number(value, fmt: str) -> str:
    try:
        return format(float(value), fmt)
    except (TypeError, ValueError):
        return str(value)


def build_alert_message(event: AlertEvent) -> AlertMessage:
    """Arma el mensaje de notificación para una transición WARNING/DANGER."""
    danger = event.to_status == SensorStatus.DANGER
    device = event.device_id

    if event.metric == Metric.GAS:
        title = "Gas Alert" if danger else "Gas Warning"
        body = f"High gas level on {device} (raw {_fmt_number(event.value, '.0f')})"
    elif event.metric == Metric.TEMPERATURE:
        title = "Overheat Alert" if danger else "Temperature Warning"
        body = f"High temperature on {device} ({_fmt_number(event.value, '.1f')}°C)"
    elif event.metric == Metric.FIRE:
        title = "FIRE Detected"
        body = f"Flame sensor triggered on {device}"
    elif event.metric == Metric.BUZZER:
        title = "Alarm Buzzer Active"
        body = f"Local alarm buzzer activated on {device}"
    else:
        title = f"{event.metric.value.capitalize()} Alert"
        body = f"{event.metric.value} is {event.to_status.value} on {device}"

    return AlertMessage(
        title=title,
        body=body,
        severity=event.to_status.value,
        device_id=device,
        metric=event.metric.value,
        timestamp=event.timestamp,
    )


class AlertChannel(ABC):
    """Interfaz del canal de alertas."""

    name = "alert"

    @abstractmethod
    def send(self, message: AlertMessage) -> None:
        """Entrega un mensaje.

        Raises:
            AlertDeliveryFailed: Si la entrega falla
        """


class LoggingAlertChannel(AlertChannel):
    """Canal que solo loguea (sin notificador configurado).

    Guarda los últimos ``keep`` mensajes para inspección.
    """

    name = "log"

    def __init__(self, keep: int = 100):
        self.sent: Deque[AlertMessage] = deque(maxlen=keep)

    def send(self, message: AlertMessage) -> None:
        self.sent.append(message)
        logger.warning(
            "[ALERT] %s: %s (severity=%s)",
            message.title,
            message.body,
            message.severity,
        )


class WebhookAlertChannel(AlertChannel):
    """Dispara la notificación vía HTTP POST al notificador externo.

    No bloquea más de ``timeout`` segundos; un fallo solo se loguea.
    """

    name = "webhook"

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self._url = url
        self._api_key = api_key
        self._timeout = timeout
        self._session = session or requests.Session()

    def send(self, message: AlertMessage) -> None:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["X-Internal-Key"] = self._api_key

        try:
            response = self._session.post(
                self._url,
                json=message.to_dict(),
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise AlertDeliveryFailed(self.name, str(e)) from e

        if not response.ok:
            raise AlertDeliveryFailed(self.name, f"{response.status_code} {response.text[:200]}")

        logger.info("[PUSH] Alert delivered title=%s device=%s", message.title, message.device_id)

    def close(self) -> None:
        self._session.close()
