from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv


def _default_env_file() -> str:
    repo_root = Path(__file__).resolve().parents[1]
    return str(repo_root / ".env")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    device_id: str

    # Fuente de ingesta: "mqtt" (broker público) o "redis" (change feed)
    ingest_source: str

    mqtt_host: str
    mqtt_port: int
    mqtt_transport: str
    mqtt_ws_path: str
    mqtt_tls: bool
    mqtt_username: Optional[str]
    mqtt_password: Optional[str]
    mqtt_topic: str

    redis_url: str
    redis_stream: str
    state_backend: str

    history_db_url: str

    notifier_url: Optional[str]
    notifier_key: Optional[str]

    connect_timeout_seconds: float
    reconnect_min_delay: int
    reconnect_max_delay: int

    device_queue_size: int
    sink_workers: int

    # Tope de dispositivos con worker propio; allowlist vacía = cualquiera
    max_devices: int
    allowed_devices: Tuple[str, ...]

    api_host: str
    api_port: int
    log_level: str


def get_settings() -> Settings:
    # Load env file (if present) but still allow overriding via real environment variables.
    env_file = os.getenv("IOT_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    device_id = os.getenv("DEVICE_ID", "esp32-fire-001")

    # Topic por defecto: iot/firealarm/<device>/#
    # Usar "iot/firealarm/+/#" para escuchar todos los dispositivos; en un
    # broker público conviene acotar con INGEST_ALLOWED_DEVICES.
    mqtt_topic = os.getenv("MQTT_TOPIC", f"iot/firealarm/{device_id}/#")

    return Settings(
        device_id=device_id,
        ingest_source=os.getenv("INGEST_SOURCE", "mqtt").strip().lower(),
        mqtt_host=os.getenv("MQTT_BROKER_HOST", "broker.hivemq.com"),
        mqtt_port=int(os.getenv("MQTT_BROKER_PORT", "1883")),
        mqtt_transport=os.getenv("MQTT_TRANSPORT", "tcp").strip().lower(),
        mqtt_ws_path=os.getenv("MQTT_WS_PATH", "/mqtt"),
        mqtt_tls=_env_bool("MQTT_TLS"),
        mqtt_username=os.getenv("MQTT_USERNAME") or None,
        mqtt_password=os.getenv("MQTT_PASSWORD") or None,
        mqtt_topic=mqtt_topic,
        redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
        redis_stream=os.getenv("REDIS_TELEMETRY_STREAM", f"firealarm:{device_id}:telemetry"),
        state_backend=os.getenv("STATE_BACKEND", "memory").strip().lower(),
        history_db_url=os.getenv("HISTORY_DB_URL", "sqlite:///firealarm_history.db"),
        notifier_url=os.getenv("NOTIFIER_URL") or None,
        notifier_key=os.getenv("NOTIFIER_API_KEY") or None,
        connect_timeout_seconds=float(os.getenv("INGEST_CONNECT_TIMEOUT", "5")),
        reconnect_min_delay=int(os.getenv("INGEST_RECONNECT_MIN_DELAY", "1")),
        reconnect_max_delay=int(os.getenv("INGEST_RECONNECT_MAX_DELAY", "30")),
        device_queue_size=int(os.getenv("INGEST_DEVICE_QUEUE_SIZE", "1000")),
        sink_workers=int(os.getenv("INGEST_SINK_WORKERS", "4")),
        max_devices=int(os.getenv("INGEST_MAX_DEVICES", "64")),
        allowed_devices=_env_list("INGEST_ALLOWED_DEVICES"),
        api_host=os.getenv("API_HOST", "0.0.0.0"),
        api_port=int(os.getenv("API_PORT", "8080")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
