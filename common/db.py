from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .config import get_settings


logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None


def _safe_url(url: str) -> str:
    # No loguear credenciales
    return url.split("@")[-1]


def build_engine(url: str) -> Engine:
    """Crea un engine para el history log.

    SQLite (default) necesita ``check_same_thread=False`` porque las
    escrituras llegan desde el thread pool de sinks.
    """
    kwargs: dict = {"pool_pre_ping": True, "future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_recycle"] = 300

    logger.info("[DB] Crear engine history url=%s", _safe_url(url))
    engine = create_engine(url, **kwargs)

    # Test de conexión: ayuda a ver en logs si el servicio realmente llega a la BD
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("[DB] Test de conexión OK")
    except Exception:
        logger.exception("[DB] Test de conexión FALLÓ")

    return engine


def get_engine() -> Engine:
    """Engine singleton creado a partir de HISTORY_DB_URL."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().history_db_url)
    return _engine


def reset_engine() -> None:
    """Libera el engine singleton (shutdown y tests)."""
    global _engine
    if _engine is not None:
        _engine.dispose()
    _engine = None
