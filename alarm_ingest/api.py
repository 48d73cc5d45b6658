"""API HTTP de lectura: health, estado actual e historial.

No ingiere nada; la ingesta entra solo por la fuente configurada.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError

from .models import Metric
from .service import IngestionService, get_service, start_service, stop_service
from .sinks.history import DEFAULT_LIMIT, MAX_LIMIT

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    start_service()
    try:
        yield
    finally:
        stop_service()


def require_service() -> IngestionService:
    service = get_service()
    if service is None:
        raise HTTPException(status_code=503, detail="ingestion service not started")
    return service


health_router = APIRouter(tags=["health"])
devices_router = APIRouter(prefix="/devices", tags=["devices"])


@health_router.get("/health")
def health():
    """Liveness probe: ok mientras el proceso esté vivo."""
    return {"status": "ok"}


@health_router.get("/ready")
def ready(service: IngestionService = Depends(require_service)):
    """Readiness probe: fuente conectada y workers vivos."""
    check = service.health_check()
    if not check["healthy"]:
        raise HTTPException(status_code=503, detail=check)
    return {"status": "ready", **check}


@health_router.get("/metrics")
def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@devices_router.get("/{device_id}/sensors")
def device_sensors(device_id: str, service: IngestionService = Depends(require_service)):
    return {"device_id": device_id, "sensors": service.state_store.get_sensors(device_id)}


@devices_router.get("/{device_id}/system")
def device_system(device_id: str, service: IngestionService = Depends(require_service)):
    return {"device_id": device_id, "system": service.state_store.get_system(device_id)}


@devices_router.get("/{device_id}/history/{metric}")
def device_history(
    device_id: str,
    metric: Metric,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    service: IngestionService = Depends(require_service),
):
    try:
        rows = service.history.recent(device_id, metric, limit=limit)
    except SQLAlchemyError:
        logger.exception("[API] History query failed device=%s metric=%s", device_id, metric.value)
        raise HTTPException(status_code=503, detail="history unavailable")
    return {"device_id": device_id, "metric": metric.value, "items": rows}


@devices_router.get("/{device_id}/alarms")
def device_alarms(
    device_id: str,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    metric: Optional[Metric] = None,
    service: IngestionService = Depends(require_service),
):
    try:
        rows = service.history.recent_alarms(device_id, limit=limit, metric=metric)
    except SQLAlchemyError:
        logger.exception("[API] Alarm query failed device=%s", device_id)
        raise HTTPException(status_code=503, detail="history unavailable")
    return {"device_id": device_id, "items": rows}


app = FastAPI(title="Fire Alarm Ingest Service", version="0.1.0", lifespan=lifespan)
app.include_router(health_router)
app.include_router(devices_router)
