"""CLI entry point del servicio de ingesta."""

from __future__ import annotations

import argparse
import logging
import signal
import threading

from common.config import get_settings

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )


def _run_api(host: str, port: int) -> None:
    import uvicorn

    from .api import app

    # El lifespan de la app inicia y detiene el servicio de ingesta
    uvicorn.run(app, host=host, port=port, log_config=None)


def _run_headless() -> None:
    from .service import start_service, stop_service

    stop_event = threading.Event()

    def _on_signal(signum, _frame):
        logger.info("Signal %s received, shutting down...", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    service = start_service()
    try:
        while not stop_event.wait(60.0):
            logger.info("[SERVICE] %s", service.stats["consumer"])
    finally:
        stop_service()


def main(argv=None) -> None:
    settings = get_settings()

    p = argparse.ArgumentParser(description="Fire alarm telemetry ingestion service")
    p.add_argument("--log-level", default=settings.log_level)
    sub = p.add_subparsers(dest="command")

    run = sub.add_parser("run", help="ingest telemetry and serve the read API")
    run.add_argument("--host", default=settings.api_host)
    run.add_argument("--port", type=int, default=settings.api_port)
    run.add_argument("--no-api", action="store_true", help="ingest only, without the HTTP API")

    args = p.parse_args(argv)
    _configure_logging(args.log_level)

    command = args.command or "run"
    logger.info(
        "Fire alarm ingest started device=%s source=%s state=%s",
        settings.device_id,
        settings.ingest_source,
        settings.state_backend,
    )

    if command == "run" and getattr(args, "no_api", False):
        _run_headless()
    else:
        _run_api(getattr(args, "host", settings.api_host), getattr(args, "port", settings.api_port))


if __name__ == "__main__":
    main()
