"""
Mata Finance — API server entry point.

1. Configures structured logging
2. Initializes the transaction store (schema, default notices)
3. Verifies the activity log hash chain
4. Serves the REST API with uvicorn

Usage:
    python -m mata_finance.server
"""

from __future__ import annotations

import logging
import sys

import structlog
import uvicorn

from mata_finance.config import settings

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure structured logging and the stdlib root level."""
    level = logging.getLevelName(settings.log_level.upper())
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    configure_logging()
    log = structlog.get_logger()

    log.info(
        "mata_finance.server.starting",
        host=settings.api_host,
        port=settings.api_port,
        draft_window_hours=settings.draft_window_hours,
        ocr_tolerance_percent=settings.ocr_tolerance_percent,
    )

    from mata_finance.api.app import app, state
    from mata_finance.store.database import Database

    try:
        database = Database(settings.database_url_sync)
        database.initialize()
        state.configure(database)
    except Exception as e:
        log.exception("mata_finance.server.store_unavailable", error=str(e))
        sys.exit(1)
    log.info("mata_finance.server.store_ready")

    is_valid, entries, message = state.activity_log.verify_chain()
    if is_valid:
        log.info("mata_finance.server.activity_chain_valid", entries=entries)
    else:
        log.error("mata_finance.server.activity_chain_invalid", details=message)

    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
