"""
Structured logging configuration.

structlog renders each event as one JSON object (a console layout in debug);
the stdlib root handler writes it through python-json-logger so records from
uvicorn, SQLAlchemy and the Stripe SDK share the same stream and shape.
"""
import logging
import sys
from typing import Any, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from billing_sync.config import Settings, get_settings

# Third-party loggers and the level they are held at
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "stripe": logging.INFO,
}


def _service_context(settings: Settings) -> Any:
    def add_service_context(
        logger: Any, method_name: str, event_dict: Dict[str, Any]
    ) -> Dict[str, Any]:
        event_dict.setdefault("service", settings.app_name)
        event_dict.setdefault("env", settings.app_env)
        return event_dict

    return add_service_context


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog and the root handler from settings."""
    settings = settings or get_settings()

    renderer: Any = (
        structlog.dev.ConsoleRenderer()
        if settings.debug
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            _service_context(settings),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(settings.log_level)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(level)

    structlog.get_logger(__name__).info(
        "logging_configured", log_level=settings.log_level, app_env=settings.app_env
    )
