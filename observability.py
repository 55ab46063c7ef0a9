"""Observability helpers: structured logging and CloudWatch Embedded Metrics.

Call `init_observability` once at process start, before the app handles
requests. Write paths count business events with `record_event`.
"""
from __future__ import annotations

import logging
from typing import Optional

from aws_embedded_metrics import metric_scope
from aws_embedded_metrics.config import get_config
import structlog

from settings import Settings, get_settings

__all__ = [
    "init_observability",
    "record_event",
]


def _setup_logging(settings: Settings) -> None:
    """Configure structlog for structured logging (JSON or console)."""

    # Define shared processors
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    # Choose renderer based on format
    if settings.log_format == "json":
        final_processor = structlog.processors.JSONRenderer()
    else:
        final_processor = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [final_processor],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Configure standard logging root logger once; reloads must not stack handlers
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        root_logger.addHandler(logging.StreamHandler())
    root_logger.setLevel(settings.log_level.upper())

    # Silence noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.WARNING)


def _setup_metrics(settings: Settings) -> None:
    """Point the EMF sink at the configured environment ("Local" prints to stdout)."""
    config = get_config()
    config.namespace = settings.metrics_namespace
    config.environment = settings.metrics_environment
    config.service_name = settings.app_name


@metric_scope
async def record_event(metric_name: str, metrics=None, **properties) -> None:
    """Emit a single count metric, tagging it with ``properties``."""
    metrics.put_metric(metric_name, 1, "Count")
    for key, value in properties.items():
        metrics.set_property(key, value)


def init_observability(settings: Optional[Settings] = None) -> None:
    """Setup logging & metrics. Call once at process start."""

    settings = settings or get_settings()
    _setup_logging(settings)
    _setup_metrics(settings)

    structlog.get_logger(__name__).info(
        "Observability initialized",
        log_format=settings.log_format,
        metrics_environment=settings.metrics_environment,
    )
