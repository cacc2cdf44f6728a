"""Structured logging configuration.

This module provides:
- Structured logging via structlog with JSON output outside debug mode
- Optional OpenTelemetry (OTEL) log export
- Timing and exception helpers used by the reconciliation services
"""

import logging
import sys
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from structlog.stdlib import BoundLogger
from structlog.types import Processor

from expense_tracker.config import parse_key_value_pairs, settings


def _build_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


def _select_renderer() -> Processor:
    if settings.debug:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def _build_otlp_logs_endpoint(endpoint: str) -> str:
    trimmed = endpoint.rstrip("/")
    if trimmed.endswith("/v1/logs"):
        return trimmed
    return f"{trimmed}/v1/logs"


def _configure_otel_logging() -> bool:
    """Attach an OTLP log handler to the root logger when an endpoint is configured.

    Returns True when the handler was installed.
    """
    if not settings.otel_exporter_otlp_endpoint:
        return False

    try:
        from opentelemetry._logs import set_logger_provider
        from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
        from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
        from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
        from opentelemetry.sdk.resources import Resource
    except Exception:  # pragma: no cover - optional exporter
        logging.getLogger(__name__).warning("OTEL log exporter not available", exc_info=True)
        return False

    resource_attributes = {
        "service.name": settings.otel_service_name,
        "deployment.environment": settings.environment,
    }
    resource_attributes.update(parse_key_value_pairs(settings.otel_resource_attributes))

    provider = LoggerProvider(resource=Resource.create(resource_attributes))
    exporter = OTLPLogExporter(endpoint=_build_otlp_logs_endpoint(settings.otel_exporter_otlp_endpoint))
    provider.add_log_record_processor(BatchLogRecordProcessor(exporter))
    set_logger_provider(provider)

    logging.getLogger().addHandler(LoggingHandler(level=logging.INFO, logger_provider=provider))
    return True


def configure_logging() -> None:
    """Configure structlog for structured logging and optional OTEL export."""
    processors = _build_processors()

    structlog.configure(
        processors=processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=_select_renderer(),
        foreign_pre_chain=processors,
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    logging.basicConfig(
        handlers=[handler],
        level=logging.DEBUG if settings.debug else logging.INFO,
    )

    _configure_otel_logging()


def get_logger(name: str | None = None) -> BoundLogger:
    """Get a structured logger."""
    return structlog.get_logger(name)


@asynccontextmanager
async def async_log_timing(
    operation: str,
    logger: BoundLogger | None = None,
    level: str = "info",
    **context: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Log how long an async block took.

    Usage:
        async with async_log_timing("process_batch", logger=logger, batch_id=str(batch.id)) as timing:
            ...
            timing["files"] = len(files)

    Keys added to the yielded dict are included in the completion event.
    """
    log = logger or get_logger(__name__)
    start = time.perf_counter()
    result_context: dict[str, Any] = {}

    try:
        yield result_context
    finally:
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        log_method = getattr(log, level, log.info)
        log_method(
            f"{operation} completed",
            operation=operation,
            duration_ms=duration_ms,
            **context,
            **result_context,
        )


def log_exception(
    logger: BoundLogger,
    exc: BaseException,
    context: str,
    *,
    level: str = "error",
    include_traceback: bool = True,
    **extra: Any,
) -> None:
    """Log an exception with its type and module alongside caller context.

    Usage:
        except IntegrityError as exc:
            log_exception(logger, exc, "Insert rejected by unique constraint", level="warning")
    """
    log_method = getattr(logger, level, logger.error)

    log_kwargs: dict[str, Any] = {
        "error": str(exc),
        "error_type": type(exc).__name__,
        "error_module": type(exc).__module__,
        **extra,
    }

    if include_traceback:
        log_method(context, exc_info=exc, **log_kwargs)
    else:
        log_method(context, **log_kwargs)
