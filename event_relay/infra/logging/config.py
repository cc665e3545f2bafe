"""Logging configuration setup.

- dictConfig for formatters, filters and root level
- QueueHandler + QueueListener so handlers never block the event loop
- ContextInjectingFilter on the root logger for event/request context
- JSONL output for machine parsing, plain text for local runs
"""

from __future__ import annotations

import atexit
import logging
import logging.config
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from queue import Queue
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable

    from event_relay.core.settings.logs import LoggingSettings

logger = logging.getLogger(__name__)

_log_queue: Queue[logging.LogRecord] | None = None
_listener: QueueListener | None = None
_queue_handler: QueueHandler | None = None

TEXT_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def shutdown() -> None:
    """Stop the QueueListener, flushing pending records."""
    global _log_queue, _listener, _queue_handler

    if _listener is not None:
        _listener.stop()
        _listener = None
    if _queue_handler is not None:
        logging.getLogger().removeHandler(_queue_handler)
        _queue_handler = None
    _log_queue = None


def setup_logging(log_settings: LoggingSettings | None = None, *, service_name: str | None = None) -> None:
    """Configure logging from ``LoggingSettings`` (LOG_ environment)."""
    if log_settings is None:
        from event_relay.core.settings import get_logging_settings

        log_settings = get_logging_settings()
    if service_name is None:
        from event_relay.core.settings import get_app_settings

        service_name = get_app_settings().service_name

    configure_logging(**log_settings.to_logging_kwargs(), service_name=service_name)


def configure_logging(
    *,
    log_level: str = "INFO",
    json_logs: bool = True,
    console_enabled: bool = True,
    file_path: str | Path | None = None,
    file_max_bytes: int = 10_485_760,
    file_backup_count: int = 5,
    include_context: bool = True,
    quiet_loggers: Iterable[str] = (),
    service_name: str = "event-relay",
) -> None:
    """Configure the root logger.

    Safe to call more than once; the previous listener is replaced.
    """
    shutdown()

    # Root level only; handlers hang off the QueueListener below
    config: dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "root": {
            "level": log_level.upper(),
            "handlers": [],
        },
    }
    logging.config.dictConfig(config)

    formatter = _build_formatter(json_logs=json_logs, service_name=service_name)
    handlers: list[logging.Handler] = []
    if console_enabled:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)
    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=file_max_bytes,
            backupCount=file_backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    _setup_queue_logging(handlers, include_context=include_context)

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug(
        "Logging configured",
        extra={"level": log_level, "json": json_logs, "file": str(file_path) if file_path else None},
    )


def _build_formatter(*, json_logs: bool, service_name: str) -> logging.Formatter:
    from event_relay.infra.logging.formatters import JSONFormatter

    if json_logs:
        return JSONFormatter(static={"service": service_name})
    return logging.Formatter(fmt=TEXT_FORMAT, datefmt=DATE_FORMAT)


def _setup_queue_logging(handlers: list[logging.Handler], *, include_context: bool) -> None:
    global _log_queue, _listener, _queue_handler

    from event_relay.infra.logging.context import ContextInjectingFilter

    if not handlers:
        return

    _log_queue = Queue()
    _listener = QueueListener(_log_queue, *handlers, respect_handler_level=True)
    _listener.start()
    atexit.register(shutdown)

    _queue_handler = QueueHandler(_log_queue)
    if include_context:
        # Context must be captured in the emitting task, before the queue hop
        _queue_handler.addFilter(ContextInjectingFilter())
    logging.getLogger().addHandler(_queue_handler)


__all__ = ["configure_logging", "setup_logging", "shutdown"]
