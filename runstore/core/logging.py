"""
Structured logging setup using structlog.

Console output is human-readable in development and JSON elsewhere. An
optional rotating log file always receives JSON lines, so a session can be
inspected after the fact next to the runs it produced.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor

from runstore.core.config import Settings, settings

# Libraries whose INFO output drowns ours
QUIET_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "watchdog", "httpx", "httpcore")


def add_service_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Stamp the service name and environment on every entry."""
    event_dict.setdefault("app", settings.app_name)
    event_dict.setdefault("env", settings.app_env)
    return event_dict


def _console_renderer(app_settings: Settings) -> Processor:
    use_json = app_settings.log_format == "json" or (
        app_settings.log_format == "auto" and not app_settings.is_development
    )
    if use_json:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def _formatter(shared: list[Processor], renderer: Processor) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )


def setup_logging(app_settings: Optional[Settings] = None) -> None:
    """
    Configure structlog on top of stdlib logging.

    Args:
        app_settings: Settings to configure from (global settings by default)
    """
    app_settings = app_settings or settings
    log_level = getattr(logging, app_settings.log_level, logging.INFO)

    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
        add_service_context,
    ]

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(shared, _console_renderer(app_settings)))
    handlers.append(console)

    if app_settings.log_file:
        log_path = Path(app_settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=app_settings.log_file_max_bytes,
            backupCount=app_settings.log_file_backups,
            encoding="utf-8",
        )
        file_handler.setFormatter(_formatter(shared, structlog.processors.JSONRenderer()))
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("runstore").setLevel(log_level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Example:
        logger = get_logger(__name__)
        logger.info("Aggregate updated", kind="file-summaries", completed=3)
    """
    return structlog.get_logger(name)


class LogContext:
    """
    Bind fields to every log entry emitted inside the block.

    Example:
        with LogContext(family="product-docs", run_id=run.run_id):
            logger.info("Finalizing")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = {k: v for k, v in kwargs.items() if v is not None}

    def __enter__(self) -> "LogContext":
        structlog.contextvars.bind_contextvars(**self.context)
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()
