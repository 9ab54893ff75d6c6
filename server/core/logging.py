"""Structured logging for the workflow engine.

Every record emitted while a traversal pass runs carries the execution,
workflow and tenant ids through structlog's context variables, so handler
and collaborator logs can be correlated without passing ids around.
"""

import sys
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import structlog

from core.config import Settings

# Libraries that log every statement or request at INFO
NOISY_LOGGERS = ("apscheduler", "aiosqlite", "sqlalchemy.engine", "httpx", "uvicorn.access")


def _handlers(settings: Settings, level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    for handler in handlers:
        handler.setLevel(level)
    return handlers


def configure_logging(settings: Settings) -> None:
    """Configure stdlib logging and structlog from settings."""
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(level=level, handlers=_handlers(settings, level),
                        format="%(message)s", force=True)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors[1:1] = [structlog.stdlib.add_logger_name,
                           structlog.processors.TimeStamper(fmt="iso", utc=True)]
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.insert(1, structlog.processors.TimeStamper(fmt="%H:%M:%S"))
        processors.append(structlog.dev.ConsoleRenderer(
            colors=False,
            pad_event=35,
            exception_formatter=structlog.dev.plain_traceback
        ))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


@contextmanager
def bound_execution(execution_id: str, workflow_id: str, tenant_id: str,
                    lead_id: Optional[str] = None) -> Iterator[None]:
    """Attach execution identifiers to every log record inside the block."""
    ids = {"execution_id": execution_id, "workflow_id": workflow_id, "tenant_id": tenant_id}
    if lead_id:
        ids["lead_id"] = lead_id
    with structlog.contextvars.bound_contextvars(**ids):
        yield


def log_execution_event(logger: structlog.BoundLogger, event: str, execution_id: str,
                        workflow_id: str, **kwargs) -> None:
    """Log an execution lifecycle transition (started, suspended, resumed, terminal)."""
    logger.info(event, execution_id=execution_id, workflow_id=workflow_id, **kwargs)


def log_cache_operation(logger: structlog.BoundLogger, operation: str,
                        key: str, hit: Optional[bool] = None, **kwargs) -> None:
    if hit is not None:
        kwargs["cache_hit"] = hit
    logger.debug("Cache operation", operation=operation, cache_key=key, **kwargs)
