"""
Structured logging for the state core.

structlog builds every event; stdlib logging only routes the rendered line
to stdout and, optionally, a rotating file. Records from third-party
loggers (ccxt, asyncio) run through the same processor chain, so one
stream carries both.

The file is always JSON lines; ``log_format`` only picks the console
renderer.
"""
from pathlib import Path
from typing import Any, List, Optional
import logging
import logging.handlers
import sys

import structlog

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Set on handlers installed here so a repeated setup replaces them
_OWNED = "_usdm_core_owned"

_PRE_CHAIN = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
]


def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_PRE_CHAIN,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )


def _build_handlers(level: int, log_format: str, log_file: Optional[str]) -> List[logging.Handler]:
    console = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        console.setFormatter(_formatter(structlog.processors.JSONRenderer()))
    else:
        console.setFormatter(_formatter(structlog.dev.ConsoleRenderer(colors=False)))
    handlers: List[logging.Handler] = [console]

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        rotating = logging.handlers.RotatingFileHandler(
            path,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
        rotating.setFormatter(_formatter(structlog.processors.JSONRenderer()))
        handlers.append(rotating)

    for handler in handlers:
        handler.setLevel(level)
        setattr(handler, _OWNED, True)
    return handlers


def setup_logging(log_level: str = "INFO", log_format: str = "json", log_file: Optional[str] = None) -> None:
    """
    Configure structlog and attach handlers to the root logger.

    Calling it again swaps the handlers of the previous call instead of
    adding a second set.

    Args:
        log_level: DEBUG/INFO/WARNING/ERROR/CRITICAL
        log_format: Console rendering, "json" or "text"
        log_file: Rotating JSON log file; parent directories are created
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    root = logging.getLogger()
    for handler in [h for h in root.handlers if getattr(h, _OWNED, False)]:
        root.removeHandler(handler)
        handler.close()
    for handler in _build_handlers(level, log_format, log_file):
        root.addHandler(handler)
    root.setLevel(level)

    structlog.configure(
        processors=[structlog.stdlib.filter_by_level]
        + _PRE_CHAIN
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    get_logger(__name__).info("Logging configured", log_level=log_level, log_format=log_format, log_file=log_file)


def get_logger(name: str) -> structlog.BoundLogger:
    """Structured logger for ``name`` (typically ``__name__``)."""
    return structlog.get_logger(name)
