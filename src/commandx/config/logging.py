"""Structured logging for CommandX batch jobs.

Command results are printed to stdout as JSON, so every log line is sent
to stderr. The HTTP libraries log full request URLs at INFO, which include
QuickBooks query strings; they are held at WARNING unless DEBUG is asked for.
"""

import logging
import sys
from typing import Literal, TextIO

import structlog

from commandx.config.settings import get_settings

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
LogFormat = Literal["json", "console"]

_NOISY_LOGGERS = ("httpx", "httpcore")


def _renderer(log_format: LogFormat, stream: TextIO) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.dev.ConsoleRenderer(
        colors=stream.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def configure_logging(
    level: LogLevel | None = None,
    format: LogFormat | None = None,
    stream: TextIO | None = None,
) -> None:
    """Route structlog through stdlib logging.

    Args:
        level: Minimum level. Defaults to ``LOG_LEVEL``.
        format: ``json`` for log shippers, ``console`` for terminals.
            Defaults to ``LOG_FORMAT``.
        stream: Destination, stderr unless a test passes its own.
    """
    settings = get_settings()
    log_level = level or settings.log_level
    out = stream or sys.stderr

    logging.basicConfig(
        format="%(message)s",
        stream=out,
        level=getattr(logging, log_level),
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(
            logging.DEBUG if log_level == "DEBUG" else logging.WARNING
        )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            _renderer(format or settings.log_format, out),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_command_context(command: str, **values: object) -> None:
    """Attach the running command to every log line emitted during it."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(command=command, **values)
