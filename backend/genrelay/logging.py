"""structlog setup shared by the server and the CLI client."""

import logging
import sys
from typing import TextIO

import structlog
from structlog.typing import Processor

from genrelay.config import settings

# Third-party loggers and the level below which they are muted
_QUIET_LOGGERS = {
    "httpx": logging.INFO,
    "httpcore": logging.WARNING,
    "websockets": logging.WARNING,
    "asyncio": logging.INFO,
    "uvicorn.access": logging.WARNING,
}


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=True, exception_formatter=structlog.dev.plain_traceback)


def configure_logging(level: str | None = None, *, stream: TextIO | None = None) -> None:
    """Route structlog and stdlib logging through one ProcessorFormatter.

    `settings.log_format` picks coloured console output or one JSON object per
    line. The CLI passes stderr so `watch --json` keeps stdout for state dumps.
    """
    pre_chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso" if settings.log_format == "json" else "%Y-%m-%d %H:%M:%S"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if settings.log_format == "json":
        pre_chain.append(structlog.processors.format_exc_info)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            # uvicorn, httpx and websockets log through stdlib
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(settings.log_format),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)


_configured = False


def setup_logging(level: str | None = None, *, stream: TextIO | None = None) -> None:
    """Configure logging on first call; later calls are no-ops."""
    global _configured
    if not _configured:
        configure_logging(level, stream=stream)
        _configured = True
