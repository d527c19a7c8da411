"""Structured logging for install runs.

Installer modules log through ``logging.getLogger(__name__)``; records are
rendered by structlog with whatever install context (source, agent id,
version ref) is bound at the time.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TextIO

import structlog

from agent_installer.config import get_settings


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def configure_logging(
    level: str,
    json_output: bool | None = None,
    *,
    stream: TextIO | None = None,
) -> None:
    """Route stdlib and structlog records through one structlog formatter.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        json_output: Force JSON output. If None, JSON only when APP_ENV=prod.
        stream: Destination stream, stderr by default so stdout stays
            reserved for command output.
    """
    log_level = logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
    if json_output is None:
        json_output = get_settings().app_env == "prod"

    shared = _shared_processors()
    final: list[structlog.types.Processor] = [
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
    ]
    if json_output:
        final.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])
    else:
        final.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(foreign_pre_chain=shared, processors=final)
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)


@contextmanager
def log_context(**kwargs: object) -> Iterator[None]:
    """Bind key-value pairs to every record logged inside the block."""
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield
