"""
Structured logging for the bridge engine, built on structlog.

Services log through ``LoggerMixin.log``; a workflow run wraps its steps in
``log_context(workflow_id=...)`` so every line it emits can be grouped.
"""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.typing import Processor

from cknft_bridge.config import settings

# RPC client libraries that log every request at INFO
NOISY_LOGGERS = ("web3", "httpx", "httpcore", "solana")


def setup_logging(log_level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    ``log_level`` defaults to ``settings.log_level``. Output is rendered for
    the console on a TTY and as JSON lines otherwise, unless ``json_output``
    forces one or the other.
    """
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output is None:
        json_output = not sys.stderr.isatty()
    if json_output:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Logger bound with ``module=name`` when a name is given."""
    logger = structlog.get_logger()
    return logger.bind(module=name) if name else logger


class LoggerMixin:
    """Adds a ``log`` property bound to the class name."""

    @property
    def log(self) -> structlog.BoundLogger:
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger


def log_context(**kwargs: Any) -> structlog.contextvars.bound_contextvars:
    """Bind key/values to every log line emitted inside the ``with`` block."""
    return structlog.contextvars.bound_contextvars(**kwargs)
