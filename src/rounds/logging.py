"""structlog setup for the round engine.

Each CLI invocation is one short-lived process, so logging is configured
once in rounds.main and written to stderr. Job-scoped fields travel through
structlog contextvars (see job_context).
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("aiosqlite", "ccxt", "asyncio")


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format.lower() == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def setup_logging(log_level: str = "INFO", log_format: str = "console") -> None:
    """Route structlog through stdlib logging with one stderr handler.

    Args:
        log_level: Root level name (DEBUG, INFO, ...). Unknown names fall back to INFO.
        log_format: "json" for machine-readable lines, anything else for console output.
    """
    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def job_context(job: str, **fields: object) -> Iterator[None]:
    """Tag every log line emitted inside the block with the scheduler job name.

    Usage:
        with job_context("settle", round_id=round_id):
            await service.settle_round(round_id)
    """
    with structlog.contextvars.bound_contextvars(job=job, **fields):
        yield
