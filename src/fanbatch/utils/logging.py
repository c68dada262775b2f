import logging
import typing as t
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

_SECRET_HEADERS = frozenset({"authorization", "x-api-key", "x-goog-api-key"})


def setup_logging(level: int = logging.INFO) -> None:
    logging.getLogger("fanbatch").setLevel(level)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(**required_context: t.Any) -> Iterator[None]:
    current = structlog.contextvars.get_contextvars()
    to_bind = {k: v for k, v in required_context.items() if k not in current}

    if to_bind:
        with structlog.contextvars.bound_contextvars(**to_bind):
            yield
    else:
        yield


def mask_headers(headers: t.Mapping[str, str]) -> dict[str, str]:
    """Replace credential header values before they reach a log line."""
    return {k: "***" if k.lower() in _SECRET_HEADERS else v for k, v in headers.items()}
