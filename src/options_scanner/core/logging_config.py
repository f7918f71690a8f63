"""
Structured logging for the options scanner.

``setup_logging()`` runs once per process and sends both ``structlog``
events and stdlib ``logging`` records (uvicorn, httpx, slowapi) through a
single stderr handler, so every line shares one format.

Collector steps wrap their work in ``collection_context()``: the symbol,
feed and run id are bound as context variables and show up on every line
logged underneath, including the provider client's retry and degrade
events. Symbols are upper-cased on the way out whatever the caller passed.

Environment:
  - ``LOG_LEVEL``   root level (default ``INFO``)
  - ``LOG_FORMAT``  ``console`` (default) or ``json``
  - ``LOG_QUIET``   comma-separated loggers held at WARNING
                    (default ``uvicorn.access,httpx,httpcore,asyncio``)

Usage::

    setup_logging(service="data-service")
    logger = get_logger("collector")

    with collection_context("aapl", "options", run_id=7):
        logger.warning("collection_error", error="ProviderError: 503")
    # => ... [warning] collection_error  error=ProviderError: 503 feed=options
    #        run_id=7 service=data-service symbol=AAPL
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import AbstractContextManager
from typing import Any, Optional

import structlog

DEFAULT_QUIET = ("uvicorn.access", "httpx", "httpcore", "asyncio")


def normalize_symbol(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Upper-case a ``symbol`` field so lines for one ticker grep together."""
    symbol = event_dict.get("symbol")
    if isinstance(symbol, str):
        event_dict["symbol"] = symbol.upper()
    return event_dict


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.ExtraAdder(),
        normalize_symbol,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty(), pad_event_to=30)


def _quiet_loggers() -> tuple[str, ...]:
    raw = os.getenv("LOG_QUIET")
    if raw is None:
        return DEFAULT_QUIET
    return tuple(name.strip() for name in raw.split(",") if name.strip())


def setup_logging(
    *,
    service: str = "options-scanner",
    level: Optional[str] = None,
    log_format: Optional[str] = None,
) -> None:
    """Configure ``structlog`` and the stdlib root logger.

    *level* and *log_format* fall back to ``LOG_LEVEL`` and ``LOG_FORMAT``.
    *service* is bound to every event. Calling it again replaces the
    previous handler and clears any bound context.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_format = (log_format or os.getenv("LOG_FORMAT", "console")).lower()

    shared = _shared_processors()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(log_format),
            ],
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))

    for name in _quiet_loggers():
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *shared,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service)


def get_logger(name: Optional[str] = None, **initial_binds: Any) -> structlog.stdlib.BoundLogger:
    log = structlog.get_logger(name)
    if initial_binds:
        log = log.bind(**initial_binds)
    return log


def collection_context(
    symbol: str, feed: str, run_id: Optional[int] = None
) -> AbstractContextManager[Any]:
    """Bind one collector step's identity to every log line in the block.

    The binding lives in the current task's context and is undone on exit,
    so concurrent steps for other symbols never see it.
    """
    return structlog.contextvars.bound_contextvars(symbol=symbol, feed=feed, run_id=run_id)
