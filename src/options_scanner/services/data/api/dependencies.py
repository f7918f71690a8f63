"""Shared access to the running ``CollectorService`` for the API routers."""

from typing import Optional

from fastapi import HTTPException

from options_scanner.core.store import SqliteStore
from options_scanner.services.engine.collector import CollectorService

_collector: Optional[CollectorService] = None


def set_collector(collector: Optional[CollectorService]) -> None:
    """Called by the lifespan (or a test) to inject the collector."""
    global _collector
    _collector = collector


def get_collector() -> CollectorService:
    if _collector is None:
        raise HTTPException(status_code=503, detail="Collector not started yet")
    return _collector


def get_collector_or_none() -> Optional[CollectorService]:
    return _collector


async def get_store() -> SqliteStore:
    """The collector's SQLite store; 503 while the collector is down or persistence is off."""
    collector = get_collector()
    if not isinstance(collector.store, SqliteStore):
        raise HTTPException(status_code=503, detail="Persistence is disabled")
    await collector.ensure_store()
    return collector.store
