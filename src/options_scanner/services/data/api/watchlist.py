"""
Watchlist API router: symbols the user is tracking for a future entry.

Provides:
    GET    /watchlist            Every entry, priced from the latest stock row
    POST   /watchlist            Add or replace one symbol's entry
    DELETE /watchlist/{symbol}   Remove a symbol

Entries live in the SQLite store, so all routes return 503 when the
service runs without persistence.
"""

import logging
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from options_scanner.core.models import SetupType
from options_scanner.core.store import SqliteStore
from options_scanner.services.data.api.dependencies import get_store
from options_scanner.services.data.api.rate_limit import get_limiter, route_limit

logger = logging.getLogger("api.watchlist")

router = APIRouter(tags=["Watchlist"])
limiter = get_limiter()


class WatchlistAdd(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=10)
    setup_type: SetupType
    price: float = Field(..., gt=0)
    entry_target: float = Field(..., gt=0)
    stop_loss: Union[float, str] = "N/A"
    target_price: Optional[float] = Field(None, gt=0, description="Defaults to 5% above price")
    notes: str = ""


class WatchlistEntry(BaseModel):
    id: int
    symbol: str
    setup_type: str
    price: float
    entry_target: float
    stop_loss: str
    target_price: float
    added_on: str
    notes: Optional[str] = None


@router.get("", response_model=list[WatchlistEntry])
@limiter.limit(route_limit("/watchlist"))
def list_watchlist(request: Request, store: SqliteStore = Depends(get_store)):
    return store.get_watchlist()


@router.post("")
@limiter.limit(route_limit("/watchlist"))
def add_to_watchlist(
    request: Request, body: WatchlistAdd, store: SqliteStore = Depends(get_store)
) -> dict[str, Any]:
    symbol = body.symbol.strip().upper()
    row_id = store.add_to_watchlist(
        symbol,
        body.setup_type.value,
        body.price,
        body.entry_target,
        stop_loss=body.stop_loss,
        target_price=body.target_price,
        notes=body.notes,
    )
    logger.info("Watchlist entry saved for %s", symbol)
    return {"success": True, "message": f"Added {symbol} to watchlist", "id": row_id}


@router.delete("/{symbol}")
@limiter.limit(route_limit("/watchlist"))
def remove_from_watchlist(
    request: Request, symbol: str, store: SqliteStore = Depends(get_store)
) -> dict[str, Any]:
    symbol = symbol.upper()
    if not store.remove_from_watchlist(symbol):
        raise HTTPException(status_code=404, detail=f"Symbol {symbol} not found in watchlist")
    return {"success": True, "message": f"Removed {symbol} from watchlist"}
