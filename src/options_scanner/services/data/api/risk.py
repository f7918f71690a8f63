"""
Risk API router: sizing and exit planning for a prospective trade.

Provides:
    POST /risk/position-size   Contracts to trade for an account and risk budget
    POST /risk/reward          Reward-to-risk, expected value and risk score
    POST /risk/stop-loss       Stop price and loss for one stop strategy

Stateless: nothing here touches the collector or the store.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from options_scanner.analysis.risk import (
    GexAdjustment,
    PositionType,
    StopType,
    TradeType,
    analyze_risk_reward,
    plan_stop_loss,
    size_position,
)
from options_scanner.core.errors import RiskInputError
from options_scanner.services.data.api.rate_limit import get_limiter, route_limit

logger = logging.getLogger("api.risk")

router = APIRouter(tags=["Risk"])
limiter = get_limiter()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class PositionSizeRequest(BaseModel):
    account_size: float = Field(..., gt=0)
    risk_percentage: float = Field(..., gt=0, le=100)
    option_premium: float = Field(..., gt=0, description="Cost of one contract")
    iv: Optional[float] = Field(None, ge=0, description="Implied volatility in percent")
    gex_adjustment: GexAdjustment = GexAdjustment.NEUTRAL


class RiskRewardRequest(BaseModel):
    entry_price: float = Field(..., gt=0)
    target_price: float = Field(..., gt=0)
    stop_loss_price: float = Field(..., gt=0)
    position_type: PositionType
    iv: Optional[float] = Field(None, ge=0)
    win_probability: Optional[float] = Field(None, gt=0, le=100)
    option_premium: Optional[float] = Field(None, gt=0)
    strike: Optional[float] = Field(None, gt=0)
    days_to_expiration: Optional[int] = Field(None, ge=0)
    quantity: Optional[float] = Field(None, gt=0)


class StopLossRequest(BaseModel):
    entry_price: float = Field(..., gt=0)
    trade_type: TradeType
    stop_type: StopType
    option_premium: Optional[float] = Field(None, gt=0)
    days_to_expiration: Optional[int] = Field(None, ge=0)
    iv: Optional[float] = Field(None, ge=0)
    atr_value: Optional[float] = Field(None, gt=0)
    account_size: Optional[float] = Field(None, gt=0)
    risk_percentage: Optional[float] = Field(None, gt=0, le=100)
    technical_level: Optional[float] = Field(None, gt=0)
    percentage_value: Optional[float] = Field(None, gt=0, le=100)
    fixed_dollar_amount: Optional[float] = Field(None, gt=0)
    time_days: Optional[int] = Field(None, gt=0)


def _bad_request(exc: RiskInputError) -> HTTPException:
    logger.info("Rejected risk request: %s", exc)
    return HTTPException(status_code=400, detail=str(exc))


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/position-size")
@limiter.limit(route_limit("/risk"))
def position_size(request: Request, body: PositionSizeRequest) -> dict[str, Any]:
    try:
        result = size_position(
            body.account_size,
            body.risk_percentage,
            body.option_premium,
            iv=body.iv,
            gex_adjustment=body.gex_adjustment,
        )
    except RiskInputError as exc:
        raise _bad_request(exc) from exc
    return {"success": True, **result.to_dict()}


@router.post("/reward")
@limiter.limit(route_limit("/risk"))
def risk_reward(request: Request, body: RiskRewardRequest) -> dict[str, Any]:
    """Options need ``option_premium`` and ``strike``; spreads and condors need ``option_premium``."""
    try:
        result = analyze_risk_reward(
            body.entry_price,
            body.target_price,
            body.stop_loss_price,
            body.position_type,
            iv=body.iv,
            win_probability=body.win_probability,
            option_premium=body.option_premium,
            strike=body.strike,
            days_to_expiration=body.days_to_expiration,
            quantity=body.quantity,
        )
    except RiskInputError as exc:
        raise _bad_request(exc) from exc
    return {"success": True, **result.to_dict()}


@router.post("/stop-loss")
@limiter.limit(route_limit("/risk"))
def stop_loss(request: Request, body: StopLossRequest) -> dict[str, Any]:
    try:
        result = plan_stop_loss(
            body.entry_price,
            body.trade_type,
            body.stop_type,
            option_premium=body.option_premium,
            days_to_expiration=body.days_to_expiration,
            iv=body.iv,
            atr=body.atr_value,
            account_size=body.account_size,
            risk_pct=body.risk_percentage,
            technical_level=body.technical_level,
            percentage=body.percentage_value,
            fixed_amount=body.fixed_dollar_amount,
            time_days=body.time_days,
        )
    except RiskInputError as exc:
        raise _bad_request(exc) from exc
    return {"success": True, **result.to_dict()}
