"""
Options-chain sentiment metrics.

Pure transforms over one chain snapshot and the underlying spot price:

  - ``put_call_ratio``      Σ put OI / Σ call OI
  - ``max_pain``            strike minimising the aggregate ITM payout to
                            option holders (ties → lowest strike)
  - ``gamma_exposure``      Σ call OI·γ·100·spot − Σ put OI·γ·100·spot,
                            only contracts quoting both delta and gamma
  - ``volume_weighted_iv``  Σ volume·IV / Σ volume over calls and puts

plus ``iv_percentile`` and ``open_interest_walls``, the key-level
confirmation flags consumed by the setup classifier.

All divisions are guarded with ``EPSILON``; every function returns a plain
float and never ``NaN``.
"""

from dataclasses import dataclass
from typing import Iterable, Sequence

from options_scanner.core.models import OptionContract, OptionsChain, OptionsMetrics

EPSILON = 1e-10
CONTRACT_MULTIPLIER = 100

# A strike is an open-interest "wall" at either threshold.
HIGH_OI = 1000
HIGH_GAMMA = 0.05
NEAR_PRICE = 0.05


def _total_oi(contracts: Iterable[OptionContract]) -> int:
    return sum(c.open_interest for c in contracts)


def put_call_ratio(calls: Sequence[OptionContract], puts: Sequence[OptionContract]) -> float:
    return _total_oi(puts) / max(_total_oi(calls), EPSILON)


def max_pain(calls: Sequence[OptionContract], puts: Sequence[OptionContract]) -> float:
    """Strike at which option holders collectively lose the most.

    For each candidate strike ``k`` the payout is
    ``Σ callOI·(k − strike)`` over calls struck below ``k`` plus
    ``Σ putOI·(strike − k)`` over puts struck above ``k``. Strikes are
    scanned in ascending order and only a strictly smaller payout replaces
    the current best, so ties resolve to the lowest strike. An empty chain
    yields ``0.0``.
    """
    strikes = sorted({c.strike for c in calls} | {p.strike for p in puts})
    best_strike = 0.0
    best_pain = float("inf")
    for k in strikes:
        pain = sum(c.open_interest * (k - c.strike) for c in calls if c.strike < k)
        pain += sum(p.open_interest * (p.strike - k) for p in puts if p.strike > k)
        if pain < best_pain:
            best_pain = pain
            best_strike = k
    return best_strike


def _gamma_notional(contracts: Iterable[OptionContract], spot: float) -> float:
    return sum(
        c.open_interest * c.gamma * CONTRACT_MULTIPLIER * spot
        for c in contracts
        if c.delta is not None and c.gamma is not None
    )


def gamma_exposure(
    calls: Sequence[OptionContract], puts: Sequence[OptionContract], spot: float
) -> float:
    return _gamma_notional(calls, spot) - _gamma_notional(puts, spot)


def volume_weighted_iv(
    calls: Sequence[OptionContract], puts: Sequence[OptionContract]
) -> float:
    contracts = list(calls) + list(puts)
    weighted = sum(c.volume * c.implied_volatility for c in contracts)
    total = sum(c.volume for c in contracts)
    return weighted / max(total, EPSILON)


def compute_options_metrics(chain: OptionsChain, spot: float) -> OptionsMetrics:
    calls, puts = chain.calls, chain.puts
    return OptionsMetrics(
        pcr=put_call_ratio(calls, puts),
        max_pain=max_pain(calls, puts),
        gamma_exposure=gamma_exposure(calls, puts, spot),
        volume_weighted_iv=volume_weighted_iv(calls, puts),
        total_call_oi=_total_oi(calls),
        total_put_oi=_total_oi(puts),
        total_call_volume=sum(c.volume for c in calls),
        total_put_volume=sum(p.volume for p in puts),
    )


def iv_percentile(current_iv: float, historical_ivs: Sequence[float]) -> float:
    """Share of *historical_ivs* strictly below *current_iv*, in percent.

    Uses the position of the first sorted value ``>= current_iv``. With no
    history the result is the neutral 50; a value above every sample is 100.
    """
    values = sorted(v for v in historical_ivs if v is not None)
    if not values:
        return 50.0
    for position, value in enumerate(values):
        if value >= current_iv:
            return position / len(values) * 100.0
    return 100.0


def chain_iv_percentile(chain: OptionsChain) -> float:
    """IV percentile of the mean call IV against the chain's own call IVs."""
    ivs = [c.implied_volatility for c in chain.calls if c.implied_volatility > 0]
    average = sum(c.implied_volatility for c in chain.calls) / max(len(chain.calls), 1)
    return iv_percentile(average, ivs)


@dataclass(frozen=True)
class OpenInterestWalls:
    call_oi_above: bool
    put_oi_below: bool
    high_gamma_near_price: bool
    resistance_strikes: tuple[float, ...] = ()
    support_strikes: tuple[float, ...] = ()


def _is_wall(contract: OptionContract) -> bool:
    return contract.open_interest > HIGH_OI or (contract.gamma or 0.0) > HIGH_GAMMA


def open_interest_walls(chain: OptionsChain, spot: float) -> OpenInterestWalls:
    """Locate heavy call strikes above spot and heavy put strikes below it.

    ``resistance_strikes`` is ascending (nearest first), ``support_strikes``
    descending (nearest first).
    """
    resistance = sorted({c.strike for c in chain.calls if c.strike > spot and _is_wall(c)})
    support = sorted(
        {p.strike for p in chain.puts if p.strike < spot and _is_wall(p)}, reverse=True
    )
    near = any(
        abs(c.strike - spot) / max(spot, EPSILON) < NEAR_PRICE
        and (c.gamma or 0.0) > HIGH_GAMMA
        for c in list(chain.calls) + list(chain.puts)
    )
    return OpenInterestWalls(
        call_oi_above=bool(resistance),
        put_oi_below=bool(support),
        high_gamma_near_price=near,
        resistance_strikes=tuple(resistance),
        support_strikes=tuple(support),
    )
