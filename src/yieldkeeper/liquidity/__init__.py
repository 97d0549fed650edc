"""Liquidity ceilings derived from reserve state."""

from .oracle import (
    ReserveHolding,
    ReserveState,
    StrategyReserves,
    WithdrawalCapWindow,
    apply_haircut,
    compute_withdrawable,
    market_ceiling,
    max_withdrawable,
    strategy_liquidity_ceiling,
)

__all__ = [
    "ReserveHolding",
    "ReserveState",
    "StrategyReserves",
    "WithdrawalCapWindow",
    "apply_haircut",
    "compute_withdrawable",
    "market_ceiling",
    "max_withdrawable",
    "strategy_liquidity_ceiling",
]
