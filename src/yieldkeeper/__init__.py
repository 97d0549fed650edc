"""Yieldkeeper: liquidity-aware capital allocation for lending vaults."""

__all__ = ["AllocationPlanner", "RebalancerSettings", "StrategyRegistry", "__version__"]
__version__ = "0.1.0"


def __getattr__(name: str):
    if name == "AllocationPlanner":
        from .allocation.planner import AllocationPlanner

        return AllocationPlanner
    if name == "RebalancerSettings":
        from .config import RebalancerSettings

        return RebalancerSettings
    if name == "StrategyRegistry":
        from .registry import StrategyRegistry

        return StrategyRegistry
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
