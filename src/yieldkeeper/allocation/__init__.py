"""Capital allocation -- data model, policies, planning and rebalance diffs."""

from .engine import (
    check_allocation,
    create_equal_weight_allocation,
    create_initial_allocation,
    create_target_allocation,
    create_winner_take_all_allocation,
    locked_amount,
)
from .models import Allocation, AllocationPlan, AllocationPolicy, StrategyInput
from .planner import AllocationPlanner
from .rebalance import ActionKind, RebalanceAction, diff_allocations

__all__ = [
    "ActionKind",
    "Allocation",
    "AllocationPlan",
    "AllocationPlanner",
    "AllocationPolicy",
    "RebalanceAction",
    "StrategyInput",
    "check_allocation",
    "create_equal_weight_allocation",
    "create_initial_allocation",
    "create_target_allocation",
    "create_winner_take_all_allocation",
    "diff_allocations",
    "locked_amount",
]
