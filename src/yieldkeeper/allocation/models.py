"""Allocation data model."""

from dataclasses import dataclass
from enum import Enum

from yieldkeeper.registry import IDLE_ADDRESS, IDLE_ID, IDLE_TYPE, Strategy


@dataclass(frozen=True)
class StrategyInput:
    """Per-cycle snapshot of one strategy.

    ``available_withdrawable_liquidity`` is ``None`` when no cap is known,
    which is not the same as ``0`` (nothing can be withdrawn).
    """

    strategy_id: str
    strategy_type: str
    strategy_address: str
    position_value: int
    available_withdrawable_liquidity: int | None = None

    def __post_init__(self) -> None:
        if self.position_value < 0:
            raise ValueError(f"position_value must be >= 0 for {self.strategy_id}")
        liquidity = self.available_withdrawable_liquidity
        if liquidity is not None and liquidity < 0:
            raise ValueError(f"available_withdrawable_liquidity must be >= 0 for {self.strategy_id}")

    @classmethod
    def for_strategy(
        cls,
        strategy: Strategy,
        position_value: int,
        available_withdrawable_liquidity: int | None = None,
    ) -> "StrategyInput":
        return cls(
            strategy_id=strategy.id,
            strategy_type=strategy.type.value,
            strategy_address=strategy.address,
            position_value=position_value,
            available_withdrawable_liquidity=available_withdrawable_liquidity,
        )

    @property
    def locked(self) -> int:
        """Capital the strategy cannot return right now."""
        if self.available_withdrawable_liquidity is None:
            return 0
        return max(self.position_value - self.available_withdrawable_liquidity, 0)


@dataclass(frozen=True)
class Allocation:
    """One row of a proposed or observed portfolio."""

    strategy_id: str
    strategy_type: str
    strategy_address: str
    position_value: int

    @property
    def is_idle(self) -> bool:
        return self.strategy_id == IDLE_ID

    @classmethod
    def idle(cls, position_value: int) -> "Allocation":
        return cls(
            strategy_id=IDLE_ID,
            strategy_type=IDLE_TYPE,
            strategy_address=IDLE_ADDRESS,
            position_value=position_value,
        )

    @classmethod
    def from_input(cls, strategy_input: StrategyInput, position_value: int) -> "Allocation":
        return cls(
            strategy_id=strategy_input.strategy_id,
            strategy_type=strategy_input.strategy_type,
            strategy_address=strategy_input.strategy_address,
            position_value=position_value,
        )

    def to_dict(self) -> dict[str, str | int]:
        return {
            "strategyId": self.strategy_id,
            "strategyType": self.strategy_type,
            "strategyAddress": self.strategy_address,
            "positionValue": self.position_value,
        }


class AllocationPolicy(str, Enum):
    """Which policy produced a target allocation."""

    EQUAL_WEIGHT = "equal_weight"
    WINNER_TAKE_ALL = "winner_take_all"


@dataclass(frozen=True)
class AllocationPlan:
    """Current portfolio and the target chosen for it in one cycle."""

    previous: tuple[Allocation, ...]
    target: tuple[Allocation, ...]
    policy: AllocationPolicy
    total_value: int
    winner_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "policy": self.policy.value,
            "winnerId": self.winner_id,
            "totalValue": self.total_value,
            "previous": [a.to_dict() for a in self.previous],
            "target": [a.to_dict() for a in self.target],
        }
