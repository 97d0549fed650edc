"""Builds each cycle's strategy inputs and asks the engine for a target."""

import asyncio
from typing import assert_never

from yieldkeeper.allocation.engine import (
    check_allocation,
    create_equal_weight_allocation,
    create_target_allocation,
)
from yieldkeeper.allocation.models import (
    Allocation,
    AllocationPlan,
    AllocationPolicy,
    StrategyInput,
)
from yieldkeeper.config import RebalancerSettings
from yieldkeeper.liquidity.oracle import strategy_liquidity_ceiling
from yieldkeeper.logging import get_logger, set_rebalance_context
from yieldkeeper.registry import Strategy, StrategyRegistry, StrategyType
from yieldkeeper.signals.yield_signal import YieldSignal
from yieldkeeper.sources import PositionReader, ReserveSource

logger = get_logger(__name__)


class AllocationPlanner:
    """Reads current state and produces an ``AllocationPlan`` per cycle."""

    def __init__(
        self,
        registry: StrategyRegistry,
        positions: PositionReader,
        reserves: ReserveSource,
        settings: RebalancerSettings,
        yield_signal: YieldSignal | None = None,
    ) -> None:
        self._registry = registry
        self._positions = positions
        self._reserves = reserves
        self._settings = settings
        self._yield_signal = yield_signal

    async def _liquidity_ceiling(self, strategy: Strategy) -> int | None:
        """Haircut withdrawable ceiling, or None when the venue reports no cap."""
        strategy_type = strategy.type
        if strategy_type is StrategyType.KAMINO_VAULT or strategy_type is StrategyType.KAMINO_MARKET:
            reserves = await self._reserves.read_reserves(strategy)
            if reserves is None:
                logger.warning(f"No reserve data for {strategy.id}; treating liquidity as unbounded")
                return None
            set_rebalance_context(strategy_id=strategy.id)
            return strategy_liquidity_ceiling(
                reserves, self._settings.liquidity_haircut_bps, strategy_id=strategy.id
            )
        elif strategy_type is StrategyType.DRIFT_EARN or strategy_type is StrategyType.JUPITER_LEND:
            return None
        else:
            assert_never(strategy_type)

    async def _read_inputs(self) -> tuple[tuple[Allocation, ...], list[StrategyInput], int]:
        snapshot = await self._positions.read_positions(self._registry)

        previous: list[Allocation] = []
        for strategy in self._registry:
            previous.append(
                Allocation(
                    strategy_id=strategy.id,
                    strategy_type=strategy.type.value,
                    strategy_address=strategy.address,
                    position_value=snapshot.position_values[strategy.id],
                )
            )
        previous.append(Allocation.idle(snapshot.idle_balance))
        total_value = sum(a.position_value for a in previous)

        ceilings = await asyncio.gather(*(self._liquidity_ceiling(s) for s in self._registry))

        inputs = [
            StrategyInput.for_strategy(strategy, snapshot.position_values[strategy.id], ceiling)
            for strategy, ceiling in zip(self._registry, ceilings)
        ]
        for strategy_input in inputs:
            logger.debug(
                f"{strategy_input.strategy_id}: position={strategy_input.position_value} "
                f"liquidity={strategy_input.available_withdrawable_liquidity} "
                f"locked={strategy_input.locked}"
            )
        return tuple(previous), inputs, total_value

    async def get_current_and_equal_allocation(self) -> AllocationPlan:
        """Current portfolio and its equal-weight target."""
        previous, inputs, total_value = await self._read_inputs()
        target = create_equal_weight_allocation(total_value, inputs)
        check_allocation(target, total_value)
        return AllocationPlan(
            previous=previous,
            target=target,
            policy=AllocationPolicy.EQUAL_WEIGHT,
            total_value=total_value,
        )

    async def get_current_and_target_allocation(self) -> AllocationPlan:
        """Current portfolio and the yield-driven target.

        Falls back to the equal-weight target when no winner is nominated.
        """
        previous, inputs, total_value = await self._read_inputs()

        winner_id: str | None = None
        if self._yield_signal is not None:
            selection = await self._yield_signal.nominate_winner(total_value)
            winner_id = selection.winner_id
            outcome = selection.outcome.value
        else:
            outcome = "signal_disabled"

        target = create_target_allocation(total_value, inputs, winner_id, outcome=outcome)
        policy = AllocationPolicy.EQUAL_WEIGHT if winner_id is None else AllocationPolicy.WINNER_TAKE_ALL
        logger.info(f"Target policy {policy.value} (signal outcome: {outcome})")

        check_allocation(target, total_value)
        return AllocationPlan(
            previous=previous,
            target=target,
            policy=policy,
            total_value=total_value,
            winner_id=winner_id,
        )

    async def plan(self) -> AllocationPlan:
        """Plan according to ``settings.allocation_mode``."""
        if self._settings.allocation_mode == "equal":
            return await self.get_current_and_equal_allocation()
        return await self.get_current_and_target_allocation()
