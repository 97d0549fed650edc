"""Allocation policies: equal-weight and winner-take-all.

Both policies are pure functions of their inputs. Every strategy keeps at
least its locked capital (the part of its position that cannot be withdrawn
right now) and the idle bucket absorbs integer-division residue, so the rows
of a result always add up to the total they were given.
"""

from collections.abc import Sequence

from yieldkeeper.allocation.models import Allocation, StrategyInput
from yieldkeeper.errors import AllocationInvariantError
from yieldkeeper.logging import get_logger
from yieldkeeper.registry import IDLE_ID

logger = get_logger(__name__)


def locked_amount(strategy_input: StrategyInput) -> int:
    """``max(position - withdrawable liquidity, 0)``; zero when liquidity is unbounded."""
    return strategy_input.locked


def allocation_total(allocations: Sequence[Allocation]) -> int:
    return sum(a.position_value for a in allocations)


def _warn_if_overcommitted(total_value: int, locks: Sequence[int], policy: str) -> None:
    total_locked = sum(locks)
    if total_locked > total_value:
        logger.warning(
            f"Locked capital exceeds total value ({policy}): "
            f"locked={total_locked} total={total_value}; clamping rows to their locks",
            extra={"policy": policy, "total_locked": total_locked, "total_value": total_value},
        )


def _with_idle(rows: list[Allocation], total_value: int) -> tuple[Allocation, ...]:
    remainder = total_value - allocation_total(rows)
    rows.append(Allocation.idle(max(remainder, 0)))
    return tuple(rows)


def create_initial_allocation(
    total_value: int, inputs: Sequence[StrategyInput]
) -> tuple[Allocation, ...]:
    """Pin every strategy to its locked amount and leave the rest idle."""
    locks = [locked_amount(i) for i in inputs]
    _warn_if_overcommitted(total_value, locks, "initial")
    rows = [Allocation.from_input(i, lock) for i, lock in zip(inputs, locks)]
    return _with_idle(rows, total_value)


def create_equal_weight_allocation(
    total_value: int, inputs: Sequence[StrategyInput]
) -> tuple[Allocation, ...]:
    """Split ``total_value`` evenly across strategies, respecting locks.

    Given N strategies, total T and locks L_i:

    1. With no strategies, everything is idle.
    2. Strategies locked above the even share T // N are pinned at their lock.
    3. The share is recomputed over the unpinned strategies from what is left;
       any strategy now locked above it is pinned too, until none is.
    4. Unpinned strategies get ``max(share, L_i)``.
    5. Integer-division residue goes to idle.
    """
    n = len(inputs)
    if n == 0:
        return (Allocation.idle(total_value),)

    locks = [locked_amount(i) for i in inputs]
    _warn_if_overcommitted(total_value, locks, "equal_weight")

    pinned = [False] * n
    share = total_value // n
    while True:
        newly_pinned = [idx for idx in range(n) if not pinned[idx] and locks[idx] > share]
        if not newly_pinned:
            break
        for idx in newly_pinned:
            pinned[idx] = True

        unpinned_count = pinned.count(False)
        pinned_total = sum(lock for lock, is_pinned in zip(locks, pinned) if is_pinned)
        remaining = max(total_value - pinned_total, 0)
        share = remaining // unpinned_count if unpinned_count else 0

    rows: list[Allocation] = []
    for strategy_input, lock, is_pinned in zip(inputs, locks, pinned):
        value = lock if is_pinned else max(share, lock)
        rows.append(Allocation.from_input(strategy_input, value))

    pinned_ids = [i.strategy_id for i, p in zip(inputs, pinned) if p]
    if pinned_ids:
        logger.info(f"Equal-weight: pinned over-locked strategies at their locks: {pinned_ids}")

    return _with_idle(rows, total_value)


def create_winner_take_all_allocation(
    total_value: int, inputs: Sequence[StrategyInput], winner_id: str
) -> tuple[Allocation, ...]:
    """Concentrate all free capital into ``winner_id``.

    Every other strategy keeps exactly its lock; the winner receives what
    is left, including all idle capital.

    Raises:
        ValueError: If ``winner_id`` is not among ``inputs``.
    """
    if winner_id not in {i.strategy_id for i in inputs}:
        raise ValueError(f"Winner {winner_id!r} is not a registered strategy")

    locks = [locked_amount(i) for i in inputs]
    _warn_if_overcommitted(total_value, locks, "winner_take_all")

    others_locked = sum(
        lock for strategy_input, lock in zip(inputs, locks) if strategy_input.strategy_id != winner_id
    )

    rows: list[Allocation] = []
    for strategy_input, lock in zip(inputs, locks):
        if strategy_input.strategy_id != winner_id:
            rows.append(Allocation.from_input(strategy_input, lock))
            continue

        winner_value = total_value - others_locked
        if winner_value < lock:
            logger.warning(
                f"Winner {winner_id} surplus {winner_value} is below its lock {lock}; "
                f"flooring at the lock",
                extra={"winner_id": winner_id, "surplus": winner_value, "locked": lock},
            )
            winner_value = lock
        rows.append(Allocation.from_input(strategy_input, winner_value))

    return _with_idle(rows, total_value)


def create_target_allocation(
    total_value: int,
    inputs: Sequence[StrategyInput],
    winner_id: str | None,
    outcome: str = "no_winner",
) -> tuple[Allocation, ...]:
    """Winner-take-all when a winner is nominated, equal-weight otherwise.

    ``outcome`` names why no winner was nominated and is logged with the fallback.
    """
    if winner_id is None:
        logger.warning(
            f"No yield winner nominated ({outcome}); falling back to equal-weight allocation",
            extra={"event": "allocation_fallback", "outcome": outcome, "total_value": total_value},
        )
        return create_equal_weight_allocation(total_value, inputs)
    return create_winner_take_all_allocation(total_value, inputs, winner_id)


def check_allocation(allocations: Sequence[Allocation], total_value: int) -> None:
    """Verify shape and conservation of a full allocation.

    Raises:
        AllocationInvariantError: On a missing/duplicated/misplaced idle row,
            a negative row, a duplicated strategy, or a sum different from
            ``total_value``.
    """
    idle_rows = [a for a in allocations if a.strategy_id == IDLE_ID]
    if len(idle_rows) != 1 or not allocations or not allocations[-1].is_idle:
        raise AllocationInvariantError("Allocation must end with exactly one idle row")

    ids = [a.strategy_id for a in allocations]
    if len(ids) != len(set(ids)):
        raise AllocationInvariantError(f"Allocation has duplicated strategies: {ids}")

    negative = [a.strategy_id for a in allocations if a.position_value < 0]
    if negative:
        raise AllocationInvariantError(f"Negative allocation rows: {negative}")

    allocated = allocation_total(allocations)
    if allocated != total_value:
        raise AllocationInvariantError(
            f"Allocation total {allocated} does not match input total {total_value}"
        )
