"""Turn a current/target allocation pair into deposit and withdraw actions."""

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from yieldkeeper.allocation.models import Allocation
from yieldkeeper.errors import AllocationInvariantError


class ActionKind(str, Enum):
    WITHDRAW = "withdraw"
    DEPOSIT = "deposit"


@dataclass(frozen=True)
class RebalanceAction:
    """Move ``amount`` native units between idle and one strategy."""

    kind: ActionKind
    strategy_id: str
    strategy_type: str
    strategy_address: str
    amount: int

    def to_dict(self) -> dict[str, str | int]:
        return {
            "kind": self.kind.value,
            "strategyId": self.strategy_id,
            "strategyType": self.strategy_type,
            "strategyAddress": self.strategy_address,
            "amount": self.amount,
        }


def diff_allocations(
    previous: Sequence[Allocation],
    target: Sequence[Allocation],
    min_delta: int = 0,
) -> tuple[RebalanceAction, ...]:
    """Actions that move ``previous`` to ``target``.

    Withdrawals come first (largest first) so the deposits that follow are
    funded from idle. Deltas smaller than ``min_delta`` are skipped. The idle
    row never produces an action.

    Raises:
        AllocationInvariantError: If the two allocations cover different strategies.
    """
    current = {a.strategy_id: a for a in previous if not a.is_idle}
    wanted = {a.strategy_id: a for a in target if not a.is_idle}
    if current.keys() != wanted.keys():
        raise AllocationInvariantError(
            f"Allocations cover different strategies: {sorted(current)} vs {sorted(wanted)}"
        )

    withdrawals: list[RebalanceAction] = []
    deposits: list[RebalanceAction] = []
    for strategy_id, row in wanted.items():
        delta = row.position_value - current[strategy_id].position_value
        if delta == 0 or abs(delta) < min_delta:
            continue
        action = RebalanceAction(
            kind=ActionKind.DEPOSIT if delta > 0 else ActionKind.WITHDRAW,
            strategy_id=strategy_id,
            strategy_type=row.strategy_type,
            strategy_address=row.strategy_address,
            amount=abs(delta),
        )
        (deposits if delta > 0 else withdrawals).append(action)

    withdrawals.sort(key=lambda a: a.amount, reverse=True)
    deposits.sort(key=lambda a: a.amount, reverse=True)
    return tuple(withdrawals + deposits)
