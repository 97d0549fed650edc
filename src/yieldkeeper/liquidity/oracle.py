"""Withdrawal-capacity estimation for reserves backing a strategy.

A reserve can only hand back what is both sitting idle in it and still
permitted by its rolling withdrawal cap. The portfolio can in turn only take
what it actually has invested in that reserve. For a vault spread over
several reserves, a withdrawal is routed through a single reserve, so the
strategy's ceiling is the best single reserve, not the sum.

All amounts are integers in the asset's native units.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from yieldkeeper.errors import ReserveNotFoundError
from yieldkeeper.logging import get_logger

logger = get_logger(__name__)

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class WithdrawalCapWindow:
    """Venue-wide withdrawal cap over a rolling window.

    Attributes:
        capacity: Maximum cumulative withdrawals per window. ``None`` means the
            reserve has no cap configured.
        current_total: Withdrawals already counted in the window that started
            at ``interval_start``. May exceed ``capacity`` transiently.
        interval_start: Ledger time (slot) at which the window opened.
        interval_length: Window length in ledger time units; ``0`` means the
            window never resets.
    """

    capacity: int | None
    current_total: int = 0
    interval_start: int = 0
    interval_length: int = 0

    def current_usage(self, current_time: int) -> int:
        """Usage counted against the cap at ``current_time``."""
        if self.interval_length > 0 and current_time >= self.interval_start + self.interval_length:
            return 0
        return max(self.current_total, 0)

    def remaining(self, current_time: int) -> int | None:
        """How much more the cap permits before the window resets, floored at zero."""
        if self.capacity is None:
            return None
        return max(self.capacity - self.current_usage(current_time), 0)


@dataclass(frozen=True)
class ReserveState:
    """Decoded state of one lending reserve."""

    address: str
    available_liquidity: int
    withdrawal_cap: WithdrawalCapWindow = WithdrawalCapWindow(capacity=None)


@dataclass(frozen=True)
class ReserveHolding:
    """A strategy's stake in one reserve.

    ``state`` is ``None`` when the reserve account could not be fetched or
    decoded; the oracle refuses to treat that as zero liquidity.
    """

    reserve_address: str
    invested: int
    state: ReserveState | None


@dataclass(frozen=True)
class StrategyReserves:
    """Reserve data for one strategy at a given ledger time."""

    current_time: int
    holdings: tuple[ReserveHolding, ...]


def market_ceiling(reserve: ReserveState, current_time: int) -> int:
    """Venue-wide withdrawable amount: ``min(available, remaining cap)``."""
    available = max(reserve.available_liquidity, 0)
    remaining_cap = reserve.withdrawal_cap.remaining(current_time)
    if remaining_cap is None:
        return available
    return min(available, remaining_cap)


def compute_withdrawable(reserve: ReserveState, current_time: int, invested_amount: int) -> int:
    """Amount this portfolio could withdraw from ``reserve`` right now.

    Never more than what the portfolio owns, never more than the venue permits.
    """
    return min(max(invested_amount, 0), market_ceiling(reserve, current_time))


def max_withdrawable(
    holdings: Iterable[ReserveHolding],
    current_time: int,
    strategy_id: str | None = None,
) -> int:
    """Best single-reserve withdrawable amount across ``holdings``.

    Raises:
        ReserveNotFoundError: If any holding lacks decoded reserve state.
    """
    best = 0
    best_reserve: str | None = None
    for holding in holdings:
        if holding.state is None:
            raise ReserveNotFoundError(holding.reserve_address, strategy_id=strategy_id)
        amount = compute_withdrawable(holding.state, current_time, holding.invested)
        logger.debug(
            f"Reserve {holding.reserve_address}: invested={holding.invested} "
            f"available={holding.state.available_liquidity} withdrawable={amount}"
        )
        if amount > best:
            best = amount
            best_reserve = holding.reserve_address

    if best_reserve is not None:
        logger.debug(f"Max withdrawable reserve for {strategy_id}: {best_reserve} ({best})")
    return best


def apply_haircut(amount: int, haircut_bps: int) -> int:
    """Shave ``haircut_bps`` off ``amount``, rounding down."""
    if not 0 <= haircut_bps <= BPS_DENOMINATOR:
        raise ValueError(f"haircut_bps must be within [0, {BPS_DENOMINATOR}], got {haircut_bps}")
    return amount * (BPS_DENOMINATOR - haircut_bps) // BPS_DENOMINATOR


def strategy_liquidity_ceiling(
    reserves: StrategyReserves,
    haircut_bps: int,
    strategy_id: str | None = None,
) -> int:
    """Haircut withdrawable ceiling for a strategy, ready for the engine."""
    raw = max_withdrawable(reserves.holdings, reserves.current_time, strategy_id=strategy_id)
    return apply_haircut(raw, haircut_bps)
