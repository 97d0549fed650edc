"""Exception hierarchy for the rebalancer.

Faults fall into four groups:

- configuration faults (bad registry file, duplicate ids) are fatal at startup;
- data-integrity faults (missing reserve, unreadable snapshot) are fatal to the
  current cycle and never downgraded to a zero value;
- advisory-signal faults (yield or price API failures) are caught by
  ``YieldSignal`` and turned into "no winner";
- allocation invariant faults mean an allocation has the wrong shape or total.
"""

from typing import Any


class YieldkeeperError(Exception):
    """Base class for all rebalancer errors."""


class ConfigurationError(YieldkeeperError):
    """Static configuration is invalid."""


class DuplicateStrategyError(ConfigurationError):
    """Two registry entries share the same strategy id."""

    def __init__(self, strategy_id: str) -> None:
        super().__init__(f"Duplicate strategy id in registry: {strategy_id!r}")
        self.strategy_id = strategy_id


class DataIntegrityError(YieldkeeperError):
    """Upstream state is missing or cannot be decoded.

    Carries a ``context`` dict so the worker can log which strategy and
    which amounts were involved without reproducing the run.
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


class ReserveNotFoundError(DataIntegrityError):
    """A reserve backing a strategy could not be retrieved."""

    def __init__(self, reserve_address: str, strategy_id: str | None = None) -> None:
        super().__init__(
            f"Reserve {reserve_address} was not found",
            context={"reserve": reserve_address, "strategy_id": strategy_id},
        )
        self.reserve_address = reserve_address
        self.strategy_id = strategy_id


class SnapshotError(DataIntegrityError):
    """A position/reserve snapshot could not be read."""


class AllocationInvariantError(YieldkeeperError):
    """An allocation violates its shape or conservation invariant."""


class YieldSignalError(YieldkeeperError):
    """The external yield feed failed or returned an unusable payload."""


class PriceFetchError(YieldkeeperError):
    """The batch price API failed or had no data for a requested token."""
