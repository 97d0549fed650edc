"""Strategy registry: the static catalogue of yield venues.

Loaded once at startup from a declarative JSON file::

    {
      "strategies": [
        {"id": "usdc-main-vault", "type": "kaminoVault", "address": "...", "yieldKey": "..."},
        {"id": "usdc-drift-earn", "type": "driftEarn", "address": "..."}
      ]
    }

The registry is read-only after construction and is passed by reference to
the planner and the worker.
"""

import json
from collections.abc import Iterable, Iterator
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from yieldkeeper.errors import ConfigurationError, DuplicateStrategyError
from yieldkeeper.logging import get_logger

logger = get_logger(__name__)

IDLE_ID = "idle"
IDLE_TYPE = "idle"
# The all-zero ledger address; the idle bucket has no venue.
IDLE_ADDRESS = "11111111111111111111111111111111"


class StrategyType(str, Enum):
    """Venue kinds the rebalancer knows how to hold capital in."""

    KAMINO_VAULT = "kaminoVault"  # vault wrapper allocating across reserves
    KAMINO_MARKET = "kaminoMarket"  # direct lending-market position
    DRIFT_EARN = "driftEarn"  # earn position
    JUPITER_LEND = "jupiterLend"  # lending position


class Strategy(BaseModel):
    """A registered yield venue."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    type: StrategyType
    address: str = Field(min_length=1)
    yield_key: str | None = Field(
        default=None,
        alias="yieldKey",
        description="Identifier of this venue in the external yield feed",
    )


class StrategyRegistry:
    """Load-once, read-only catalogue of strategies grouped by venue type."""

    def __init__(self, strategies: Iterable[Strategy]) -> None:
        self._strategies: tuple[Strategy, ...] = tuple(strategies)
        self._by_id: dict[str, Strategy] = {}
        yield_keys: dict[str, str] = {}
        for strategy in self._strategies:
            if strategy.id == IDLE_ID:
                raise ConfigurationError(f"Strategy id {IDLE_ID!r} is reserved for idle capital")
            if strategy.id in self._by_id:
                raise DuplicateStrategyError(strategy.id)
            if strategy.yield_key:
                if strategy.yield_key in yield_keys:
                    raise ConfigurationError(
                        f"Strategies {yield_keys[strategy.yield_key]!r} and {strategy.id!r} "
                        f"share yieldKey {strategy.yield_key!r}"
                    )
                yield_keys[strategy.yield_key] = strategy.id
            self._by_id[strategy.id] = strategy

        self._by_type: dict[StrategyType, tuple[Strategy, ...]] = {
            strategy_type: tuple(s for s in self._strategies if s.type is strategy_type)
            for strategy_type in StrategyType
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "StrategyRegistry":
        """Build a registry from the decoded JSON document."""
        raw = payload.get("strategies") if isinstance(payload, dict) else None
        if not isinstance(raw, list):
            raise ConfigurationError("Registry source must contain a 'strategies' list")

        strategies: list[Strategy] = []
        for index, entry in enumerate(raw):
            try:
                strategies.append(Strategy.model_validate(entry))
            except ValidationError as e:
                raise ConfigurationError(f"Invalid strategy entry #{index}: {e}") from e
        return cls(strategies)

    @classmethod
    def from_file(cls, path: str | Path) -> "StrategyRegistry":
        """Read and validate the registry file."""
        path = Path(path)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigurationError(f"Strategy registry file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Strategy registry file is not valid JSON: {path}: {e}") from e

        registry = cls.from_payload(payload)
        logger.info(
            f"Loaded {len(registry)} strategies from {path}: "
            + ", ".join(f"{s.id}({s.type.value})" for s in registry)
        )
        return registry

    @property
    def strategies(self) -> tuple[Strategy, ...]:
        return self._strategies

    @property
    def kamino_vaults(self) -> tuple[Strategy, ...]:
        return self._by_type[StrategyType.KAMINO_VAULT]

    @property
    def kamino_markets(self) -> tuple[Strategy, ...]:
        return self._by_type[StrategyType.KAMINO_MARKET]

    @property
    def drift_earns(self) -> tuple[Strategy, ...]:
        return self._by_type[StrategyType.DRIFT_EARN]

    @property
    def jupiter_lends(self) -> tuple[Strategy, ...]:
        return self._by_type[StrategyType.JUPITER_LEND]

    def of_type(self, strategy_type: StrategyType) -> tuple[Strategy, ...]:
        return self._by_type[strategy_type]

    def get(self, strategy_id: str) -> Strategy | None:
        return self._by_id.get(strategy_id)

    def __getitem__(self, strategy_id: str) -> Strategy:
        try:
            return self._by_id[strategy_id]
        except KeyError:
            raise KeyError(f"Unknown strategy id: {strategy_id!r}") from None

    def __contains__(self, strategy_id: object) -> bool:
        return strategy_id in self._by_id

    def __iter__(self) -> Iterator[Strategy]:
        return iter(self._strategies)

    def __len__(self) -> int:
        return len(self._strategies)
