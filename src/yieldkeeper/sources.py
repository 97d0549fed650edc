"""Position and reserve sources.

The rebalancer does not read the ledger itself. It depends on two
collaborator protocols:

- ``PositionReader`` supplies the position value of every registered
  strategy and the idle balance;
- ``ReserveSource`` supplies, per strategy, the reserves backing it and the
  current ledger time.

``JsonSnapshotSource`` implements both from a JSON document that an
external indexer keeps up to date. ``read_positions`` re-reads the file and
reserve lookups answer from that same document, so one cycle never mixes two
snapshots.
"""

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from yieldkeeper.errors import SnapshotError
from yieldkeeper.liquidity.oracle import (
    ReserveHolding,
    ReserveState,
    StrategyReserves,
    WithdrawalCapWindow,
)
from yieldkeeper.logging import get_logger
from yieldkeeper.registry import Strategy, StrategyRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class PositionSnapshot:
    """Position value per strategy id plus the idle balance, in native units."""

    position_values: dict[str, int]
    idle_balance: int


class PositionReader(Protocol):
    async def read_positions(self, registry: StrategyRegistry) -> PositionSnapshot: ...


class ReserveSource(Protocol):
    async def read_reserves(self, strategy: Strategy) -> StrategyReserves | None:
        """Reserve data for ``strategy``, or None when the venue exposes none."""
        ...


# ---------------------------------------------------------------------------
# JSON snapshot document
# ---------------------------------------------------------------------------

class _CapDoc(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    capacity: int | None = Field(default=None, ge=0)
    current: int = 0
    interval_start: int = Field(default=0, alias="intervalStart")
    interval_length: int = Field(default=0, ge=0, alias="intervalLength")


class _ReserveStateDoc(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    available_liquidity: int = Field(ge=0, alias="availableLiquidity")
    withdrawal_cap: _CapDoc | None = Field(default=None, alias="withdrawalCap")


class _HoldingDoc(BaseModel):
    address: str
    invested: int = Field(ge=0)
    state: _ReserveStateDoc | None = None


class _SnapshotDoc(BaseModel):
    slot: int = Field(ge=0)
    idle: int = Field(ge=0)
    positions: dict[str, int]
    reserves: dict[str, list[_HoldingDoc]] = Field(default_factory=dict)


def _to_holding(doc: _HoldingDoc) -> ReserveHolding:
    state: ReserveState | None = None
    if doc.state is not None:
        cap = doc.state.withdrawal_cap
        window = (
            WithdrawalCapWindow(
                capacity=cap.capacity,
                current_total=cap.current,
                interval_start=cap.interval_start,
                interval_length=cap.interval_length,
            )
            if cap is not None
            else WithdrawalCapWindow(capacity=None)
        )
        state = ReserveState(
            address=doc.address,
            available_liquidity=doc.state.available_liquidity,
            withdrawal_cap=window,
        )
    return ReserveHolding(reserve_address=doc.address, invested=doc.invested, state=state)


class JsonSnapshotSource:
    """``PositionReader`` and ``ReserveSource`` backed by a JSON file.

    Document shape::

        {
          "slot": 312000000,
          "idle": 200000,
          "positions": {"usdc-main-vault": 500000, "usdc-drift-earn": 300000},
          "reserves": {
            "usdc-main-vault": [
              {"address": "D6q6...", "invested": 400000,
               "state": {"availableLiquidity": 9000000,
                         "withdrawalCap": {"capacity": 1000000, "current": 250000,
                                           "intervalStart": 311990000,
                                           "intervalLength": 216000}}}
            ]
          }
        }

    A holding with ``"state": null`` is a reserve that could not be fetched.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._doc: _SnapshotDoc | None = None

    async def _load(self) -> _SnapshotDoc:
        try:
            text = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
            return _SnapshotDoc.model_validate(json.loads(text))
        except FileNotFoundError as e:
            raise SnapshotError(f"Snapshot file not found: {self._path}") from e
        except (json.JSONDecodeError, ValidationError) as e:
            raise SnapshotError(f"Snapshot file is invalid: {self._path}: {e}") from e

    async def read_positions(self, registry: StrategyRegistry) -> PositionSnapshot:
        doc = self._doc = await self._load()
        missing = [s.id for s in registry if s.id not in doc.positions]
        if missing:
            raise SnapshotError(
                f"Snapshot has no position for strategies: {missing}",
                context={"missing": missing, "snapshot": str(self._path)},
            )
        negative = [sid for sid, value in doc.positions.items() if value < 0]
        if negative:
            raise SnapshotError(f"Negative position values for: {negative}")

        unknown = sorted(set(doc.positions) - {s.id for s in registry})
        if unknown:
            logger.warning(f"Snapshot has positions for unregistered strategies: {unknown}")

        return PositionSnapshot(
            position_values={s.id: doc.positions[s.id] for s in registry},
            idle_balance=doc.idle,
        )

    async def read_reserves(self, strategy: Strategy) -> StrategyReserves | None:
        doc = self._doc
        if doc is None:
            doc = self._doc = await self._load()
        holdings = doc.reserves.get(strategy.id)
        if holdings is None:
            return None
        return StrategyReserves(
            current_time=doc.slot,
            holdings=tuple(_to_holding(h) for h in holdings),
        )
