"""Shared test fixtures."""

import json
import os
from pathlib import Path

import pytest

from yieldkeeper.allocation.models import StrategyInput
from yieldkeeper.config import RebalancerSettings
from yieldkeeper.logging import clear_rebalance_context
from yieldkeeper.registry import Strategy, StrategyRegistry, StrategyType


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    """Keep developer YIELDKEEPER_* variables and cycle context out of tests."""
    for key in list(os.environ):
        if key.startswith("YIELDKEEPER_"):
            monkeypatch.delenv(key, raising=False)
    yield
    clear_rebalance_context()


@pytest.fixture
def make_input():
    """Factory for ``StrategyInput`` rows with sensible defaults."""

    def _make(
        strategy_id: str,
        position_value: int = 0,
        liquidity: int | None = None,
        strategy_type: str = "kaminoVault",
    ) -> StrategyInput:
        return StrategyInput(
            strategy_id=strategy_id,
            strategy_type=strategy_type,
            strategy_address=f"{strategy_id}-address",
            position_value=position_value,
            available_withdrawable_liquidity=liquidity,
        )

    return _make


@pytest.fixture
def registry() -> StrategyRegistry:
    return StrategyRegistry(
        [
            Strategy(id="main-vault", type=StrategyType.KAMINO_VAULT, address="VaultAddr1", yield_key="pool-vault"),
            Strategy(id="main-market", type=StrategyType.KAMINO_MARKET, address="MarketAddr1", yield_key="pool-market"),
            Strategy(id="drift-earn", type=StrategyType.DRIFT_EARN, address="DriftAddr1", yield_key="pool-drift"),
            Strategy(id="jup-lend", type=StrategyType.JUPITER_LEND, address="JupAddr1"),
        ]
    )


@pytest.fixture
def write_snapshot(tmp_path: Path):
    """Write a snapshot document and return its path."""

    def _write(document: dict, name: str = "snapshot.json") -> Path:
        path = tmp_path / name
        path.write_text(json.dumps(document), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def settings(tmp_path: Path) -> RebalancerSettings:
    return RebalancerSettings(
        _env_file=None,
        strategies_file=str(tmp_path / "strategies.json"),
        snapshot_file=str(tmp_path / "snapshot.json"),
        asset_mint="USDCMint111",
        retry_base_delay_seconds=0.01,
        retry_max_delay_seconds=0.05,
        retry_jitter=0.0,
    )
