"""Configuration management using Pydantic v2."""

import os
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _find_env_file() -> str:
    """Find .env file: check project root first, then CWD."""
    project_root = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    env_path = os.path.join(project_root, ".env")
    if os.path.exists(env_path):
        return env_path
    return ".env"


class RebalancerSettings(BaseSettings):
    """Main configuration for the rebalancer.

    Built once at startup via ``load_settings()`` and handed to the planner
    and worker explicitly.
    """

    model_config = SettingsConfigDict(
        env_file=_find_env_file(),
        env_file_encoding="utf-8",
        env_prefix="YIELDKEEPER_",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True,
    )

    # Environment
    environment: Literal["development", "production"] = Field(
        default="development",
        description="Application environment (development or production)",
    )

    # Observability
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["text", "json"] = Field(
        default="text",
        description="Log output format: 'text' for local runs, 'json' for log aggregators",
    )

    # Static inputs
    strategies_file: str = Field(
        default="strategies.json",
        description="Path of the declarative strategy registry (JSON)",
    )
    snapshot_file: str = Field(
        default="snapshot.json",
        description="Path of the position/reserve snapshot read each cycle",
    )

    # Vault / asset
    vault_address: str = Field(default="", description="Address of the managed vault")
    asset_mint: str = Field(default="", description="Mint of the vault's deposit asset")
    asset_symbol: str = Field(default="USDC", description="Symbol of the vault's deposit asset")
    asset_decimals: int = Field(
        default=6, ge=0, le=18, description="Decimals of the deposit asset (native units)"
    )

    # Allocation policy
    allocation_mode: Literal["equal", "yield"] = Field(
        default="yield",
        description="'equal' always splits evenly, 'yield' concentrates into the best venue",
    )
    liquidity_haircut_bps: int = Field(
        default=200,
        ge=0,
        le=10_000,
        description="Safety haircut on withdrawable liquidity in basis points (200 = keep 98%)",
    )
    min_rebalance_delta: int = Field(
        default=0,
        ge=0,
        description="Skip deposits/withdrawals smaller than this many native units",
    )

    # Yield signal
    yield_api_url: str = Field(
        default="https://yields.llama.fi",
        description="Base URL of the pools/yields feed",
    )
    yield_chain: str = Field(default="Solana", description="Chain name used to filter pools")
    max_pool_share: float = Field(
        default=0.1,
        gt=0,
        le=1,
        description="Dilution filter: skip venues where our deposit exceeds this share of TVL",
    )

    # Price source
    price_api_url: str = Field(
        default="https://api.kamino.finance/kswap",
        description="Base URL of the batch token price API",
    )
    http_timeout_seconds: float = Field(default=10.0, gt=0, description="HTTP client timeout")

    # Worker loop
    rebalance_interval_seconds: float = Field(
        default=3600.0, gt=0, description="Seconds between scheduled rebalance cycles"
    )
    retry_base_delay_seconds: float = Field(
        default=1.0, gt=0, description="Initial backoff after a failed cycle"
    )
    retry_max_delay_seconds: float = Field(
        default=60.0, gt=0, description="Backoff ceiling after repeated failures"
    )
    retry_jitter: float = Field(
        default=0.25, ge=0, lt=1, description="Relative jitter applied to each backoff delay"
    )
    dry_run: bool = Field(
        default=True,
        description="Log rebalance actions instead of submitting them",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Accept lower-case level names from env."""
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @model_validator(mode="after")
    def check_retry_bounds(self) -> "RebalancerSettings":
        """Backoff ceiling must not be below the initial delay."""
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError(
                "retry_max_delay_seconds must be >= retry_base_delay_seconds "
                f"(got {self.retry_max_delay_seconds} < {self.retry_base_delay_seconds})"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def load_settings(**overrides: Any) -> RebalancerSettings:
    """Build the settings object once at process start."""
    return RebalancerSettings(**overrides)
