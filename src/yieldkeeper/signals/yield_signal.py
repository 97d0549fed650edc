"""External yield signal: which registered strategy currently pays best.

The feed is advisory. Any failure to fetch or parse it, an empty match set,
or a dilution filter that removes every candidate all end the same way: no
winner, and the planner falls back to equal weight.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from yieldkeeper.errors import PriceFetchError, YieldSignalError
from yieldkeeper.logging import get_logger
from yieldkeeper.registry import Strategy, StrategyRegistry
from yieldkeeper.signals.price import PriceClient
from yieldkeeper.utils.retry import CircuitBreaker, retry_with_backoff

logger = get_logger(__name__)


class YieldVenue(BaseModel):
    """One pool as reported by the yields feed."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    key: str = Field(alias="pool")
    apy: float = Field(default=0.0, description="Total APY in percent")
    tvl_usd: float = Field(default=0.0, ge=0, alias="tvlUsd")
    provider: str = Field(default="", alias="project")
    symbol: str = ""
    chain: str = ""
    underlying_tokens: list[str] = Field(default_factory=list, alias="underlyingTokens")


@dataclass(frozen=True)
class YieldCandidate:
    """A venue matched to the registered strategy that holds it."""

    strategy: Strategy
    venue: YieldVenue


class SelectionOutcome(str, Enum):
    SELECTED = "selected"
    SIGNAL_UNAVAILABLE = "signal_unavailable"
    NO_MATCHES = "no_matches"
    ALL_FILTERED = "all_filtered"


@dataclass(frozen=True)
class WinnerSelection:
    """Result of the yield-selection step; ``winner_id`` is None when no venue qualifies."""

    winner_id: str | None
    outcome: SelectionOutcome
    apy: float | None = None
    candidates: int = 0


class YieldApiClient:
    """Client for a DefiLlama-style ``/pools`` endpoint.

    Response shape::

        {"status": "success", "data": [{"pool": "...", "chain": "Solana",
          "project": "kamino-lend", "symbol": "USDC", "tvlUsd": 1.2e8,
          "apy": 6.1, "underlyingTokens": ["EPjF..."]}, ...]}
    """

    def __init__(
        self,
        base_url: str,
        chain: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._chain = chain
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._circuit_breaker = CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=300.0,
            expected_exception=httpx.HTTPError,
            name="yield-feed",
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_pools(self) -> dict[str, Any]:
        response = await self._client.get(f"{self._base_url}/pools")
        response.raise_for_status()
        return response.json()

    async def fetch_venues(self, asset_mint: str, asset_symbol: str | None = None) -> list[YieldVenue]:
        """Venues on the configured chain that take ``asset_mint`` deposits.

        Raises:
            YieldSignalError: On transport, HTTP or payload errors.
        """
        try:
            payload = await retry_with_backoff(
                self._circuit_breaker.call,
                self._get_pools,
                max_retries=2,
                initial_delay=0.5,
                exceptions=(httpx.TransportError,),
            )
        except (httpx.HTTPError, ValueError, RuntimeError) as e:
            raise YieldSignalError(f"Yield feed request failed: {e}") from e

        if not isinstance(payload, dict) or payload.get("status") != "success":
            raise YieldSignalError("Yield feed response indicates failure")
        rows = payload.get("data")
        if not isinstance(rows, list):
            raise YieldSignalError("Yield feed response has no 'data' list")

        venues: list[YieldVenue] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            if self._chain and row.get("chain") != self._chain:
                continue
            if not _takes_asset(row, asset_mint, asset_symbol):
                continue
            try:
                venues.append(YieldVenue.model_validate(row))
            except ValidationError as e:
                logger.warning(f"Skipping malformed yield venue {row.get('pool')!r}: {e}")

        logger.debug(f"Yield feed returned {len(venues)} venues for {asset_symbol or asset_mint}")
        return venues


def _takes_asset(row: dict[str, Any], asset_mint: str, asset_symbol: str | None) -> bool:
    tokens = row.get("underlyingTokens")
    if asset_mint and isinstance(tokens, list) and asset_mint in tokens:
        return True
    return bool(asset_symbol) and row.get("symbol") == asset_symbol


def match_venues(venues: Sequence[YieldVenue], registry: StrategyRegistry) -> list[YieldCandidate]:
    """Pair each venue with the zero-or-one strategy whose ``yield_key`` names it."""
    by_key = {s.yield_key: s for s in registry if s.yield_key}
    candidates: list[YieldCandidate] = []
    for venue in venues:
        strategy = by_key.get(venue.key)
        if strategy is not None:
            candidates.append(YieldCandidate(strategy=strategy, venue=venue))
    return candidates


def passes_dilution_filter(venue: YieldVenue, deposit_usd: float, max_pool_share: float) -> bool:
    """False when our deposit would exceed ``max_pool_share`` of the venue's TVL."""
    return deposit_usd <= venue.tvl_usd * max_pool_share


def select_winner(
    candidates: Sequence[YieldCandidate],
    deposit_usd: float,
    max_pool_share: float,
) -> YieldCandidate | None:
    """Highest-APY candidate that survives the dilution filter.

    Ties go to the larger TVL, then to the earlier candidate.
    """
    eligible = [c for c in candidates if passes_dilution_filter(c.venue, deposit_usd, max_pool_share)]
    for c in candidates:
        if c not in eligible:
            logger.info(
                f"Dilution filter dropped {c.strategy.id}: tvl=${c.venue.tvl_usd:,.0f} "
                f"deposit=${deposit_usd:,.0f} max_share={max_pool_share}"
            )
    if not eligible:
        return None
    return max(eligible, key=lambda c: (c.venue.apy, c.venue.tvl_usd))


class YieldSignal:
    """Nominates at most one winning strategy per cycle."""

    def __init__(
        self,
        registry: StrategyRegistry,
        yield_client: YieldApiClient,
        price_client: PriceClient | None,
        asset_mint: str,
        asset_symbol: str | None,
        asset_decimals: int,
        max_pool_share: float,
    ) -> None:
        self._registry = registry
        self._yield_client = yield_client
        self._price_client = price_client
        self._asset_mint = asset_mint
        self._asset_symbol = asset_symbol
        self._asset_decimals = asset_decimals
        self._max_pool_share = max_pool_share

    async def deposit_usd(self, total_value: int) -> float:
        """USD size of the portfolio; price falls back to 1 if the lookup fails."""
        price = Decimal(1)
        if self._price_client is not None and self._asset_mint:
            try:
                prices = await self._price_client.get_tokens_batch_price([self._asset_mint])
                price = prices[self._asset_mint]
            except PriceFetchError as e:
                logger.warning(f"Price lookup failed, sizing deposit at price 1: {e}")
        amount = Decimal(total_value) / (Decimal(10) ** self._asset_decimals)
        return float(amount * price)

    async def nominate_winner(self, total_value: int) -> WinnerSelection:
        """Pick the winner for this cycle; never raises on feed failures."""
        try:
            venues = await self._yield_client.fetch_venues(self._asset_mint, self._asset_symbol)
        except YieldSignalError as e:
            logger.warning(f"Yield signal unavailable: {e}")
            return WinnerSelection(winner_id=None, outcome=SelectionOutcome.SIGNAL_UNAVAILABLE)
        except Exception as e:
            logger.warning(f"Yield signal unavailable, unexpected feed error: {e!r}", exc_info=True)
            return WinnerSelection(winner_id=None, outcome=SelectionOutcome.SIGNAL_UNAVAILABLE)

        candidates = match_venues(venues, self._registry)
        if not candidates:
            logger.warning(f"Yield signal matched none of {len(venues)} venues to a strategy")
            return WinnerSelection(winner_id=None, outcome=SelectionOutcome.NO_MATCHES)

        deposit_usd = await self.deposit_usd(total_value)
        winner = select_winner(candidates, deposit_usd, self._max_pool_share)
        if winner is None:
            logger.warning(
                f"Dilution filter removed all {len(candidates)} candidates "
                f"(deposit=${deposit_usd:,.0f})"
            )
            return WinnerSelection(
                winner_id=None,
                outcome=SelectionOutcome.ALL_FILTERED,
                candidates=len(candidates),
            )

        logger.info(
            f"Yield winner: {winner.strategy.id} ({winner.venue.provider}) "
            f"apy={winner.venue.apy:.2f}% tvl=${winner.venue.tvl_usd:,.0f}"
        )
        return WinnerSelection(
            winner_id=winner.strategy.id,
            outcome=SelectionOutcome.SELECTED,
            apy=winner.venue.apy,
            candidates=len(candidates),
        )
