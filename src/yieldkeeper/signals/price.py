"""Batch token price lookup."""

from collections.abc import Sequence
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from yieldkeeper.errors import PriceFetchError
from yieldkeeper.logging import get_logger
from yieldkeeper.utils.retry import with_retry

logger = get_logger(__name__)


class PriceClient:
    """Client for a ``/batch-token-prices`` endpoint.

    Response shape::

        {"success": true, "data": {"<mint>": {"value": 1.0001, ...} | null}}

    No default price is ever substituted here: a token without data makes
    the whole lookup fail with ``PriceFetchError``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    @with_retry(max_retries=2, initial_delay=0.5, exceptions=(httpx.TransportError,))
    async def _get(self, params: list[tuple[str, str]]) -> dict[str, Any]:
        response = await self._client.get(
            f"{self._base_url}/batch-token-prices",
            params=params,
            headers={"Content-Type": "application/json"},
        )
        response.raise_for_status()
        return response.json()

    async def get_tokens_batch_price(self, tokens: Sequence[str]) -> dict[str, Decimal]:
        """Price every token in ``tokens``.

        Raises:
            PriceFetchError: On transport/HTTP failure, an unsuccessful
                response, or any token missing from the response.
        """
        if not tokens:
            return {}

        try:
            payload = await self._get([("tokens", token) for token in tokens])
        except (httpx.HTTPError, ValueError) as e:
            raise PriceFetchError(f"Batch price request failed: {e}") from e

        if not isinstance(payload, dict) or not payload.get("success"):
            raise PriceFetchError("Batch price API response indicates failure")

        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise PriceFetchError(f"Batch price API returned malformed data: {type(data).__name__}")
        prices: dict[str, Decimal] = {}
        missing: list[str] = []
        for token in tokens:
            token_data = data.get(token)
            value = token_data.get("value") if isinstance(token_data, dict) else None
            if value is None:
                missing.append(token)
                continue
            try:
                prices[token] = Decimal(str(value))
            except InvalidOperation:
                missing.append(token)

        if missing:
            raise PriceFetchError(f"No price data for tokens: {', '.join(missing)}")

        logger.debug(f"Fetched prices for {len(prices)} tokens")
        return prices
