"""Read-only client for the prediction-market metadata service."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from predictgate.exceptions import MarketDataError, RateLimitedError

logger = logging.getLogger(__name__)

FINALIZED = "finalized"
REDEMPTION_OPEN = "open"


class MarketClient:
    """
    Looks up markets by ticker or by outcome mint.

    Market dicts are returned as the service sends them. The fields used
    here are ``ticker``, ``title``, ``status``, ``result`` and
    ``accounts[settlementMint]`` with ``yesMint``, ``noMint`` and
    ``redemptionStatus``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.http_client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self.http_client.aclose()

    async def _get(self, path: str, **kwargs) -> Optional[httpx.Response]:
        try:
            response = await self.http_client.get(path, **kwargs)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429:
                raise RateLimitedError("Market service rate limit exceeded") from e
            raise MarketDataError(f"HTTP error: {e.response.status_code} - {e.response.text[:200]}") from e
        except httpx.RequestError as e:
            raise MarketDataError(f"Request error: {e}") from e

    async def get_market_by_mint(self, mint: str) -> Optional[Dict[str, Any]]:
        """Market that issued outcome token ``mint``, or None if it is not an outcome token."""
        response = await self._get(f"/api/v1/markets/by-mint/{mint}")
        return response.json() if response is not None else None

    async def get_market(self, ticker: str) -> Optional[Dict[str, Any]]:
        # Single-market lookups go through the event listing: KXFED-25DEC-C25 lives under KXFED-25DEC.
        parts = ticker.split("-")
        event_ticker = "-".join(parts[:-1]) if len(parts) >= 3 else ticker
        response = await self._get("/api/v1/markets", params={"eventTicker": event_ticker, "limit": 100})
        if response is None:
            return None
        for market in response.json().get("markets") or []:
            if market.get("ticker") == ticker:
                return market
        logger.debug("Market %s not listed under event %s", ticker, event_ticker)
        return None


def settlement_accounts(market: Dict[str, Any], settlement_mint: str) -> Dict[str, Any]:
    return (market.get("accounts") or {}).get(settlement_mint) or {}


def winning_mint(market: Dict[str, Any], settlement_mint: str) -> Optional[str]:
    """Outcome mint that pays out, once the market is finalized with a binary result."""
    if market.get("status") != FINALIZED:
        return None
    accounts = settlement_accounts(market, settlement_mint)
    result = market.get("result")
    if result == "yes":
        return accounts.get("yesMint")
    if result == "no":
        return accounts.get("noMint")
    return None
