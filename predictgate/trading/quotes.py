"""Client for the external order/quote service that builds unsigned transactions."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from predictgate.exceptions import QuoteServiceError, RateLimitedError

logger = logging.getLogger(__name__)

DEFAULT_SLIPPAGE_BPS = 100
DEFAULT_RETRY_AFTER = 2.0


class TradeParams(BaseModel):
    input_mint: str
    output_mint: str
    amount: int = Field(gt=0)
    slippage_bps: Optional[int] = Field(default=None, ge=0, le=10_000)
    user_public_key: Optional[str] = None
    platform_fee_bps: Optional[int] = None
    fee_account: Optional[str] = None
    destination_wallet: Optional[str] = None

    def to_query(self) -> Dict[str, Any]:
        query: Dict[str, Any] = {
            "inputMint": self.input_mint,
            "outputMint": self.output_mint,
            "amount": self.amount,
            "slippageBps": self.slippage_bps or DEFAULT_SLIPPAGE_BPS,
        }
        optional = {
            "userPublicKey": self.user_public_key,
            "platformFeeBps": self.platform_fee_bps,
            "feeAccount": self.fee_account,
            "destinationWallet": self.destination_wallet,
        }
        query.update({k: v for k, v in optional.items() if v is not None})
        return query


class OrderQuote(BaseModel):
    """Quote as returned by ``GET /order``; unknown fields are preserved."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    input_mint: str = Field(alias="inputMint")
    output_mint: str = Field(alias="outputMint")
    in_amount: str = Field(alias="inAmount")
    out_amount: str = Field(alias="outAmount")
    execution_mode: str = Field(default="sync", alias="executionMode")
    slippage_bps: Optional[int] = Field(default=None, alias="slippageBps")
    price_impact_pct: Optional[str] = Field(default=None, alias="priceImpactPct")
    min_out_amount: Optional[str] = Field(default=None, alias="minOutAmount")
    route_plan: Optional[List[Dict[str, Any]]] = Field(default=None, alias="routePlan")
    transaction: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class QuoteClient:
    """
    Async client for the quote service.

    Calls are spaced at least ``min_interval`` seconds apart. A 429 response
    is retried once after ``Retry-After`` seconds.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        min_interval: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["x-api-key"] = api_key
        self.min_interval = min_interval
        self._last_request = 0.0
        self._throttle_lock = asyncio.Lock()
        self.http_client = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self.http_client.aclose()

    async def _throttle(self) -> None:
        async with self._throttle_lock:
            wait = self.min_interval - (time.monotonic() - self._last_request)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = time.monotonic()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        retried = False
        while True:
            await self._throttle()
            try:
                response = await self.http_client.request(method, path, **kwargs)
                response.raise_for_status()
                return response
            except httpx.HTTPStatusError as e:
                if e.response.status_code == 429:
                    if retried:
                        raise RateLimitedError("Quote service rate limit exceeded") from e
                    delay = _retry_after(e.response)
                    logger.warning("Rate limited by quote service, waiting %.1fs before retry", delay)
                    await asyncio.sleep(delay)
                    retried = True
                    continue
                raise QuoteServiceError(f"HTTP error: {e.response.status_code} - {e.response.text[:200]}") from e
            except httpx.RequestError as e:
                raise QuoteServiceError(f"Request error: {e}") from e

    async def get_quote(self, params: TradeParams) -> OrderQuote:
        response = await self._request("GET", "/order", params=params.to_query())
        return OrderQuote.model_validate(response.json())

    async def get_order_status(self, order_id: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/order/{order_id}/status")
        return response.json()


def _retry_after(response: httpx.Response) -> float:
    header = response.headers.get("retry-after")
    try:
        return float(header) if header else DEFAULT_RETRY_AFTER
    except ValueError:
        return DEFAULT_RETRY_AFTER
