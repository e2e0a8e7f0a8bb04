"""Async JSON-RPC client for the settlement network."""

from __future__ import annotations

import asyncio
import base64
import itertools
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from predictgate.exceptions import (
    ConfirmationTimeout,
    RateLimitedError,
    SettlementNetworkError,
    TransactionFailedError,
)
from predictgate.wallet.spl import TOKEN_PROGRAMS

logger = logging.getLogger(__name__)

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


class SolanaRpcClient:
    """
    Thin wrapper over the node's JSON-RPC 2.0 endpoint.

    Transport failures on the primary endpoint are retried once against
    ``fallback_url`` when one is configured. HTTP 429 is never retried here.
    """

    def __init__(
        self,
        url: str,
        *,
        fallback_url: Optional[str] = None,
        commitment: str = "confirmed",
        timeout: float = 30.0,
        poll_interval: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.fallback_url = fallback_url
        self.commitment = commitment
        self.poll_interval = poll_interval
        self._ids = itertools.count(1)
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> SolanaRpcClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _post(self, url: str, payload: Dict[str, Any]) -> Any:
        try:
            response = await self._client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429:
                raise RateLimitedError(f"RPC rate limited calling {payload['method']}") from e
            raise SettlementNetworkError(
                f"RPC HTTP error: {e.response.status_code} - {e.response.text[:200]}"
            ) from e

        body = response.json()
        if body.get("error"):
            error = body["error"]
            raise SettlementNetworkError(f"RPC error {error.get('code')}: {error.get('message')}")
        return body.get("result")

    async def _call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            return await self._post(self.url, payload)
        except httpx.RequestError as e:
            if not self.fallback_url:
                raise SettlementNetworkError(f"RPC request error: {e}") from e
            logger.warning("Primary RPC failed for %s (%s); retrying on fallback", method, e)
        try:
            return await self._post(self.fallback_url, payload)
        except httpx.RequestError as e:
            raise SettlementNetworkError(f"RPC request error: {e}") from e

    async def get_balance(self, public_key: str) -> int:
        """Balance in lamports."""
        result = await self._call("getBalance", [public_key, {"commitment": self.commitment}])
        return int(result["value"])

    async def get_token_accounts_by_owner(self, owner: str, mint: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Parsed SPL token accounts held by ``owner``.

        Returns dicts with ``mint``, ``amount`` (raw integer string),
        ``decimals`` and ``ui_amount``.
        """
        filters = [{"mint": mint}] if mint else [{"programId": program} for program in TOKEN_PROGRAMS]
        entries = []
        for token_filter in filters:
            result = await self._call(
                "getTokenAccountsByOwner",
                [owner, token_filter, {"encoding": "jsonParsed", "commitment": self.commitment}],
            )
            entries.extend(result.get("value", []))

        accounts = []
        for entry in entries:
            info = entry["account"]["data"]["parsed"]["info"]
            token_amount = info["tokenAmount"]
            accounts.append(
                {
                    "address": entry.get("pubkey"),
                    "mint": info["mint"],
                    "amount": token_amount["amount"],
                    "decimals": int(token_amount["decimals"]),
                    "ui_amount": int(token_amount["amount"]) / 10 ** int(token_amount["decimals"]),
                }
            )
        return accounts

    async def get_account_owner(self, address: str) -> Optional[str]:
        """Program that owns ``address``, or None when the account does not exist."""
        result = await self._call("getAccountInfo", [address, {"encoding": "base64", "commitment": self.commitment}])
        value = result.get("value")
        return value["owner"] if value else None

    async def get_latest_blockhash(self) -> str:
        result = await self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        return result["value"]["blockhash"]

    async def send_transaction(self, raw: bytes) -> str:
        encoded = base64.b64encode(raw).decode("ascii")
        return await self._call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
        )

    async def get_signature_statuses(self, signatures: List[str]) -> List[Optional[Dict[str, Any]]]:
        result = await self._call("getSignatureStatuses", [signatures, {"searchTransactionHistory": False}])
        return result["value"]

    async def confirm_transaction(self, signature: str, timeout: float) -> Dict[str, Any]:
        """
        Poll until ``signature`` reaches the configured commitment.

        Raises `TransactionFailedError` when the network reports an error and
        `ConfirmationTimeout` when ``timeout`` elapses first. A timeout means
        the outcome is unknown.
        """
        target = _COMMITMENT_RANK[self.commitment]
        deadline = time.monotonic() + timeout
        while True:
            statuses = await self.get_signature_statuses([signature])
            status = statuses[0] if statuses else None
            if status is not None:
                if status.get("err") is not None:
                    raise TransactionFailedError(signature, status["err"])
                reached = status.get("confirmationStatus") or "processed"
                if _COMMITMENT_RANK.get(reached, 0) >= target:
                    return status
            if time.monotonic() >= deadline:
                logger.warning("Confirmation of %s timed out after %.1fs", signature, timeout)
                raise ConfirmationTimeout(signature)
            await asyncio.sleep(self.poll_interval)
