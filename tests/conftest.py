import base64
import json
import os
from typing import Any, Dict, List, Optional, Set

import base58
import httpx
import pytest
import pytest_asyncio

from predictgate.config import USDC_MINT, GatewaySettings
from predictgate.container import GatewayServices
from predictgate.db.users import UserRepository
from predictgate.wallet.keypair import Keypair
from predictgate.wallet.spl import TOKEN_PROGRAM_ID
from predictgate.wallet.transaction import Transaction, build_transfer

BLOCKHASH = base58.b58encode(bytes(range(32))).decode("ascii")
# 32 zero bytes: any valid address works as a counterparty for test transfers
SINK_ADDRESS = "11111111111111111111111111111111"


class StubLedger:
    """In-memory stand-in for the settlement network's JSON-RPC endpoint."""

    def __init__(self):
        self.balances: Dict[str, int] = {}
        self.token_accounts: Dict[str, List[Dict[str, Any]]] = {}
        # account address -> owning program, for getAccountInfo
        self.account_owners: Dict[str, str] = {}
        self.rate_limited_methods: Set[str] = set()
        self.sent: List[Transaction] = []
        self.calls: List[str] = []
        # None keeps the signature pending forever
        self.confirmation_status: Optional[str] = "confirmed"
        self.tx_error: Any = None

    def add_token_account(
        self,
        owner: str,
        mint: str,
        amount: int,
        decimals: int = 6,
        *,
        program: str = TOKEN_PROGRAM_ID,
        address: Optional[str] = None,
    ) -> str:
        address = address or base58.b58encode(os.urandom(32)).decode("ascii")
        self.token_accounts.setdefault(owner, []).append(
            {
                "pubkey": address,
                "program": program,
                "account": {
                    "data": {
                        "parsed": {
                            "info": {
                                "mint": mint,
                                "tokenAmount": {"amount": str(amount), "decimals": decimals},
                            }
                        }
                    }
                },
            }
        )
        return address

    def _dispatch(self, method: str, params: List[Any]) -> Any:
        if method == "getBalance":
            return {"context": {"slot": 1}, "value": self.balances.get(params[0], 0)}
        if method == "getTokenAccountsByOwner":
            accounts = self.token_accounts.get(params[0], [])
            mint = params[1].get("mint")
            if mint:
                accounts = [a for a in accounts if a["account"]["data"]["parsed"]["info"]["mint"] == mint]
            else:
                accounts = [a for a in accounts if a["program"] == params[1]["programId"]]
            return {"context": {"slot": 1}, "value": accounts}
        if method == "getAccountInfo":
            owner = self.account_owners.get(params[0])
            if owner is None:
                return {"context": {"slot": 1}, "value": None}
            return {
                "context": {"slot": 1},
                "value": {"owner": owner, "lamports": 1461600, "executable": False, "data": ["", "base64"]},
            }
        if method == "getLatestBlockhash":
            return {"context": {"slot": 1}, "value": {"blockhash": BLOCKHASH, "lastValidBlockHeight": 100}}
        if method == "sendTransaction":
            tx = Transaction.from_bytes(base64.b64decode(params[0]))
            self.sent.append(tx)
            return tx.signature
        if method == "getSignatureStatuses":
            if self.confirmation_status is None and self.tx_error is None:
                return {"context": {"slot": 1}, "value": [None]}
            return {
                "context": {"slot": 1},
                "value": [{"confirmationStatus": self.confirmation_status or "processed", "err": self.tx_error}],
            }
        raise AssertionError(f"unexpected RPC method {method}")

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.calls.append(payload["method"])
        if payload["method"] in self.rate_limited_methods:
            return httpx.Response(429, json={"error": "too many requests"})
        result = self._dispatch(payload["method"], payload["params"])
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})


class StubQuoteService:
    """Answers ``GET /order`` with an unsigned transfer signed by the requesting wallet."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.include_transaction = True
        self.execution_mode = "sync"
        self.out_amount = "2500000"
        self.rate_limited_responses = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.rate_limited_responses:
            self.rate_limited_responses -= 1
            return httpx.Response(429, headers={"Retry-After": "0"}, json={"error": "slow down"})
        if request.url.path.endswith("/status"):
            return httpx.Response(200, json={"status": "closed"})

        params = request.url.params
        quote = {
            "inputMint": params["inputMint"],
            "outputMint": params["outputMint"],
            "inAmount": params["amount"],
            "outAmount": self.out_amount,
            "executionMode": self.execution_mode,
            "slippageBps": int(params["slippageBps"]),
            "priceImpactPct": "0.01",
            "routePlan": [{"venue": "stub"}],
        }
        if self.include_transaction and "userPublicKey" in params:
            tx = build_transfer(params["userPublicKey"], SINK_ADDRESS, 1000, BLOCKHASH)
            quote["transaction"] = tx.to_base64()
        return httpx.Response(200, json=quote)


class StubMarketService:
    """Serves market metadata by outcome mint and by event listing."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.markets: List[Dict[str, Any]] = []

    def add_market(
        self,
        ticker: str,
        yes_mint: str,
        no_mint: str,
        *,
        status: str = "active",
        result: Optional[str] = None,
        redemption_status: Optional[str] = None,
        settlement_mint: str = USDC_MINT,
    ) -> Dict[str, Any]:
        market = {
            "ticker": ticker,
            "title": f"Market {ticker}",
            "status": status,
            "result": result,
            "accounts": {
                settlement_mint: {"yesMint": yes_mint, "noMint": no_mint, "redemptionStatus": redemption_status}
            },
        }
        self.markets.append(market)
        return market

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.startswith("/api/v1/markets/by-mint/"):
            mint = path.rsplit("/", 1)[-1]
            for market in self.markets:
                outcome_mints = {
                    outcome for accounts in market["accounts"].values() for outcome in (accounts["yesMint"], accounts["noMint"])
                }
                if mint in outcome_mints:
                    return httpx.Response(200, json=market)
            return httpx.Response(404, json={"error": "not found"})
        if path == "/api/v1/markets":
            event = request.url.params["eventTicker"]
            listed = [m for m in self.markets if m["ticker"].startswith(f"{event}-")]
            return httpx.Response(200, json={"markets": listed})
        return httpx.Response(404)


@pytest.fixture
def master_key() -> str:
    return os.urandom(32).hex()


@pytest.fixture
def settings(tmp_path, master_key) -> GatewaySettings:
    return GatewaySettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}",
        encryption_key=master_key,
        solana_rpc_url="https://rpc.test",
        quote_api_url="https://quotes.test",
        market_api_url="https://markets.test",
        confirmation_timeout=0.2,
        confirmation_poll_interval=0.01,
        quote_min_interval=0.0,
    )


@pytest.fixture
def ledger() -> StubLedger:
    return StubLedger()


@pytest.fixture
def quote_service() -> StubQuoteService:
    return StubQuoteService()


@pytest.fixture
def market_service() -> StubMarketService:
    return StubMarketService()


@pytest_asyncio.fixture
async def services(settings, ledger, quote_service, market_service):
    built = GatewayServices.build(
        settings,
        rpc_transport=httpx.MockTransport(ledger.handler),
        quote_transport=httpx.MockTransport(quote_service.handler),
        market_transport=httpx.MockTransport(market_service.handler),
    )
    await built.db.create_all()
    yield built
    await built.aclose()


async def create_user(services: GatewayServices, external_id: str) -> str:
    async with services.db.session() as session:
        user = await UserRepository(session).create(external_id)
        return user.id


@pytest_asyncio.fixture
async def user_id(services) -> str:
    return await create_user(services, "alice@example.com")


@pytest.fixture
def keypair():
    with Keypair.generate() as kp:
        yield kp
