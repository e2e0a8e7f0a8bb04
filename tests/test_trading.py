import base58
import httpx
import pytest
from pydantic import ValidationError

from predictgate.exceptions import (
    ConfirmationTimeout,
    InvalidAddress,
    InvalidRequestError,
    MarketDataError,
    MarketNotFound,
    PasswordRequired,
    QuoteServiceError,
    QuoteUnavailableError,
    RateLimitedError,
)
from predictgate.trading.markets import MarketClient
from predictgate.trading.quotes import QuoteClient, TradeParams
from predictgate.utils.amounts import from_base_units, to_base_units
from predictgate.wallet import encrypt_wallet_for_import

OUTCOME_MINT = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"
PASSWORD = "correct horse battery"


def test_trade_params_query_defaults():
    params = TradeParams(input_mint="a", output_mint="b", amount=10)
    assert params.to_query() == {"inputMint": "a", "outputMint": "b", "amount": 10, "slippageBps": 100}


@pytest.mark.parametrize("kwargs", [{"amount": 0}, {"amount": 1, "slippage_bps": 10_001}])
def test_trade_params_validation(kwargs):
    with pytest.raises(ValidationError):
        TradeParams(input_mint="a", output_mint="b", **kwargs)


def test_to_base_units():
    assert to_base_units(1.25, 6) == 1_250_000
    assert to_base_units(1.001, 9) == 1_001_000_000
    assert to_base_units(0.1, 6) == 100_000
    assert from_base_units("2500000", 6) == 2.5
    with pytest.raises(InvalidRequestError):
        to_base_units(0.0000001, 6)


@pytest.mark.asyncio
async def test_quote_client_retries_rate_limit_once(quote_service):
    quote_service.rate_limited_responses = 1
    client = QuoteClient("https://quotes.test", min_interval=0, transport=httpx.MockTransport(quote_service.handler))
    try:
        quote = await client.get_quote(TradeParams(input_mint="a", output_mint="b", amount=5))
    finally:
        await client.aclose()
    assert quote.out_amount == quote_service.out_amount
    assert len(quote_service.requests) == 2


@pytest.mark.asyncio
async def test_quote_client_gives_up_after_second_rate_limit(quote_service):
    quote_service.rate_limited_responses = 2
    client = QuoteClient("https://quotes.test", min_interval=0, transport=httpx.MockTransport(quote_service.handler))
    try:
        with pytest.raises(RateLimitedError):
            await client.get_quote(TradeParams(input_mint="a", output_mint="b", amount=5))
    finally:
        await client.aclose()


@pytest.mark.asyncio
async def test_quote_client_sends_api_key_and_maps_errors():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers.get("x-api-key"))
        return httpx.Response(500, text="boom")

    client = QuoteClient("https://quotes.test", api_key="qk", min_interval=0, transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(QuoteServiceError):
            await client.get_order_status("order-1")
    finally:
        await client.aclose()
    assert seen == ["qk"]


@pytest.mark.asyncio
async def test_buy_yes_records_order_and_position(services, user_id, ledger, quote_service, settings):
    wallet = await services.wallets.generate(user_id)
    result = await services.trades.buy_yes(user_id, "PRES-2028", OUTCOME_MINT, 2.5)

    assert result.status == "success"
    assert ledger.sent[0].signature == result.tx_signature
    request = quote_service.requests[-1]
    assert request.url.params["inputMint"] == settings.tokens.usdc
    assert request.url.params["outputMint"] == OUTCOME_MINT
    assert request.url.params["amount"] == "2500000"
    assert request.url.params["userPublicKey"] == wallet.public_key

    (order,) = await services.trades.list_orders(user_id)
    assert order["side"] == "BUY"
    assert order["status"] == "FILLED"
    (position,) = await services.trades.list_positions(user_id)
    assert position["quantity"] == float(quote_service.out_amount)
    assert position["costBasis"] == 2.5
    assert position["marketTicker"] == "PRES-2028"


@pytest.mark.asyncio
async def test_sell_reduces_position(services, user_id, quote_service):
    await services.wallets.generate(user_id)
    await services.trades.buy_no(user_id, "PRES-2028", OUTCOME_MINT, 1.0)
    quote_service.execution_mode = "async"
    result = await services.trades.sell_outcome(user_id, OUTCOME_MINT, 1_000_000)
    assert result.status == "pending"

    (position,) = await services.trades.list_positions(user_id)
    assert position["quantity"] == float(quote_service.out_amount) - 1_000_000
    submitted = await services.trades.list_orders(user_id, status="SUBMITTED")
    assert [o["side"] for o in submitted] == ["SELL"]


@pytest.mark.asyncio
async def test_redeem_uses_tight_slippage(services, user_id, quote_service):
    await services.wallets.generate(user_id)
    await services.trades.redeem_winnings(user_id, OUTCOME_MINT, 10)
    assert quote_service.requests[-1].url.params["slippageBps"] == "10"


@pytest.mark.asyncio
async def test_imported_wallet_needs_password_before_quoting(services, user_id, keypair, quote_service):
    await services.wallets.import_bundle(user_id, encrypt_wallet_for_import(keypair.to_base58(), PASSWORD))
    with pytest.raises(PasswordRequired):
        await services.trades.buy_yes(user_id, "PRES-2028", OUTCOME_MINT, 1.0)
    assert quote_service.requests == []

    result = await services.trades.buy_yes(user_id, "PRES-2028", OUTCOME_MINT, 1.0, password=PASSWORD)
    assert quote_service.requests[-1].url.params["userPublicKey"] == keypair.public_key
    assert result.tx_signature


@pytest.mark.asyncio
async def test_quote_without_transaction(services, user_id, quote_service, ledger):
    await services.wallets.generate(user_id)
    quote_service.include_transaction = False
    with pytest.raises(QuoteUnavailableError):
        await services.trades.buy_yes(user_id, "PRES-2028", OUTCOME_MINT, 1.0)
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_buy_rejects_invalid_mint(services, user_id):
    await services.wallets.generate(user_id)
    with pytest.raises(InvalidAddress):
        await services.trades.buy_yes(user_id, "PRES-2028", "bad-mint", 1.0)


@pytest.mark.asyncio
async def test_swap_resolves_symbols(services, user_id, quote_service, settings):
    await services.wallets.generate(user_id)
    quote_service.out_amount = "150000000"
    result = await services.trades.execute_swap(user_id, "usdc", "SOL", 20)

    params = quote_service.requests[-1].url.params
    assert params["inputMint"] == settings.tokens.usdc
    assert params["outputMint"] == settings.tokens.sol
    assert params["amount"] == "20000000"
    assert params["slippageBps"] == "50"
    assert result["outputAmount"] == 0.15


@pytest.mark.asyncio
async def test_swap_quote_does_not_sign(services, user_id, ledger):
    await services.wallets.generate(user_id)
    quote = await services.trades.swap_quote(user_id, "SOL", "USDC", 1)
    assert quote["outputAmount"] == 2.5
    assert ledger.sent == []


@pytest.mark.asyncio
async def test_swap_rejects_identical_tokens(services, user_id):
    await services.wallets.generate(user_id)
    with pytest.raises(InvalidRequestError):
        await services.trades.execute_swap(user_id, "SOL", "sol", 1)


def _mint(seed: int) -> str:
    return base58.b58encode(bytes([seed]) * 32).decode("ascii")


@pytest.mark.asyncio
async def test_unconfirmed_trade_is_recorded_as_submitted(services, user_id, ledger):
    await services.wallets.generate(user_id)
    ledger.confirmation_status = None

    with pytest.raises(ConfirmationTimeout) as excinfo:
        await services.trades.buy_yes(user_id, "PRES-2028", OUTCOME_MINT, 1.0)
    assert excinfo.value.retriable is False
    assert excinfo.value.signature == ledger.sent[0].signature
    assert len(ledger.sent) == 1

    (order,) = await services.trades.list_orders(user_id)
    assert order["status"] == "SUBMITTED"
    assert order["txSignature"] == excinfo.value.signature
    assert await services.trades.list_positions(user_id) == []


@pytest.mark.asyncio
async def test_rate_limited_confirmation_is_recorded_as_submitted(services, user_id, ledger):
    await services.wallets.generate(user_id)
    ledger.rate_limited_methods.add("getSignatureStatuses")

    with pytest.raises(ConfirmationTimeout) as excinfo:
        await services.trades.sell_outcome(user_id, OUTCOME_MINT, 1_000)
    assert excinfo.value.signature == ledger.sent[0].signature
    (order,) = await services.trades.list_orders(user_id, status="SUBMITTED")
    assert order["side"] == "SELL"


@pytest.mark.asyncio
async def test_swap_shortcuts(services, user_id, quote_service, settings):
    await services.wallets.generate(user_id)

    await services.trades.swap_sol_to_usdc(user_id, 0.5)
    params = quote_service.requests[-1].url.params
    assert (params["inputMint"], params["outputMint"]) == (settings.tokens.sol, settings.tokens.usdc)
    assert params["amount"] == "500000000"

    result = await services.trades.swap_usdc_to_sol(user_id, 10, slippage_bps=75)
    params = quote_service.requests[-1].url.params
    assert (params["inputMint"], params["outputMint"]) == (settings.tokens.usdc, settings.tokens.sol)
    assert params["amount"] == "10000000"
    assert params["slippageBps"] == "75"
    assert result["success"] is True


@pytest.mark.asyncio
async def test_redemption_status(services, market_service):
    market_service.add_market(
        "KXFED-25DEC-C25", _mint(1), _mint(2), status="finalized", result="no", redemption_status="open"
    )
    market_service.add_market(
        "KXFED-25DEC-H25", _mint(3), _mint(4), status="finalized", result="yes", redemption_status="pending"
    )
    market_service.add_market("KXFED-26JAN-C25", _mint(5), _mint(6))

    open_market = await services.trades.check_redemption_status("KXFED-25DEC-C25")
    assert open_market["canRedeem"] is True
    assert open_market["winningMint"] == _mint(2)
    assert market_service.requests[-1].url.params["eventTicker"] == "KXFED-25DEC"

    funding = await services.trades.check_redemption_status("KXFED-25DEC-H25")
    assert funding["isSettled"] is True
    assert funding["canRedeem"] is False

    active = await services.trades.check_redemption_status("KXFED-26JAN-C25")
    assert active["isSettled"] is False
    assert active["winningMint"] is None

    with pytest.raises(MarketNotFound):
        await services.trades.check_redemption_status("KXFED-25DEC-NOPE")


@pytest.mark.asyncio
async def test_redeemable_positions_only_include_winning_side(services, user_id, ledger, market_service, settings):
    wallet = await services.wallets.generate(user_id)
    market_service.add_market("PRES-2028-DEM", _mint(1), _mint(2), status="finalized", result="yes")
    market_service.add_market("PRES-2028-REP", _mint(3), _mint(4), status="finalized", result="yes")
    market_service.add_market("PRES-2032-DEM", _mint(5), _mint(6))
    ledger.add_token_account(wallet.public_key, _mint(1), 3_000_000)
    ledger.add_token_account(wallet.public_key, _mint(4), 1_000_000)
    ledger.add_token_account(wallet.public_key, _mint(5), 1_000_000)
    ledger.add_token_account(wallet.public_key, _mint(9), 1_000_000)
    ledger.add_token_account(wallet.public_key, settings.tokens.usdc, 5_000_000)

    (position,) = await services.trades.get_redeemable_positions(user_id)
    assert position["mint"] == _mint(1)
    assert position["amount"] == 3_000_000
    assert position["market"]["ticker"] == "PRES-2028-DEM"


@pytest.mark.asyncio
async def test_redeem_all_positions(services, user_id, ledger, market_service, quote_service):
    wallet = await services.wallets.generate(user_id)
    market_service.add_market("PRES-2028-DEM", _mint(1), _mint(2), status="finalized", result="yes")
    market_service.add_market("PRES-2028-REP", _mint(3), _mint(4), status="finalized", result="no")
    ledger.add_token_account(wallet.public_key, _mint(1), 3_000_000)
    ledger.add_token_account(wallet.public_key, _mint(4), 2_000_000)

    summary = await services.trades.redeem_all_positions(user_id)
    assert summary["successCount"] == 2
    assert [r["txSignature"] for r in summary["results"]] == [tx.signature for tx in ledger.sent]
    assert quote_service.requests[-1].url.params["slippageBps"] == "10"
    orders = await services.trades.list_orders(user_id)
    assert {o["marketTicker"] for o in orders} == {"PRES-2028-DEM", "PRES-2028-REP"}
    assert {o["side"] for o in orders} == {"REDEEM"}


@pytest.mark.asyncio
async def test_redeem_all_reports_each_outcome(services, user_id, ledger, market_service, quote_service):
    wallet = await services.wallets.generate(user_id)
    market_service.add_market("PRES-2028-DEM", _mint(1), _mint(2), status="finalized", result="yes")
    ledger.add_token_account(wallet.public_key, _mint(1), 3_000_000)

    ledger.confirmation_status = None
    summary = await services.trades.redeem_all_positions(user_id)
    (unknown,) = summary["results"]
    assert unknown["status"] == "unknown"
    assert unknown["txSignature"] == ledger.sent[0].signature
    assert summary["unknownCount"] == 1

    quote_service.include_transaction = False
    summary = await services.trades.redeem_all_positions(user_id)
    (failed,) = summary["results"]
    assert failed["status"] == "failed"
    assert failed["kind"] == "quote_unavailable"
    assert summary["failedCount"] == 1
    assert len(ledger.sent) == 1


@pytest.mark.asyncio
async def test_redeem_all_needs_password_for_imported_wallet(services, user_id, keypair, market_service):
    await services.wallets.import_bundle(user_id, encrypt_wallet_for_import(keypair.to_base58(), PASSWORD))
    with pytest.raises(PasswordRequired):
        await services.trades.redeem_all_positions(user_id)
    assert market_service.requests == []


@pytest.mark.asyncio
async def test_market_client_maps_errors():
    statuses = iter([429, 503])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(next(statuses), text="unavailable")

    client = MarketClient("https://markets.test", transport=httpx.MockTransport(handler))
    try:
        with pytest.raises(RateLimitedError):
            await client.get_market_by_mint(OUTCOME_MINT)
        with pytest.raises(MarketDataError):
            await client.get_market("PRES-2028-DEM")
    finally:
        await client.aclose()
